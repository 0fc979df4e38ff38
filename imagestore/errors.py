"""Exception taxonomy shared by repositories, services, the API and the CLI."""


class ImageStoreError(Exception):
    """Base class for all image store errors."""


class NotFoundError(ImageStoreError):
    """Requested id or content hash is absent."""


class AlreadyExistsError(ImageStoreError):
    """An original with this content hash already exists.

    Dedup callers re-query by hash instead of retrying the create.
    """


class InvalidStatusTransitionError(ImageStoreError):
    """A derived image cannot move from its current status to the requested one."""


class TransientCheckFailure(ImageStoreError):
    """A single object-store call failed (timeout, network error).

    During reconciliation the row is recorded as an example and skipped.
    """


class FatalConnectivityError(ImageStoreError):
    """The relational store or object-store client cannot be used at all."""
