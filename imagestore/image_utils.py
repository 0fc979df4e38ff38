"""Image utilities: content hashing, fingerprint validation, metadata extraction."""
import hashlib
import re
from io import BytesIO
from PIL import Image, UnidentifiedImageError
from typing import BinaryIO, Optional, Tuple

HASH_HEX_LENGTH = 64
CHUNK_SIZE = 1024 * 1024

_HASH_RE = re.compile(r"[0-9a-fA-F]{%d}" % HASH_HEX_LENGTH)


def compute_content_hash(data: bytes) -> str:
    """Compute SHA256 hash of image data (the dedup key)."""
    return hashlib.sha256(data).hexdigest()


def compute_content_hash_from_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Compute SHA256 hash of a binary stream, reading it to the end.

    Args:
        stream: Readable binary stream
        chunk_size: Bytes read per call

    Returns:
        Lowercase hex digest (64 characters)

    Raises:
        OSError: If the stream cannot be read; no digest is produced
    """
    h = hashlib.sha256()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def validate_content_hash(value: str) -> bool:
    """Check that value is a well-formed SHA256 hex digest (any letter case)."""
    if not isinstance(value, str):
        return False
    return _HASH_RE.fullmatch(value) is not None


def build_original_key(content_hash: str) -> str:
    """Object-store key for an original; identical bytes always map to the same key."""
    content_hash = content_hash.lower()
    return f"originals/{content_hash[:2]}/{content_hash}"


def open_image_from_bytes(data: bytes) -> Image.Image:
    """
    Open PIL Image from bytes.

    Args:
        data: Image bytes

    Returns:
        PIL Image object

    Raises:
        ValueError: If image cannot be opened
    """
    try:
        return Image.open(BytesIO(data))
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Invalid image data: {str(e)}")


def read_image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    """Return (width, height), or (None, None) when Pillow cannot decode the format."""
    try:
        image = open_image_from_bytes(data)
    except ValueError:
        return None, None
    width, height = image.size
    return width, height
