"""Storage adapter interface and implementations."""
from abc import ABC, abstractmethod
import asyncio
from pathlib import Path
from typing import Optional

import aiohttp
import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from imagestore.errors import FatalConnectivityError, TransientCheckFailure
from imagestore.settings import settings


class StorageAdapter(ABC):
    """Abstract object store interface (S3-style)."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """
        Save data under key, overwriting any existing object.

        Args:
            key: Storage key (e.g., "originals/ab/ab12...")
            data: Binary data to save
            content_type: MIME type recorded with the object
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Retrieve data from storage.

        Raises:
            FileNotFoundError: If the key is absent
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Delete data from storage.

        Deleting an absent key is not an error. Any other failure raises.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """
        Check if key exists in storage.

        Returns:
            True if exists, False if absent

        Raises:
            TransientCheckFailure: If existence could not be determined
        """

    @abstractmethod
    async def presign(self, key: str, expires_seconds: int = 900) -> str:
        """Return a time-limited download URL for key."""

    @abstractmethod
    async def check_connection(self) -> None:
        """
        Verify the backing store is reachable.

        Raises:
            FatalConnectivityError: If the store cannot be used at all
        """


class LocalStorageAdapter(StorageAdapter):
    """Local filesystem storage adapter (for development)."""

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.STORAGE_BASE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key."""
        # Sanitize key to prevent directory traversal
        key = key.lstrip("/")
        if ".." in Path(key).parts:
            raise ValueError(f"Invalid storage key: {key}")
        return self.base_path / key

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        full_path = self._get_full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file and rename so readers never see a partial object
        tmp_path = full_path.with_name(full_path.name + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        tmp_path.replace(full_path)

    async def get(self, key: str) -> bytes:
        full_path = self._get_full_path(key)
        if not full_path.exists():
            raise FileNotFoundError(f"Key not found: {key}")

        with open(full_path, "rb") as f:
            return f.read()

    async def delete(self, key: str) -> None:
        full_path = self._get_full_path(key)
        full_path.unlink(missing_ok=True)

    async def exists(self, key: str) -> bool:
        try:
            return self._get_full_path(key).is_file()
        except OSError as e:
            raise TransientCheckFailure(f"Failed to stat {key}: {e}") from e

    async def presign(self, key: str, expires_seconds: int = 900) -> str:
        # No signing for local files; serve via a proxy in real setups
        return self._get_full_path(key).resolve().as_uri()

    async def check_connection(self) -> None:
        if not self.base_path.is_dir():
            raise FatalConnectivityError(f"Storage path is not a directory: {self.base_path}")


class S3StorageAdapter(StorageAdapter):
    """S3-compatible storage adapter (AWS S3, Cloudflare R2, MinIO).

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self):
        if not settings.S3_BUCKET:
            raise FatalConnectivityError("S3_BUCKET must be set when STORAGE_TYPE=s3")
        try:
            session = boto3.session.Session(
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                region_name=settings.S3_REGION,
            )
            self.s3 = session.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT_URL,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=settings.STORAGE_TIMEOUT_SECONDS,
                    read_timeout=settings.STORAGE_TIMEOUT_SECONDS,
                    retries={"max_attempts": 2},
                ),
            )
        except (BotoCoreError, ValueError) as e:
            raise FatalConnectivityError(f"Failed to initialize S3 client: {e}") from e
        self.bucket = settings.S3_BUCKET

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        await asyncio.to_thread(
            self.s3.put_object, Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
        )

    async def get(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                raise FileNotFoundError(f"Key not found: {key}") from e
            raise
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for absent keys
        await asyncio.to_thread(self.s3.delete_object, Bucket=self.bucket, Key=key)

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.s3.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise TransientCheckFailure(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise TransientCheckFailure(f"head_object failed for {key}: {e}") from e

    async def presign(self, key: str, expires_seconds: int = 900) -> str:
        return await asyncio.to_thread(
            self.s3.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    async def check_connection(self) -> None:
        try:
            await asyncio.to_thread(self.s3.head_bucket, Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise FatalConnectivityError(f"S3 bucket {self.bucket} is not reachable: {e}") from e


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class VercelBlobStorageAdapter(StorageAdapter):
    """Vercel Blob Storage adapter (for Vercel deployment).

    Uses Vercel Blob REST API directly.
    BLOB_READ_WRITE_TOKEN is automatically available in Vercel environment.
    """

    def __init__(self):
        self.token = settings.BLOB_READ_WRITE_TOKEN
        if not self.token:
            raise FatalConnectivityError(
                "BLOB_READ_WRITE_TOKEN not found. "
                "This is automatically set in Vercel environment."
            )
        self.base_url = "https://blob.vercel-storage.com"
        self.timeout = aiohttp.ClientTimeout(total=settings.STORAGE_TIMEOUT_SECONDS)

    def _url(self, key: str) -> str:
        # Keys may already be full blob URLs
        return key if key.startswith("http") else f"{self.base_url}/{key}"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        headers = {
            **self._headers(),
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.put(self._url(key), data=data, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise OSError(f"Failed to upload to Vercel Blob: {error_text}")

    async def get(self, key: str) -> bytes:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(self._url(key)) as response:
                if response.status == 404:
                    raise FileNotFoundError(f"Blob not found: {key}")
                response.raise_for_status()
                return await response.read()

    async def delete(self, key: str) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(
                f"{self.base_url}/delete",
                json={"urls": [self._url(key)]},
                headers=self._headers(),
            ) as response:
                if response.status not in (200, 204, 404):
                    error_text = await response.text()
                    raise OSError(f"Failed to delete from Vercel Blob: {error_text}")

    async def exists(self, key: str) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.head(self._url(key)) as response:
                    if response.status == 404:
                        return False
                    if response.status == 200:
                        return True
                    raise TransientCheckFailure(
                        f"Unexpected status {response.status} checking {key}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientCheckFailure(f"Failed to check {key}: {e}") from e

    async def presign(self, key: str, expires_seconds: int = 900) -> str:
        # Blob URLs are public and unguessable; there is nothing to sign
        return self._url(key)

    async def check_connection(self) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(
                    self.base_url, params={"limit": "1"}, headers=self._headers()
                ) as response:
                    if response.status in (401, 403) or response.status >= 500:
                        raise FatalConnectivityError(
                            f"Vercel Blob rejected the connection: HTTP {response.status}"
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FatalConnectivityError(f"Vercel Blob is not reachable: {e}") from e


def get_storage_adapter() -> StorageAdapter:
    """Factory function to get storage adapter based on settings."""
    if settings.STORAGE_TYPE == "local":
        return LocalStorageAdapter()
    elif settings.STORAGE_TYPE == "s3":
        return S3StorageAdapter()
    elif settings.STORAGE_TYPE == "vercel_blob":
        return VercelBlobStorageAdapter()
    else:
        raise FatalConnectivityError(f"Unknown storage type: {settings.STORAGE_TYPE}")
