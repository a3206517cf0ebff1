# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Blob storage adapters.

Two implementations of one small protocol:
- S3BlobStorage: any S3-compatible service through aiobotocore
- LocalBlobStorage: a plain directory, for file:// locators and tests

Adapters raise only TransferError subclasses. Foreign errors are classified
so the engine can retry transient failures and fail fast on the rest.
"""

import asyncio
import errno
import functools
import hashlib
import shutil
from contextlib import AsyncExitStack
from pathlib import Path
from typing import AsyncIterator, Dict, List, Protocol, Tuple, runtime_checkable
from urllib.parse import unquote, urlparse

import aiofiles
import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
)
from ulid import ULID

from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import (
    AuthorizationFailed,
    BlobNotFound,
    ConfigurationError,
    QuotaExceeded,
    TransferError,
    TransferRejected,
    TransientStorageError,
)

logger = structlog.get_logger()

DEFAULT_READ_SIZE = 1024 * 1024  # 1 MiB
_MAX_COPY_SIZE = 5 * 1024 * 1024 * 1024  # copy_object limit
_COPY_PART_SIZE = 512 * 1024 * 1024


@runtime_checkable
class BlobStorage(Protocol):
    """Key/value blob store with multipart uploads and ranged reads."""

    def locator(self, key: str) -> str:
        """Full locator (s3://... or file://...) of `key`."""
        ...

    async def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str, chunk_size: int = DEFAULT_READ_SIZE) -> AsyncIterator[bytes]: ...

    async def get_range(self, key: str, start: int, end: int) -> bytes:
        """Bytes [start, end) of `key`."""
        ...

    async def exists(self, key: str) -> bool: ...

    async def size(self, key: str) -> int: ...

    async def delete(self, key: str) -> None: ...

    async def begin_upload(self, key: str) -> str: ...

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> dict: ...

    async def complete_upload(self, key: str, upload_id: str, parts: List[dict]) -> None: ...

    async def abort_upload(self, key: str, upload_id: str) -> None: ...

    async def promote(self, src_key: str, dst_key: str) -> None:
        """Move `src_key` to `dst_key`; `dst_key` appears fully or not at all."""
        ...

    async def close(self) -> None: ...


# ============================================================================
# S3
# ============================================================================

_AUTH_CODES = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "InvalidToken",
        "SignatureDoesNotMatch",
    }
)
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchUpload", "NotFound", "404"})
_QUOTA_CODES = frozenset(
    {"QuotaExceeded", "ServiceQuotaExceededException", "EntityTooLarge", "InsufficientStorage"}
)
_TRANSIENT_CODES = frozenset(
    {
        "InternalError",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
    }
)


def classify_s3_error(error: Exception, operation: str, key: str | None = None) -> TransferError:
    """
    Map a botocore/network exception to the transfer error taxonomy.

    Examples:
        >>> err = ClientError({"Error": {"Code": "SlowDown"}}, "PutObject")
        >>> type(classify_s3_error(err, "put")).__name__
        'TransientStorageError'
    """
    details: Dict[str, object] = {"operation": operation, "key": key, "cause": str(error)}

    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        details.update({"code": code, "http_status": status})

        if code in _AUTH_CODES or status in (401, 403):
            return AuthorizationFailed(f"Storage denied {operation}", details)
        if code in _NOT_FOUND_CODES or status == 404:
            return BlobNotFound(f"Blob not found during {operation}", details)
        if code in _QUOTA_CODES or status == 507:
            return QuotaExceeded(f"Storage quota exceeded during {operation}", details)
        if code in _TRANSIENT_CODES or status >= 500 or status == 429:
            return TransientStorageError(f"Transient storage error during {operation}", details)
        return TransferRejected(f"Storage rejected {operation}", details)

    if isinstance(error, NoCredentialsError):
        return AuthorizationFailed("No storage credentials available", details)
    if isinstance(error, (BotoConnectionError, HTTPClientError, OSError, asyncio.TimeoutError)):
        return TransientStorageError(f"Connection error during {operation}", details)
    if isinstance(error, BotoCoreError):
        return TransferRejected(f"Storage client error during {operation}", details)
    return TransientStorageError(f"Unexpected storage error during {operation}", details)


def classify_local_error(error: OSError, operation: str, key: str | None = None) -> TransferError:
    """Map a filesystem error from LocalBlobStorage to the transfer taxonomy."""
    details = {"operation": operation, "key": key, "cause": str(error)}
    if isinstance(error, FileNotFoundError):
        return BlobNotFound(f"Blob not found during {operation}", details)
    if isinstance(error, PermissionError):
        return AuthorizationFailed(f"Permission denied during {operation}", details)
    if error.errno in (errno.ENOSPC, errno.EDQUOT):
        return QuotaExceeded(f"Storage full during {operation}", details)
    return TransientStorageError(f"I/O error during {operation}", details)


def _translating(operation: str, errors: tuple, classify):
    """Decorator translating foreign exceptions raised by one adapter method."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, key, *args, **kwargs):
            try:
                return await fn(self, key, *args, **kwargs)
            except TransferError:
                raise
            except errors as e:
                raise classify(e, operation, key) from e

        return wrapper

    return decorator


_S3_ERRORS = (ClientError, BotoCoreError, OSError, asyncio.TimeoutError)


def _wraps_s3(operation: str):
    return _translating(operation, _S3_ERRORS, classify_s3_error)


def _wraps_local(operation: str):
    return _translating(operation, (OSError,), classify_local_error)


class S3BlobStorage:
    """
    S3-compatible storage under `s3://bucket/prefix`.

    The aiobotocore client is created lazily and shared by all calls
    until close().
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        session=None,
    ):
        from aiobotocore.session import get_session

        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self.endpoint_url = endpoint_url
        self._session = session or get_session()
        self._stack: AsyncExitStack | None = None
        self._client = None
        self._client_lock = asyncio.Lock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def locator(self, key: str) -> str:
        return f"s3://{self.bucket}/{self._key(key)}"

    async def _get_client(self):
        async with self._client_lock:
            if self._client is None:
                stack = AsyncExitStack()
                self._client = await stack.enter_async_context(
                    self._session.create_client(
                        "s3",
                        region_name=self.region,
                        endpoint_url=self.endpoint_url,
                    )
                )
                self._stack = stack
        return self._client

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._client = None

    @_wraps_s3("put")
    async def put(self, key: str, data: bytes) -> None:
        client = await self._get_client()
        await client.put_object(Bucket=self.bucket, Key=self._key(key), Body=data)

    async def get(self, key: str, chunk_size: int = DEFAULT_READ_SIZE) -> AsyncIterator[bytes]:
        client = await self._get_client()
        try:
            response = await client.get_object(Bucket=self.bucket, Key=self._key(key))
            async with response["Body"] as body:
                while True:
                    chunk = await body.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except (ClientError, BotoCoreError, OSError, asyncio.TimeoutError) as e:
            raise classify_s3_error(e, "get", key) from e

    @_wraps_s3("get_range")
    async def get_range(self, key: str, start: int, end: int) -> bytes:
        if end <= start:
            return b""
        client = await self._get_client()
        response = await client.get_object(
            Bucket=self.bucket,
            Key=self._key(key),
            Range=f"bytes={start}-{end - 1}",
        )
        async with response["Body"] as body:
            return await body.read()

    async def exists(self, key: str) -> bool:
        try:
            await self.size(key)
        except BlobNotFound:
            return False
        return True

    @_wraps_s3("size")
    async def size(self, key: str) -> int:
        client = await self._get_client()
        response = await client.head_object(Bucket=self.bucket, Key=self._key(key))
        return int(response["ContentLength"])

    @_wraps_s3("delete")
    async def delete(self, key: str) -> None:
        client = await self._get_client()
        await client.delete_object(Bucket=self.bucket, Key=self._key(key))

    @_wraps_s3("begin_upload")
    async def begin_upload(self, key: str) -> str:
        client = await self._get_client()
        response = await client.create_multipart_upload(Bucket=self.bucket, Key=self._key(key))
        return response["UploadId"]

    @_wraps_s3("upload_part")
    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> dict:
        client = await self._get_client()
        response = await client.upload_part(
            Bucket=self.bucket,
            Key=self._key(key),
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return {"PartNumber": part_number, "ETag": response["ETag"]}

    @_wraps_s3("complete_upload")
    async def complete_upload(self, key: str, upload_id: str, parts: List[dict]) -> None:
        client = await self._get_client()
        ordered = sorted(parts, key=lambda p: p["PartNumber"])
        await client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=self._key(key),
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": p["PartNumber"], "ETag": p["ETag"]} for p in ordered]
            },
        )

    @_wraps_s3("abort_upload")
    async def abort_upload(self, key: str, upload_id: str) -> None:
        client = await self._get_client()
        try:
            await client.abort_multipart_upload(
                Bucket=self.bucket, Key=self._key(key), UploadId=upload_id
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "NoSuchUpload":
                raise

    @_wraps_s3("promote")
    async def promote(self, src_key: str, dst_key: str) -> None:
        """
        Server-side copy then delete the source.

        Objects above the single-copy limit are copied part by part.
        """
        client = await self._get_client()
        source = {"Bucket": self.bucket, "Key": self._key(src_key)}
        total = await self.size(src_key)

        if total <= _MAX_COPY_SIZE:
            await client.copy_object(Bucket=self.bucket, Key=self._key(dst_key), CopySource=source)
        else:
            upload_id = await self.begin_upload(dst_key)
            parts: List[dict] = []
            try:
                for number, start in enumerate(range(0, total, _COPY_PART_SIZE), start=1):
                    end = min(start + _COPY_PART_SIZE, total) - 1
                    response = await client.upload_part_copy(
                        Bucket=self.bucket,
                        Key=self._key(dst_key),
                        UploadId=upload_id,
                        PartNumber=number,
                        CopySource=source,
                        CopySourceRange=f"bytes={start}-{end}",
                    )
                    parts.append({"PartNumber": number, "ETag": response["CopyPartResult"]["ETag"]})
                await self.complete_upload(dst_key, upload_id, parts)
            except BaseException:
                await self.abort_upload(dst_key, upload_id)
                raise

        await client.delete_object(**source)


# ============================================================================
# Local directory
# ============================================================================


class LocalBlobStorage:
    """
    Directory-backed storage for `file://` locators.

    Multipart sessions live under `<root>/.uploads/<upload_id>/`; completing
    one concatenates its parts into a temp file and renames it into place.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._uploads = self.root / ".uploads"

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise TransferRejected(f"Key escapes storage root: {key}", details={"key": key})
        return path

    def locator(self, key: str) -> str:
        return self._path(key).as_uri()

    async def close(self) -> None:
        return None

    @_wraps_local("put")
    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
        temp_path.replace(path)

    async def get(self, key: str, chunk_size: int = DEFAULT_READ_SIZE) -> AsyncIterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFound(f"Blob not found: {key}", details={"key": key})
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    @_wraps_local("get_range")
    async def get_range(self, key: str, start: int, end: int) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFound(f"Blob not found: {key}", details={"key": key})
        if end <= start:
            return b""
        async with aiofiles.open(path, "rb") as f:
            await f.seek(start)
            return await f.read(end - start)

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    @_wraps_local("size")
    async def size(self, key: str) -> int:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFound(f"Blob not found: {key}", details={"key": key})
        return path.stat().st_size

    @_wraps_local("delete")
    async def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    @_wraps_local("begin_upload")
    async def begin_upload(self, key: str) -> str:
        upload_id = str(ULID())
        (self._uploads / upload_id).mkdir(parents=True)
        return upload_id

    def _session_dir(self, key: str, upload_id: str) -> Path:
        session = self._uploads / upload_id
        if not session.is_dir():
            raise BlobNotFound(
                f"Upload session not found: {upload_id}",
                details={"key": key, "upload_id": upload_id},
            )
        return session

    @_wraps_local("upload_part")
    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> dict:
        session = self._session_dir(key, upload_id)
        part_path = session / f"part-{part_number:05d}"
        temp_path = session / f"part-{part_number:05d}.tmp"
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
        temp_path.replace(part_path)
        return {"PartNumber": part_number, "ETag": hashlib.sha256(data).hexdigest()}

    @_wraps_local("complete_upload")
    async def complete_upload(self, key: str, upload_id: str, parts: List[dict]) -> None:
        session = self._session_dir(key, upload_id)
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")

        async with aiofiles.open(temp_path, "wb") as out:
            for part in sorted(parts, key=lambda p: p["PartNumber"]):
                part_path = session / f"part-{part['PartNumber']:05d}"
                if not part_path.is_file():
                    raise BlobNotFound(
                        f"Upload part missing: {part['PartNumber']}",
                        details={"key": key, "upload_id": upload_id},
                    )
                async with aiofiles.open(part_path, "rb") as f:
                    while True:
                        chunk = await f.read(DEFAULT_READ_SIZE)
                        if not chunk:
                            break
                        await out.write(chunk)

        temp_path.replace(path)
        shutil.rmtree(session, ignore_errors=True)

    async def abort_upload(self, key: str, upload_id: str) -> None:
        shutil.rmtree(self._uploads / upload_id, ignore_errors=True)

    @_wraps_local("promote")
    async def promote(self, src_key: str, dst_key: str) -> None:
        src = self._path(src_key)
        if not src.is_file():
            raise BlobNotFound(f"Blob not found: {src_key}", details={"key": src_key})
        dst = self._path(dst_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.replace(dst)


# ============================================================================
# Locators
# ============================================================================


def parse_locator(locator: str) -> Tuple[str, str, str]:
    """
    Split a storage locator into (scheme, container, key).

    For s3:// the container is the bucket; for file:// it is "" and the
    key is the absolute path.

    Examples:
        >>> parse_locator("s3://backups/prod/pg")
        ('s3', 'backups', 'prod/pg')
        >>> parse_locator("file:///srv/backups")
        ('file', '', '/srv/backups')
    """
    parsed = urlparse(locator)
    if parsed.scheme == "s3" and parsed.netloc:
        return "s3", parsed.netloc, parsed.path.lstrip("/")
    if parsed.scheme == "file" and parsed.path:
        return "file", "", unquote(parsed.path)
    raise ConfigurationError(
        f"Unsupported storage locator: {locator}",
        details={"expected": ["s3://bucket/prefix", "file:///directory"]},
    )


def create_blob_storage(config: SnapkeepConfig) -> BlobStorage | None:
    """Create the configured remote storage, or None when there is none."""
    if not config.remote_storage:
        return None
    scheme, bucket, path = parse_locator(config.remote_storage)
    if scheme == "s3":
        return S3BlobStorage(
            bucket,
            prefix=path,
            region=config.region,
            endpoint_url=config.endpoint_url,
        )
    return LocalBlobStorage(Path(path))


def open_locator(locator: str, config: SnapkeepConfig) -> Tuple[BlobStorage, str]:
    """
    Resolve a full object locator to (storage, key).

    Used when a restore names a remote artifact directly.
    """
    scheme, bucket, path = parse_locator(locator)
    if scheme == "s3":
        if not path:
            raise ConfigurationError(f"Locator names no object: {locator}")
        storage = S3BlobStorage(bucket, region=config.region, endpoint_url=config.endpoint_url)
        return storage, path
    file_path = Path(path)
    return LocalBlobStorage(file_path.parent), file_path.name
