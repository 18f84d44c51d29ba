"""Object store abstraction. Local disk for dev, S3-compatible bucket for production.

Both backends expose the same flat key/value capability: put, get, delete,
batch delete and paginated prefix listing. There are no directories; a key
ending in "/" is just another (usually empty) object.
"""
import asyncio
import base64
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

import aiofiles
import aiofiles.os
from aiobotocore.session import get_session
from botocore.config import Config

from bucketdrive.config import Settings, settings

logger = logging.getLogger(__name__)

# Conventional cap for multi-object delete requests
MAX_BATCH_DELETE = 1000


class ObjectStoreError(Exception):
    """Generic object store failure."""


class ObjectNotFoundError(ObjectStoreError):
    """Raised when an object is missing."""


class ObjectExistsError(ObjectStoreError):
    """Raised when a non-overwriting put hits an existing key."""


@dataclass
class ObjectInfo:
    key: str
    size: int
    last_modified: datetime | None = None


@dataclass
class ListPage:
    """One page of a prefix listing.

    ``common_prefixes`` is only filled for delimiter listings. ``next_token``
    is opaque and only meaningful to the store that issued it.
    """
    objects: list[ObjectInfo] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    is_truncated: bool = False
    next_token: str | None = None


@dataclass
class StoredObject:
    data: bytes
    content_type: str | None


@dataclass
class BatchDeleteOutcome:
    deleted: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)  # key -> reason


class ObjectStore(ABC):
    """Capability interface every backend implements."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None,
                  overwrite: bool = False) -> None:
        ...

    @abstractmethod
    async def get(self, key: str) -> StoredObject:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_batch(self, keys: list[str]) -> BatchDeleteOutcome:
        """Delete up to MAX_BATCH_DELETE keys in one call. Never raises for per-key failures."""
        ...

    @abstractmethod
    async def list_by_prefix(
        self,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = MAX_BATCH_DELETE,
        delimiter: str | None = None,
    ) -> ListPage:
        ...

    async def close(self) -> None:
        pass


def _check_batch_size(keys: list[str]) -> None:
    if len(keys) > MAX_BATCH_DELETE:
        raise ValueError(f"Batch delete accepts at most {MAX_BATCH_DELETE} keys, got {len(keys)}")


# ── Local disk backend ───────────────────────────────────────────

class LocalObjectStore(ObjectStore):
    """Flat key/value store in a single directory.

    Each key is stored as one file whose name is the urlsafe-base64 of the
    key, with a ``.meta`` JSON sidecar holding the content type. Listing
    decodes and sorts names, the same lexicographic order S3 lists in.
    """

    _META_SUFFIX = ".meta"
    _MAX_NAME = 240

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key:
            raise ObjectStoreError("Object key must not be empty")
        name = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")
        if len(name) > self._MAX_NAME:
            raise ObjectStoreError(f"Key too long for local store: {key[:80]}...")
        return self.base_path / name

    @staticmethod
    def _key_for(name: str) -> str:
        padded = name + "=" * (-len(name) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")

    async def put(self, key, data, content_type=None, overwrite=False):
        path = self._path_for(key)
        mode = "wb" if overwrite else "xb"
        try:
            async with aiofiles.open(path, mode) as f:
                await f.write(data)
            async with aiofiles.open(str(path) + self._META_SUFFIX, "w") as f:
                await f.write(json.dumps({"key": key, "content_type": content_type}))
        except FileExistsError as exc:
            raise ObjectExistsError(key) from exc
        except OSError as exc:
            raise ObjectStoreError(f"Failed to write object {key}: {exc}") from exc

    async def get(self, key):
        path = self._path_for(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(key) from exc
        except OSError as exc:
            raise ObjectStoreError(f"Failed to read object {key}: {exc}") from exc

        content_type = None
        try:
            async with aiofiles.open(str(path) + self._META_SUFFIX, "r") as f:
                content_type = json.loads(await f.read()).get("content_type")
        except (OSError, ValueError):
            logger.warning(f"Missing or unreadable metadata sidecar for {key}")
        return StoredObject(data=data, content_type=content_type)

    async def delete(self, key):
        path = self._path_for(key)
        try:
            for target in (path, Path(str(path) + self._META_SUFFIX)):
                if await aiofiles.os.path.exists(target):
                    await aiofiles.os.remove(target)
        except OSError as exc:
            raise ObjectStoreError(f"Failed to delete object {key}: {exc}") from exc

    async def delete_batch(self, keys):
        _check_batch_size(keys)
        outcome = BatchDeleteOutcome()
        for key in keys:
            try:
                await self.delete(key)
                outcome.deleted.append(key)
            except ObjectStoreError as exc:
                outcome.errors[key] = str(exc)
        return outcome

    def _scan(self) -> list[ObjectInfo]:
        infos = []
        for entry in os.scandir(self.base_path):
            if not entry.is_file() or "." in entry.name:
                continue
            stat = entry.stat()
            infos.append(ObjectInfo(
                key=self._key_for(entry.name),
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            ))
        infos.sort(key=lambda info: info.key)
        return infos

    @staticmethod
    def _encode_token(after: str) -> str:
        return base64.urlsafe_b64encode(json.dumps({"after": after}).encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode_token(token: str) -> str:
        try:
            after = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))["after"]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ObjectStoreError("Invalid continuation token") from exc
        if not isinstance(after, str):
            raise ObjectStoreError("Invalid continuation token")
        return after

    async def list_by_prefix(self, prefix, continuation_token=None, max_keys=MAX_BATCH_DELETE,
                             delimiter=None):
        try:
            infos = await asyncio.to_thread(self._scan)
        except OSError as exc:
            raise ObjectStoreError(f"Failed to list objects: {exc}") from exc

        after = self._decode_token(continuation_token) if continuation_token else None
        # A token that ends on a rolled-up common prefix also skips everything under it
        skip_under = (
            after if after and delimiter and after != prefix and after.endswith(delimiter) else None
        )
        max_keys = max(1, max_keys)
        page = ListPage()
        count = 0
        last_emitted = None
        for info in infos:
            if not info.key.startswith(prefix):
                continue
            if after is not None and info.key <= after:
                continue
            if skip_under and info.key.startswith(skip_under):
                continue

            entry = info.key
            rolled_up = False
            if delimiter:
                rest = info.key[len(prefix):]
                idx = rest.find(delimiter)
                if idx >= 0:
                    entry = prefix + rest[:idx + len(delimiter)]
                    rolled_up = True
                    if entry == last_emitted:
                        continue

            if count == max_keys:
                page.is_truncated = True
                page.next_token = self._encode_token(last_emitted)
                break

            if rolled_up:
                page.common_prefixes.append(entry)
            else:
                page.objects.append(info)
            last_emitted = entry
            count += 1
        return page


# ── S3-compatible backend ────────────────────────────────────────

class S3ObjectStore(ObjectStore):
    """S3/R2/MinIO-backed store using one long-lived aiobotocore client."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str = "auto",
        timeout: float = 30.0,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self._access_key = access_key
        self._secret_key = secret_key
        self.region = region
        self._config = Config(
            signature_version="s3v4",
            connect_timeout=timeout,
            read_timeout=timeout,
            # Retries are the caller's decision
            retries={"total_max_attempts": 1},
        )
        self._client = None
        self._exit_stack: AsyncExitStack | None = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self):
        if self._client is not None:
            return self._client
        async with self._client_lock:
            if self._client is None:
                stack = AsyncExitStack()
                session = get_session()
                self._client = await stack.enter_async_context(
                    session.create_client(
                        "s3",
                        region_name=self.region,
                        endpoint_url=self.endpoint_url or None,
                        aws_access_key_id=self._access_key,
                        aws_secret_access_key=self._secret_key,
                        config=self._config,
                    )
                )
                self._exit_stack = stack
        return self._client

    async def close(self):
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._client = None
        self._exit_stack = None

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    async def put(self, key, data, content_type=None, overwrite=False):
        client = await self._get_client()
        kwargs: dict = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        if not overwrite:
            kwargs["IfNoneMatch"] = "*"
        try:
            await client.put_object(**kwargs)
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"PreconditionFailed", "412", "ConditionalRequestConflict"}:
                raise ObjectExistsError(key) from exc
            raise ObjectStoreError(f"Failed to upload object {key}: {exc}") from exc

    async def get(self, key):
        client = await self._get_client()
        try:
            response = await client.get_object(Bucket=self.bucket, Key=key)
            data = await response["Body"].read()
        except Exception as exc:
            if self._error_code(exc) in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStoreError(f"Failed to download object {key}: {exc}") from exc
        return StoredObject(data=data, content_type=response.get("ContentType"))

    async def delete(self, key):
        client = await self._get_client()
        try:
            await client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            raise ObjectStoreError(f"Failed to delete object {key}: {exc}") from exc

    async def delete_batch(self, keys):
        _check_batch_size(keys)
        outcome = BatchDeleteOutcome()
        if not keys:
            return outcome
        client = await self._get_client()
        try:
            response = await client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in keys], "Quiet": False},
            )
        except Exception as exc:
            reason = f"Batch delete failed: {exc}"
            outcome.errors = {k: reason for k in keys}
            return outcome

        outcome.deleted = [d["Key"] for d in response.get("Deleted", [])]
        for err in response.get("Errors", []):
            # Already gone counts as deleted
            if err.get("Code") == "NoSuchKey":
                outcome.deleted.append(err["Key"])
            else:
                outcome.errors[err["Key"]] = f"{err.get('Code')}: {err.get('Message', '')}"
        return outcome

    async def list_by_prefix(self, prefix, continuation_token=None, max_keys=MAX_BATCH_DELETE,
                             delimiter=None):
        client = await self._get_client()
        kwargs: dict = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token
        if delimiter:
            kwargs["Delimiter"] = delimiter
        try:
            response = await client.list_objects_v2(**kwargs)
        except Exception as exc:
            raise ObjectStoreError(f"Failed to list objects under {prefix!r}: {exc}") from exc

        return ListPage(
            objects=[
                ObjectInfo(key=o["Key"], size=o.get("Size", 0), last_modified=o.get("LastModified"))
                for o in response.get("Contents", [])
            ],
            common_prefixes=[p["Prefix"] for p in response.get("CommonPrefixes", [])],
            is_truncated=bool(response.get("IsTruncated")),
            next_token=response.get("NextContinuationToken"),
        )


def build_object_store(config: Settings) -> ObjectStore:
    """Construct the configured backend."""
    if config.OBJECT_STORE_TYPE == "local":
        return LocalObjectStore(config.OBJECT_STORE_PATH)
    if config.OBJECT_STORE_TYPE == "s3":
        if not (config.S3_BUCKET and config.S3_ACCESS_KEY_ID and config.S3_SECRET_ACCESS_KEY):
            raise ValueError("Missing S3 credentials. Set S3_BUCKET, S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY.")
        return S3ObjectStore(
            bucket=config.S3_BUCKET,
            endpoint_url=config.s3_endpoint,
            access_key=config.S3_ACCESS_KEY_ID,
            secret_key=config.S3_SECRET_ACCESS_KEY,
            region=config.S3_REGION,
            timeout=config.STORE_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown object store type: {config.OBJECT_STORE_TYPE}")


@lru_cache(maxsize=1)
def get_object_store() -> ObjectStore:
    """Process-wide store built once from settings. FastAPI dependency."""
    return build_object_store(settings)
