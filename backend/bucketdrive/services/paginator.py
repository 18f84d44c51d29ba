"""Paged listings of a prefix, with or without a search filter.

Unfiltered pages follow the object store's continuation token: forward-only,
page N is reachable only through the token returned with page N-1.
Filtered pages come from the metadata store's offset pagination and can be
addressed by page number. Tokens never cross between the two modes.
"""
import base64
import binascii
import json
import logging
import math
from dataclasses import dataclass, field

from bucketdrive.config import settings
from bucketdrive.services import keys as keyrules
from bucketdrive.services.errors import BackendUnavailableError, ValidationError
from bucketdrive.services.folder_engine import (
    FileView, derive_immediate_children, file_view, load_profiles, reconcile,
)
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)

SEARCH_SCOPES = ("current", "global")


@dataclass
class ListingPage:
    files: list[FileView] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    next_token: str | None = None
    is_truncated: bool = False
    total_count: int | None = None
    total_pages: int | None = None
    current_page: int = 1


def encode_page_token(prefix: str, page_size: int, store_token: str, page_number: int) -> str:
    """Wrap the store's opaque token with the listing shape it belongs to."""
    payload = {"p": prefix, "s": page_size, "t": store_token, "n": page_number}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_page_token(token: str) -> dict | None:
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    if not isinstance(payload, dict) or not {"p", "s", "t", "n"} <= payload.keys():
        return None
    if not isinstance(payload["p"], str) or not isinstance(payload["t"], str):
        return None
    for field_name in ("s", "n"):
        value = payload[field_name]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            return None
    return payload


class ListingPaginator:
    def __init__(self, store: ObjectStore, metadata: MetadataStore):
        self.store = store
        self.metadata = metadata

    async def page(
        self,
        prefix: str = "",
        page_size: int | None = None,
        page_token: str | None = None,
        page_number: int = 1,
        search_term: str | None = None,
        search_scope: str = "current",
    ) -> ListingPage:
        if page_size is None:
            page_size = settings.DEFAULT_PAGE_SIZE
        if not 1 <= page_size <= settings.MAX_PAGE_SIZE:
            raise ValidationError(f"pageSize must be between 1 and {settings.MAX_PAGE_SIZE}")
        keyrules.validate_prefix(prefix)

        term = (search_term or "").strip()
        if term:
            return await self._filtered_page(prefix, page_size, page_number, term, search_scope)
        return await self._unfiltered_page(prefix, page_size, page_token)

    async def _unfiltered_page(self, prefix: str, page_size: int, page_token: str | None) -> ListingPage:
        store_token = None
        current_page = 1
        if page_token:
            state = decode_page_token(page_token)
            if state and state["p"] == prefix and state["s"] == page_size:
                store_token = state["t"]
                current_page = state["n"]
            else:
                logger.info(f"Discarding page token issued for another listing shape (prefix={prefix!r})")

        try:
            listed = await self.store.list_by_prefix(
                prefix, continuation_token=store_token, max_keys=page_size, delimiter="/"
            )
        except ObjectStoreError as e:
            raise BackendUnavailableError(f"Listing '{prefix}' failed: {e}") from e

        file_infos, directories = derive_immediate_children(
            prefix, listed.objects, listed.common_prefixes
        )
        files = await reconcile(self.metadata, file_infos)

        next_token = None
        if listed.is_truncated and listed.next_token:
            next_token = encode_page_token(prefix, page_size, listed.next_token, current_page + 1)
        return ListingPage(
            files=files,
            directories=directories,
            next_token=next_token,
            is_truncated=next_token is not None,
            current_page=current_page,
        )

    async def _filtered_page(
        self, prefix: str, page_size: int, page_number: int, term: str, scope: str
    ) -> ListingPage:
        if scope not in SEARCH_SCOPES:
            raise ValidationError(f"scope must be one of {', '.join(SEARCH_SCOPES)}")
        if page_number < 1:
            raise ValidationError("page must be 1 or greater")

        result = await self.metadata.query_by_search(
            term,
            prefix if scope == "current" else None,
            limit=page_size,
            offset=(page_number - 1) * page_size,
        )
        profiles = await load_profiles(self.metadata, result.records)
        files = [file_view(r.key, r, None, profiles) for r in result.records]
        return ListingPage(
            files=files,
            directories=[],
            is_truncated=page_number * page_size < result.total_count,
            total_count=result.total_count,
            total_pages=max(1, math.ceil(result.total_count / page_size)),
            current_page=page_number,
        )
