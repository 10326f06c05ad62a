# sm_platform/orchestrator/_fetcher.py
# Bounded, sequential paging over one entity type of the remote catalog.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from _logging import log as _root_log

from ..entity_types import EntityType
from ..errors import RemoteAPIError, TransientFetchError
from ..timestamps import format_since
from ._types import NEVER_CANCELLED, CancelToken, CatalogSource, FetchFilter, Page

log = _root_log.child("FETCH")

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 500
MAX_PAGE_SIZE = 1000
DEFAULT_ID_PAGE_SIZE = 5000
MAX_ID_PAGE_SIZE = 5000


def bounded_page_size(value: Any, cap: int) -> int:
    """Validate a page size. The remote "all rows" size (-1) and other non-positive values are refused."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid page size: {value!r}") from None
    if n <= 0:
        raise ValueError(f"page size must be positive, got {n}")
    return min(n, cap)


class EntityFetcher:
    def __init__(
        self,
        source: CatalogSource,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        id_page_size: int = DEFAULT_ID_PAGE_SIZE,
        page_retries: int = 3,
        retry_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.page_size = bounded_page_size(page_size, MAX_PAGE_SIZE)
        self.id_page_size = bounded_page_size(id_page_size, MAX_ID_PAGE_SIZE)
        self.page_retries = max(0, int(page_retries))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self._sleep = sleep

    def _with_retries(self, what: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except TransientFetchError as e:
                if attempt >= self.page_retries:
                    log.warn("page failed, giving up", what=what, attempts=attempt + 1, error=str(e))
                    raise
                wait = self.retry_backoff * (2**attempt)
                log.debug("page failed, retrying", what=what, attempt=attempt + 1, wait=wait, error=str(e))
                self._sleep(wait)
                attempt += 1

    def fetch_page(self, et: EntityType, flt: FetchFilter | None, page_token: int | None) -> Page:
        page = int(page_token or 1)
        since = format_since(flt.updated_since) if flt and flt.updated_since else None
        items, total = self._with_retries(
            f"{et.value}:{page}",
            lambda: self.source.find_page(et, page=page, per_page=self.page_size, updated_since=since),
        )
        fetched = (page - 1) * self.page_size + len(items)
        done = not items or (total is not None and fetched >= total)
        return Page(items=items, next_token=None if done else page + 1, total=total)

    def fetch_id_page(self, et: EntityType, page_token: int | None) -> Page:
        page = int(page_token or 1)
        ids, total = self._with_retries(
            f"{et.value}:ids:{page}",
            lambda: self.source.find_ids(et, page=page, per_page=self.id_page_size),
        )
        if total is None:
            raise RemoteAPIError(f"{et.value}: id enumeration returned no count")
        fetched = (page - 1) * self.id_page_size + len(ids)
        done = not ids or fetched >= total
        return Page(items=ids, next_token=None if done else page + 1, total=total)

    def iter_pages(
        self,
        et: EntityType,
        flt: FetchFilter | None = None,
        cancel: CancelToken = NEVER_CANCELLED,
    ) -> Iterator[Page]:
        token: int | None = 1
        while token is not None:
            cancel.check(f"{et.value}:page:{token}")
            page = self.fetch_page(et, flt, token)
            yield page
            token = page.next_token

    def iter_id_pages(self, et: EntityType, cancel: CancelToken = NEVER_CANCELLED) -> Iterator[Page]:
        token: int | None = 1
        while token is not None:
            cancel.check(f"{et.value}:ids:{token}")
            page = self.fetch_id_page(et, token)
            yield page
            token = page.next_token

    def fetch_one(self, et: EntityType, entity_id: str) -> dict[str, Any] | None:
        return self._with_retries(f"{et.value}:{entity_id}", lambda: self.source.find_one(et, entity_id))
