from __future__ import annotations

import pytest

from conftest import FakeRemote, item
from sm_platform.entity_types import EntityType
from sm_platform.errors import RemoteAPIError, TransientFetchError
from sm_platform.orchestrator import CancelToken, EntityFetcher, FetchFilter
from sm_platform.orchestrator._fetcher import MAX_PAGE_SIZE, bounded_page_size
from sm_platform.errors import SyncCancelled


def _remote(n: int) -> FakeRemote:
    r = FakeRemote()
    r.add(EntityType.TAG, *(item(EntityType.TAG, i) for i in range(1, n + 1)))
    return r


@pytest.mark.parametrize("bad", [-1, 0, "all", None])
def test_unbounded_or_invalid_page_size_refused(bad) -> None:
    with pytest.raises(ValueError):
        bounded_page_size(bad, MAX_PAGE_SIZE)


def test_page_size_is_capped() -> None:
    f = EntityFetcher(FakeRemote(), page_size=100_000)
    assert f.page_size == MAX_PAGE_SIZE


def test_pages_are_sequential_and_bounded() -> None:
    remote = _remote(7)
    f = EntityFetcher(remote, page_size=3)
    pages = list(f.iter_pages(EntityType.TAG))
    assert [len(p.items) for p in pages] == [3, 3, 1]
    assert pages[-1].done
    assert [p.total for p in pages] == [7, 7, 7]


def test_exact_multiple_stops_without_empty_page() -> None:
    remote = _remote(6)
    f = EntityFetcher(remote, page_size=3)
    assert [len(p.items) for p in f.iter_pages(EntityType.TAG)] == [3, 3]
    assert remote.page_calls[EntityType.TAG] == 2


def test_since_filter_is_formatted_for_remote() -> None:
    remote = _remote(1)
    f = EntityFetcher(remote, page_size=10)
    list(f.iter_pages(EntityType.TAG, FetchFilter(updated_since="2024-01-05T10:00:00Z")))
    assert remote.since_seen[EntityType.TAG] == ["2024-01-05T09:59:59"]


def test_transient_failures_are_retried_with_backoff() -> None:
    remote = _remote(2)
    remote.transient_failures = 2
    waits: list[float] = []
    f = EntityFetcher(remote, page_size=10, page_retries=3, retry_backoff=0.5, sleep=waits.append)
    page = f.fetch_page(EntityType.TAG, None, 1)
    assert len(page.items) == 2
    assert waits == [0.5, 1.0]


def test_transient_failures_give_up_after_budget() -> None:
    remote = _remote(2)
    remote.transient_failures = 5
    f = EntityFetcher(remote, page_size=10, page_retries=1, retry_backoff=0, sleep=lambda _s: None)
    with pytest.raises(TransientFetchError):
        f.fetch_page(EntityType.TAG, None, 1)


def test_permanent_errors_are_not_retried() -> None:
    remote = _remote(2)
    remote.fail_types.add(EntityType.TAG)
    waits: list[float] = []
    f = EntityFetcher(remote, page_size=10, sleep=waits.append)
    with pytest.raises(RemoteAPIError):
        f.fetch_page(EntityType.TAG, None, 1)
    assert waits == []


def test_id_enumeration_requires_count() -> None:
    class NoCount(FakeRemote):
        def find_ids(self, et, *, page, per_page):
            return ["1"], None

    f = EntityFetcher(NoCount(), id_page_size=10)
    with pytest.raises(RemoteAPIError):
        f.fetch_id_page(EntityType.TAG, 1)


def test_id_pages_use_their_own_size() -> None:
    remote = _remote(5)
    f = EntityFetcher(remote, page_size=1, id_page_size=2)
    assert [p.items for p in f.iter_id_pages(EntityType.TAG)] == [["1", "2"], ["3", "4"], ["5"]]


def test_cancel_checked_before_each_page() -> None:
    remote = _remote(5)
    token = CancelToken()
    f = EntityFetcher(remote, page_size=2)
    it = f.iter_pages(EntityType.TAG, None, token)
    next(it)
    token.cancel()
    with pytest.raises(SyncCancelled):
        next(it)
    assert remote.page_calls[EntityType.TAG] == 1
