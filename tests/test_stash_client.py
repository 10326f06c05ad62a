from __future__ import annotations

import json

import pytest
import responses

from providers.sync._mod_STASH import StashClient, StashConfig, label_stash
from providers.sync.stash._queries import QUERIES
from sm_platform.entity_types import EntityType
from sm_platform.errors import RemoteAPIError, TransientFetchError
from sm_platform.instances import RemoteInstance

URL = "http://stash.local:9999/graphql"


def _client(**kw) -> StashClient:
    return StashClient(StashConfig(url=URL, api_key="k3y", backoff_base=0, **kw))


def _scenes(*ids, count=None) -> dict:
    return {"data": {"findScenes": {"count": len(ids) if count is None else count, "scenes": [{"id": str(i)} for i in ids]}}}


def _body(call) -> dict:
    return json.loads(call.request.body)


def test_config_from_instance() -> None:
    inst = RemoteInstance(id="default", url="http://stash.local:9999/", api_key="abc")
    cfg = StashConfig.from_instance(inst, {"timeout": 5, "max_retries": 2})
    assert (cfg.url, cfg.api_key, cfg.timeout, cfg.max_retries) == (URL, "abc", 5.0, 2)


@responses.activate
def test_find_page_sends_bounded_filter_and_key() -> None:
    responses.add(responses.POST, URL, json=_scenes(1, 2, count=7))
    items, total = _client().find_page(EntityType.SCENE, page=2, per_page=2)

    assert [i["id"] for i in items] == ["1", "2"]
    assert total == 7
    call = responses.calls[0]
    assert call.request.headers["ApiKey"] == "k3y"
    body = _body(call)
    assert body["query"] == QUERIES[EntityType.SCENE].find
    assert body["variables"] == {"filter": {"page": 2, "per_page": 2, "sort": "id", "direction": "ASC"}}


@responses.activate
def test_find_page_with_since_adds_updated_at_filter() -> None:
    responses.add(responses.POST, URL, json={"data": {"findPerformers": {"count": 0, "performers": []}}})
    _client().find_page(EntityType.PERFORMER, page=1, per_page=10, updated_since="2024-01-04T23:59:59")
    assert _body(responses.calls[0])["variables"]["performer_filter"] == {
        "updated_at": {"value": "2024-01-04T23:59:59", "modifier": "GREATER_THAN"}
    }


def test_non_positive_page_size_is_refused() -> None:
    with pytest.raises(ValueError):
        _client().find_page(EntityType.SCENE, page=1, per_page=0)


@responses.activate
def test_find_ids_and_find_one() -> None:
    responses.add(responses.POST, URL, json=_scenes(3, 4, count=2))
    responses.add(responses.POST, URL, json=_scenes())
    c = _client()
    assert c.find_ids(EntityType.SCENE, page=1, per_page=1000) == (["3", "4"], 2)
    assert c.find_one(EntityType.SCENE, "99") is None
    assert _body(responses.calls[1])["variables"] == {"ids": ["99"]}


@responses.activate
def test_retryable_status_then_success() -> None:
    responses.add(responses.POST, URL, status=503)
    responses.add(responses.POST, URL, json=_scenes(1))
    items, _ = _client().find_page(EntityType.SCENE, page=1, per_page=5)
    assert len(items) == 1
    assert len(responses.calls) == 2


@responses.activate
def test_retryable_status_exhausted_is_transient() -> None:
    responses.add(responses.POST, URL, status=502)
    with pytest.raises(TransientFetchError) as ei:
        _client(max_retries=2).find_page(EntityType.SCENE, page=1, per_page=5)
    assert ei.value.status == 502
    assert len(responses.calls) == 2


@responses.activate
def test_network_failure_is_transient() -> None:
    # No registered response: the mock raises ConnectionError.
    with pytest.raises(TransientFetchError):
        _client(max_retries=1).find_page(EntityType.SCENE, page=1, per_page=5)


@responses.activate
def test_unauthorized_is_permanent() -> None:
    responses.add(responses.POST, URL, status=401)
    with pytest.raises(RemoteAPIError) as ei:
        _client().find_page(EntityType.SCENE, page=1, per_page=5)
    assert not isinstance(ei.value, TransientFetchError)
    assert len(responses.calls) == 1


@responses.activate
def test_graphql_errors_raise() -> None:
    responses.add(responses.POST, URL, json={"errors": [{"message": "unknown field"}], "data": None})
    with pytest.raises(RemoteAPIError, match="unknown field"):
        _client().find_page(EntityType.SCENE, page=1, per_page=5)


@responses.activate
def test_missing_result_block_raises() -> None:
    responses.add(responses.POST, URL, json={"data": {}})
    with pytest.raises(RemoteAPIError):
        _client().find_ids(EntityType.TAG, page=1, per_page=5)


@responses.activate
def test_hits_are_counted_per_operation() -> None:
    responses.add(responses.POST, URL, json=_scenes(1))
    responses.add(responses.POST, URL, json={"data": {"version": {"version": "v0.27.2"}}})
    c = _client()
    c.find_page(EntityType.SCENE, page=1, per_page=5)
    assert c.version() == "v0.27.2"
    assert c.session.hits["findScenes"] == 1
    assert c.session.hits["Version"] == 1


def test_label_falls_back_for_non_graphql_calls() -> None:
    assert label_stash("GET", URL, {}) == "graphql"
