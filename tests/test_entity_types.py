from __future__ import annotations

import pytest

from sm_platform.entity_types import KINDS, SYNC_ORDER, EntityType


@pytest.mark.parametrize("et", list(EntityType))
def test_parse_accepts_value_plural_and_member(et) -> None:
    assert EntityType.parse(et) is et
    assert EntityType.parse(et.value.upper()) is et
    assert EntityType.parse(f" {KINDS[et].plural} ") is et


def test_irregular_plural() -> None:
    assert EntityType.parse("galleries") is EntityType.GALLERY


@pytest.mark.parametrize("bad", ["gallerie", "scenez", "", None, "clips"])
def test_parse_rejects_unknown(bad) -> None:
    with pytest.raises(ValueError):
        EntityType.parse(bad)


def test_sync_order_covers_every_type_once() -> None:
    assert sorted(SYNC_ORDER) == sorted(EntityType)
    assert len(SYNC_ORDER) == len(set(SYNC_ORDER))
