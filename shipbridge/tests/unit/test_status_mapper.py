from __future__ import annotations

import pytest

from shipbridge.core.errors import StatusMappingConfigError, UnmappedStatusError
from shipbridge.services.status_mapper import CanonicalStatus, StatusMapper


DELHIVERY_TABLE = {
    "Manifested": "manifested",
    "In Transit": "in_transit",
    "Dispatched": CanonicalStatus.OUT_FOR_DELIVERY,
    "Delivered": "delivered",
    "Pending": "ndr",
    "RTO": "rto_initiated",
}


def test_map_returns_canonical_status_with_flags() -> None:
    mapper = StatusMapper()
    mapper.register("delhivery", DELHIVERY_TABLE)

    delivered = mapper.map("delhivery", "Delivered")
    assert delivered.canonical_status is CanonicalStatus.DELIVERED
    assert delivered.is_terminal is True
    assert delivered.requires_manual_action is False
    assert delivered.raw_status == "Delivered"

    ndr = mapper.map("delhivery", "Pending")
    assert ndr.is_terminal is False
    assert ndr.requires_manual_action is True


def test_map_normalizes_case_and_whitespace() -> None:
    mapper = StatusMapper()
    mapper.register("delhivery", DELHIVERY_TABLE)

    assert mapper.map("delhivery", "  in   TRANSIT ").canonical_status is CanonicalStatus.IN_TRANSIT


def test_unmapped_status_fails_loudly() -> None:
    mapper = StatusMapper()
    mapper.register("delhivery", DELHIVERY_TABLE)

    with pytest.raises(UnmappedStatusError):
        mapper.map("delhivery", "Shipment Vaporized")
    with pytest.raises(UnmappedStatusError):
        mapper.map("bluedart", "Delivered")


@pytest.mark.parametrize(
    "table",
    [
        {},
        {"Delivered": "teleported"},
        {"  ": "delivered"},
        {"Delivered": "delivered", "DELIVERED": "lost"},
    ],
)
def test_register_rejects_invalid_tables(table) -> None:
    with pytest.raises(StatusMappingConfigError):
        StatusMapper().register("delhivery", table)


def test_register_replaces_existing_table() -> None:
    mapper = StatusMapper()
    mapper.register("delhivery", DELHIVERY_TABLE)
    mapper.register("delhivery", {"DL": "delivered"})

    assert mapper.providers() == ["delhivery"]
    assert mapper.map("delhivery", "dl").canonical_status is CanonicalStatus.DELIVERED
    with pytest.raises(UnmappedStatusError):
        mapper.map("delhivery", "Delivered")
