from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Mapping

from shipbridge.core.errors import StatusMappingConfigError, UnmappedStatusError


logger = logging.getLogger(__name__)


class CanonicalStatus(str, Enum):
    MANIFESTED = "manifested"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RTO_INITIATED = "rto_initiated"
    RTO_IN_TRANSIT = "rto_in_transit"
    RTO_DELIVERED = "rto_delivered"
    NDR = "ndr"
    LOST = "lost"
    DAMAGED = "damaged"


# No further updates are expected once a shipment reaches one of these.
TERMINAL_STATUSES = frozenset(
    {
        CanonicalStatus.DELIVERED,
        CanonicalStatus.RTO_DELIVERED,
        CanonicalStatus.LOST,
        CanonicalStatus.DAMAGED,
        CanonicalStatus.CANCELLED,
    }
)

MANUAL_ACTION_STATUSES = frozenset(
    {
        CanonicalStatus.NDR,
        CanonicalStatus.LOST,
        CanonicalStatus.DAMAGED,
    }
)


@dataclass(frozen=True)
class MappedStatus:
    canonical_status: CanonicalStatus
    is_terminal: bool
    requires_manual_action: bool
    raw_status: str


def _normalize(raw: str) -> str:
    return " ".join(raw.split()).casefold()


class StatusMapper:
    """Registry of per-provider status tables.

    Tables are validated when registered so a bad table fails at startup, and
    an unknown provider status raises instead of defaulting silently.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, CanonicalStatus]] = {}

    def register(self, provider: str, table: Mapping[str, str | CanonicalStatus]) -> None:
        if not provider:
            raise StatusMappingConfigError("provider name is required")
        if not table:
            raise StatusMappingConfigError(f"status table for {provider} is empty")
        compiled: dict[str, CanonicalStatus] = {}
        for raw, target in table.items():
            if not isinstance(raw, str) or not raw.strip():
                raise StatusMappingConfigError(f"status table for {provider} has a blank provider status")
            try:
                canonical = CanonicalStatus(target)
            except ValueError as exc:
                raise StatusMappingConfigError(
                    f"status table for {provider} maps {raw!r} to unknown status {target!r}"
                ) from exc
            key = _normalize(raw)
            if key in compiled and compiled[key] != canonical:
                raise StatusMappingConfigError(
                    f"status table for {provider} maps {raw!r} ambiguously"
                )
            compiled[key] = canonical
        if provider in self._tables:
            logger.info("status_table_replaced provider=%s", provider)
        self._tables[provider] = compiled

    def providers(self) -> list[str]:
        return sorted(self._tables)

    def map(self, provider: str, raw_status: str) -> MappedStatus:
        table = self._tables.get(provider)
        if table is None:
            raise UnmappedStatusError(f"no status table registered for provider {provider}")
        canonical = table.get(_normalize(raw_status or ""))
        if canonical is None:
            logger.warning("status_unmapped provider=%s raw_status=%s", provider, raw_status)
            raise UnmappedStatusError(f"provider {provider} status {raw_status!r} is not mapped")
        return MappedStatus(
            canonical_status=canonical,
            is_terminal=canonical in TERMINAL_STATUSES,
            requires_manual_action=canonical in MANUAL_ACTION_STATUSES,
            raw_status=raw_status,
        )
