from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from app.services.unit_normalizer import compact_address_key, extract_lot_token, normalize_dong, normalize_ho


@dataclass(frozen=True)
class BuildingUnit:
    id: str
    pnu: str
    dong: str | None
    ho: str | None
    building_name: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BuildingUnit":
        return cls(
            id=str(row["id"]),
            pnu=str(row["pnu"]),
            dong=normalize_dong(row.get("dong")),
            ho=normalize_ho(row.get("ho")),
            building_name=row.get("building_name"),
        )


@dataclass(frozen=True)
class ParcelRecord:
    pnu: str
    address: str
    area: float | None = None
    official_price: float | None = None
    owner_count: int | None = None
    units: tuple[BuildingUnit, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ParcelRecord":
        return cls(
            pnu=str(row["pnu"]),
            address=str(row.get("address_text") or row.get("address") or ""),
            area=_float_or_none(row.get("area")),
            official_price=_float_or_none(row.get("official_price")),
            owner_count=_int_or_none(row.get("owner_count")),
        )


def _float_or_none(value: Any) -> float | None:
    try:
        return None if value is None else float(value)
    except (TypeError, ValueError):
        return None


def _int_or_none(value: Any) -> int | None:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None


class ParcelRegistry(Protocol):
    def search_parcels(self, union_id: str, address: str) -> list[ParcelRecord]: ...

    def list_building_units(self, pnus: list[str]) -> list[BuildingUnit]: ...


class LandLotRegistry:
    """Parcel registry backed by the union's collected land lots."""

    def __init__(self, repo):
        self.repo = repo

    def search_parcels(self, union_id: str, address: str) -> list[ParcelRecord]:
        key = compact_address_key(address)
        if not key:
            return []
        rows = self.repo.search_land_lots(union_id, key)
        lot_token = extract_lot_token(address)
        if lot_token and not any(extract_lot_token(row.get("address_text")) == lot_token for row in rows):
            rows = list(rows) + list(self.repo.search_land_lots_by_lot(union_id, lot_token))
        return [ParcelRecord.from_row(row) for row in rows]

    def list_building_units(self, pnus: list[str]) -> list[BuildingUnit]:
        if not pnus:
            return []
        return [BuildingUnit.from_row(row) for row in self.repo.fetch_building_units(pnus)]
