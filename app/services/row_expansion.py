from __future__ import annotations

import re
import unicodedata
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from app.services.normalization import parse_quantity, parse_ratio
from app.services.unit_normalizer import normalize_address, normalize_dong, normalize_ho

ROW_FIELD_ALIASES = {
    "소유자명": "owner_name",
    "소유자": "owner_name",
    "성명": "owner_name",
    "이름": "owner_name",
    "name": "owner_name",
    "연락처": "phone",
    "전화번호": "phone",
    "휴대폰": "phone",
    "phone_number": "phone",
    "거주지": "resident_address",
    "거주지주소": "resident_address",
    "법정동": "legal_district",
    "소재지": "legal_district",
    "지번": "lot_numbers",
    "lot_number": "lot_numbers",
    "도로명주소": "road_address",
    "건물명": "building_name",
    "건물이름": "building_name",
    "동": "dong",
    "호": "ho",
    "호수": "ho",
    "토지면적": "land_area",
    "토지지분": "land_share_ratio",
    "토지지분율": "land_share_ratio",
    "건물면적": "building_area",
    "건축물면적": "building_area",
    "건물지분": "building_share_ratio",
    "건축물지분": "building_share_ratio",
    "건물지분율": "building_share_ratio",
    "공시지가": "official_price",
    "비고": "notes",
    "특이사항": "notes",
}
ROW_FIELDS = (
    "owner_name",
    "phone",
    "resident_address",
    "legal_district",
    "lot_numbers",
    "road_address",
    "building_name",
    "dong",
    "ho",
    "land_area",
    "land_share_ratio",
    "building_area",
    "building_share_ratio",
    "official_price",
    "notes",
)
LOT_SEPARATOR_RE = re.compile(r"[,、;]")
LOT_RE = re.compile(r"^(산\s*)?\d+(?:-\d+)?(?:\s*번지)?$")


@dataclass(frozen=True)
class CandidateRecord:
    row_number: int
    owner_name: str
    property_address: str
    legal_district: str | None = None
    lot_number: str | None = None
    phone: str | None = None
    resident_address: str | None = None
    road_address: str | None = None
    building_name: str | None = None
    dong: str | None = None
    ho: str | None = None
    land_area: float | None = None
    land_share_ratio: float | None = None
    building_area: float | None = None
    building_share_ratio: float | None = None
    official_price: float | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RowRejection:
    row_number: int
    owner_name: str | None
    reason: str

    def message(self) -> str:
        label = self.owner_name or "-"
        return f"row {self.row_number} ({label}): {self.reason}"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = unicodedata.normalize("NFKC", str(value)).strip()
    return text or None


def canonicalize_row_keys(row: dict[str, Any]) -> dict[str, Any]:
    """Map spreadsheet headers (Korean or snake_case) onto row field names."""
    canonical: dict[str, Any] = {}
    for key, value in row.items():
        token = re.sub(r"\s+", "", str(key)).strip()
        field = ROW_FIELD_ALIASES.get(token) or ROW_FIELD_ALIASES.get(token.lower()) or token.lower()
        if field in ROW_FIELDS and canonical.get(field) in (None, ""):
            canonical[field] = value
    return canonical


def split_lot_numbers(raw: Any) -> list[str]:
    text = _text(raw)
    if not text:
        return []
    lots: list[str] = []
    for token in LOT_SEPARATOR_RE.split(text):
        lot = re.sub(r"\s+", " ", token).strip()
        if lot and lot not in lots:
            lots.append(lot)
    return lots


def _phone(raw: Any) -> str | None:
    text = _text(raw)
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    return digits or None


def expand_row(row: dict[str, Any], row_number: int) -> tuple[list[CandidateRecord], RowRejection | None]:
    """Fan a raw row out into one candidate per lot number, or reject it."""
    fields = canonicalize_row_keys(row)
    owner_name = _text(fields.get("owner_name"))
    if not owner_name:
        return [], RowRejection(row_number, None, "missing owner name")

    legal_district = normalize_address(fields.get("legal_district"))
    lots = split_lot_numbers(fields.get("lot_numbers"))
    if not legal_district or not lots:
        return [], RowRejection(row_number, owner_name, "missing legal district or lot number")

    malformed = [lot for lot in lots if not LOT_RE.match(lot)]
    if malformed:
        return [], RowRejection(row_number, owner_name, f"malformed lot number: {', '.join(malformed)}")

    shared = {
        "row_number": row_number,
        "owner_name": owner_name,
        "legal_district": legal_district,
        "phone": _phone(fields.get("phone")),
        "resident_address": normalize_address(fields.get("resident_address")),
        "road_address": normalize_address(fields.get("road_address")),
        "building_name": _text(fields.get("building_name")),
        "dong": normalize_dong(_text(fields.get("dong"))),
        "ho": normalize_ho(_text(fields.get("ho"))),
        "land_area": parse_quantity(fields.get("land_area")),
        "land_share_ratio": parse_ratio(fields.get("land_share_ratio")),
        "building_area": parse_quantity(fields.get("building_area")),
        "building_share_ratio": parse_ratio(fields.get("building_share_ratio")),
        "official_price": parse_quantity(fields.get("official_price")),
        "notes": _text(fields.get("notes")),
    }
    candidates = [
        CandidateRecord(property_address=f"{legal_district} {lot}", lot_number=lot, **shared)
        for lot in lots
    ]
    return candidates, None


def expand_rows(
    rows: Iterable[dict[str, Any]],
    *,
    start_row_number: int = 1,
) -> tuple[list[CandidateRecord], list[RowRejection]]:
    candidates: list[CandidateRecord] = []
    rejections: list[RowRejection] = []
    for offset, row in enumerate(rows):
        expanded, rejection = expand_row(row if isinstance(row, dict) else {}, start_row_number + offset)
        candidates.extend(expanded)
        if rejection is not None:
            rejections.append(rejection)
    return candidates, rejections
