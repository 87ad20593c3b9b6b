from __future__ import annotations

from hashlib import sha256

from app.services.unit_normalizer import compact_address_key, normalize_dong, normalize_ho


def _norm_text(value) -> str:
    if value is None:
        return ""
    text = str(value).strip().lower()
    return "".join(text.split())


def build_member_fingerprint(
    *,
    owner_name: str | None,
    property_address: str | None,
    dong: str | None = None,
    ho: str | None = None,
) -> str:
    """Per-union uniqueness key of a pre-registered member.

    Owner name and address compare whitespace/case-insensitively; dong/ho go through
    the unit normalizer so "101동 1001호" and "101 / 1001" collide.
    """
    fields = [
        _norm_text(owner_name),
        compact_address_key(property_address),
        normalize_dong(dong) or "",
        normalize_ho(ho) or "",
    ]
    base = "|".join(fields)
    return sha256(base.encode("utf-8")).hexdigest()


def same_person_name(left: str | None, right: str | None) -> bool:
    return bool(_norm_text(left)) and _norm_text(left) == _norm_text(right)
