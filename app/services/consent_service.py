from __future__ import annotations

import logging
import unicodedata
from typing import Any, Sequence

from app.jobs.job_tracker import JOB_FATAL_ERRORS, JobResult
from app.services.fingerprint import same_person_name
from app.services.unit_normalizer import compact_address_key, normalize_dong, normalize_ho

logger = logging.getLogger(__name__)

CONSENT_AGREED = "AGREED"
CONSENT_DISAGREED = "DISAGREED"
_AGREED_TOKENS = {"agreed", "agree", "y", "yes", "o", "동의"}


def normalize_consent_status(raw: Any) -> str:
    text = unicodedata.normalize("NFKC", str(raw or "")).strip().lower()
    return CONSENT_AGREED if text in _AGREED_TOKENS else CONSENT_DISAGREED


def _address_matches(needle: str, candidate_address: str | None) -> bool:
    left = compact_address_key(needle)
    right = compact_address_key(candidate_address)
    return bool(left and right) and (left in right or right in left)


def find_consent_member(candidates: list[dict[str, Any]], *, name: str, address: str, dong: Any = None, ho: Any = None) -> list[str]:
    """Distinct member ids whose approved ownership fits the row's name, address and unit."""
    dong = normalize_dong(dong)
    ho = normalize_ho(ho)
    member_ids: list[str] = []
    for row in candidates:
        if not same_person_name(name, row.get("name")):
            continue
        if not _address_matches(address, row.get("address")):
            continue
        if dong is not None and normalize_dong(row.get("dong")) != dong:
            continue
        if ho is not None and normalize_ho(row.get("ho")) != ho:
            continue
        member_id = str(row["member_id"])
        if member_id not in member_ids:
            member_ids.append(member_id)
    return member_ids


def process_consent_chunk(
    repo,
    rows: Sequence[Any],
    offset: int,
    *,
    union_id: str,
    stage_id: str,
    max_errors: int = 20,
) -> JobResult:
    result = JobResult(max_errors=max_errors)
    for index, row in enumerate(rows):
        row = row if isinstance(row, dict) else {}
        row_number = row.get("row_number") or offset + index + 1
        name = str(row.get("name") or "").strip()
        address = str(row.get("address") or "").strip()
        if not name or not address:
            result.record_failure(f"row {row_number}: missing name or address")
            continue

        try:
            with repo.savepoint():
                member_ids = find_consent_member(
                    repo.find_consent_candidates(union_id, name),
                    name=name,
                    address=address,
                    dong=row.get("dong"),
                    ho=row.get("ho"),
                )
                if len(member_ids) == 1:
                    repo.upsert_member_consent(
                        member_id=member_ids[0],
                        stage_id=stage_id,
                        status=normalize_consent_status(row.get("status")),
                    )
        except JOB_FATAL_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("consent_row_failed row=%s error=%s", row_number, exc)
            result.record_failure(f"row {row_number} ({name}): {exc}")
            continue

        if not member_ids:
            result.record_failure(f"row {row_number} ({name}): no approved member owns this unit")
        elif len(member_ids) > 1:
            result.record_failure(f"row {row_number} ({name}): {len(member_ids)} members match; add dong/ho")
        else:
            result.saved += 1
    return result
