import json
import re
from contextlib import contextmanager
from typing import Any

from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.pq import TransactionStatus

from app.db import get_connection
from app.services.errors import ActiveJobExistsError

PRE_REGISTERED_COLUMNS = (
    "owner_name",
    "phone",
    "resident_address",
    "property_address",
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
    "pnu",
    "building_unit_id",
    "matched_address",
    "match_status",
    "match_reason",
    "fingerprint",
    "source_job_id",
    "member_id",
    "is_published",
)
MEMBER_COLUMNS = ("name", "phone", "resident_address", "property_address", "notes", "status")
OWNERSHIP_COLUMNS = ("ownership_type", "share_ratio", "status", "notes")

SYNC_JOB_SELECT = """
    SELECT
        id, union_id, kind, status, progress, total_count, processed_count,
        result, error, is_published, input_payload, created_at, updated_at
    FROM sync_jobs
"""


def _json(value: Any) -> str | None:
    return None if value is None else json.dumps(value, ensure_ascii=False, default=str)


def _assignments(fields: dict[str, Any], allowed: tuple[str, ...]) -> tuple[sql.Composed, list[Any]]:
    keys = [key for key in fields if key in allowed]
    if not keys:
        raise ValueError("no updatable fields supplied")
    clause = sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(key)) for key in keys)
    return clause, [fields[key] for key in keys]


class PostgresRepository:
    def __init__(self, conn):
        self.conn = conn
        self._tx_depth = 0

    # -- transaction scopes -------------------------------------------------

    def commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    def rollback(self) -> None:
        if self._tx_depth == 0:
            self.conn.rollback()

    @contextmanager
    def transaction(self):
        """All-or-nothing block; nested use becomes a savepoint."""
        if self._tx_depth == 0 and self.conn.info.transaction_status != TransactionStatus.IDLE:
            self.conn.commit()
        self._tx_depth += 1
        try:
            with self.conn.transaction():
                yield self
        finally:
            self._tx_depth -= 1

    def savepoint(self):
        return self.transaction()

    # -- sync jobs -----------------------------------------------------------

    def create_sync_job(self, *, union_id: str, kind: str, total_count: int, input_payload: dict | None) -> dict:
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_jobs (union_id, kind, status, progress, total_count, input_payload)
                    VALUES (%s, %s, 'PENDING', 0, %s, %s::jsonb)
                    RETURNING
                        id, union_id, kind, status, progress, total_count, processed_count,
                        result, error, is_published, input_payload, created_at, updated_at
                    """,
                    (union_id, kind, total_count, _json(input_payload)),
                )
                row = cur.fetchone()
        except pg_errors.UniqueViolation as exc:
            self.conn.rollback()
            active = self.find_active_sync_job(union_id, kind)
            raise ActiveJobExistsError(union_id, kind, str(active["id"]) if active else None) from exc
        self.commit()
        return row

    def find_active_sync_job(self, union_id: str, kind: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                SYNC_JOB_SELECT + " WHERE union_id = %s AND kind = %s AND status IN ('PENDING', 'PROCESSING') LIMIT 1",
                (union_id, kind),
            )
            return cur.fetchone()

    def get_sync_job(self, job_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(SYNC_JOB_SELECT + " WHERE id = %s", (job_id,))
            return cur.fetchone()

    def list_sync_jobs(self, union_id: str, *, kind: str | None = None, limit: int = 50) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                SYNC_JOB_SELECT
                + """
                WHERE union_id = %s
                  AND (%s::text IS NULL OR kind = %s)
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (union_id, kind, kind, limit),
            )
            return cur.fetchall()

    def mark_job_processing(self, job_id: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_jobs
                SET status = 'PROCESSING', updated_at = NOW()
                WHERE id = %s AND status = 'PENDING'
                """,
                (job_id,),
            )
        self.commit()

    def update_job_progress(self, job_id: str, *, progress: int, processed_count: int, result: dict) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_jobs
                SET progress = GREATEST(progress, %s),
                    processed_count = %s,
                    result = %s::jsonb,
                    updated_at = NOW()
                WHERE id = %s AND status = 'PROCESSING'
                """,
                (progress, processed_count, _json(result), job_id),
            )
        self.commit()

    def complete_job(self, job_id: str, result: dict) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_jobs
                SET status = 'COMPLETED',
                    progress = 100,
                    processed_count = total_count,
                    result = %s::jsonb,
                    error = NULL,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (_json(result), job_id),
            )
        self.commit()

    def fail_job(self, job_id: str, error: str, result: dict | None) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_jobs
                SET status = 'FAILED',
                    error = %s,
                    result = COALESCE(%s::jsonb, result),
                    updated_at = NOW()
                WHERE id = %s
                """,
                (error or "job failed", _json(result), job_id),
            )
        self.commit()

    def fail_stale_jobs(self, reason: str) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_jobs
                SET status = 'FAILED', error = %s, updated_at = NOW()
                WHERE status IN ('PENDING', 'PROCESSING')
                """,
                (reason,),
            )
            count = cur.rowcount
        self.commit()
        return count

    def publish_sync_job(self, job_id: str) -> int:
        with self.conn.cursor() as cur:
            cur.execute("UPDATE sync_jobs SET is_published = TRUE, updated_at = NOW() WHERE id = %s", (job_id,))
            cur.execute(
                """
                UPDATE pre_registered_members
                SET is_published = TRUE, updated_at = NOW()
                WHERE source_job_id = %s
                """,
                (job_id,),
            )
            count = cur.rowcount
        self.commit()
        return count

    def delete_sync_job(self, job_id: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM sync_jobs WHERE id = %s", (job_id,))
            deleted = cur.rowcount > 0
        self.commit()
        return deleted

    # -- parcel registry -----------------------------------------------------

    def search_land_lots(self, union_id: str, needle: str, limit: int = 50) -> list[dict]:
        """Lots whose compact address contains ``needle`` or is contained in it, closest first."""
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT pnu, address_text, area, official_price, owner_count
                FROM (
                    SELECT *, lower(replace(address_text, ' ', '')) AS address_key
                    FROM union_land_lots
                    WHERE union_id = %(union_id)s
                ) lots
                WHERE address_key LIKE '%%' || %(needle)s || '%%'
                   OR %(needle)s LIKE '%%' || address_key || '%%'
                ORDER BY address_key = %(needle)s DESC,
                         address_key LIKE '%%' || %(needle)s DESC,
                         %(needle)s LIKE '%%' || address_key DESC,
                         pnu
                LIMIT %(limit)s
                """,
                {"union_id": union_id, "needle": needle, "limit": limit},
            )
            return cur.fetchall()

    def search_land_lots_by_lot(self, union_id: str, lot_token: str, limit: int = 50) -> list[dict]:
        """Lots whose address ends in exactly ``lot_token`` (``12`` does not match ``12-3`` or ``112``)."""
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT pnu, address_text, area, official_price, owner_count
                FROM union_land_lots
                WHERE union_id = %s
                  AND lower(replace(address_text, ' ', '')) ~ ('(^|[^0-9-])' || %s || '(번지)?$')
                ORDER BY pnu
                LIMIT %s
                """,
                (union_id, re.escape(lot_token.lower()), limit),
            )
            return cur.fetchall()

    def fetch_building_units(self, pnus: list[str]) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, pnu, building_name, dong, ho
                FROM building_units
                WHERE pnu = ANY(%s)
                ORDER BY pnu, dong NULLS FIRST, ho
                """,
                (list(pnus),),
            )
            return cur.fetchall()

    def upsert_land_lot(self, union_id: str, parcel) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO union_land_lots (union_id, pnu, address_text, area, official_price, owner_count)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (union_id, pnu) DO UPDATE
                SET address_text = EXCLUDED.address_text,
                    area = COALESCE(EXCLUDED.area, union_land_lots.area),
                    official_price = COALESCE(EXCLUDED.official_price, union_land_lots.official_price),
                    owner_count = COALESCE(EXCLUDED.owner_count, union_land_lots.owner_count),
                    updated_at = NOW()
                RETURNING (xmax = 0) AS inserted
                """,
                (union_id, parcel.pnu, parcel.address, parcel.area, parcel.official_price, parcel.owner_count),
            )
            inserted = bool(cur.fetchone()["inserted"])
        self.commit()
        return inserted

    def upsert_building_unit(self, unit) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO building_units (id, pnu, building_name, dong, ho)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET pnu = EXCLUDED.pnu,
                    building_name = EXCLUDED.building_name,
                    dong = EXCLUDED.dong,
                    ho = EXCLUDED.ho
                """,
                (unit.id, unit.pnu, unit.building_name, unit.dong, unit.ho),
            )
        self.commit()

    # -- pre-registered members ----------------------------------------------

    def find_pre_registered_by_fingerprint(self, union_id: str, fingerprint: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM pre_registered_members WHERE union_id = %s AND fingerprint = %s",
                (union_id, fingerprint),
            )
            return cur.fetchone()

    def insert_pre_registered_member(self, union_id: str, fields: dict[str, Any]) -> dict:
        keys = [key for key in PRE_REGISTERED_COLUMNS if key in fields]
        query = sql.SQL("INSERT INTO pre_registered_members (union_id, {cols}) VALUES (%s, {vals}) RETURNING *").format(
            cols=sql.SQL(", ").join(sql.Identifier(key) for key in keys),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in keys),
        )
        with self.conn.cursor() as cur:
            cur.execute(query, [union_id, *[fields[key] for key in keys]])
            row = cur.fetchone()
        self.commit()
        return row

    def update_pre_registered_member(self, member_id: str, fields: dict[str, Any]) -> dict | None:
        clause, params = _assignments(fields, PRE_REGISTERED_COLUMNS)
        query = sql.SQL("UPDATE pre_registered_members SET {}, updated_at = NOW() WHERE id = %s RETURNING *").format(clause)
        with self.conn.cursor() as cur:
            cur.execute(query, [*params, member_id])
            row = cur.fetchone()
        self.commit()
        return row

    def get_pre_registered_member(self, member_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT * FROM pre_registered_members WHERE id = %s", (member_id,))
            return cur.fetchone()

    def list_pre_registered_members(
        self,
        union_id: str,
        *,
        match_status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM pre_registered_members
                WHERE union_id = %s
                  AND (%s::text IS NULL OR match_status = %s)
                ORDER BY created_at, id
                LIMIT %s OFFSET %s
                """,
                (union_id, match_status, match_status, limit, offset),
            )
            return cur.fetchall()

    def list_pre_registered_member_ids(self, union_id: str) -> list[str]:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT id FROM pre_registered_members WHERE union_id = %s ORDER BY created_at, id",
                (union_id,),
            )
            return [str(row["id"]) for row in cur.fetchall()]

    def delete_pre_registered_member(self, member_id: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM pre_registered_members WHERE id = %s", (member_id,))
            deleted = cur.rowcount > 0
        self.commit()
        return deleted

    def delete_all_pre_registered_members(self, union_id: str) -> int:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM pre_registered_members WHERE union_id = %s", (union_id,))
            count = cur.rowcount
        self.commit()
        return count

    # -- members and ownership ------------------------------------------------

    def get_member(self, member_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT * FROM union_members WHERE id = %s", (member_id,))
            return cur.fetchone()

    def insert_member(
        self,
        *,
        union_id: str,
        name: str,
        phone: str | None = None,
        resident_address: str | None = None,
        property_address: str | None = None,
        notes: str | None = None,
        status: str = "PENDING",
    ) -> dict:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO union_members (union_id, name, phone, resident_address, property_address, notes, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (union_id, name, phone, resident_address, property_address, notes, status),
            )
            row = cur.fetchone()
        self.commit()
        return row

    def update_member(self, member_id: str, fields: dict[str, Any]) -> dict | None:
        clause, params = _assignments(fields, MEMBER_COLUMNS)
        query = sql.SQL("UPDATE union_members SET {}, updated_at = NOW() WHERE id = %s RETURNING *").format(clause)
        with self.conn.cursor() as cur:
            cur.execute(query, [*params, member_id])
            row = cur.fetchone()
        self.commit()
        return row

    def get_property_unit(self, unit_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT * FROM property_units WHERE id = %s", (unit_id,))
            return cur.fetchone()

    def lock_property_unit(self, unit_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT * FROM property_units WHERE id = %s FOR UPDATE", (unit_id,))
            return cur.fetchone()

    def get_or_create_property_unit(
        self,
        *,
        union_id: str,
        pnu: str,
        building_unit_id: str | None = None,
        dong: str | None = None,
        ho: str | None = None,
        address: str | None = None,
    ) -> dict:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO property_units (union_id, pnu, building_unit_id, dong, ho, address)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (union_id, pnu, (COALESCE(dong, '')), (COALESCE(ho, ''))) DO UPDATE
                SET building_unit_id = COALESCE(property_units.building_unit_id, EXCLUDED.building_unit_id),
                    address = COALESCE(property_units.address, EXCLUDED.address)
                RETURNING *
                """,
                (union_id, pnu, building_unit_id, dong, ho, address),
            )
            row = cur.fetchone()
        self.commit()
        return row

    def fetch_active_ownerships(self, unit_id: str) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    o.id, o.property_unit_id, o.member_id, o.ownership_type, o.share_ratio,
                    o.status, o.notes, o.created_at,
                    m.name AS member_name, m.phone AS member_phone, m.status AS member_status
                FROM ownership_records o
                JOIN union_members m ON m.id = o.member_id
                WHERE o.property_unit_id = %s AND o.status = 'ACTIVE'
                ORDER BY o.created_at, o.id
                """,
                (unit_id,),
            )
            return cur.fetchall()

    def fetch_member_ownerships(self, member_id: str) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, property_unit_id, member_id, ownership_type, share_ratio, status, created_at
                FROM ownership_records
                WHERE member_id = %s
                ORDER BY created_at, id
                """,
                (member_id,),
            )
            return cur.fetchall()

    def insert_ownership(
        self,
        *,
        property_unit_id: str,
        member_id: str,
        ownership_type: str,
        share_ratio: float | None,
        notes: str | None = None,
    ) -> dict:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO ownership_records (property_unit_id, member_id, ownership_type, share_ratio, status, notes)
                VALUES (%s, %s, %s, %s, 'ACTIVE', %s)
                RETURNING *
                """,
                (property_unit_id, member_id, ownership_type, share_ratio, notes),
            )
            row = cur.fetchone()
        self.commit()
        return row

    def update_ownership(self, ownership_id: str, fields: dict[str, Any]) -> dict | None:
        clause, params = _assignments(fields, OWNERSHIP_COLUMNS)
        query = sql.SQL("UPDATE ownership_records SET {}, updated_at = NOW() WHERE id = %s RETURNING *").format(clause)
        with self.conn.cursor() as cur:
            cur.execute(query, [*params, ownership_id])
            row = cur.fetchone()
        self.commit()
        return row

    def archive_ownership(self, ownership_id: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE ownership_records
                SET status = 'ARCHIVED', archived_at = NOW(), updated_at = NOW()
                WHERE id = %s
                """,
                (ownership_id,),
            )
        self.commit()

    def insert_ownership_history(
        self,
        *,
        property_unit_id: str,
        change_type: str,
        from_member_id: str | None = None,
        to_member_id: str | None = None,
        previous_share_ratio: float | None = None,
        new_share_ratio: float | None = None,
        notes: str | None = None,
    ) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO property_ownership_history (
                    property_unit_id, change_type, from_member_id, to_member_id,
                    previous_share_ratio, new_share_ratio, notes
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (property_unit_id, change_type, from_member_id, to_member_id, previous_share_ratio, new_share_ratio, notes),
            )
        self.commit()

    def insert_member_relationship(self, *, owner_member_id: str, delegate_member_id: str, relationship_type: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO member_relationships (owner_member_id, delegate_member_id, relationship_type, is_verified)
                VALUES (%s, %s, %s, FALSE)
                ON CONFLICT (owner_member_id, delegate_member_id) DO UPDATE
                SET relationship_type = EXCLUDED.relationship_type
                """,
                (owner_member_id, delegate_member_id, relationship_type),
            )
        self.commit()

    # -- consent -------------------------------------------------------------

    def find_consent_candidates(self, union_id: str, name: str) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT m.id AS member_id, m.name, u.address, u.dong, u.ho, u.pnu
                FROM union_members m
                JOIN ownership_records o ON o.member_id = m.id AND o.status = 'ACTIVE'
                JOIN property_units u ON u.id = o.property_unit_id
                WHERE m.union_id = %s
                  AND m.status = 'APPROVED'
                  AND lower(replace(m.name, ' ', '')) = lower(replace(%s, ' ', ''))
                """,
                (union_id, name),
            )
            return cur.fetchall()

    def upsert_member_consent(self, *, member_id: str, stage_id: str, status: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO member_consents (member_id, stage_id, status, consented_at)
                VALUES (%s, %s, %s, NOW())
                ON CONFLICT (member_id, stage_id) DO UPDATE
                SET status = EXCLUDED.status,
                    consented_at = NOW()
                """,
                (member_id, stage_id, status),
            )
        self.commit()


@contextmanager
def open_repository():
    with get_connection() as conn:
        yield PostgresRepository(conn)
