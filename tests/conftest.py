import copy
import itertools
import re
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from app.jobs.worker_pool import InlineJobPool
from app.services.errors import ActiveJobExistsError

_TABLES = (
    "jobs",
    "pre_members",
    "land_lots",
    "building_units",
    "members",
    "units",
    "ownerships",
    "history",
    "relationships",
    "consents",
)
_BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _compact(value):
    return "".join(str(value or "").lower().split())


class FakeRepo:
    """In-memory stand-in for PostgresRepository; transactions snapshot and restore state."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._clock = itertools.count(0)
        self.jobs = {}
        self.pre_members = {}
        self.land_lots = {}
        self.building_units = {}
        self.members = {}
        self.units = {}
        self.ownerships = {}
        self.history = []
        self.relationships = []
        self.consents = {}
        self.commits = 0
        self.rollbacks = 0
        self.fail_insert_for_owner_names = set()
        self.fail_progress_after = None
        self._progress_writes = 0

    def _next_id(self, prefix):
        return f"{prefix}-{next(self._ids)}"

    def _now(self):
        return _BASE_TIME + timedelta(seconds=next(self._clock))

    # transaction scopes
    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    @contextmanager
    def transaction(self):
        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
        try:
            yield self
        except BaseException:
            for name, value in snapshot.items():
                setattr(self, name, value)
            raise

    def savepoint(self):
        return self.transaction()

    # sync jobs
    def create_sync_job(self, *, union_id, kind, total_count, input_payload):
        for job in self.jobs.values():
            if job["union_id"] == union_id and job["kind"] == kind and job["status"] in ("PENDING", "PROCESSING"):
                raise ActiveJobExistsError(union_id, kind, job["id"])
        job_id = self._next_id("job")
        now = self._now()
        self.jobs[job_id] = {
            "id": job_id,
            "union_id": union_id,
            "kind": kind,
            "status": "PENDING",
            "progress": 0,
            "total_count": total_count,
            "processed_count": 0,
            "result": None,
            "error": None,
            "is_published": False,
            "input_payload": copy.deepcopy(input_payload),
            "created_at": now,
            "updated_at": now,
            "progress_history": [],
        }
        return dict(self.jobs[job_id])

    def get_sync_job(self, job_id):
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def list_sync_jobs(self, union_id, *, kind=None, limit=50):
        rows = [j for j in self.jobs.values() if j["union_id"] == union_id and (kind is None or j["kind"] == kind)]
        rows.sort(key=lambda j: j["created_at"], reverse=True)
        return [copy.deepcopy(j) for j in rows[:limit]]

    def mark_job_processing(self, job_id):
        job = self.jobs[job_id]
        if job["status"] == "PENDING":
            job["status"] = "PROCESSING"

    def update_job_progress(self, job_id, *, progress, processed_count, result):
        self._progress_writes += 1
        if self.fail_progress_after is not None and self._progress_writes > self.fail_progress_after:
            raise RuntimeError("progress write rejected")
        job = self.jobs[job_id]
        job["progress"] = max(job["progress"], progress)
        job["processed_count"] = processed_count
        job["result"] = copy.deepcopy(result)
        job["progress_history"].append(job["progress"])

    def complete_job(self, job_id, result):
        job = self.jobs[job_id]
        job.update(status="COMPLETED", progress=100, processed_count=job["total_count"], result=copy.deepcopy(result), error=None)

    def fail_job(self, job_id, error, result):
        job = self.jobs[job_id]
        job["status"] = "FAILED"
        job["error"] = error or "job failed"
        if result is not None:
            job["result"] = copy.deepcopy(result)

    def fail_stale_jobs(self, reason):
        count = 0
        for job in self.jobs.values():
            if job["status"] in ("PENDING", "PROCESSING"):
                job.update(status="FAILED", error=reason)
                count += 1
        return count

    def publish_sync_job(self, job_id):
        self.jobs[job_id]["is_published"] = True
        count = 0
        for row in self.pre_members.values():
            if row.get("source_job_id") == job_id:
                row["is_published"] = True
                count += 1
        return count

    def delete_sync_job(self, job_id):
        if job_id not in self.jobs:
            return False
        del self.jobs[job_id]
        for row in self.pre_members.values():
            if row.get("source_job_id") == job_id:
                row["source_job_id"] = None
        return True

    # parcel registry
    def add_land_lot(self, union_id, pnu, address, *, area=None, official_price=None, owner_count=None):
        self.land_lots[(union_id, pnu)] = {
            "union_id": union_id,
            "pnu": pnu,
            "address_text": address,
            "area": area,
            "official_price": official_price,
            "owner_count": owner_count,
        }

    def add_building_unit(self, unit_id, pnu, dong, ho, building_name=None):
        self.building_units[unit_id] = {"id": unit_id, "pnu": pnu, "dong": dong, "ho": ho, "building_name": building_name}

    def search_land_lots(self, union_id, needle, limit=50):
        hits = []
        for (lot_union, pnu), row in sorted(self.land_lots.items()):
            key = _compact(row["address_text"])
            if lot_union != union_id or not (needle in key or key in needle):
                continue
            rank = (key != needle, not key.endswith(needle), not needle.endswith(key), pnu)
            hits.append((rank, dict(row)))
        return [row for _, row in sorted(hits, key=lambda item: item[0])][:limit]

    def search_land_lots_by_lot(self, union_id, lot_token, limit=50):
        pattern = re.compile(r"(^|[^0-9-])" + re.escape(lot_token.lower()) + r"(번지)?$")
        rows = [
            dict(row)
            for (lot_union, _), row in sorted(self.land_lots.items())
            if lot_union == union_id and pattern.search(_compact(row["address_text"]))
        ]
        return rows[:limit]

    def fetch_building_units(self, pnus):
        return [dict(row) for row in self.building_units.values() if row["pnu"] in pnus]

    def upsert_land_lot(self, union_id, parcel):
        inserted = (union_id, parcel.pnu) not in self.land_lots
        self.add_land_lot(
            union_id,
            parcel.pnu,
            parcel.address,
            area=parcel.area,
            official_price=parcel.official_price,
            owner_count=parcel.owner_count,
        )
        return inserted

    def upsert_building_unit(self, unit):
        self.add_building_unit(unit.id, unit.pnu, unit.dong, unit.ho, unit.building_name)

    # pre-registered members
    def find_pre_registered_by_fingerprint(self, union_id, fingerprint):
        for row in self.pre_members.values():
            if row["union_id"] == union_id and row["fingerprint"] == fingerprint:
                return dict(row)
        return None

    def insert_pre_registered_member(self, union_id, fields):
        if fields.get("owner_name") in self.fail_insert_for_owner_names:
            raise RuntimeError(f"insert rejected for {fields['owner_name']}")
        if self.find_pre_registered_by_fingerprint(union_id, fields["fingerprint"]):
            raise RuntimeError("duplicate fingerprint")
        member_id = self._next_id("pre")
        now = self._now()
        row = {
            "id": member_id,
            "union_id": union_id,
            "is_published": False,
            "member_id": None,
            "source_job_id": None,
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        self.pre_members[member_id] = row
        return dict(row)

    def update_pre_registered_member(self, member_id, fields):
        row = self.pre_members.get(member_id)
        if row is None:
            return None
        row.update(fields)
        row["updated_at"] = self._now()
        return dict(row)

    def get_pre_registered_member(self, member_id):
        row = self.pre_members.get(member_id)
        return dict(row) if row else None

    def list_pre_registered_members(self, union_id, *, match_status=None, limit=100, offset=0):
        rows = [
            dict(row)
            for row in self.pre_members.values()
            if row["union_id"] == union_id and (match_status is None or row["match_status"] == match_status)
        ]
        return rows[offset : offset + limit]

    def list_pre_registered_member_ids(self, union_id):
        return [row["id"] for row in self.pre_members.values() if row["union_id"] == union_id]

    def delete_pre_registered_member(self, member_id):
        return self.pre_members.pop(member_id, None) is not None

    def delete_all_pre_registered_members(self, union_id):
        doomed = [key for key, row in self.pre_members.items() if row["union_id"] == union_id]
        for key in doomed:
            del self.pre_members[key]
        return len(doomed)

    # members and ownership
    def get_member(self, member_id):
        row = self.members.get(member_id)
        return dict(row) if row else None

    def insert_member(self, *, union_id, name, phone=None, resident_address=None, property_address=None, notes=None, status="PENDING"):
        member_id = self._next_id("member")
        self.members[member_id] = {
            "id": member_id,
            "union_id": union_id,
            "name": name,
            "phone": phone,
            "resident_address": resident_address,
            "property_address": property_address,
            "notes": notes,
            "status": status,
        }
        return dict(self.members[member_id])

    def update_member(self, member_id, fields):
        row = self.members.get(member_id)
        if row is None:
            return None
        row.update(fields)
        return dict(row)

    def get_property_unit(self, unit_id):
        row = self.units.get(unit_id)
        return dict(row) if row else None

    def lock_property_unit(self, unit_id):
        return self.get_property_unit(unit_id)

    def get_or_create_property_unit(self, *, union_id, pnu, building_unit_id=None, dong=None, ho=None, address=None):
        for row in self.units.values():
            if (row["union_id"], row["pnu"], row["dong"] or "", row["ho"] or "") == (union_id, pnu, dong or "", ho or ""):
                return dict(row)
        unit_id = self._next_id("unit")
        self.units[unit_id] = {
            "id": unit_id,
            "union_id": union_id,
            "pnu": pnu,
            "building_unit_id": building_unit_id,
            "dong": dong,
            "ho": ho,
            "address": address,
        }
        return dict(self.units[unit_id])

    def fetch_active_ownerships(self, unit_id):
        rows = []
        for row in self.ownerships.values():
            if row["property_unit_id"] != unit_id or row["status"] != "ACTIVE":
                continue
            member = self.members[row["member_id"]]
            rows.append(
                {
                    **row,
                    "member_name": member["name"],
                    "member_phone": member["phone"],
                    "member_status": member["status"],
                }
            )
        return rows

    def fetch_member_ownerships(self, member_id):
        return [dict(row) for row in self.ownerships.values() if row["member_id"] == member_id]

    def insert_ownership(self, *, property_unit_id, member_id, ownership_type, share_ratio, notes=None):
        ownership_id = self._next_id("own")
        self.ownerships[ownership_id] = {
            "id": ownership_id,
            "property_unit_id": property_unit_id,
            "member_id": member_id,
            "ownership_type": ownership_type,
            "share_ratio": share_ratio,
            "status": "ACTIVE",
            "notes": notes,
            "created_at": self._now(),
        }
        return dict(self.ownerships[ownership_id])

    def update_ownership(self, ownership_id, fields):
        self.ownerships[ownership_id].update(fields)
        return dict(self.ownerships[ownership_id])

    def archive_ownership(self, ownership_id):
        self.ownerships[ownership_id]["status"] = "ARCHIVED"

    def insert_ownership_history(self, **row):
        self.history.append(row)

    def insert_member_relationship(self, *, owner_member_id, delegate_member_id, relationship_type):
        self.relationships.append(
            {
                "owner_member_id": owner_member_id,
                "delegate_member_id": delegate_member_id,
                "relationship_type": relationship_type,
                "is_verified": False,
            }
        )

    # consent
    def find_consent_candidates(self, union_id, name):
        rows = []
        for ownership in self.ownerships.values():
            if ownership["status"] != "ACTIVE":
                continue
            member = self.members[ownership["member_id"]]
            if member["union_id"] != union_id or member["status"] != "APPROVED":
                continue
            if _compact(member["name"]) != _compact(name):
                continue
            unit = self.units[ownership["property_unit_id"]]
            rows.append(
                {
                    "member_id": member["id"],
                    "name": member["name"],
                    "address": unit["address"],
                    "dong": unit["dong"],
                    "ho": unit["ho"],
                    "pnu": unit["pnu"],
                }
            )
        return rows

    def upsert_member_consent(self, *, member_id, stage_id, status):
        self.consents[(member_id, stage_id)] = status

    # helpers for tests
    def seed_owner(self, union_id, name, unit, *, ownership_type="OWNER", share_ratio=100.0, phone=None, status="APPROVED"):
        member = self.insert_member(union_id=union_id, name=name, phone=phone, status=status)
        ownership = self.insert_ownership(
            property_unit_id=unit["id"],
            member_id=member["id"],
            ownership_type=ownership_type,
            share_ratio=share_ratio,
        )
        return member, ownership


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def inline_pool(repo):
    @contextmanager
    def factory():
        yield repo

    return InlineJobPool(factory)


@pytest.fixture
def registry_repo(repo):
    """Union U1 with a two-building apartment lot and a plain house lot."""
    repo.add_land_lot("U1", "1111010100101230004", "서울특별시 종로구 청운동 123-4", area=812.5, owner_count=2)
    repo.add_land_lot("U1", "1111010100101230045", "서울특별시 종로구 청운동 123-45", area=120.0, owner_count=1)
    repo.add_land_lot("U1", "1111010100100770000", "서울특별시 종로구 청운동 77")
    repo.add_land_lot("U1", "1111010200100770000", "서울특별시 종로구 신교동 77")
    repo.add_building_unit("bu-101-1001", "1111010100101230004", "101", "1001", "청운아파트")
    repo.add_building_unit("bu-102-1001", "1111010100101230004", "102", "1001", "청운아파트")
    repo.add_building_unit("bu-101-B1", "1111010100101230004", "101", "B1", "청운아파트")
    repo.add_building_unit("bu-77-201", "1111010200100770000", None, "201", "신교빌라")
    return repo


@pytest.fixture
def job_env(monkeypatch: pytest.MonkeyPatch):
    from app.config import get_settings

    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/test")
    monkeypatch.setenv("INTERNAL_JOB_TOKEN", "dev-internal-token")
    monkeypatch.setenv("JOB_CHUNK_SIZE", "2")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
