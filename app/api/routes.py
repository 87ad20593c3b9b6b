import logging
from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from app.api.dependencies import get_gis_registry_client, get_job_pool, get_repository, require_internal_job_token
from app.models.schemas import (
    ApprovalOut,
    BulkResetOut,
    ConflictCheckIn,
    ConflictCheckOut,
    ConflictResolutionOut,
    ConflictResolutionRequest,
    ConsentBulkJobCreate,
    GisCollectJobCreate,
    JobCreatedOut,
    JobKind,
    JobListOut,
    JobPublishOut,
    JobResultOut,
    JobStatusOut,
    PreRegisterJobCreate,
    PreRegisteredListOut,
    PreRegisteredMemberOut,
    RematchIn,
    RematchOut,
)
from app.services.conflict_detector import ConflictDetector
from app.services.conflict_resolver import ConflictResolver
from app.services.errors import (
    ActiveJobExistsError,
    ConflictResolutionError,
    DuplicateMemberError,
    EmptyBatchError,
    InvalidJobStateError,
    NotFoundError,
    NotMatchedError,
)
from app.services.ownership_service import approve_pre_registered_member
from app.services.pre_register_service import (
    delete_pre_registered_member,
    list_pre_registered_members,
    rematch_pre_registered_member,
    reset_pre_registered_members,
)
from app.services.sync_job_service import (
    delete_sync_job,
    get_sync_job,
    publish_sync_job,
    retry_sync_job,
    submit_consent_bulk_job,
    submit_gis_collect_job,
    submit_pre_register_job,
    submit_sync_properties_job,
)

router = APIRouter(prefix="/api/v1", tags=["v1"])
logger = logging.getLogger(__name__)


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def _float_or_none(value: Any) -> float | None:
    return None if value is None else float(value)


def _job_out(row: dict) -> JobStatusOut:
    result = row.get("result")
    return JobStatusOut(
        job_id=str(row["id"]),
        union_id=str(row["union_id"]),
        kind=row["kind"],
        status=row["status"],
        progress=int(row.get("progress") or 0),
        total_count=int(row.get("total_count") or 0),
        processed_count=int(row.get("processed_count") or 0),
        result=JobResultOut(**result) if result else None,
        error=row.get("error"),
        is_published=bool(row.get("is_published")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _member_out(row: dict) -> PreRegisteredMemberOut:
    payload = dict(row)
    for key in ("id", "union_id", "source_job_id", "member_id", "building_unit_id"):
        payload[key] = _str_or_none(payload.get(key))
    for key in ("land_area", "land_share_ratio", "building_area", "building_share_ratio", "official_price"):
        payload[key] = _float_or_none(payload.get(key))
    payload["is_matched"] = payload.get("match_status") == "matched"
    payload["is_published"] = bool(payload.get("is_published"))
    return PreRegisteredMemberOut.model_validate(payload)


def _job_submission_error(exc: Exception) -> HTTPException:
    if isinstance(exc, EmptyBatchError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ActiveJobExistsError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidJobStateError):
        return HTTPException(status_code=409, detail=str(exc))
    raise exc


@router.post("/unions/{union_id}/pre-register/jobs", response_model=JobCreatedOut)
def create_pre_register_job(
    union_id: str,
    payload: PreRegisterJobCreate,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    pool=Depends(get_job_pool),
):
    try:
        job = submit_pre_register_job(
            repo,
            pool,
            union_id=union_id,
            rows=payload.rows,
            update_existing=payload.update_existing,
        )
    except (EmptyBatchError, ActiveJobExistsError) as exc:
        raise _job_submission_error(exc) from exc
    return JobCreatedOut(job_id=str(job["id"]))


@router.post("/unions/{union_id}/sync-properties/jobs", response_model=JobCreatedOut)
def create_sync_properties_job(
    union_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    pool=Depends(get_job_pool),
):
    try:
        job = submit_sync_properties_job(repo, pool, union_id=union_id)
    except ActiveJobExistsError as exc:
        raise _job_submission_error(exc) from exc
    return JobCreatedOut(job_id=str(job["id"]))


@router.post("/unions/{union_id}/gis-collect/jobs", response_model=JobCreatedOut)
def create_gis_collect_job(
    union_id: str,
    payload: GisCollectJobCreate,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    pool=Depends(get_job_pool),
    registry_client=Depends(get_gis_registry_client),
):
    if not registry_client.is_configured():
        raise HTTPException(status_code=503, detail="parcel registry endpoint is not configured")
    try:
        job = submit_gis_collect_job(
            repo,
            pool,
            union_id=union_id,
            addresses=payload.addresses,
            registry_client=registry_client,
        )
    except (EmptyBatchError, ActiveJobExistsError) as exc:
        raise _job_submission_error(exc) from exc
    return JobCreatedOut(job_id=str(job["id"]))


@router.post("/unions/{union_id}/consent-stages/{stage_id}/bulk/jobs", response_model=JobCreatedOut)
def create_consent_bulk_job(
    union_id: str,
    stage_id: str,
    payload: ConsentBulkJobCreate,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    pool=Depends(get_job_pool),
):
    try:
        job = submit_consent_bulk_job(
            repo,
            pool,
            union_id=union_id,
            stage_id=stage_id,
            rows=[row.model_dump() for row in payload.rows],
        )
    except (EmptyBatchError, ActiveJobExistsError) as exc:
        raise _job_submission_error(exc) from exc
    return JobCreatedOut(job_id=str(job["id"]))


@router.get("/jobs/{job_id}", response_model=JobStatusOut)
def get_job_status(job_id: str, repo=Depends(get_repository)):
    try:
        row = get_sync_job(repo, job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    return _job_out(row)


@router.get("/unions/{union_id}/jobs", response_model=JobListOut)
def list_jobs(
    union_id: str,
    kind: JobKind | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    repo=Depends(get_repository),
):
    rows = repo.list_sync_jobs(union_id, kind=kind, limit=limit)
    return JobListOut(items=[_job_out(row) for row in rows])


@router.delete("/jobs/{job_id}", status_code=204)
def delete_job(
    job_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        delete_sync_job(repo, job_id)
    except (NotFoundError, InvalidJobStateError) as exc:
        raise _job_submission_error(exc) from exc
    return None


@router.post("/jobs/{job_id}/publish", response_model=JobPublishOut)
def publish_job(
    job_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        count = publish_sync_job(repo, job_id)
    except (NotFoundError, InvalidJobStateError) as exc:
        raise _job_submission_error(exc) from exc
    return JobPublishOut(job_id=job_id, published_member_count=count)


@router.post("/jobs/{job_id}/retry", response_model=JobCreatedOut)
def retry_job(
    job_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
    pool=Depends(get_job_pool),
    registry_client=Depends(get_gis_registry_client),
):
    try:
        job = retry_sync_job(repo, pool, job_id, registry_client=registry_client)
    except (NotFoundError, InvalidJobStateError, ActiveJobExistsError) as exc:
        raise _job_submission_error(exc) from exc
    return JobCreatedOut(job_id=str(job["id"]))


@router.get("/unions/{union_id}/pre-registered", response_model=PreRegisteredListOut)
def list_pre_registered(
    union_id: str,
    match_status: Literal["matched", "unmatched", "ambiguous"] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    rows = list_pre_registered_members(repo, union_id, match_status=match_status, limit=limit, offset=offset)
    return PreRegisteredListOut(items=[_member_out(row) for row in rows], limit=limit, offset=offset)


@router.post("/pre-registered/{member_id}/rematch", response_model=RematchOut)
def rematch_pre_registered(
    member_id: str,
    payload: RematchIn = Body(default_factory=RematchIn),
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        outcome = rematch_pre_registered_member(
            repo,
            member_id,
            property_address=payload.property_address,
            dong=payload.dong,
            ho=payload.ho,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateMemberError as exc:
        return RematchOut(success=False, matched=False, error=str(exc))
    return RematchOut(
        success=True,
        matched=outcome.matched,
        match_status=outcome.status,
        pnu=outcome.pnu,
        building_unit_id=outcome.building_unit_id,
        candidate_pnus=list(outcome.candidate_pnus),
        error=None if outcome.matched else outcome.reason,
    )


@router.post("/pre-registered/{member_id}/approve", response_model=ApprovalOut)
def approve_pre_registered(
    member_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        result = approve_pre_registered_member(repo, member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotMatchedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    payload = asdict(result)
    return ApprovalOut.model_validate(payload)


@router.delete("/pre-registered/{member_id}", status_code=204)
def delete_pre_registered(
    member_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        delete_pre_registered_member(repo, member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return None


@router.delete("/unions/{union_id}/pre-registered", response_model=BulkResetOut)
def reset_pre_registered(
    union_id: str,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    deleted = reset_pre_registered_members(repo, union_id)
    return BulkResetOut(union_id=union_id, deleted_count=deleted)


@router.post("/conflicts/check", response_model=ConflictCheckOut)
def check_conflict(
    payload: ConflictCheckIn,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        result = ConflictDetector(repo).check(
            pending_member_id=payload.pending_user_id,
            property_unit_id=payload.property_unit_id,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ConflictCheckOut.model_validate(result.to_dict())


@router.post("/conflicts/resolve", response_model=ConflictResolutionOut)
def resolve_conflict(
    payload: ConflictResolutionRequest = Body(...),
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    try:
        result = ConflictResolver(repo).resolve(payload)
    except ConflictResolutionError as exc:
        logger.info("conflict_resolution_rejected action=%s reason=%s", payload.action, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return ConflictResolutionOut(**asdict(result))
