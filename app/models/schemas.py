from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

JobKind = Literal["PRE_REGISTER", "SYNC_PROPERTIES", "GIS_COLLECT", "CONSENT_BULK"]
JobStatus = Literal["PENDING", "PROCESSING", "COMPLETED", "FAILED"]
MatchStatus = Literal["matched", "unmatched", "ambiguous"]
OwnershipType = Literal["OWNER", "CO_OWNER", "FAMILY", "PROXY"]


class PreRegisterJobCreate(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    update_existing: bool = False


class GisCollectJobCreate(BaseModel):
    addresses: list[str] = Field(default_factory=list)


class ConsentBulkRow(BaseModel):
    row_number: int | None = None
    name: str
    address: str
    dong: str | None = None
    ho: str | None = None
    status: str = "AGREED"


class ConsentBulkJobCreate(BaseModel):
    rows: list[ConsentBulkRow] = Field(default_factory=list)


class JobCreatedOut(BaseModel):
    job_id: str


class JobResultOut(BaseModel):
    matched_count: int = 0
    unmatched_count: int = 0
    ambiguous_count: int = 0
    saved_count: int = 0
    updated_count: int = 0
    duplicate_count: int = 0
    synced_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)


class JobStatusOut(BaseModel):
    job_id: str
    union_id: str
    kind: JobKind
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    total_count: int = 0
    processed_count: int = 0
    result: JobResultOut | None = None
    error: str | None = None
    is_published: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobListOut(BaseModel):
    items: list[JobStatusOut]


class JobPublishOut(BaseModel):
    job_id: str
    published_member_count: int


class PreRegisteredMemberOut(BaseModel):
    id: str
    union_id: str
    owner_name: str
    phone: str | None = None
    resident_address: str | None = None
    property_address: str
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
    pnu: str | None = None
    building_unit_id: str | None = None
    matched_address: str | None = None
    match_status: MatchStatus
    match_reason: str | None = None
    is_matched: bool = False
    is_published: bool = False
    source_job_id: str | None = None
    member_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PreRegisteredListOut(BaseModel):
    items: list[PreRegisteredMemberOut]
    limit: int
    offset: int


class RematchIn(BaseModel):
    property_address: str | None = None
    dong: str | None = None
    ho: str | None = None


class RematchOut(BaseModel):
    success: bool
    matched: bool
    match_status: MatchStatus | None = None
    pnu: str | None = None
    building_unit_id: str | None = None
    candidate_pnus: list[str] = Field(default_factory=list)
    error: str | None = None


class BulkResetOut(BaseModel):
    union_id: str
    deleted_count: int


class ExistingOwnerOut(BaseModel):
    user_id: str
    name: str
    phone: str | None = None
    ownership_type: OwnershipType | None = None
    share_ratio: float | None = None
    status: str | None = None
    ownership_id: str | None = None


class PropertyConflictOut(BaseModel):
    property_unit_id: str
    building_unit_id: str | None = None
    pnu: str | None = None
    dong: str | None = None
    ho: str | None = None
    address: str
    existing_owner: ExistingOwnerOut


class PendingUserOut(BaseModel):
    id: str
    name: str
    phone: str | None = None
    property_address: str | None = None


class ConflictCheckIn(BaseModel):
    pending_user_id: str
    property_unit_id: str


class ConflictCheckOut(BaseModel):
    has_conflict: bool
    conflicts: list[PropertyConflictOut] = Field(default_factory=list)
    pending_user: PendingUserOut


class _ResolutionBase(BaseModel):
    pending_user_id: str
    existing_user_id: str
    conflicted_property_unit_id: str


class UpdateResolution(_ResolutionBase):
    action: Literal["update"]


class TransferResolution(_ResolutionBase):
    action: Literal["transfer"]
    share_ratio: float | None = Field(default=None, gt=0, le=100)


class AddCoOwnerResolution(_ResolutionBase):
    action: Literal["add_co_owner"]
    share_ratio_for_existing: float = Field(gt=0, le=100)
    share_ratio_for_new: float = Field(gt=0, le=100)


class AddProxyResolution(_ResolutionBase):
    action: Literal["add_proxy"]
    relationship_type: Literal["FAMILY", "PROXY"]


ConflictResolutionRequest = Annotated[
    Union[UpdateResolution, TransferResolution, AddCoOwnerResolution, AddProxyResolution],
    Field(discriminator="action"),
]


class ConflictResolutionOut(BaseModel):
    success: bool
    message: str
    resolved_user_id: str | None = None


class ApprovalOut(BaseModel):
    approved: bool
    member_id: str
    property_unit_id: str
    ownership_id: str | None = None
    conflict: ConflictCheckOut | None = None
