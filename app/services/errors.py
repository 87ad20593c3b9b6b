class NotFoundError(LookupError):
    """Raised when a referenced job, member or property unit does not exist."""


class EmptyBatchError(ValueError):
    """Raised when a bulk submission has no usable rows after fan-out and filtering."""


class ActiveJobExistsError(RuntimeError):
    """Raised when a (union, kind) pair already has a PENDING or PROCESSING job."""

    def __init__(self, union_id: str, kind: str, active_job_id: str | None = None):
        self.union_id = union_id
        self.kind = kind
        self.active_job_id = active_job_id
        detail = f"a {kind} job is already running for union {union_id}"
        if active_job_id:
            detail = f"{detail} (job_id={active_job_id})"
        super().__init__(detail)


class InvalidJobStateError(RuntimeError):
    """Raised when a job operation is not allowed in the job's current status."""


class RegistryUnavailableError(RuntimeError):
    """Raised when the parcel registry cannot be reached; fatal to the running job."""


class ConflictResolutionError(RuntimeError):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotMatchedError(ValueError):
    """Raised when approving a pre-registered member that has no resolved parcel."""


class DuplicateMemberError(RuntimeError):
    """Raised when a re-match would collide with another pre-registered member's fingerprint."""
