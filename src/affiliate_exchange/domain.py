from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

ImportStatus = Literal["SUCCESS", "PARTIAL", "ERROR"]
AffiliateAction = Literal["INSERTED", "UPDATED"]
CycleState = Literal["IDLE", "LISTING", "FETCHING", "VALIDATING", "UPSERTING", "RELOCATING", "ERRORED"]


@dataclass(frozen=True)
class RemoteEntry:
    """One entry of a drop directory listing, as reported by the endpoint."""
    name: str
    size_bytes: int
    modified_at_utc: datetime  # naive UTC
    is_file: bool = True


@dataclass(frozen=True)
class FileHandle:
    """
    A candidate bundle discovered in the inbound directory.

    Only lives for the duration of one orchestration cycle.
    """
    name: str
    remote_path: str
    size_bytes: int
    modified_at_utc: datetime  # naive UTC
    snapshot_date: date | None = None


@dataclass(frozen=True)
class TargetAffiliateRow:
    """An affiliate shaped for the target store, keyed by document_id."""
    document_id: str
    first_name: str
    last_name: str
    plan_code: str
    plan_name: str
    external_id: str | None = None
    birth_date: str | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    province: str | None = None
    municipality: str | None = None
    plan_type: str | None = None
    monthly_amount: float = 0.0
    status: str = "ACTIVE"
    category: str = "TITULAR"
    employer: str | None = None
    base_salary: float | None = None


@dataclass(frozen=True)
class AffiliateMutation:
    """A row written by the upsert engine, reported to the audit trail after commit."""
    affiliate_id: int
    document_id: str
    action: AffiliateAction
    payment_obligation_id: int | None = None


@dataclass(frozen=True)
class UpsertResult:
    success_count: int
    failed_count: int
    errors: list[str] = field(default_factory=list)
    mutations: list[AffiliateMutation] = field(default_factory=list)


@dataclass(frozen=True)
class FileOutcome:
    """
    Terminal result of processing one file.

    status:
      SKIPPED means the file had already been consumed and only its relocation was retried.
    """
    filename: str
    status: ImportStatus | Literal["SKIPPED"]
    processed: int = 0
    success: int = 0
    failed: int = 0
    content_digest: str | None = None
    relocated: bool = False
    error: str | None = None


@dataclass
class CycleReport:
    """Per-cycle summary returned by the orchestrator."""
    run_id: str
    started_at_utc: datetime
    files_listed: int = 0
    outcomes: list[FileOutcome] = field(default_factory=list)
    listing_error: str | None = None
