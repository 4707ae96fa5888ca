import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, PlainValidator, ValidationError, field_validator

from affiliate_exchange.errors import SchemaError

logger = logging.getLogger(__name__)


def _validate_amount(value: Any) -> float | None:
    if value is None:
        return None
    # bool is an int subclass but never a monetary amount
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be numeric")
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return float(value)


NonBlankStr = Annotated[str, Field(min_length=1)]
Amount = Annotated[float | None, PlainValidator(_validate_amount)]


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class FullName(StrictBaseModel):
    first: NonBlankStr
    last: NonBlankStr


class PersonalInfo(StrictBaseModel):
    cedula: NonBlankStr
    full_name: FullName
    birth_date: str | None = None
    gender: str | None = None


class ContactInfo(StrictBaseModel):
    phone: str | None = None
    email: str | None = None


class AddressInfo(StrictBaseModel):
    full_address: str | None = None
    province: str | None = None
    municipality: str | None = None


class PlanInfo(StrictBaseModel):
    code: NonBlankStr
    name: NonBlankStr
    type: str | None = None
    level: str | int | None = None
    monthly_amount: Amount = None


class EmploymentInfo(StrictBaseModel):
    employer: str | None = None
    base_salary: Amount = None


class RecordDates(StrictBaseModel):
    created: str | None = None
    last_modified: str | None = None


class AffiliateRecord(StrictBaseModel):
    id: str | int | None = None
    personal: PersonalInfo
    contact: ContactInfo | None = None
    address: AddressInfo | None = None
    plan: PlanInfo
    employment: EmploymentInfo | None = None
    status: str | None = None
    category: str | None = None
    dates: RecordDates | None = None


class ExportInfo(StrictBaseModel):
    timestamp: NonBlankStr
    source_system: NonBlankStr
    schema_version: NonBlankStr
    total_records: int | None = None
    data_checksum: str | None = None
    export_version: str | None = None
    file_format: str | None = None
    exported_by: str | None = None

    @field_validator("timestamp")
    @classmethod
    def check_iso_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"timestamp '{value}' is not ISO-8601")
        return value


class DataSummary(StrictBaseModel):
    total_affiliates: int | None = None
    active_plans: list[str] = Field(default_factory=list)
    provinces: list[str] = Field(default_factory=list)
    export_filters: dict[str, Any] | None = None


class ExportBundleV1(StrictBaseModel):
    export_info: ExportInfo
    data_summary: DataSummary | None = None
    affiliates: list[AffiliateRecord]


# schema_version -> decoder for that structural contract
SCHEMA_MODELS: dict[str, type[ExportBundleV1]] = {
    "1.0": ExportBundleV1,
}
LATEST_SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class BundleValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    bundle: ExportBundleV1 | None = None
    schema_version: str | None = None


def decode_bundle(raw: bytes) -> Any:
    """Decode raw bytes as UTF-8 JSON; any failure is a SchemaError."""
    try:
        return json.loads(raw.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise SchemaError(f"Bundle is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise SchemaError(f"Bundle is not valid JSON: {e}") from e


def format_error_location(loc: tuple[int | str, ...]) -> str:
    if not loc:
        return "bundle"
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts)


def format_validation_errors(exc: ValidationError) -> list[str]:
    return [f"{format_error_location(err['loc'])}: {err['msg']}" for err in exc.errors()]


def _declared_schema_version(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    export_info = payload.get("export_info")
    if not isinstance(export_info, dict):
        return None
    version = export_info.get("schema_version")
    return version if isinstance(version, str) else None


def _check_declared_total(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    export_info = payload.get("export_info")
    affiliates = payload.get("affiliates")
    if not isinstance(export_info, dict) or not isinstance(affiliates, list):
        return None
    declared = export_info.get("total_records")
    if isinstance(declared, int) and not isinstance(declared, bool) and declared != len(affiliates):
        return f"export_info.total_records: declares {declared} records but bundle carries {len(affiliates)}"
    return None


def validate_bundle(payload: Any, supported_versions: Iterable[str]) -> BundleValidation:
    """
    Validate a decoded bundle against the supported schema versions.

    All problems are accumulated. An unsupported version is reported but the
    structural checks still run, against the latest known decoder.
    """
    errors: list[str] = []
    supported = set(supported_versions)

    declared = _declared_schema_version(payload)
    if declared is not None and declared not in supported:
        errors.append(f"export_info.schema_version: unsupported schema version '{declared}'")

    model = SCHEMA_MODELS.get(declared or LATEST_SCHEMA_VERSION, SCHEMA_MODELS[LATEST_SCHEMA_VERSION])

    bundle: ExportBundleV1 | None = None
    try:
        bundle = model.model_validate(payload)
    except ValidationError as e:
        errors.extend(format_validation_errors(e))

    if total_error := _check_declared_total(payload):
        errors.append(total_error)

    if errors:
        logger.debug("Bundle validation found %s errors", len(errors))
        return BundleValidation(valid=False, errors=errors, bundle=None, schema_version=declared)

    return BundleValidation(valid=True, errors=[], bundle=bundle, schema_version=declared)
