import json
import logging
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from affiliate_exchange.bundle_schema import LATEST_SCHEMA_VERSION, validate_bundle
from affiliate_exchange.errors import SchemaError
from affiliate_exchange.integrity import compute_affiliates_checksum
from affiliate_exchange.utils import js_number_form

logger = logging.getLogger(__name__)

DEFAULT_FILE_PREFIX = "ARS_AFILIACIONES"


def build_export_bundle(
    affiliates: list[dict[str, Any]],
    *,
    source_system: str,
    schema_version: str = LATEST_SCHEMA_VERSION,
    export_version: str = "2.0",
    timestamp: str | None = None,
    exported_by: str = "affiliate_exporter",
    export_filters: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Wrap wire-form affiliate records in the export envelope.

    data_checksum is computed last, over exactly the affiliates list that is
    embedded, so a consumer recomputing it over the parsed file gets the same digest.
    """
    plan_codes: list[str] = []
    provinces: list[str] = []
    for affiliate in affiliates:
        code = (affiliate.get("plan") or {}).get("code")
        if code and code not in plan_codes:
            plan_codes.append(code)
        province = (affiliate.get("address") or {}).get("province")
        if province and province not in provinces:
            provinces.append(province)

    bundle: dict[str, Any] = {
        "export_info": {
            "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
            "source_system": source_system,
            "export_version": export_version,
            "schema_version": schema_version,
            "total_records": len(affiliates),
            "file_format": "json",
            "exported_by": exported_by,
        },
        "data_summary": {
            "total_affiliates": len(affiliates),
            "active_plans": plan_codes,
            "provinces": provinces,
            "export_filters": export_filters if export_filters is not None else {"status": "ACTIVE", "include_inactive": False},
        },
        "affiliates": affiliates,
    }
    bundle["export_info"]["data_checksum"] = compute_affiliates_checksum(affiliates)
    return bundle


def bundle_filename(prefix: str = DEFAULT_FILE_PREFIX, day: date | None = None) -> str:
    day = day or datetime.now(timezone.utc).date()
    return f"{prefix}_{day:%Y%m%d}.json"


def write_export_bundle(
    bundle: dict[str, Any],
    directory: str | Path,
    *,
    prefix: str = DEFAULT_FILE_PREFIX,
    export_date: date | None = None,
    supported_versions: Iterable[str] = (LATEST_SCHEMA_VERSION,),
) -> Path:
    """
    Validate the bundle and write it atomically: tmp -> rename.

    The tmp name does not match the inbound filename glob, so a consumer polling
    the same directory never picks up a half-written file.
    """
    validation = validate_bundle(bundle, supported_versions)
    if not validation.valid:
        raise SchemaError(f"Refusing to write invalid bundle ({len(validation.errors)} errors)", validation.errors)

    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)

    final_path = target_dir / bundle_filename(prefix, export_date)
    tmp_path = final_path.with_name(final_path.name + ".tmp")

    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(js_number_form(bundle), f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, final_path)

    logger.info(
        "Export bundle written: %s (%s records, checksum %s)",
        final_path,
        bundle["export_info"]["total_records"],
        bundle["export_info"]["data_checksum"],
    )
    return final_path
