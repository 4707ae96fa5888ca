import logging
import re
from pathlib import Path
from typing import Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from affiliate_exchange.bundle_schema import SCHEMA_MODELS

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class SourceSpec(StrictBaseModel):
    inbound_dir: str
    processed_dir: str
    failed_dir: str | None = None

    filename_glob: str = "ARS_AFILIACIONES_*.json"
    filename_date_regex: str | None = r"^ARS_AFILIACIONES_(\d{8})\.json$"
    filename_date_format: str | None = "%Y%m%d"

    @model_validator(mode="after")
    def validate_settings(self) -> Self:
        if (self.filename_date_format is None) ^ (self.filename_date_regex is None):
            raise ValueError("Both filename_date_format and filename_date_regex must be specified together")

        if self.filename_date_regex is not None:
            try:
                pattern = re.compile(self.filename_date_regex)
            except re.error as e:
                raise ValueError(f"Invalid filename_date_regex '{self.filename_date_regex}': {e}")
            if pattern.groups < 1:
                raise ValueError("filename_date_regex must capture the date stamp in group 1")

        if self.inbound_dir.rstrip("/") in {self.processed_dir.rstrip("/"), (self.failed_dir or "").rstrip("/")}:
            raise ValueError("inbound_dir must differ from processed_dir and failed_dir")

        return self

    @property
    def terminal_dir_for_errors(self) -> str:
        return self.failed_dir or self.processed_dir


class ProcessingSpec(StrictBaseModel):
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=1000, gt=0)
    supported_schema_versions: list[str] = Field(default_factory=lambda: ["1.0"])
    remote_timeout_seconds: float = Field(default=60.0, gt=0)
    require_checksum: bool = False
    record_affiliate_actions: bool = True
    error_summary_max_items: int = Field(default=3, gt=0)
    error_summary_max_chars: int = Field(default=1000, gt=10)
    stats_interval_seconds: float = Field(default=300.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def validate_settings(self) -> Self:
        if not self.supported_schema_versions:
            raise ValueError("supported_schema_versions cannot be empty")

        for version in self.supported_schema_versions:
            if version not in SCHEMA_MODELS:
                raise ValueError(
                    f"Schema version '{version}' has no registered decoder; known versions: {sorted(SCHEMA_MODELS)}"
                )
        return self


class StoreSpec(StrictBaseModel):
    schema_name: str = "payments"
    audit_schema_name: str = "audit"

    @model_validator(mode="after")
    def validate_settings(self) -> Self:
        for name in (self.schema_name, self.audit_schema_name):
            if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
                raise ValueError(f"Invalid schema name '{name}'. Must start with a letter or underscore, "
                                 "followed by letters, digits, or underscores.")
        return self


class ImportConfig(StrictBaseModel):
    source: SourceSpec
    processing: ProcessingSpec = Field(default_factory=ProcessingSpec)
    store: StoreSpec = Field(default_factory=StoreSpec)


def load_import_config(file_path: str | Path) -> ImportConfig:
    path = Path(file_path)
    if not path.exists():
        raise ValueError(f"Import configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as file:
        config_yaml = yaml.safe_load(file)

    try:
        config = ImportConfig.model_validate(config_yaml)
    except Exception as e:
        raise ValueError(f"Error loading import config from {path}: {e}")

    logger.info(
        "Loaded import config from %s: inbound=%s poll=%ss schema_versions=%s",
        path,
        config.source.inbound_dir,
        config.processing.poll_interval_seconds,
        config.processing.supported_schema_versions,
    )
    return config
