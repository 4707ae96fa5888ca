from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from affiliate_exchange.import_config import ImportConfig, load_import_config

REPO_CONFIG = Path(__file__).resolve().parent.parent / "configs" / "import.yaml"


def _source(**overrides) -> dict:
    source = {"inbound_dir": "/upload/afiliaciones", "processed_dir": "/upload/processed"}
    source.update(overrides)
    return source


def test_shipped_config_loads():
    config = load_import_config(REPO_CONFIG)

    assert config.source.inbound_dir == "/upload/afiliaciones"
    assert config.source.terminal_dir_for_errors == "/upload/failed"
    assert config.processing.supported_schema_versions == ["1.0"]
    assert config.store.schema_name == "payments"


def test_defaults():
    config = ImportConfig.model_validate({"source": _source()})

    assert config.processing.poll_interval_seconds == 30.0
    assert config.processing.batch_size == 1000
    assert config.processing.require_checksum is False
    assert config.source.terminal_dir_for_errors == "/upload/processed"


def test_missing_file_raises(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_import_config(tmp_path / "absent.yaml")


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "import.yaml"
    path.write_text(
        "source:\n  inbound_dir: /in\n  processed_dir: /out\n  bogus: 1\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="Error loading import config"):
        load_import_config(path)


def test_inbound_must_differ_from_processed():
    with pytest.raises(ValidationError, match="inbound_dir must differ"):
        ImportConfig.model_validate({"source": _source(processed_dir="/upload/afiliaciones/")})


def test_date_regex_and_format_go_together():
    with pytest.raises(ValidationError, match="together"):
        ImportConfig.model_validate({"source": _source(filename_date_format=None)})


def test_date_regex_needs_a_group():
    with pytest.raises(ValidationError, match="group 1"):
        ImportConfig.model_validate({"source": _source(filename_date_regex=r"^ARS_\d{8}\.json$")})


def test_unknown_schema_version_is_rejected():
    with pytest.raises(ValidationError, match="no registered decoder"):
        ImportConfig.model_validate({"source": _source(), "processing": {"supported_schema_versions": ["2.0"]}})


def test_non_positive_batch_size_is_rejected():
    with pytest.raises(ValidationError):
        ImportConfig.model_validate({"source": _source(), "processing": {"batch_size": 0}})


def test_invalid_schema_name_is_rejected():
    with pytest.raises(ValidationError, match="Invalid schema name"):
        ImportConfig.model_validate({"source": _source(), "store": {"schema_name": "payments; DROP"}})
