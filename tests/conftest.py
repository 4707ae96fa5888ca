from __future__ import annotations

import copy
import json
from datetime import datetime
from itertools import count
from pathlib import Path

import pytest

from affiliate_exchange.affiliate_store import AffiliateStore
from affiliate_exchange.audit import AuditRecorder
from affiliate_exchange.bundle_writer import build_export_bundle
from affiliate_exchange.file_drop import LocalDirectoryFileDrop
from affiliate_exchange.import_config import ImportConfig
from affiliate_exchange.orchestrator import ExchangeOrchestrator
from affiliate_exchange.scratch import ScratchLayout
from affiliate_exchange.upsert_engine import UpsertEngine

INBOUND_DIR = "/upload/afiliaciones"
PROCESSED_DIR = "/upload/processed"
FAILED_DIR = "/upload/failed"


def _affiliate(
    cedula: str = "001-1234567-8",
    *,
    first: str = "Ana",
    last: str = "Pérez",
    plan_code: str = "PLN-BASIC",
    plan_name: str = "Plan Básico",
    monthly_amount: float | None = 0.0,
    province: str | None = "Santo Domingo",
    **overrides,
) -> dict:
    record = {
        "id": 1,
        "personal": {
            "cedula": cedula,
            "full_name": {"first": first, "last": last},
            "birth_date": "1985-04-12",
            "gender": "F",
        },
        "contact": {"phone": "809-555-0101", "email": "ana@example.com"},
        "address": {"full_address": "Calle 1 #23", "province": province, "municipality": "Distrito Nacional"},
        "plan": {"code": plan_code, "name": plan_name, "type": "BASICO", "level": 1, "monthly_amount": monthly_amount},
        "employment": {"employer": "ACME SRL", "base_salary": 45000.0},
        "status": "ACTIVE",
        "category": "TITULAR",
        "dates": {"created": "2024-01-01", "last_modified": "2024-06-01"},
    }
    record.update(overrides)
    return record


@pytest.fixture
def affiliate_factory():
    ids = count(1)

    def factory(cedula: str | None = None, **kwargs) -> dict:
        n = next(ids)
        record = _affiliate(cedula or f"001-{n:07d}-0", **kwargs)
        record["id"] = n
        return record

    return factory


@pytest.fixture
def bundle_factory():
    def factory(affiliates: list[dict], **kwargs) -> dict:
        kwargs.setdefault("source_system", "ARS_HUMANO")
        kwargs.setdefault("timestamp", "2025-01-15T06:00:00+00:00")
        return build_export_bundle(copy.deepcopy(affiliates), **kwargs)

    return factory


@pytest.fixture
def drop_root(tmp_path: Path) -> Path:
    root = tmp_path / "drop"
    (root / INBOUND_DIR.lstrip("/")).mkdir(parents=True)
    return root


@pytest.fixture
def place_bundle(drop_root: Path):
    """Write a bundle (dict or raw bytes) into the inbound directory."""

    def place(filename: str, bundle: dict | bytes) -> Path:
        path = drop_root / INBOUND_DIR.lstrip("/") / filename
        content = bundle if isinstance(bundle, bytes) else json.dumps(bundle, indent=2).encode("utf-8")
        path.write_bytes(content)
        return path

    return place


@pytest.fixture
def duckdb_path(tmp_path: Path) -> str:
    return str(tmp_path / "affiliates.duckdb")


@pytest.fixture
def store(duckdb_path: str) -> AffiliateStore:
    return AffiliateStore(duckdb_path=duckdb_path)


@pytest.fixture
def audit(duckdb_path: str) -> AuditRecorder:
    recorder = AuditRecorder(duckdb_path=duckdb_path, clock=lambda: datetime(2025, 1, 15, 12, 0, 0))
    recorder.bootstrap()
    return recorder


@pytest.fixture
def import_config() -> ImportConfig:
    return ImportConfig.model_validate(
        {
            "source": {
                "inbound_dir": INBOUND_DIR,
                "processed_dir": PROCESSED_DIR,
                "failed_dir": FAILED_DIR,
            },
            "processing": {"poll_interval_seconds": 0.01, "batch_size": 2},
        }
    )


@pytest.fixture
def orchestrator_factory(drop_root: Path, tmp_path: Path, store: AffiliateStore, audit: AuditRecorder, import_config: ImportConfig):
    def factory(*, drop=None, config: ImportConfig | None = None, engine: UpsertEngine | None = None, scratch: ScratchLayout | None = None) -> ExchangeOrchestrator:
        return ExchangeOrchestrator(
            drop=drop or LocalDirectoryFileDrop(drop_root),
            store=store,
            audit=audit,
            scratch=scratch or ScratchLayout(scratch_root=tmp_path / "scratch"),
            config=config or import_config,
            engine=engine,
        )

    return factory
