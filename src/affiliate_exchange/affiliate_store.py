import logging
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import duckdb

from affiliate_exchange.domain import AffiliateAction

logger = logging.getLogger(__name__)

# Columns written from a TargetAffiliateRow, in statement order.
AFFILIATE_COLUMNS: tuple[str, ...] = (
    "external_id",
    "document_id",
    "first_name",
    "last_name",
    "birth_date",
    "gender",
    "phone",
    "email",
    "address",
    "province",
    "municipality",
    "plan_code",
    "plan_name",
    "plan_type",
    "monthly_amount",
    "status",
    "category",
    "employer",
    "base_salary",
)

# Exclusive upper bounds of the DECIMAL amount columns: DECIMAL(12, 2) and DECIMAL(14, 2).
AMOUNT_COLUMN_LIMITS: dict[str, float] = {
    "monthly_amount": 1e10,
    "base_salary": 1e12,
}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier '{name}'")
    return name


class AffiliateStore:
    """
    Target store for imported affiliates, backed by DuckDB.

    Connection is held only inside a `with` block; the orchestrator opens one
    per file and never shares it across files.

    Tables:
      <schema>.affiliates            (unique on document_id, never deleted here)
      <schema>.payment_obligations   (append-only, one per positive monthly amount)
      <schema>.consumed_files        (checkpoint: files whose rows were committed)
    """

    def __init__(self, *, duckdb_path: str, schema: str = "payments", auto_bootstrap: bool = True):
        self._duckdb_path = duckdb_path
        self._schema = validate_identifier(schema)
        self._auto_bootstrap = auto_bootstrap

        self._connection: duckdb.DuckDBPyConnection | None = None

    def __enter__(self) -> "AffiliateStore":
        if self._connection is not None:
            raise RuntimeError("Store connection already open")

        self._connection = duckdb.connect(self._duckdb_path)

        if self._auto_bootstrap:
            self._bootstrap()

        logger.debug("Affiliate store connected. schema=%s duckdb=%s", self._schema, self._duckdb_path)
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("Store is not connected; use it as a context manager")
        return self._connection

    # ----------------------------
    # Public API
    # ----------------------------
    def upsert_affiliate(
        self,
        values: dict[str, Any],
        *,
        source_system: str,
        now: datetime,
    ) -> tuple[int, AffiliateAction]:
        """Insert or update by document_id. Returns the row id and what happened to it."""
        conn = self._require_connection()

        existing = conn.execute(
            f"SELECT id FROM {self._table('affiliates')} WHERE document_id = ?",
            [values["document_id"]],
        ).fetchone()

        columns = [*AFFILIATE_COLUMNS, "source_system", "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        updates = ",\n                ".join(
            f"{col} = EXCLUDED.{col}"
            for col in [*AFFILIATE_COLUMNS, "source_system", "updated_at"]
            if col != "document_id"
        )

        row = conn.execute(
            f"""
            INSERT INTO {self._table('affiliates')} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (document_id) DO UPDATE SET
                {updates}
            RETURNING id
            """,
            [*(values.get(col) for col in AFFILIATE_COLUMNS), source_system, now, now],
        ).fetchone()

        if row is None:
            raise RuntimeError(f"Upsert of {values['document_id']} returned no row id")

        return int(row[0]), ("UPDATED" if existing else "INSERTED")

    def insert_payment_obligation(
        self,
        *,
        affiliate_id: int,
        plan_code: str,
        plan_name: str,
        monthly_amount: float,
        source_file: str | None,
        now: datetime,
    ) -> int:
        conn = self._require_connection()
        row = conn.execute(
            f"""
            INSERT INTO {self._table('payment_obligations')}
            (affiliate_id, plan_code, plan_name, monthly_amount, payment_frequency, status, source_file, created_at)
            VALUES (?, ?, ?, ?, 'MONTHLY', 'PENDING', ?, ?)
            RETURNING id
            """,
            [affiliate_id, plan_code, plan_name, monthly_amount, source_file, now],
        ).fetchone()

        if row is None:
            raise RuntimeError(f"Payment obligation insert for affiliate {affiliate_id} returned no id")
        return int(row[0])

    def is_consumed(self, filename: str, content_digest: str) -> bool:
        conn = self._require_connection()
        row = conn.execute(
            f"SELECT 1 FROM {self._table('consumed_files')} WHERE filename = ? AND content_digest = ? LIMIT 1",
            [filename, content_digest],
        ).fetchone()
        return row is not None

    def mark_consumed(
        self,
        *,
        filename: str,
        content_digest: str,
        source_system: str,
        records_success: int,
        records_failed: int,
        now: datetime,
    ) -> None:
        conn = self._require_connection()
        conn.execute(
            f"""
            INSERT INTO {self._table('consumed_files')}
            (filename, content_digest, source_system, records_success, records_failed, consumed_at_utc)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [filename, content_digest, source_system, records_success, records_failed, now],
        )

    def fetch_affiliate(self, document_id: str) -> dict[str, Any] | None:
        conn = self._require_connection()
        cursor = conn.execute(f"SELECT * FROM {self._table('affiliates')} WHERE document_id = ?", [document_id])
        row = cursor.fetchone()
        if row is None:
            return None
        names = [d[0] for d in cursor.description]
        return dict(zip(names, row))

    def count_payment_obligations(self, affiliate_id: int | None = None) -> int:
        conn = self._require_connection()
        if affiliate_id is None:
            row = conn.execute(f"SELECT COUNT(*) FROM {self._table('payment_obligations')}").fetchone()
        else:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {self._table('payment_obligations')} WHERE affiliate_id = ?",
                [affiliate_id],
            ).fetchone()
        return int(row[0]) if row else 0

    def affiliate_stats(self) -> dict[str, Any]:
        conn = self._require_connection()
        row = conn.execute(
            f"""
            SELECT
                COUNT(*) AS total_affiliates,
                COUNT(*) FILTER (WHERE status = 'ACTIVE') AS active_affiliates,
                COUNT(DISTINCT plan_code) AS unique_plans,
                MAX(updated_at) AS last_update
            FROM {self._table('affiliates')}
            """
        ).fetchone()
        obligations = conn.execute(f"SELECT COUNT(*) FROM {self._table('payment_obligations')}").fetchone()

        total, active, plans, last_update = row if row else (0, 0, 0, None)
        return {
            "total_affiliates": int(total),
            "active_affiliates": int(active),
            "unique_plans": int(plans),
            "last_update": last_update,
            "payment_obligations": int(obligations[0]) if obligations else 0,
        }

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self._require_connection()
        conn.execute("BEGIN TRANSACTION")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # ----------------------------
    # Bootstrap / helpers
    # ----------------------------
    def _bootstrap(self) -> None:
        conn = self._require_connection()
        conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self._schema}")
        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._schema}.affiliates_id_seq START 1")
        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._schema}.payment_obligations_id_seq START 1")

        # document_id is the only unique key so ON CONFLICT has a single target;
        # id comes from the sequence and is never updated.
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._table('affiliates')} (
              id             BIGINT  NOT NULL DEFAULT nextval('{self._schema}.affiliates_id_seq'),
              external_id    VARCHAR,
              document_id    VARCHAR PRIMARY KEY,
              first_name     VARCHAR NOT NULL,
              last_name      VARCHAR NOT NULL,
              birth_date     DATE,
              gender         VARCHAR,
              phone          VARCHAR,
              email          VARCHAR,
              address        VARCHAR,
              province       VARCHAR,
              municipality   VARCHAR,
              plan_code      VARCHAR NOT NULL,
              plan_name      VARCHAR NOT NULL,
              plan_type      VARCHAR,
              monthly_amount DECIMAL(12, 2),
              status         VARCHAR NOT NULL,
              category       VARCHAR NOT NULL,
              employer       VARCHAR,
              base_salary    DECIMAL(14, 2),
              source_system  VARCHAR,
              created_at     TIMESTAMP NOT NULL,
              updated_at     TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._table('payment_obligations')} (
              id                BIGINT  PRIMARY KEY DEFAULT nextval('{self._schema}.payment_obligations_id_seq'),
              affiliate_id      BIGINT  NOT NULL,
              plan_code         VARCHAR NOT NULL,
              plan_name         VARCHAR NOT NULL,
              monthly_amount    DECIMAL(12, 2) NOT NULL,
              payment_frequency VARCHAR NOT NULL,
              status            VARCHAR NOT NULL,
              source_file       VARCHAR,
              created_at        TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._table('consumed_files')} (
              filename         VARCHAR NOT NULL,
              content_digest   VARCHAR NOT NULL,
              source_system    VARCHAR,
              records_success  INTEGER NOT NULL,
              records_failed   INTEGER NOT NULL,
              consumed_at_utc  TIMESTAMP NOT NULL,
              PRIMARY KEY (filename, content_digest)
            );
            """
        )

    def _table(self, table: str) -> str:
        return f"{self._schema}.{table}"
