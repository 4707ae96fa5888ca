import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Sequence

import duckdb

from affiliate_exchange.affiliate_store import validate_identifier
from affiliate_exchange.domain import AffiliateMutation, ImportStatus
from affiliate_exchange.utils import utc_now_naive


def derive_status(*, parsed: bool, success: int, failed: int) -> ImportStatus:
    """ERROR only when the file never got past decoding and validation; any rejected row makes it PARTIAL."""
    if not parsed:
        return "ERROR"
    if failed > 0:
        return "PARTIAL"
    return "SUCCESS"


def summarize_errors(errors: Sequence[str], *, max_items: int = 3, max_chars: int = 1000) -> str | None:
    if not errors:
        return None
    summary = "; ".join(errors[:max_items])
    if len(errors) > max_items:
        summary += f"; ... ({len(errors) - max_items} more)"
    if len(summary) > max_chars:
        summary = summary[: max_chars - 3] + "..."
    return summary


class AuditRecorder:
    """
    Append-only audit trail for imports.

    Every write opens its own short-lived connection so audit rows never share a
    transaction with the affiliate upsert. Write failures are logged and swallowed:
    the audit trail is observability, not a correctness gate.

    Tables:
      <schema>.import_audit      one row per processed file
      <schema>.affiliate_audit   one row per mutated affiliate
    """

    def __init__(
        self,
        *,
        duckdb_path: str,
        schema: str = "audit",
        batch_size: int = 1000,
        clock: Callable[[], datetime] = utc_now_naive,
        logger: logging.Logger | None = None,
    ):
        self._duckdb_path = duckdb_path
        self._schema = validate_identifier(schema)
        self._batch_size = max(1, batch_size)
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @contextmanager
    def _connect(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = duckdb.connect(self._duckdb_path)
        try:
            yield conn
        finally:
            conn.close()

    def bootstrap(self) -> None:
        """Create audit tables. Raises: without them nothing can be recorded."""
        with self._connect() as conn:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self._schema}")
            conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._schema}.import_audit_id_seq START 1")
            conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._schema}.affiliate_audit_id_seq START 1")
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table('import_audit')} (
                  id                      BIGINT PRIMARY KEY DEFAULT nextval('{self._schema}.import_audit_id_seq'),
                  filename                VARCHAR NOT NULL,
                  content_digest          VARCHAR,
                  records_processed       INTEGER NOT NULL,
                  records_success         INTEGER NOT NULL,
                  records_failed          INTEGER NOT NULL,
                  processing_time_seconds DECIMAL(10, 3),
                  status                  VARCHAR NOT NULL,
                  error_message           VARCHAR,
                  recorded_at_utc         TIMESTAMP NOT NULL
                );
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table('affiliate_audit')} (
                  id               BIGINT PRIMARY KEY DEFAULT nextval('{self._schema}.affiliate_audit_id_seq'),
                  affiliate_id     BIGINT,
                  document_id      VARCHAR NOT NULL,
                  action           VARCHAR NOT NULL,
                  source_file      VARCHAR,
                  status           VARCHAR NOT NULL,
                  details          VARCHAR,
                  recorded_at_utc  TIMESTAMP NOT NULL
                );
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_import_audit_recorded_at ON {self._table('import_audit')}(recorded_at_utc)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_affiliate_audit_document_id ON {self._table('affiliate_audit')}(document_id)"
            )
        self.logger.info("Audit tables ready in schema %s", self._schema)

    def record(
        self,
        filename: str,
        content_digest: str | None,
        processed: int,
        success: int,
        failed: int,
        elapsed_seconds: float,
        status: ImportStatus,
        error_summary: str | None = None,
    ) -> int | None:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO {self._table('import_audit')}
                    (filename, content_digest, records_processed, records_success, records_failed,
                     processing_time_seconds, status, error_message, recorded_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING id
                    """,
                    [
                        filename,
                        content_digest,
                        processed,
                        success,
                        failed,
                        round(elapsed_seconds, 3),
                        status,
                        error_summary,
                        self._clock(),
                    ],
                ).fetchone()
        except duckdb.Error:
            self.logger.exception("Failed to record import audit for %s", filename)
            return None

        audit_id = int(row[0]) if row else None
        self.logger.info("Import audit recorded: %s %s (%s/%s records) id=%s", filename, status, success, processed, audit_id)
        return audit_id

    def record_affiliate_actions(self, mutations: Sequence[AffiliateMutation], *, source_file: str) -> int:
        """Record one row per mutated affiliate. Returns the number of rows written."""
        if not mutations:
            return 0

        now = self._clock()
        rows = [
            (
                m.affiliate_id,
                m.document_id,
                m.action,
                source_file,
                "SUCCESS",
                f"payment obligation {m.payment_obligation_id} created" if m.payment_obligation_id else None,
                now,
            )
            for m in mutations
        ]

        written = 0
        try:
            with self._connect() as conn:
                for start in range(0, len(rows), self._batch_size):
                    chunk = rows[start : start + self._batch_size]
                    conn.executemany(
                        f"""
                        INSERT INTO {self._table('affiliate_audit')}
                        (affiliate_id, document_id, action, source_file, status, details, recorded_at_utc)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        chunk,
                    )
                    written += len(chunk)
        except duckdb.Error:
            self.logger.exception("Failed to record affiliate audit for %s (%s of %s written)", source_file, written, len(rows))
        return written

    def import_history(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT * FROM {self._table('import_audit')} ORDER BY recorded_at_utc DESC, id DESC LIMIT ?",
                [limit],
            )
            names = [d[0] for d in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]

    def import_stats(self, days: int = 30) -> dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*),
                    COALESCE(SUM(records_processed), 0),
                    COALESCE(SUM(records_success), 0),
                    COALESCE(SUM(records_failed), 0),
                    AVG(processing_time_seconds),
                    COUNT(*) FILTER (WHERE status = 'SUCCESS'),
                    COUNT(*) FILTER (WHERE status = 'PARTIAL'),
                    COUNT(*) FILTER (WHERE status = 'ERROR'),
                    MAX(recorded_at_utc)
                FROM {self._table('import_audit')}
                WHERE recorded_at_utc >= ?
                """,
                [since],
            ).fetchone()

        keys = (
            "total_imports",
            "total_records_processed",
            "total_records_success",
            "total_records_failed",
            "avg_processing_time",
            "successful_imports",
            "partial_imports",
            "failed_imports",
            "last_import",
        )
        return dict(zip(keys, row)) if row else {}

    def _table(self, table: str) -> str:
        return f"{self._schema}.{table}"
