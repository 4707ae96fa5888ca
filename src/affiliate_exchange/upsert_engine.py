import logging
import math
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Callable, Sequence

import duckdb

from affiliate_exchange.affiliate_store import AMOUNT_COLUMN_LIMITS, AffiliateStore
from affiliate_exchange.domain import AffiliateMutation, TargetAffiliateRow, UpsertResult
from affiliate_exchange.errors import RecordError, TransactionError
from affiliate_exchange.utils import utc_now_naive


class UpsertEngine:
    """
    Applies one bundle's rows to the target store inside a single transaction.

    Row-level problems are RecordErrors: counted, reported, skipped. DuckDB aborts
    the whole transaction on any failed statement and has no savepoints, so every
    row-level constraint is checked in `_prepare` before a statement is issued.
    A statement that still fails is a store fault: the batch is rolled back and a
    TransactionError is raised.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now_naive,
        progress_every: int = 1000,
        logger: logging.Logger | None = None,
    ):
        self.clock = clock
        self.progress_every = max(1, progress_every)
        self.logger = logger or logging.getLogger(__name__)

    def apply(
        self,
        store: AffiliateStore,
        rows: Sequence[TargetAffiliateRow],
        *,
        source_system: str,
        source_file: str | None = None,
        content_digest: str | None = None,
    ) -> UpsertResult:
        now = self.clock()
        success_count = 0
        failed_count = 0
        errors: list[str] = []
        mutations: list[AffiliateMutation] = []
        seen_document_ids: set[str] = set()

        try:
            with store.transaction():
                for index, row in enumerate(rows, start=1):
                    try:
                        values = self._prepare(row, seen_document_ids)
                    except RecordError as e:
                        failed_count += 1
                        errors.append(str(e))
                        self.logger.error("Error upserting affiliate %s: %s", e.document_id, e.reason)
                        continue

                    affiliate_id, action = store.upsert_affiliate(values, source_system=source_system, now=now)

                    obligation_id: int | None = None
                    if row.monthly_amount > 0:
                        obligation_id = store.insert_payment_obligation(
                            affiliate_id=affiliate_id,
                            plan_code=row.plan_code,
                            plan_name=row.plan_name,
                            monthly_amount=row.monthly_amount,
                            source_file=source_file,
                            now=now,
                        )

                    success_count += 1
                    mutations.append(
                        AffiliateMutation(
                            affiliate_id=affiliate_id,
                            document_id=values["document_id"],
                            action=action,
                            payment_obligation_id=obligation_id,
                        )
                    )

                    if index % self.progress_every == 0:
                        self.logger.info("Upserted %s/%s rows...", index, len(rows))

                if source_file and content_digest:
                    store.mark_consumed(
                        filename=source_file,
                        content_digest=content_digest,
                        source_system=source_system,
                        records_success=success_count,
                        records_failed=failed_count,
                        now=now,
                    )
        except (duckdb.Error, RuntimeError) as e:
            self.logger.error("Transaction failed for %s, rolled back: %s", source_file or "<batch>", e)
            raise TransactionError(f"Transaction failed and was rolled back: {e}") from e

        self.logger.info("Transaction committed: %s succeeded, %s failed", success_count, failed_count)
        return UpsertResult(
            success_count=success_count,
            failed_count=failed_count,
            errors=errors,
            mutations=mutations,
        )

    @staticmethod
    def _prepare(row: TargetAffiliateRow, seen_document_ids: set[str]) -> dict[str, Any]:
        document_id = row.document_id.strip()
        if not document_id:
            raise RecordError(row.document_id, "document id is blank")
        if document_id in seen_document_ids:
            raise RecordError(document_id, "duplicate document id within bundle")

        values = asdict(row)
        values["document_id"] = document_id
        values["birth_date"] = _parse_birth_date(document_id, row.birth_date)

        for amount_field, limit in AMOUNT_COLUMN_LIMITS.items():
            amount = values[amount_field]
            if amount is None:
                continue
            if not math.isfinite(amount):
                raise RecordError(document_id, f"{amount_field} is not a finite number")
            if amount < 0:
                raise RecordError(document_id, f"{amount_field} cannot be negative ({amount})")
            # Compared after rounding to cents, as the DECIMAL cast does.
            if round(amount, 2) >= limit:
                raise RecordError(document_id, f"{amount_field} {amount} exceeds the storable maximum")

        seen_document_ids.add(document_id)
        return values


def _parse_birth_date(document_id: str, raw: str | None) -> date | None:
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    # Exporters serialize DATE columns as timestamps, e.g. "1985-04-12T04:00:00.000Z".
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        raise RecordError(document_id, f"birth date '{raw}' is not a valid ISO date")
