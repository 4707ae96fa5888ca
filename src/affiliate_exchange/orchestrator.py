from __future__ import annotations

import fnmatch
import logging
import threading
import time
import uuid
from datetime import date
from pathlib import Path

import duckdb

from affiliate_exchange.affiliate_store import AffiliateStore
from affiliate_exchange.audit import AuditRecorder, derive_status, summarize_errors
from affiliate_exchange.bundle_schema import ExportBundleV1, decode_bundle, validate_bundle
from affiliate_exchange.domain import CycleReport, CycleState, FileHandle, FileOutcome, TargetAffiliateRow, UpsertResult
from affiliate_exchange.errors import IntegrityError, SchemaError, TransactionError, TransportError
from affiliate_exchange.file_drop import FileDrop, join_remote
from affiliate_exchange.import_config import ImportConfig
from affiliate_exchange.integrity import verify_bundle_checksum
from affiliate_exchange.scratch import ScratchLayout
from affiliate_exchange.transform import to_target_row
from affiliate_exchange.upsert_engine import UpsertEngine
from affiliate_exchange.utils import parse_snapshot_date_from_filename, sha256_bytes_hash, utc_now_naive


class ExchangeOrchestrator:
    """
    Coordinates: list -> fetch -> validate -> upsert -> audit -> relocate.

    The inbound directory is the queue: a file still there is eligible, a file
    moved out of it is never listed again. The store's consumed_files table is
    the checkpoint that keeps a committed file from being ingested twice when
    its relocation failed.

    One cycle processes every candidate sequentially. A second cycle requested
    while one is running is refused.
    """

    def __init__(
        self,
        *,
        drop: FileDrop,
        store: AffiliateStore,
        audit: AuditRecorder,
        scratch: ScratchLayout,
        config: ImportConfig,
        engine: UpsertEngine | None = None,
        logger: logging.Logger | None = None,
    ):
        self.drop = drop
        self.store = store
        self.audit = audit
        self.scratch = scratch
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.engine = engine or UpsertEngine(progress_every=config.processing.batch_size, logger=self.logger)

        self.state: CycleState = "IDLE"
        self._busy = threading.Lock()

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    # ----------------------------
    # Control loop
    # ----------------------------
    def serve_forever(self, stop_event: threading.Event) -> None:
        processing = self.config.processing
        self.logger.info(
            "Watching %s for affiliate bundles every %ss",
            self.config.source.inbound_dir,
            processing.poll_interval_seconds,
        )

        last_heartbeat = last_stats = time.monotonic()
        while not stop_event.is_set():
            try:
                self.run_cycle(stop_event)
            except Exception:
                self.logger.exception("Import cycle failed; retrying on the next cycle")

            now = time.monotonic()
            if now - last_heartbeat >= processing.heartbeat_interval_seconds:
                self.logger.info("Importer alive; state=%s", self.state)
                last_heartbeat = now
            if now - last_stats >= processing.stats_interval_seconds:
                self.log_statistics()
                last_stats = now

            stop_event.wait(processing.poll_interval_seconds)

        self.logger.info("Import loop stopped.")

    def run_cycle(self, stop_event: threading.Event | None = None) -> CycleReport | None:
        """Run one cycle. Returns None without doing anything when a cycle is already running."""
        if not self._busy.acquire(blocking=False):
            self.logger.warning("Previous import cycle still running; skipping this tick")
            return None
        try:
            return self._run_cycle(stop_event)
        finally:
            self.state = "IDLE"
            self._busy.release()

    def _run_cycle(self, stop_event: threading.Event | None) -> CycleReport:
        run_id = f"run_{utc_now_naive():%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:6]}"
        report = CycleReport(run_id=run_id, started_at_utc=utc_now_naive())

        self.state = "LISTING"
        try:
            candidates = self._discover_files()
        except TransportError as e:
            self.logger.error("Listing %s failed, retrying next cycle: %s", self.config.source.inbound_dir, e)
            report.listing_error = str(e)
            return report

        report.files_listed = len(candidates)
        if not candidates:
            self.logger.info("No new affiliate bundles to process.")
            return report

        self.logger.info("Discovery found %s bundles to process.", len(candidates))
        try:
            for position, handle in enumerate(candidates):
                if stop_event is not None and stop_event.is_set():
                    self.logger.info("Stop requested; leaving %s files for the next run.", len(candidates) - position)
                    break
                report.outcomes.append(self.process_file(handle, run_id=run_id))
        finally:
            self.scratch.prune_run_dir(run_id)

        self.logger.info("Import cycle %s complete: %s files processed.", run_id, len(report.outcomes))
        return report

    # ----------------------------
    # One file
    # ----------------------------
    def process_file(self, handle: FileHandle, *, run_id: str) -> FileOutcome:
        started = time.monotonic()
        scratch_path = self.scratch.get_scratch_path_for(handle.name, claim_token=run_id)
        content_digest: str | None = None
        processed = 0

        self.logger.info("Processing bundle %s (%s bytes)", handle.name, handle.size_bytes)
        try:
            self.state = "FETCHING"
            try:
                raw = self.drop.fetch(handle.remote_path)
            except TransportError as e:
                # File stays in the inbound directory and is retried next cycle.
                self.state = "ERRORED"
                self.logger.error("Fetching %s failed, will retry next cycle: %s", handle.name, e)
                self._record_failure(handle, None, processed, 0, started, str(e))
                return FileOutcome(filename=handle.name, status="ERROR", error=str(e))

            content_digest = sha256_bytes_hash(raw)
            try:
                self.scratch.write_scratch_copy(scratch_path, raw)
            except OSError as e:
                # Local disk fault, not a bundle fault: leave the file for the next cycle.
                self.state = "ERRORED"
                self.logger.error("Writing scratch copy of %s failed, will retry next cycle: %s", handle.name, e)
                self._record_failure(handle, content_digest, processed, 0, started, f"Scratch write failed: {e}")
                return FileOutcome(filename=handle.name, status="ERROR", content_digest=content_digest, error=str(e))

            try:
                self.state = "VALIDATING"
                bundle = self._validate(scratch_path)
                rows = [to_target_row(affiliate) for affiliate in bundle.affiliates]
                processed = len(rows)

                self.state = "UPSERTING"
                result = self._upsert(handle, rows, bundle, content_digest)
            except duckdb.Error as e:
                # Store unreachable before any row was written: leave the file for the next cycle.
                self.state = "ERRORED"
                self.logger.error("Target store unavailable while processing %s: %s", handle.name, e)
                self._record_failure(handle, content_digest, processed, 0, started, f"Store unavailable: {e}")
                return FileOutcome(filename=handle.name, status="ERROR", processed=processed, content_digest=content_digest, error=str(e))
            except (SchemaError, IntegrityError, TransactionError) as e:
                self.state = "ERRORED"
                failed = processed if isinstance(e, TransactionError) else 0
                self.logger.error("Rejected bundle %s: %s", handle.name, e)
                summary = self._summarize(e.errors) if isinstance(e, SchemaError) and e.errors else str(e)
                self._record_failure(handle, content_digest, processed, failed, started, summary)
                relocated = self._relocate(handle, error=True)
                return FileOutcome(
                    filename=handle.name,
                    status="ERROR",
                    processed=processed,
                    failed=failed,
                    content_digest=content_digest,
                    relocated=relocated,
                    error=str(e),
                )
            except Exception as e:
                self.state = "ERRORED"
                self.logger.exception("Unexpected failure processing %s", handle.name)
                self._record_failure(handle, content_digest, processed, 0, started, f"Unexpected error: {e}")
                relocated = self._relocate(handle, error=True)
                return FileOutcome(
                    filename=handle.name,
                    status="ERROR",
                    processed=processed,
                    content_digest=content_digest,
                    relocated=relocated,
                    error=str(e),
                )

            if result is None:
                self.logger.warning("%s (sha256 %s) was already consumed; retrying relocation only", handle.name, content_digest)
                self.state = "RELOCATING"
                relocated = self._relocate(handle, error=False)
                return FileOutcome(filename=handle.name, status="SKIPPED", processed=processed, content_digest=content_digest, relocated=relocated)

            status = derive_status(parsed=True, success=result.success_count, failed=result.failed_count)
            elapsed = time.monotonic() - started

            self.audit.record(
                handle.name,
                content_digest,
                processed,
                result.success_count,
                result.failed_count,
                elapsed,
                status,
                self._summarize(result.errors),
            )
            if self.config.processing.record_affiliate_actions:
                self.audit.record_affiliate_actions(result.mutations, source_file=handle.name)

            self.state = "RELOCATING"
            relocated = self._relocate(handle, error=(status == "ERROR"))

            self.logger.info(
                "Bundle %s processed: %s/%s records in %.3fs (%s)",
                handle.name,
                result.success_count,
                processed,
                elapsed,
                status,
            )
            return FileOutcome(
                filename=handle.name,
                status=status,
                processed=processed,
                success=result.success_count,
                failed=result.failed_count,
                content_digest=content_digest,
                relocated=relocated,
                error=self._summarize(result.errors),
            )
        finally:
            self.scratch.delete_scratch_copy(scratch_path)

    def _validate(self, scratch_path: Path) -> ExportBundleV1:
        processing = self.config.processing
        payload = decode_bundle(scratch_path.read_bytes())

        validation = validate_bundle(payload, processing.supported_schema_versions)
        if not validation.valid or validation.bundle is None:
            raise SchemaError(f"Schema validation failed with {len(validation.errors)} errors", validation.errors)

        verify_bundle_checksum(payload, require_checksum=processing.require_checksum)

        bundle = validation.bundle
        self.logger.info(
            "Valid bundle: %s affiliates from %s, schema v%s",
            len(bundle.affiliates),
            bundle.export_info.source_system,
            bundle.export_info.schema_version,
        )
        return bundle

    def _upsert(self, handle: FileHandle, rows: list[TargetAffiliateRow], bundle: ExportBundleV1, content_digest: str) -> UpsertResult | None:
        """Returns None when this exact file was already committed."""
        with self.store as store:
            if store.is_consumed(handle.name, content_digest):
                return None
            return self.engine.apply(
                store,
                rows,
                source_system=bundle.export_info.source_system,
                source_file=handle.name,
                content_digest=content_digest,
            )

    def _record_failure(
        self,
        handle: FileHandle,
        content_digest: str | None,
        processed: int,
        failed: int,
        started: float,
        error_summary: str,
    ) -> None:
        self.audit.record(
            handle.name,
            content_digest,
            processed,
            0,
            failed,
            time.monotonic() - started,
            derive_status(parsed=False, success=0, failed=failed),
            self._truncate(error_summary),
        )

    def _summarize(self, errors: list[str]) -> str | None:
        processing = self.config.processing
        return summarize_errors(
            errors,
            max_items=processing.error_summary_max_items,
            max_chars=processing.error_summary_max_chars,
        )

    def _truncate(self, message: str) -> str:
        max_chars = self.config.processing.error_summary_max_chars
        return message if len(message) <= max_chars else message[: max_chars - 3] + "..."

    def _relocate(self, handle: FileHandle, *, error: bool) -> bool:
        source = self.config.source
        target_dir = source.terminal_dir_for_errors if error else source.processed_dir
        try:
            self.drop.ensure_directory(target_dir)
            final_path = self.drop.move(handle.remote_path, join_remote(target_dir, handle.name))
        except TransportError as e:
            self.logger.error("Failed to relocate %s to %s; committed changes are kept: %s", handle.name, target_dir, e)
            return False

        self.logger.info("Relocated %s to %s", handle.name, final_path)
        return True

    # ----------------------------
    # Discovery / statistics
    # ----------------------------
    def _discover_files(self) -> list[FileHandle]:
        source = self.config.source
        discovered: list[FileHandle] = []

        for entry in self.drop.list_files(source.inbound_dir):
            if not entry.is_file:
                continue
            if not fnmatch.fnmatchcase(entry.name, source.filename_glob):
                continue

            snapshot_date: date | None = None
            if source.filename_date_regex:
                snapshot_date = parse_snapshot_date_from_filename(
                    entry.name, source.filename_date_regex, source.filename_date_format
                )
                if snapshot_date is None:
                    self.logger.warning("Skipping %s: name does not carry a valid date stamp", entry.name)
                    continue

            discovered.append(
                FileHandle(
                    name=entry.name,
                    remote_path=join_remote(source.inbound_dir, entry.name),
                    size_bytes=entry.size_bytes,
                    modified_at_utc=entry.modified_at_utc,
                    snapshot_date=snapshot_date,
                )
            )

        discovered.sort(key=lambda h: (h.snapshot_date or date.min, h.name))
        return discovered

    def log_statistics(self) -> None:
        try:
            with self.store as store:
                stats = store.affiliate_stats()
            imports = self.audit.import_stats(days=1)
        except duckdb.Error:
            self.logger.exception("Could not collect import statistics")
            return

        self.logger.info(
            "Statistics: %s affiliates (%s active, %s plans), %s payment obligations; %s imports in the last 24h",
            stats["total_affiliates"],
            stats["active_affiliates"],
            stats["unique_plans"],
            stats["payment_obligations"],
            imports.get("total_imports", 0),
        )
