import logging
import signal
import threading
from logging.config import dictConfig

from affiliate_exchange.affiliate_store import AffiliateStore
from affiliate_exchange.audit import AuditRecorder
from affiliate_exchange.file_drop import LocalDirectoryFileDrop, TimeoutFileDrop
from affiliate_exchange.import_config import load_import_config
from affiliate_exchange.orchestrator import ExchangeOrchestrator
from affiliate_exchange.scratch import ScratchLayout
from core.settings import (
    AFFILIATE_STORE_PATH,
    DROP_ROOT_DIR,
    IMPORT_CONFIG_PATH,
    LOGGING_CONFIG,
    SCRATCH_DIR,
    ensure_runtime_directories,
)

ensure_runtime_directories()
dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)


def main():
    config = load_import_config(IMPORT_CONFIG_PATH)

    audit = AuditRecorder(
        duckdb_path=str(AFFILIATE_STORE_PATH),
        schema=config.store.audit_schema_name,
        batch_size=config.processing.batch_size,
    )
    audit.bootstrap()

    scratch = ScratchLayout(scratch_root=SCRATCH_DIR)
    scratch.cleanup_stale_scratch()

    stop_event = threading.Event()

    def request_stop(signum, _frame):
        logger.info("Received %s; finishing the current file before stopping.", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    with TimeoutFileDrop(
        LocalDirectoryFileDrop(DROP_ROOT_DIR),
        timeout_seconds=config.processing.remote_timeout_seconds,
    ) as drop:
        orchestrator = ExchangeOrchestrator(
            drop=drop,
            store=AffiliateStore(duckdb_path=str(AFFILIATE_STORE_PATH), schema=config.store.schema_name),
            audit=audit,
            scratch=scratch,
            config=config,
        )
        orchestrator.log_statistics()
        orchestrator.serve_forever(stop_event)

    logger.info("Affiliate importer shut down cleanly.")


if __name__ == "__main__":
    main()
