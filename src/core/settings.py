import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "affiliate_exchange"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DATA_DIR = PROJECT_ROOT_DIR / "data"

AFFILIATE_STORE_PATH = Path(os.getenv("AFFILIATE_STORE_PATH", str(DATA_DIR / "affiliates.duckdb")))
DROP_ROOT_DIR = Path(os.getenv("AFFILIATE_DROP_ROOT", str(PROJECT_ROOT_DIR / "drop")))
SCRATCH_DIR = Path(os.getenv("AFFILIATE_SCRATCH_DIR", str(DATA_DIR / "scratch")))
IMPORT_CONFIG_PATH = Path(os.getenv("AFFILIATE_IMPORT_CONFIG", str(PROJECT_ROOT_DIR / "configs" / "import.yaml")))
LOG_FOLDER = PROJECT_ROOT_DIR / "logs"


def ensure_runtime_directories() -> None:
    os.makedirs(LOG_FOLDER, exist_ok=True)
    os.makedirs(AFFILIATE_STORE_PATH.parent, exist_ok=True)
    os.makedirs(SCRATCH_DIR, exist_ok=True)


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "importer.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
        "duckdb": {
            "level": "WARNING",
        },
    }

}
