import logging
from typing import Any

from affiliate_exchange.errors import IntegrityError
from affiliate_exchange.utils import md5_stringify_hash

logger = logging.getLogger(__name__)


def compute_affiliates_checksum(affiliates: list[Any]) -> str:
    """MD5 over the JSON.stringify form of the affiliates array, exactly as the producer computes it."""
    return md5_stringify_hash(affiliates)


def verify_bundle_checksum(payload: dict[str, Any], *, require_checksum: bool = False) -> bool:
    """
    Compare export_info.data_checksum with a fresh digest of payload["affiliates"].

    Returns True when the digest was verified, False when the bundle declares no
    digest and verification was skipped. Raises IntegrityError on mismatch, or when
    a digest is required but absent.
    """
    export_info = payload.get("export_info") or {}
    declared = export_info.get("data_checksum")

    if not declared:
        if require_checksum:
            raise IntegrityError("Bundle declares no data_checksum and checksums are required")
        logger.warning("Bundle declares no data_checksum; integrity verification skipped")
        return False

    calculated = compute_affiliates_checksum(payload.get("affiliates", []))
    if calculated.lower() != str(declared).lower():
        raise IntegrityError(
            f"Data checksum mismatch (declared {declared}, calculated {calculated}); "
            "file possibly corrupt or tampered with"
        )

    return True
