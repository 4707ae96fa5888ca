class ExchangeError(Exception):
    """Base class for failures raised while importing an affiliate bundle."""


class TransportError(ExchangeError):
    """Listing, fetching or relocating a file on the drop endpoint failed."""


class IntegrityError(ExchangeError):
    """The declared payload checksum does not match the received affiliates."""


class SchemaError(ExchangeError):
    """
    The bundle could not be decoded or failed structural validation.

    errors:
      Every problem found, in the order the validator reported them.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class RecordError(ExchangeError):
    """A single affiliate row was rejected; the rest of the batch continues."""

    def __init__(self, document_id: str | None, reason: str):
        super().__init__(f"Error upserting {document_id}: {reason}")
        self.document_id = document_id
        self.reason = reason


class TransactionError(ExchangeError):
    """The batch transaction failed as a whole and was rolled back."""
