# src/sluice_core/errors.py

import logging
import re

logger = logging.getLogger(__name__)

_SECRET_PATTERNS = [
    re.compile(r"(password\s*=\s*)([^\s;]+)", re.IGNORECASE),
    re.compile(r"(pwd\s*=\s*)([^\s;]+)", re.IGNORECASE),
    re.compile(r"(://[^:/@\s]+:)([^@\s]+)(@)"),
]


def sanitize_message(message: str) -> str:
    """Strip credentials from driver error messages before they are stored or shown."""
    text = str(message)
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 3:
            text = pattern.sub(r"\1***\3", text)
        else:
            text = pattern.sub(r"\1***", text)
    return text.strip()


class SyncError(Exception):
    """Base class for all sync failures."""
    pass


class ConfigurationError(SyncError):
    """Dataset is missing a column its strategy needs. Raised before extraction."""
    pass


class ConnectionError(SyncError):
    """Raised when a connector fails to connect to its source/destination."""

    def __init__(self, message: str, suggestions=None):
        self.suggestions = list(suggestions or [])
        message = sanitize_message(message)
        if self.suggestions:
            suggestion_str = "\n".join(f"  - {s}" for s in self.suggestions)
            message = f"{message}\n\nSuggestions:\n{suggestion_str}"
        super().__init__(message)


class ExtractionError(SyncError):
    """Cursor failed mid-stream. Rows already flushed stay in the target."""

    def __init__(self, message: str):
        super().__init__(sanitize_message(message))


class LoadError(SyncError):
    """Target insert or mutation failed."""

    def __init__(self, message: str):
        super().__init__(sanitize_message(message))


class LockContentionError(SyncError):
    """Another worker holds the dataset lock."""

    def __init__(self, dataset_id, holder=None):
        self.dataset_id = dataset_id
        self.holder = holder
        super().__init__(f"Dataset {dataset_id} is locked by {holder or 'another worker'}")


class CancelledError(SyncError):
    """Cooperative cancellation was observed at a batch boundary."""

    def __init__(self, job_id, rows_processed: int = 0):
        self.job_id = job_id
        self.rows_processed = rows_processed
        super().__init__(f"Job {job_id} cancelled after {rows_processed} rows")


class DuplicateJobError(SyncError):
    """A pending or running job already exists for the dataset."""

    def __init__(self, dataset_id, existing_job_id=None):
        self.dataset_id = dataset_id
        self.existing_job_id = existing_job_id
        super().__init__(f"Dataset {dataset_id} already has an active job ({existing_job_id})")


class JobStateError(SyncError):
    """Illegal job state transition."""
    pass


class NotFoundError(SyncError):
    pass
