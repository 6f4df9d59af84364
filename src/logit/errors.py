"""Exception hierarchy. Each error carries a stable code for CLI output."""


class LogitError(Exception):
    """Base error for logit operations."""

    default_code = "logit_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ConfigError(LogitError):
    default_code = "config_invalid"


class ArtifactError(LogitError):
    default_code = "artifact_write_failed"


class StoreError(LogitError):
    default_code = "ingest_sqlite_failure"


class BatchWriteError(StoreError):
    """A batch failed; ``records_written`` counts the batches committed before it."""

    def __init__(self, message: str, records_written: int, code: str | None = None):
        super().__init__(message, code)
        self.records_written = records_written


class IngestError(LogitError):
    """A run failed after its lifecycle row was created."""

    default_code = "ingest_refresh_failed"

    def __init__(self, message: str, code: str | None = None,
                 ingest_run_id: str | None = None, stage: str | None = None):
        super().__init__(message, code)
        self.ingest_run_id = ingest_run_id
        self.stage = stage
