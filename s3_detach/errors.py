"""Error taxonomy for the S3 detach engine."""


class DetachError(Exception):
    """Base class for detach errors."""
    pass


class ConfigError(DetachError):
    """Required store configuration is missing or invalid."""
    pass


class CatalogError(DetachError):
    """Backup or its file list cannot be found in the catalog."""
    pass


class ConnectivityError(DetachError):
    """Bucket is not reachable after exhausting the retry budget."""

    def __init__(self, bucket, result=None):
        status = result.status if result is not None else 'unknown'
        super().__init__(f"s3_bucket {bucket} test is failed (status {status})")
        self.bucket = bucket
        self.result = result


class StoreError(DetachError):
    """Store returned a non-OK status for a request."""

    def __init__(self, message, result=None):
        super().__init__(message)
        self.message = message
        self.result = result

    @property
    def code(self):
        return self.result.status if self.result is not None else 'InternalError'


class TransientStoreError(StoreError):
    """Retryable store status still present after the retry budget ran out."""
    pass


class TerminalStoreError(StoreError):
    """Non-retryable store status."""
    pass


class LocalIOError(DetachError):
    """Local source file is missing or unreadable."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.message = message
        self.path = path


class IntegrityError(LocalIOError):
    """Local source ended before its recorded size was transmitted."""

    def __init__(self, path, remaining):
        super().__init__(
            f"Failed to read remaining {remaining} bytes from input {path}", path
        )
        self.remaining = remaining
