"""Object store client: process-wide runtime, retry budget and S3 calls.

Every remote call goes through ``ObjectStoreClient._call_with_retry``, which
keeps its own ``RetryBudget``. Budgets are never shared between requests or
threads, so one slow file cannot use up the retries of another.
"""

import atexit
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import StoreConfig, UploadConfig
from s3_detach.errors import DetachError, TerminalStoreError, TransientStoreError

logger = logging.getLogger(__name__)

STATUS_OK = 'OK'

# Transient store responses and transport failures that are safe to retry.
RETRYABLE_STATUSES = frozenset({
    'RequestTimeout',
    'RequestTimeTooSkewed',
    'SlowDown',
    'InternalError',
    'ServiceUnavailable',
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    '500',
    '502',
    '503',
    '504',
    'EndpointConnectionError',
    'ConnectTimeoutError',
    'ReadTimeoutError',
    'ConnectionClosedError',
})


def is_retryable(status: str) -> bool:
    """Return True if a status is transient."""
    return status in RETRYABLE_STATUSES


@dataclass
class ErrorDetails:
    """Diagnostic payload returned by the store with an error status."""
    message: Optional[str] = None
    resource: Optional[str] = None
    further_details: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def format(self) -> str:
        lines = []
        if self.message:
            lines.append(f"  Message: {self.message}")
        if self.resource:
            lines.append(f"  Resource: {self.resource}")
        if self.further_details:
            lines.append(f"  Further Details: {self.further_details}")
        if self.extra:
            lines.append("  Extra Details:")
            for name, value in self.extra.items():
                lines.append(f"    {name}: {value}")
        return "\n".join(lines)


@dataclass
class UploadResult:
    """Outcome of one logical store request, after retries."""
    status: str
    http_status: Optional[int] = None
    attempts: int = 0
    etag: Optional[str] = None
    error: Optional[ErrorDetails] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_OK

    @property
    def retryable(self) -> bool:
        return is_retryable(self.status)

    def describe(self) -> str:
        """Human-readable error text for logs."""
        if self.error is None:
            return f"S3 error: {self.status}"
        details = self.error.format()
        return f"S3 error: {self.status}. {details}" if details else f"S3 error: {self.status}"

    def raise_for_status(self):
        """Raise the matching StoreError unless the request succeeded."""
        if self.success:
            return
        if self.retryable:
            raise TransientStoreError(self.describe(), self)
        raise TerminalStoreError(self.describe(), self)


def result_from_client_error(error: ClientError) -> UploadResult:
    """Capture status code and error details from a store error response."""
    response = error.response or {}
    err = dict(response.get('Error', {}))
    metadata = response.get('ResponseMetadata', {})
    status = str(err.pop('Code', None) or metadata.get('HTTPStatusCode') or 'Unknown')
    details = ErrorDetails(
        message=err.pop('Message', None),
        resource=err.pop('Resource', None),
        further_details=err.pop('FurtherDetails', None),
        extra={k: str(v) for k, v in err.items()},
    )
    if metadata.get('RequestId'):
        details.extra.setdefault('RequestId', metadata['RequestId'])
    return UploadResult(status=status, http_status=metadata.get('HTTPStatusCode'), error=details)


def result_from_transport_error(error: BotoCoreError) -> UploadResult:
    """Map a connection-level failure onto a status."""
    return UploadResult(
        status=type(error).__name__,
        error=ErrorDetails(message=str(error)),
    )


class RetryBudget:
    """Attempt counter and backoff interval for a single request.

    Backoff starts at ``initial_backoff`` and grows by ``step`` after every
    sleep, so intervals within one request strictly increase.
    """

    def __init__(self, max_attempts: int, initial_backoff: float = 1.0,
                 step: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.max_attempts = max_attempts
        self.remaining = max_attempts
        self.interval = initial_backoff
        self.step = step
        self.sleep = sleep
        self.intervals: List[float] = []

    @property
    def attempts(self) -> int:
        return self.max_attempts - self.remaining

    def record_attempt(self):
        self.remaining -= 1

    def should_retry(self) -> bool:
        """Sleep and return True if another attempt is allowed."""
        if self.remaining <= 0:
            return False
        self.sleep(self.interval)
        self.intervals.append(self.interval)
        self.interval += self.step
        return True


class S3Runtime:
    """Process-wide boto3 client shared by all upload workers."""

    def __init__(self, store_config: StoreConfig, upload_config: UploadConfig):
        boto_config = BotoConfig(
            region_name=store_config.region,
            signature_version='s3v4',
            connect_timeout=upload_config.connect_timeout,
            read_timeout=upload_config.read_timeout,
            max_pool_connections=max(10, upload_config.threads),
            # The retry budget is owned by ObjectStoreClient
            retries={'total_max_attempts': 1, 'mode': 'standard'},
            # The body is a one-shot stream, it must be read exactly once
            request_checksum_calculation='when_required',
            response_checksum_validation='when_required',
            s3={
                'addressing_style': store_config.addressing_style,
                'payload_signing_enabled': False,
            },
        )
        session = boto3.session.Session(
            aws_access_key_id=store_config.access_key_id,
            aws_secret_access_key=store_config.secret_access_key,
            region_name=store_config.region,
        )
        self.s3_client = session.client(
            's3',
            endpoint_url=store_config.endpoint_url,
            config=boto_config,
        )

    def close(self):
        self.s3_client.close()


_runtime: Optional[S3Runtime] = None
_runtime_lock = threading.Lock()
_atexit_registered = False


def initialize(store_config: StoreConfig, upload_config: Optional[UploadConfig] = None) -> S3Runtime:
    """Create the process-wide runtime once and register its teardown.

    Subsequent calls return the existing runtime.
    """
    global _runtime, _atexit_registered

    with _runtime_lock:
        if _runtime is not None:
            return _runtime

        try:
            _runtime = S3Runtime(store_config, upload_config or UploadConfig())
        except (BotoCoreError, ValueError) as e:
            raise DetachError(f"Failed to initialize S3 client: {e}") from e

        if not _atexit_registered:
            atexit.register(deinitialize)
            _atexit_registered = True

        logger.info(f"Initialized S3 client for {store_config.endpoint_url}")
        return _runtime


def deinitialize():
    """Release the process-wide runtime. Safe to call more than once."""
    global _runtime

    with _runtime_lock:
        if _runtime is None:
            return
        try:
            _runtime.close()
        finally:
            _runtime = None
        logger.debug("S3 client deinitialized")


def get_runtime() -> Optional[S3Runtime]:
    return _runtime


class ObjectStoreClient:
    """Stateless wrapper over bucket-exists and PUT with bounded retries."""

    def __init__(self, store_config: StoreConfig, upload_config: Optional[UploadConfig] = None,
                 s3_client=None, sleep: Callable[[float], None] = time.sleep):
        self.store_config = store_config
        self.upload_config = upload_config or UploadConfig()
        self.sleep = sleep

        if s3_client is None:
            s3_client = initialize(store_config, self.upload_config).s3_client
        self.s3_client = s3_client

    @property
    def bucket(self) -> str:
        return self.store_config.bucket

    def new_budget(self) -> RetryBudget:
        return RetryBudget(
            self.upload_config.max_attempts,
            self.upload_config.initial_backoff_seconds,
            self.upload_config.backoff_step_seconds,
            sleep=self.sleep,
        )

    def _call_with_retry(self, description: str, request: Callable[[], UploadResult]) -> UploadResult:
        """Run ``request`` until it succeeds, fails terminally or the budget runs out."""
        budget = self.new_budget()

        while True:
            result = request()
            budget.record_attempt()
            logger.debug(f"{description}: attempt {budget.attempts} status {result.status}")

            if result.success or not result.retryable:
                break
            if not budget.should_retry():
                logger.warning(f"{description}: retry budget exhausted after {budget.attempts} attempts")
                break
            logger.info(f"{description}: {result.status}, retrying in {budget.intervals[-1]}s")

        result.attempts = budget.attempts
        return result

    def test_bucket(self) -> UploadResult:
        """Check that the configured bucket is reachable."""
        logger.info(
            f"s3_test_bucket: begin: access_key_id {self.store_config.access_key_id} "
            f"secret_access_key {self.store_config.masked_secret} "
            f"hostname {self.store_config.hostname} bucket {self.bucket}"
        )

        def request():
            try:
                response = self.s3_client.head_bucket(Bucket=self.bucket)
            except ClientError as e:
                return result_from_client_error(e)
            except BotoCoreError as e:
                return result_from_transport_error(e)
            return UploadResult(
                status=STATUS_OK,
                http_status=response.get('ResponseMetadata', {}).get('HTTPStatusCode'),
            )

        result = self._call_with_retry(f"s3_test_bucket {self.bucket}", request)
        logger.info(f"s3_test_bucket: {self.bucket}. status {result.status}")

        if result.success:
            logger.info(f"s3_test_bucket succeed {self.bucket}")
        else:
            logger.error(result.describe())
        return result

    def bucket_exists(self) -> bool:
        return self.test_bucket().success

    def put_object(self, key: str, body_factory: Callable[[], object], expected_size: int) -> UploadResult:
        """PUT one object, pulling its body from a fresh stream on every attempt.

        ``body_factory`` must return a readable stream producing at most
        ``expected_size`` bytes. Local errors raised while opening or reading
        the body propagate to the caller, including ones the transport wrapped
        in a botocore exception; store errors become the result.
        """
        def request():
            body = body_factory()
            try:
                response = self.s3_client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body,
                    ContentLength=expected_size,
                    ACL='private',
                )
            except (ClientError, BotoCoreError) as e:
                # The HTTP layer wraps exceptions raised while reading the body
                local_error = getattr(body, 'error', None)
                if local_error is not None:
                    raise local_error from e
                if isinstance(e, ClientError):
                    return result_from_client_error(e)
                return result_from_transport_error(e)
            finally:
                close = getattr(body, 'close', None)
                if close is not None:
                    close()
            return UploadResult(
                status=STATUS_OK,
                http_status=response.get('ResponseMetadata', {}).get('HTTPStatusCode'),
                etag=response.get('ETag', '').strip('"') or None,
            )

        return self._call_with_retry(f"put_object {key}", request)
