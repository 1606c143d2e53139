"""Upload orchestrator: pre-flight checks, worker pool and join.

``S3Detacher.run`` walks ``Unconfigured -> Validated -> Initialized ->
Uploading -> Joined``. Configuration and bucket failures abort before any
worker starts; per-file failures are counted and never stop the pool.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from tqdm import tqdm

from config import StoreConfig, UploadConfig
from s3_detach import client as store
from s3_detach.client import ObjectStoreClient
from s3_detach.errors import ConfigError, ConnectivityError
from s3_detach.file_list import BackupFileEntry, ClaimableFileList
from s3_detach.streaming import FileUploadResult, SourceLayout, StreamingUploader

logger = logging.getLogger(__name__)


class DetachState(Enum):
    UNCONFIGURED = 'unconfigured'
    VALIDATED = 'validated'
    INITIALIZED = 'initialized'
    UPLOADING = 'uploading'
    JOINED = 'joined'


@dataclass
class DetachResult:
    """Aggregate outcome of one detach run."""
    backup_id: str
    files: List[FileUploadResult] = field(default_factory=list)
    skipped: int = 0
    elapsed: float = 0.0

    @property
    def uploaded(self) -> int:
        return sum(1 for f in self.files if f.success)

    @property
    def failed(self) -> int:
        return sum(1 for f in self.files if not f.success)

    @property
    def failed_files(self) -> List[FileUploadResult]:
        return [f for f in self.files if not f.success]

    @property
    def bytes_sent(self) -> int:
        return sum(f.bytes_sent for f in self.files if f.success)

    @property
    def success(self) -> bool:
        return self.failed == 0


class S3Detacher:
    """Sends the regular files of one backup to the object store."""

    def __init__(self, store_config: StoreConfig, upload_config: Optional[UploadConfig] = None,
                 s3_client=None, sleep: Callable[[float], None] = time.sleep,
                 progress: bool = False):
        self.store_config = store_config
        self.upload_config = upload_config or UploadConfig()
        self.progress = progress
        self.state = DetachState.UNCONFIGURED
        self.client: Optional[ObjectStoreClient] = None

        self._s3_client = s3_client
        self._sleep = sleep
        self._results_lock = threading.Lock()

    def validate(self):
        """Refuse to continue unless every required store field is set."""
        missing = self.store_config.missing_fields()
        if missing:
            raise ConfigError(f"required S3 parameter not specified: {missing[0]}")
        self.state = DetachState.VALIDATED

    def initialize(self) -> ObjectStoreClient:
        """Bind to the process-wide client and verify the bucket is reachable."""
        if self.state is DetachState.UNCONFIGURED:
            self.validate()

        s3_client = self._s3_client
        if s3_client is None:
            s3_client = store.initialize(self.store_config, self.upload_config).s3_client

        self.client = ObjectStoreClient(
            self.store_config, self.upload_config, s3_client=s3_client, sleep=self._sleep
        )
        self.state = DetachState.INITIALIZED

        result = self.client.test_bucket()
        if not result.success:
            raise ConnectivityError(self.store_config.bucket, result)
        return self.client

    def run(self, backup_id: str, files: Union[ClaimableFileList, Iterable[BackupFileEntry]],
            layout: SourceLayout) -> DetachResult:
        """Upload every regular file and return once all workers have joined."""
        start_time = time.monotonic()

        self.validate()
        self.initialize()

        if not isinstance(files, ClaimableFileList):
            files = ClaimableFileList(list(files))
        files.reset_claims()

        uploader = StreamingUploader(self.client, backup_id, layout)
        result = DetachResult(backup_id=backup_id, skipped=len(files.skipped_files))

        regular_count = len(files.regular_files)
        logger.info(
            f"Detaching backup {backup_id}: {regular_count} files "
            f"({result.skipped} skipped) to bucket {self.store_config.bucket} "
            f"with {self.upload_config.threads} threads"
        )

        self.state = DetachState.UPLOADING
        with tqdm(total=regular_count, unit='file', desc='Uploading',
                  disable=not self.progress, leave=False) as pbar:
            threads = []
            for i in range(self.upload_config.threads):
                logger.info(f"Start thread {i + 1}")
                thread = threading.Thread(
                    target=self._worker,
                    args=(i + 1, files, uploader, result.files, pbar),
                    name=f"detach-{i + 1}",
                )
                thread.start()
                threads.append(thread)

            for thread in threads:
                thread.join()

        self.state = DetachState.JOINED
        result.elapsed = time.monotonic() - start_time

        logger.info(
            f"Detach of {backup_id} finished: {result.uploaded} uploaded, "
            f"{result.failed} failed, {result.skipped} skipped in {result.elapsed:.1f}s"
        )
        return result

    def _worker(self, worker_num: int, files: ClaimableFileList, uploader: StreamingUploader,
                results: List[FileUploadResult], pbar):
        count = 0
        for entry in files.iter_claims():
            try:
                file_result = uploader.upload(entry)
            except Exception as e:
                logger.exception(f"Unexpected error uploading {entry.rel_path}: {e}")
                file_result = FileUploadResult(
                    success=False,
                    rel_path=entry.rel_path,
                    size=entry.size or 0,
                    status=type(e).__name__,
                    error=str(e),
                )

            with self._results_lock:
                results.append(file_result)
                pbar.update(1)
            count += 1

        logger.debug(f"Thread {worker_num} finished after {count} files")
