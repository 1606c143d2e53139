"""Per-file streaming upload protocol.

A claimed file is resolved to its local source, given a deterministic object
key and sent as a pull-based body: the HTTP layer asks ``UploadBody.read`` for
bounded chunks and every chunk is checksummed and counted on the way out.
"""

import logging
import os
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from s3_detach.client import ObjectStoreClient, UploadResult
from s3_detach.errors import IntegrityError, LocalIOError, StoreError
from s3_detach.file_list import BackupFileEntry

logger = logging.getLogger(__name__)


def object_key(backup_id: str, rel_path: str) -> str:
    """Generate the S3 key for a backup file."""
    rel = rel_path.replace(os.sep, '/').lstrip('/')
    return f"{backup_id}/{rel}"


@dataclass(frozen=True)
class SourceLayout:
    """Where the files of one backup live on local disk."""
    database_dir: Path
    external_dir_root: Optional[Path] = None

    def resolve(self, entry: BackupFileEntry) -> Path:
        if not entry.external_dir_num:
            return Path(self.database_dir) / entry.rel_path
        if self.external_dir_root is None:
            raise LocalIOError(
                f"No external directory root for {entry.rel_path} "
                f"(externaldir{entry.external_dir_num})"
            )
        return Path(self.external_dir_root) / f"externaldir{entry.external_dir_num}" / entry.rel_path


class UploadBody:
    """One attempt's worth of upload state for a single file.

    Reads are capped at the bytes still expected, so a source that grew
    after its size was recorded is truncated to that size. A source that
    ends early raises ``IntegrityError`` from ``read``: the transport has
    already announced the full length and would otherwise wait for bytes
    that never come. The raised error is kept on ``error``, since the HTTP
    layer may wrap it in a transport exception.
    """

    def __init__(self, path: Path, entry: BackupFileEntry, expected_size: int):
        self.path = path
        self.entry = entry
        self.remaining = expected_size
        self.crc = 0
        self.error: Optional[LocalIOError] = None
        self._position = 0

        try:
            self._file = open(path, 'rb')
        except OSError as e:
            raise LocalIOError(f"Failed to open input file {path}: {e}", path) from e

        # Counts of the current attempt only
        entry.write_size = 0
        entry.crc = 0

    def read(self, size: Optional[int] = -1) -> bytes:
        if self.remaining <= 0:
            return b''

        to_read = self.remaining if size is None or size < 0 else min(size, self.remaining)
        try:
            chunk = self._file.read(to_read)
        except OSError as e:
            self.error = LocalIOError(f"Failed to read input file {self.path}: {e}", self.path)
            raise self.error from e

        self.crc = zlib.crc32(chunk, self.crc)
        self.remaining -= len(chunk)
        self._position += len(chunk)
        self.entry.write_size += len(chunk)

        if len(chunk) < to_read:
            self.error = IntegrityError(self.path, self.remaining)
            raise self.error
        return chunk

    def readable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def close(self):
        if not self._file.closed:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@dataclass
class FileUploadResult:
    """Result of uploading a single backup file."""
    success: bool
    rel_path: str
    s3_key: Optional[str] = None
    size: int = 0
    crc: int = 0
    bytes_sent: int = 0
    status: Optional[str] = None
    attempts: int = 0
    etag: Optional[str] = None
    error: Optional[str] = None
    upload_time: float = 0.0


class StreamingUploader:
    """Uploads claimed backup files for one backup."""

    def __init__(self, client: ObjectStoreClient, backup_id: str, layout: SourceLayout):
        self.client = client
        self.backup_id = backup_id
        self.layout = layout

    def upload(self, entry: BackupFileEntry) -> FileUploadResult:
        """Send one regular file. Failures are logged and returned, never raised."""
        start_time = time.monotonic()
        key = object_key(self.backup_id, entry.rel_path)

        try:
            result = self._send(entry, key)
        except StoreError as e:
            logger.error(f"put_object failed for {entry.rel_path}: {e}")
            return self._failure(entry, key, e, e.code, start_time, e.result)
        except LocalIOError as e:
            logger.error(f"{e} (rel_path {entry.rel_path})")
            return self._failure(entry, key, e, type(e).__name__, start_time)

        return FileUploadResult(
            success=True,
            rel_path=entry.rel_path,
            s3_key=key,
            size=entry.size,
            crc=entry.crc,
            bytes_sent=entry.write_size,
            status=result.status,
            attempts=result.attempts,
            etag=result.etag,
            upload_time=time.monotonic() - start_time,
        )

    def _failure(self, entry, key, error, status, start_time, result: Optional[UploadResult] = None):
        return FileUploadResult(
            success=False,
            rel_path=entry.rel_path,
            s3_key=key,
            size=entry.size or 0,
            crc=entry.crc,
            bytes_sent=entry.write_size,
            status=status,
            attempts=result.attempts if result is not None else 0,
            error=str(error),
            upload_time=time.monotonic() - start_time,
        )

    def _send(self, entry: BackupFileEntry, key: str) -> UploadResult:
        path = self.layout.resolve(entry)
        # Replaced by the checksum of the bytes actually sent
        entry.crc = 0

        if entry.size is None:
            try:
                entry.size = os.stat(path).st_size
            except OSError as e:
                raise LocalIOError(f"Failed to stat file {path}: {e}", path) from e

        logger.info(f"send file {path} rel_path {entry.rel_path}")

        bodies = []

        def open_body():
            body = UploadBody(path, entry, entry.size)
            bodies.append(body)
            return body

        try:
            result = self.client.put_object(key, open_body, entry.size)
        finally:
            # Last attempt's checksum, whatever the outcome
            if bodies:
                entry.crc = bodies[-1].crc

        logger.info(f"done put_object crc {entry.crc:08X} file {entry.rel_path} status {result.status}")
        result.raise_for_status()
        return result
