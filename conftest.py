"""Shared pytest fixtures: fake S3 client and on-disk backup catalogs."""

import json
import stat
import threading
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, HTTPClientError, ReadTimeoutError

from config import StoreConfig, UploadConfig

REG_MODE = stat.S_IFREG | 0o600
DIR_MODE = stat.S_IFDIR | 0o700
LINK_MODE = stat.S_IFLNK | 0o777


def client_error(code, message=None, http_status=400, operation='PutObject', **extra):
    """Build a botocore ClientError like the ones S3 returns."""
    error = {'Code': code}
    if message:
        error['Message'] = message
    error.update(extra)
    return ClientError(
        {'Error': error, 'ResponseMetadata': {'HTTPStatusCode': http_status, 'RequestId': 'req-1'}},
        operation,
    )


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client.

    ``put_failures`` maps an object key to a list of exceptions raised on
    successive PUT attempts for that key; once exhausted, PUTs succeed.
    ``head_failures`` does the same for HeadBucket. Bodies are drained
    with bounded reads up to ``ContentLength``, and errors raised by the
    body come back wrapped in ``HTTPClientError``, like the HTTP layer does.
    """

    def __init__(self, put_failures=None, head_failures=None, chunk_size=4096,
                 read_before_failure=False):
        self.put_failures = {k: list(v) for k, v in (put_failures or {}).items()}
        self.head_failures = list(head_failures or [])
        self.chunk_size = chunk_size
        self.read_before_failure = read_before_failure
        self.objects = {}
        self.put_calls = []
        self.head_calls = 0
        self.endpoint_url = 'https://s3.example.test'
        self._lock = threading.Lock()

    def head_bucket(self, Bucket):
        with self._lock:
            self.head_calls += 1
            failure = self.head_failures.pop(0) if self.head_failures else None
        if failure is not None:
            raise failure
        return {'ResponseMetadata': {'HTTPStatusCode': 200}}

    def put_object(self, Bucket, Key, Body, ContentLength, ACL=None):
        with self._lock:
            self.put_calls.append(Key)
            failures = self.put_failures.get(Key)
            failure = failures.pop(0) if failures else None

        if failure is not None:
            if self.read_before_failure:
                Body.read(self.chunk_size)
            raise failure

        # The server reads exactly the announced length, and waits for
        # missing bytes until its read timeout.
        data = bytearray()
        while len(data) < ContentLength:
            try:
                chunk = Body.read(min(self.chunk_size, ContentLength - len(data)))
            except Exception as e:
                raise HTTPClientError(error=e) from e
            if not chunk:
                raise ReadTimeoutError(endpoint_url=self.endpoint_url)
            data.extend(chunk)

        with self._lock:
            self.objects[Key] = bytes(data)
        return {'ETag': f'"etag-{len(data)}"', 'ResponseMetadata': {'HTTPStatusCode': 200}}


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def store_config():
    return StoreConfig(
        access_key_id='AKIATEST',
        secret_access_key='secret-key-value',
        hostname='s3.example.test',
        bucket='backups',
    )


@pytest.fixture
def upload_config():
    return UploadConfig(threads=2, max_attempts=5, initial_backoff_seconds=1, backoff_step_seconds=1)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested intervals."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def make_backup(tmp_path):
    """Create a backup catalog on disk.

    ``files`` maps relative paths to bytes (regular file), or to the
    string 'dir' / 'link' for other entry types. Returns the backup dir.
    """
    def _make(files, backup_id='QJ4M2A', instance='main', external=None, control=None):
        backup_dir = tmp_path / 'catalog' / 'backups' / instance / backup_id
        database_dir = backup_dir / 'database'
        database_dir.mkdir(parents=True)

        records = []
        for rel_path, content in files.items():
            if content == 'dir':
                (database_dir / rel_path).mkdir(parents=True, exist_ok=True)
                records.append({'path': rel_path, 'size': '-1', 'mode': str(DIR_MODE),
                                'external_dir_num': '0'})
            elif content == 'link':
                records.append({'path': rel_path, 'size': '-1', 'mode': str(LINK_MODE),
                                'external_dir_num': '0'})
            else:
                target = database_dir / rel_path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
                records.append({'path': rel_path, 'size': str(len(content)), 'mode': str(REG_MODE),
                                'is_datafile': '0', 'crc': '0', 'external_dir_num': '0'})

        for (num, rel_path), content in (external or {}).items():
            target = backup_dir / 'external_directories' / f'externaldir{num}' / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            records.append({'path': rel_path, 'size': str(len(content)), 'mode': str(REG_MODE),
                            'external_dir_num': str(num)})

        with open(backup_dir / 'backup_content.control', 'w') as f:
            for record in records:
                f.write(json.dumps(record) + '\n')

        control_lines = control or ['#Configuration', 'backup-mode = FULL', '#Result backup info',
                                    "start-time = '2021-01-20 15:04:05+03'", 'status = OK']
        (backup_dir / 'backup.control').write_text('\n'.join(control_lines) + '\n')
        return Path(backup_dir)

    return _make
