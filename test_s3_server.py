"""Uploads through a real boto3 client against an in-process S3 server."""

import os
import time
import zlib
from types import SimpleNamespace

import pytest
from moto.server import ThreadedMotoServer

from config import StoreConfig, UploadConfig
from conftest import DIR_MODE
from s3_detach.client import ObjectStoreClient, S3Runtime
from s3_detach.detach import S3Detacher
from s3_detach.file_list import BackupFileEntry, ClaimableFileList
from s3_detach.streaming import SourceLayout, StreamingUploader

BUCKET = 'backups'


@pytest.fixture(scope='module')
def s3_server():
    server = ThreadedMotoServer(ip_address='127.0.0.1', port=0, verbose=False)
    server.start()
    host, port = server.get_host_and_port()
    yield f'{host}:{port}'
    server.stop()


@pytest.fixture
def s3_env(s3_server):
    store_config = StoreConfig(
        access_key_id='testing',
        secret_access_key='testing',
        hostname=s3_server,
        bucket=BUCKET,
        protocol='http',
        force_path_style=True,
    )
    upload_config = UploadConfig(threads=2, max_attempts=2, initial_backoff_seconds=0,
                                 backoff_step_seconds=0.01, read_timeout=5)
    runtime = S3Runtime(store_config, upload_config)
    runtime.s3_client.create_bucket(Bucket=BUCKET)
    yield SimpleNamespace(store_config=store_config, upload_config=upload_config, s3_client=runtime.s3_client)
    runtime.close()


def _object(s3_env, key):
    return s3_env.s3_client.get_object(Bucket=BUCKET, Key=key)['Body'].read()


def test_detach_uploads_files_byte_exact(tmp_path, s3_env):
    contents = {'PG_VERSION': b'', 'base/1/100': os.urandom(100), 'base/1/big': os.urandom(100000)}
    database_dir = tmp_path / 'database'
    entries = []
    for rel_path, data in contents.items():
        path = database_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        entries.append(BackupFileEntry(rel_path, size=len(data)))
    entries.append(BackupFileEntry('base/1', mode=DIR_MODE))

    result = S3Detacher(s3_env.store_config, s3_env.upload_config, s3_client=s3_env.s3_client).run(
        'QJ4M2A', ClaimableFileList(entries), SourceLayout(database_dir)
    )

    assert (result.uploaded, result.failed, result.skipped) == (3, 0, 1)
    for rel_path, data in contents.items():
        assert _object(s3_env, f'QJ4M2A/{rel_path}') == data
    assert {f.rel_path: f.crc for f in result.files} == {
        rel_path: zlib.crc32(data) for rel_path, data in contents.items()
    }


def test_short_source_fails_fast_without_retry(tmp_path, s3_env):
    database_dir = tmp_path / 'database'
    database_dir.mkdir()
    (database_dir / 'base_1_1').write_bytes(b'z' * 50)
    slept = []
    client = ObjectStoreClient(s3_env.store_config, s3_env.upload_config,
                               s3_client=s3_env.s3_client, sleep=slept.append)
    entry = BackupFileEntry('base_1_1', size=100)

    start = time.monotonic()
    result = StreamingUploader(client, 'QJ4M2B', SourceLayout(database_dir)).upload(entry)

    assert time.monotonic() - start < s3_env.upload_config.read_timeout
    assert result.status == 'IntegrityError'
    assert 'remaining 50 bytes' in result.error
    assert slept == []
    assert entry.crc == zlib.crc32(b'z' * 50)
