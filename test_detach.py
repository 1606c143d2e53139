"""Tests for the upload orchestrator."""

import os
import zlib
from collections import Counter

import pytest

from config import StoreConfig, UploadConfig
from conftest import DIR_MODE, FakeS3Client, client_error
from s3_detach.detach import DetachState, S3Detacher
from s3_detach.errors import ConfigError, ConnectivityError
from s3_detach.file_list import BackupFileEntry, ClaimableFileList
from s3_detach.streaming import SourceLayout


def _build(tmp_path, contents):
    database_dir = tmp_path / 'database'
    entries = []
    for rel_path, data in contents.items():
        if data is None:
            (database_dir / rel_path).mkdir(parents=True, exist_ok=True)
            entries.append(BackupFileEntry(rel_path, size=None, mode=DIR_MODE))
            continue
        path = database_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        entries.append(BackupFileEntry(rel_path, size=len(data)))
    return ClaimableFileList(entries), SourceLayout(database_dir, tmp_path / 'external_directories')


def test_uploads_every_regular_file_once(tmp_path, store_config, no_sleep):
    contents = {
        'PG_VERSION': b'',
        'base/1/100': os.urandom(100),
        'base/1/big': os.urandom(100000),
        'base/1': None,
    }
    files, layout = _build(tmp_path, contents)
    fake = FakeS3Client()
    detacher = S3Detacher(store_config, UploadConfig(threads=2), s3_client=fake, sleep=no_sleep)

    result = detacher.run('QJ4M2A', files, layout)

    assert detacher.state is DetachState.JOINED
    assert result.uploaded == 3
    assert result.failed == 0
    assert result.skipped == 1
    assert sorted(fake.objects) == ['QJ4M2A/PG_VERSION', 'QJ4M2A/base/1/100', 'QJ4M2A/base/1/big']
    for rel_path in ('PG_VERSION', 'base/1/100', 'base/1/big'):
        assert fake.objects[f'QJ4M2A/{rel_path}'] == contents[rel_path]

    directory = [f for f in files if f.rel_path == 'base/1'][0]
    assert directory.claim_count == 0
    assert all(f.claim_count == 1 for f in files.regular_files)
    assert {f.rel_path: f.crc for f in result.files} == {
        rel_path: zlib.crc32(contents[rel_path]) for rel_path in ('PG_VERSION', 'base/1/100', 'base/1/big')
    }


def test_many_files_many_threads(tmp_path, store_config, no_sleep):
    contents = {f'base/1/{i}': os.urandom(i % 7 * 100) for i in range(200)}
    files, layout = _build(tmp_path, contents)
    fake = FakeS3Client(chunk_size=128)

    result = S3Detacher(store_config, UploadConfig(threads=6), s3_client=fake, sleep=no_sleep).run(
        'QJ4M2A', files, layout
    )

    assert result.uploaded == 200
    assert max(Counter(fake.put_calls).values()) == 1
    assert all(f.claim_count == 1 for f in files)


def test_bucket_failure_aborts_before_any_upload(tmp_path, store_config, no_sleep):
    files, layout = _build(tmp_path, {'base/1/1': b'data'})
    fake = FakeS3Client(head_failures=[client_error('AccessDenied', 'Access Denied', 403, 'HeadBucket')])
    detacher = S3Detacher(store_config, UploadConfig(threads=2), s3_client=fake, sleep=no_sleep)

    with pytest.raises(ConnectivityError) as exc_info:
        detacher.run('QJ4M2A', files, layout)

    assert exc_info.value.result.status == 'AccessDenied'
    assert fake.put_calls == []
    assert detacher.state is DetachState.INITIALIZED
    assert not files[0].claimed


def test_missing_configuration_fails_before_network(tmp_path, no_sleep):
    files, layout = _build(tmp_path, {'base/1/1': b'data'})
    fake = FakeS3Client()
    config = StoreConfig(access_key_id='AKIATEST', secret_access_key='secret', hostname='', bucket='b')
    detacher = S3Detacher(config, s3_client=fake, sleep=no_sleep)

    with pytest.raises(ConfigError, match='s3_hostname'):
        detacher.run('QJ4M2A', files, layout)

    assert fake.head_calls == 0
    assert detacher.state is DetachState.UNCONFIGURED


def test_file_failures_do_not_stop_other_files(tmp_path, store_config, no_sleep):
    contents = {'base/1/a': b'a' * 10, 'base/1/b': b'b' * 10, 'base/1/c': b'c' * 10}
    files, layout = _build(tmp_path, contents)
    files.regular_files[2].size = 500  # recorded larger than the source
    os.remove(layout.database_dir / 'base/1/b')
    fake = FakeS3Client(put_failures={'QJ4M2A/base/1/a': [client_error('AccessDenied', http_status=403)]})

    result = S3Detacher(store_config, UploadConfig(threads=3), s3_client=fake, sleep=no_sleep).run(
        'QJ4M2A', files, layout
    )

    assert result.uploaded == 0
    assert result.failed == 3
    assert not result.success
    assert {f.rel_path: f.status for f in result.failed_files} == {
        'base/1/a': 'AccessDenied',
        'base/1/b': 'LocalIOError',
        'base/1/c': 'IntegrityError',
    }


def test_unexpected_worker_errors_are_counted(tmp_path, store_config, no_sleep, monkeypatch):
    files, layout = _build(tmp_path, {'base/1/a': b'a', 'base/1/b': b'b'})
    fake = FakeS3Client()

    real_put = fake.put_object

    def put_object(**kwargs):
        if kwargs['Key'].endswith('/a'):
            raise RuntimeError('boom')
        return real_put(**kwargs)

    monkeypatch.setattr(fake, 'put_object', put_object)

    result = S3Detacher(store_config, UploadConfig(threads=1), s3_client=fake, sleep=no_sleep).run(
        'QJ4M2A', files, layout
    )

    assert result.uploaded == 1
    assert result.failed == 1
    assert result.failed_files[0].status == 'RuntimeError'


def test_run_accepts_plain_entry_list_and_resets_claims(tmp_path, store_config, no_sleep):
    files, layout = _build(tmp_path, {'base/1/a': b'a'})
    entries = list(files)
    entries[0].try_claim()  # left over from an earlier pass

    result = S3Detacher(store_config, UploadConfig(threads=1), s3_client=FakeS3Client(), sleep=no_sleep).run(
        'QJ4M2A', entries, layout
    )

    assert result.uploaded == 1
    assert result.bytes_sent == 1


def test_same_backup_twice_produces_same_keys(tmp_path, store_config, no_sleep):
    files, layout = _build(tmp_path, {'base/1/a': b'a', 'global/pg_control': b'c'})
    detacher = S3Detacher(store_config, UploadConfig(threads=2), s3_client=FakeS3Client(), sleep=no_sleep)

    first = detacher.run('QJ4M2A', files, layout)
    second = detacher.run('QJ4M2A', files, layout)

    assert sorted(f.s3_key for f in first.files) == sorted(f.s3_key for f in second.files)
