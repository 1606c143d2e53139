"""S3 detach engine.

Uploads the regular files of a materialized backup to an S3-compatible
object store with a pool of worker threads and bounded retries.
"""

from .client import ObjectStoreClient, RetryBudget, UploadResult, ErrorDetails
from .detach import S3Detacher, DetachResult, DetachState
from .errors import (
    DetachError,
    ConfigError,
    CatalogError,
    ConnectivityError,
    StoreError,
    TransientStoreError,
    TerminalStoreError,
    LocalIOError,
    IntegrityError,
)
from .file_list import BackupFileEntry, ClaimableFileList
from .streaming import FileUploadResult, SourceLayout, StreamingUploader, UploadBody, object_key

__version__ = '1.0.0'
__all__ = [
    'ObjectStoreClient',
    'RetryBudget',
    'UploadResult',
    'ErrorDetails',
    'S3Detacher',
    'DetachResult',
    'DetachState',
    'DetachError',
    'ConfigError',
    'CatalogError',
    'ConnectivityError',
    'StoreError',
    'TransientStoreError',
    'TerminalStoreError',
    'LocalIOError',
    'IntegrityError',
    'BackupFileEntry',
    'ClaimableFileList',
    'FileUploadResult',
    'SourceLayout',
    'StreamingUploader',
    'UploadBody',
    'object_key',
]
