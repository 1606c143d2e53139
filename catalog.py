"""Backup catalog reader.

Locates a materialized backup on disk and loads its file list:

    <backup_path>/backups/<instance>/<BACKUP_ID>/
        backup.control           key = value metadata
        backup_content.control   one JSON object per file
        database/                main data directory
        external_directories/    externaldir<N>/ per external directory
"""

import json
import logging
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from s3_detach.errors import CatalogError
from s3_detach.file_list import BackupFileEntry, sort_key
from s3_detach.streaming import SourceLayout

logger = logging.getLogger(__name__)

BACKUP_CONTROL_FILE = 'backup.control'
BACKUP_CONTENT_FILE = 'backup_content.control'
DATABASE_DIR = 'database'
EXTERNAL_DIR = 'external_directories'

_BASE36_DIGITS = string.digits + string.ascii_uppercase


def base36enc(value: int) -> str:
    """Encode a backup start time as its textual backup id."""
    if value < 0:
        raise ValueError(f"Cannot encode negative value: {value}")
    if value == 0:
        return '0'

    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return ''.join(reversed(digits))


def base36dec(text: str) -> int:
    """Decode a textual backup id back to its start time."""
    return int(text, 36)


def parse_control_file(path: Path) -> Dict[str, str]:
    """Parse a ``key = value`` control file, ignoring comments."""
    values = {}
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            values[key.strip()] = value.strip().strip("'")
    return values


def _int_field(record: dict, name: str, default=None):
    value = record.get(name)
    if value is None or value == '':
        return default
    return int(value)


def parse_file_record(record: dict) -> BackupFileEntry:
    """Build a file entry from one ``backup_content.control`` record."""
    size = _int_field(record, 'size')
    return BackupFileEntry(
        rel_path=record['path'],
        size=None if size is None or size < 0 else size,
        mode=_int_field(record, 'mode', 0),
        external_dir_num=_int_field(record, 'external_dir_num', 0),
        is_datafile=bool(_int_field(record, 'is_datafile', 0)),
        crc=_int_field(record, 'crc', 0),
    )


@dataclass
class Backup:
    """A single materialized backup in the catalog."""
    backup_id: str
    backup_dir: Path
    control: Dict[str, str] = field(default_factory=dict)

    @property
    def start_time(self) -> datetime:
        return datetime.fromtimestamp(base36dec(self.backup_id), tz=timezone.utc)

    @property
    def status(self) -> str:
        return self.control.get('status', 'UNKNOWN')

    @property
    def database_dir(self) -> Path:
        return self.backup_dir / DATABASE_DIR

    @property
    def external_dirs(self) -> List[str]:
        value = self.control.get('external-dirs')
        return value.split(':') if value else []

    @property
    def layout(self) -> SourceLayout:
        return SourceLayout(
            database_dir=self.database_dir,
            external_dir_root=self.backup_dir / EXTERNAL_DIR,
        )

    def load_files(self) -> List[BackupFileEntry]:
        """Load the backup's file list sorted by relative path."""
        content_path = self.backup_dir / BACKUP_CONTENT_FILE
        if not content_path.exists():
            raise CatalogError(f"Backup file list not found: {content_path}")

        files = []
        with open(content_path, 'r') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    files.append(parse_file_record(json.loads(line)))
                except (ValueError, KeyError) as e:
                    raise CatalogError(
                        f"Invalid record at {content_path}:{line_num}: {e}"
                    ) from e

        files.sort(key=sort_key)
        logger.info(f"Loaded {len(files)} file entries for backup {self.backup_id}")
        return files


class BackupCatalog:
    """Backups of one instance under a backup path."""

    def __init__(self, backup_path, instance: str):
        if not instance:
            raise CatalogError("required parameter not specified: --instance")
        self.backup_path = Path(backup_path)
        self.instance = instance

    @property
    def instance_dir(self) -> Path:
        return self.backup_path / 'backups' / self.instance

    def list_backups(self) -> List[Backup]:
        """List backups of the instance, newest first."""
        if not self.instance_dir.is_dir():
            raise CatalogError(f"Instance '{self.instance}' does not exist in {self.backup_path}")

        backups = []
        for entry in self.instance_dir.iterdir():
            control_path = entry / BACKUP_CONTROL_FILE
            if not entry.is_dir() or not control_path.exists():
                continue
            try:
                base36dec(entry.name)
            except ValueError:
                logger.debug(f"Skipping non-backup directory {entry}")
                continue
            backups.append(Backup(entry.name, entry, parse_control_file(control_path)))

        backups.sort(key=lambda b: base36dec(b.backup_id), reverse=True)
        return backups

    def get_backup(self, backup_id: str) -> Backup:
        """Find a backup by its textual id."""
        backup_id = backup_id.upper()
        try:
            base36dec(backup_id)
        except ValueError:
            raise CatalogError(f"Invalid backup id: {backup_id}")

        backup_dir = self.instance_dir / backup_id
        control_path = backup_dir / BACKUP_CONTROL_FILE
        if not control_path.exists():
            raise CatalogError(f"Failed to find backup {backup_id}")

        return Backup(backup_id, backup_dir, parse_control_file(control_path))
