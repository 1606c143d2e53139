#!/usr/bin/env python3
"""S3 detach - send existing backups to S3-compatible object storage.

Examples:
    # Get help
    python -m main --help
    python -m main detach --help

    # Basic workflow
    python -m main config init           # Write config.json
    python -m main check-bucket          # Verify credentials and bucket
    python -m main list-backups          # Find the backup id
    python -m main show QJ4M2A           # Inspect its file list
    python -m main detach QJ4M2A -j 4    # Upload with 4 threads
    python -m main history               # Review past runs
"""

from cli.main import cli

if __name__ == '__main__':
    cli()
