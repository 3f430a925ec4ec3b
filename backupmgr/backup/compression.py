"""
Compression and archiving helpers for backup artifacts.

Provides:
- gzip compression of a database dump file
- zip archives of an application's config file and storage directory
- lookup of the application's storage directory in its INI config
- run-scoped artifact names
"""

import configparser
import gzip
import os
import shutil
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..exceptions import BackupError


PathLike = Union[str, Path]

COPY_CHUNK_SIZE = 1024 * 1024


class CompressionError(BackupError):
    """Raised when a dump cannot be compressed or an archive cannot be written."""
    pass


def gzip_file(source_path: PathLike, output_path: PathLike) -> str:
    """
    Gzip-compress a file.

    Args:
        source_path: File to compress
        output_path: Destination for the compressed data

    Returns:
        Path to the compressed file

    Raises:
        CompressionError: If compression fails
    """
    try:
        with open(source_path, 'rb') as src, gzip.open(output_path, 'wb', compresslevel=9) as dst:
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
        return str(output_path)
    except OSError as e:
        _remove_quietly(output_path)
        raise CompressionError(f"Failed to compress {source_path}: {e}")


def create_application_archive(
    config_path: PathLike,
    store_path: PathLike,
    archive_path: PathLike,
    config_arcname: str = 'config/config.ini'
) -> str:
    """
    Create a ZIP archive of an application's config and storage files.

    The config file is stored as ``config_arcname``; every file below
    ``store_path`` is stored under ``store/`` with forward-slash separators.

    Args:
        config_path: Application config file
        store_path: Application storage directory
        archive_path: Output archive path
        config_arcname: Name of the config file inside the archive

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If the archive cannot be written
    """
    store = Path(store_path)

    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=9) as zipf:
            zipf.write(config_path, config_arcname)

            for item in sorted(store.rglob('*')):
                if item.is_file():
                    relative_path = item.relative_to(store).as_posix()
                    zipf.write(item, f"store/{relative_path}")

        return str(archive_path)
    except (OSError, zipfile.BadZipFile) as e:
        _remove_quietly(archive_path)
        raise CompressionError(f"Failed to create archive: {e}")


def read_storage_path(config_path: PathLike, app_path: PathLike, default: str = 'store') -> Path:
    """
    Find the storage directory an application has configured.

    Reads ``path`` from the ``[Storage]`` section of the application's INI
    config. Relative values, and the default used when the key is absent, are
    taken relative to the application directory.

    Args:
        config_path: Application INI config file
        app_path: Application directory
        default: Storage directory used when none is configured

    Returns:
        Storage directory path
    """
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    try:
        parser.read(config_path, encoding='utf-8')
        value = parser.get('Storage', 'path', fallback=None)
    except configparser.Error:
        value = None

    if value:
        value = value.strip().strip('"\'')

    storage = Path(value or default).expanduser()
    if not storage.is_absolute():
        storage = Path(app_path) / storage
    return storage


def generate_basename(hostname: str, started_at: datetime) -> str:
    """
    Generate the shared base name of a run's artifacts.

    Format: ``{hostname} {YYYY-MM-DD HHMMSS}``
    """
    return f"{hostname} {started_at.strftime('%Y-%m-%d %H%M%S')}"


def dump_filename(basename: str, compressed: bool = True) -> str:
    return f"{basename}.sql.gz" if compressed else f"{basename}.sql"


def archive_filename(basename: str) -> str:
    return f"{basename}.zip"


def _remove_quietly(path: Optional[PathLike]):
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass
