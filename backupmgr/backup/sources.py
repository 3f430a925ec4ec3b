"""
Artifact producers for backup runs.

Supports:
- DatabaseDumpSource: Dump MariaDB/MySQL databases with mysqldump
- ApplicationDataSource: Archive an application's config and storage files

Each producer yields an Artifact from a context manager. The artifact's
temporary file is removed when the context exits, whether the upload
succeeded or not.
"""

import logging
import os
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from ..config import ApplicationConfig, MySqlConfig
from ..exceptions import ArchiveSourceMissing, DumpProcessFailure
from .compression import create_application_archive, gzip_file, read_storage_path


logger = logging.getLogger(__name__)

# mysqldump options: consistent snapshot, UTC timestamps, triggers, routines,
# binary data as hex, lock statements, primary key order; then lock tables,
# quote names, quick, databases list
DUMP_OPTIONS = [
    '--single-transaction',
    '--tz-utc',
    '--triggers',
    '--routines',
    '--hex-blob',
    '--add-locks',
    '--order-by-primary',
]
DUMP_FLAGS = ['-l', '-Q', '-q', '-B']


class ArtifactKind(str, Enum):
    DATABASE_DUMP = 'database_dump'
    FILESYSTEM_ARCHIVE = 'filesystem_archive'


@dataclass
class Artifact:
    """A named file produced by a backup stage, uploaded exactly once."""

    name: str
    kind: ArtifactKind
    path: str
    content_type: str

    def open(self) -> BinaryIO:
        return open(self.path, 'rb')

    @property
    def size(self) -> int:
        return os.path.getsize(self.path)


def _temp_file(temp_dir: Optional[str], suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix='backupmgr_', suffix=suffix, dir=temp_dir)
    os.close(fd)
    return path


def _remove(path: Optional[str]):
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {path}: {e}")


class DatabaseDumpSource:
    """
    Producer for database dumps.

    Credentials are passed to mysqldump through a temporary defaults file so
    the password never appears in the process list.
    """

    def __init__(self, config: MySqlConfig, temp_dir: Optional[str] = None):
        """
        Initialize the dump producer.

        Args:
            config: Database connection and dump settings
            temp_dir: Directory for temporary files (system default if None)
        """
        self.config = config
        self.temp_dir = temp_dir

    def build_command(self, defaults_path: str, result_path: Optional[str]) -> List[str]:
        """
        Build the mysqldump argument list.

        Args:
            defaults_path: Path of the generated defaults file
            result_path: Path for --result-file, or None to dump to stdout

        Returns:
            Argument list for subprocess
        """
        command = [self.config.executable(), f"--defaults-file={defaults_path}"]
        command.extend(DUMP_OPTIONS)
        if result_path is not None:
            command.append(f"--result-file={result_path}")
        command.extend(DUMP_FLAGS)
        command.extend(self.config.databases.split())
        return command

    def write_defaults_file(self) -> str:
        """
        Write a client defaults file with the connection credentials.

        Returns:
            Path of the defaults file (readable by the owner only)
        """
        path = _temp_file(self.temp_dir, '.cnf')
        os.chmod(path, 0o600)

        with open(path, 'w', encoding='utf-8') as f:
            f.write('[client]\n')
            f.write(f"user={self.config.user or ''}\n")
            f.write(f"password={self.config.password or ''}\n")
            if self.config.host:
                f.write(f"host={self.config.host}\n")
            f.write('default-character-set=utf8mb4\n')

        return path

    def dump(self) -> str:
        """
        Run mysqldump into a temporary file.

        Returns:
            Path of the raw SQL dump

        Raises:
            DumpProcessFailure: If mysqldump cannot be started or fails
        """
        if not self.config.databases or not self.config.databases.split():
            raise DumpProcessFailure("No databases configured for dumping.")

        logger.info("Dumping MariaDB databases...")
        defaults_path = dump_path = None

        try:
            defaults_path = self.write_defaults_file()
            dump_path = _temp_file(self.temp_dir, '.sql')

            if self.config.dump_to_stdout:
                command = self.build_command(defaults_path, None)
                with open(dump_path, 'wb') as out:
                    result = subprocess.run(command, stdout=out, stderr=subprocess.PIPE, check=False)
            else:
                command = self.build_command(defaults_path, dump_path)
                result = subprocess.run(
                    command,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    check=False
                )
        except OSError as e:
            _remove(dump_path)
            raise DumpProcessFailure(f"Failed to run {self.config.executable()}: {e}")
        finally:
            _remove(defaults_path)

        if result.returncode != 0:
            _remove(dump_path)
            stderr = (result.stderr or b'').decode('utf-8', errors='replace').strip()
            raise DumpProcessFailure(f"mysqldump exited with code {result.returncode}: {stderr}")

        return dump_path

    @contextmanager
    def produce(self, name: str) -> Iterator[Artifact]:
        """
        Produce the database dump artifact.

        Args:
            name: Artifact name used for the upload

        Yields:
            Artifact backed by a temporary file
        """
        paths = [self.dump()]

        try:
            if self.config.compress:
                logger.info("Compressing database dump...")
                paths.append(gzip_file(paths[0], _temp_file(self.temp_dir, '.sql.gz')))
                _remove(paths[0])
                content_type = 'application/gzip'
            else:
                content_type = 'application/sql'

            yield Artifact(name=name, kind=ArtifactKind.DATABASE_DUMP, path=paths[-1], content_type=content_type)
        finally:
            for path in paths:
                _remove(path)


class ApplicationDataSource:
    """
    Producer for application data archives.

    The archive contains the application's config file and every file in its
    storage directory. The stage only runs when the application directory
    exists; once it runs, a missing config file or storage directory is fatal.
    """

    def __init__(self, config: ApplicationConfig, temp_dir: Optional[str] = None):
        self.config = config
        self.temp_dir = temp_dir

    @property
    def app_path(self) -> Optional[Path]:
        if not self.config.path:
            return None
        return Path(self.config.path).expanduser()

    def exists(self) -> bool:
        return self.app_path is not None and self.app_path.is_dir()

    def locate(self):
        """
        Find the config file and storage directory.

        Returns:
            Tuple of (config_path, store_path)

        Raises:
            ArchiveSourceMissing: If either cannot be found
        """
        config_path = self.app_path / self.config.config_file
        if not config_path.is_file():
            raise ArchiveSourceMissing(f"Could not find application config: {config_path}")

        store_path = read_storage_path(config_path, self.app_path, self.config.default_store)
        if not store_path.is_dir():
            raise ArchiveSourceMissing(f"Could not find application storage directory: {store_path}")

        return config_path, store_path

    @contextmanager
    def produce(self, name: str) -> Iterator[Artifact]:
        """
        Produce the application data archive.

        Args:
            name: Artifact name used for the upload

        Yields:
            Artifact backed by a temporary ZIP file
        """
        config_path, store_path = self.locate()

        logger.info("Creating ZIP archive of application data...")
        archive_path = _temp_file(self.temp_dir, '.zip')

        try:
            create_application_archive(
                config_path,
                store_path,
                archive_path,
                config_arcname=Path(self.config.config_file).as_posix()
            )
            yield Artifact(
                name=name,
                kind=ArtifactKind.FILESYSTEM_ARCHIVE,
                path=archive_path,
                content_type='application/zip'
            )
        finally:
            _remove(archive_path)
