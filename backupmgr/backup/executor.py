"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Load configuration (write a default one and abort if missing)
2. Create and connect the storage backend, resolve the backup container
3. Dump the databases, compress, upload
4. Archive application data and upload (only if the application exists)
5. Save configuration (captures rotated credentials)

Any fatal condition aborts the run: remaining stages are skipped, the
configuration is not saved, the error is logged and broadcast, and the
sentinel exit code is returned. Already uploaded artifacts are left alone.
"""

import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..config import Config, load_config, save_config
from ..exceptions import BackupError, ConfigMissing
from ..notification import NotificationChannel
from .compression import archive_filename, dump_filename, generate_basename
from .sources import ApplicationDataSource, Artifact, DatabaseDumpSource
from .storage import StorageBackend, StorageTarget, UploadResult, create_storage, target_name


logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
# Survives the 8-bit process exit status
EXIT_FATAL = 0xDE


class RunState(str, Enum):
    START = 'start'
    CONFIG_LOADED = 'config_loaded'
    BACKEND_READY = 'backend_ready'
    DUMP_PRODUCED = 'dump_produced'
    DUMP_UPLOADED = 'dump_uploaded'
    FS_PRODUCED = 'fs_produced'
    FS_UPLOADED = 'fs_uploaded'
    CONFIG_SAVED = 'config_saved'
    DONE = 'done'
    ABORTED = 'aborted'


@dataclass
class RunContext:
    """State of a single run, passed through every stage."""

    config_path: Path
    headless: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_clock: float = field(default_factory=time.monotonic)
    hostname: str = field(default_factory=socket.gethostname)
    config: Optional[Config] = None
    storage: Optional[StorageBackend] = None
    target: Optional[StorageTarget] = None
    state: RunState = RunState.START
    uploads: List[UploadResult] = field(default_factory=list)

    @property
    def basename(self) -> str:
        return generate_basename(self.hostname, self.started_at)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_clock


class BackupExecutor:
    """
    Orchestrates a complete backup run.
    """

    def __init__(
        self,
        config_path: Path,
        headless: bool = False,
        storage_factory: Callable[[Config, bool], StorageBackend] = create_storage,
        notifier_factory: Callable[..., NotificationChannel] = NotificationChannel,
        temp_dir: Optional[str] = None
    ):
        """
        Initialize backup executor.

        Args:
            config_path: Persisted configuration file
            headless: Unattended mode, no console output or prompts
            storage_factory: Creates the storage backend for a configuration
            notifier_factory: Creates the notification channel for a configuration
            temp_dir: Directory for temporary dump/archive files
        """
        self.context = RunContext(config_path=Path(config_path), headless=headless)
        self.storage_factory = storage_factory
        self.notifier_factory = notifier_factory
        self.temp_dir = temp_dir
        self.notifier = notifier_factory(None)

    @property
    def state(self) -> RunState:
        return self.context.state

    def execute(self) -> int:
        """
        Run the backup.

        Returns:
            EXIT_SUCCESS, or EXIT_FATAL if the run was aborted
        """
        self._log("Backup Manager")

        try:
            self._execute_workflow()
            return EXIT_SUCCESS

        except BackupError as e:
            self._abort(str(e))
            return EXIT_FATAL

        except Exception as e:
            self._abort(f"Unexpected error: {e}", exc_info=True)
            return EXIT_FATAL

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        ctx = self.context

        # Step 1: Load configuration
        ctx.config = self._load_config()
        self.notifier = self.notifier_factory(ctx.config.notification)
        self._advance(RunState.CONFIG_LOADED)

        # Step 2: Storage backend, held open until both artifacts are stored
        ctx.storage = self.storage_factory(ctx.config, ctx.headless)
        with ctx.storage:
            ctx.storage.connect()
            ctx.target = ctx.storage.ensure_target(target_name(ctx.config))
            self._log(f"Storing backups in {ctx.storage.method.value} target '{ctx.target.name}'")
            self._advance(RunState.BACKEND_READY)
            self._store_artifacts()

        # Step 5: Persist configuration
        self._save_config()
        self._advance(RunState.CONFIG_SAVED)

        self._advance(RunState.DONE)
        self._log(f"Done! Took {ctx.elapsed:.3f}s.")

    def _store_artifacts(self):
        ctx = self.context

        # Step 3: Database dump
        self._log("Database backup...")
        dump_source = DatabaseDumpSource(ctx.config.mysql, temp_dir=self.temp_dir)
        dump_name = dump_filename(ctx.basename, ctx.config.mysql.compress)

        with dump_source.produce(dump_name) as artifact:
            self._advance(RunState.DUMP_PRODUCED)
            self._upload(artifact)
        self._log("Database dump saved.")
        self._advance(RunState.DUMP_UPLOADED)

        # Step 4: Application data (only if the application is installed here)
        app_source = ApplicationDataSource(ctx.config.application, temp_dir=self.temp_dir)

        if app_source.exists():
            self._log("Filesystem backup...")
            with app_source.produce(archive_filename(ctx.basename)) as artifact:
                self._advance(RunState.FS_PRODUCED)
                self._upload(artifact)
            self._log("Application data saved.")
            self._advance(RunState.FS_UPLOADED)
        else:
            logger.info("Application directory not found, skipping filesystem backup")

    def _load_config(self) -> Config:
        """
        Load persisted configuration.

        Raises:
            ConfigMissing: If no configuration exists (a default one is written)
        """
        path = self.context.config_path

        if not path.exists():
            save_config(Config(), path)
            raise ConfigMissing(
                f"No configuration file exists, created a blank one at {path}. "
                "Be sure to fill it out properly."
            )

        logger.info(f"Loading configuration from {path}")
        return load_config(path)

    def _save_config(self):
        logger.info(f"Saving configuration to {self.context.config_path}")
        save_config(self.context.config, self.context.config_path)

    def _upload(self, artifact: Artifact) -> UploadResult:
        """
        Upload an artifact to the resolved target.

        Raises:
            UploadFailure: If upload fails
        """
        ctx = self.context
        self._log(f"Saving '{artifact.name}'...")
        logger.debug(f"Uploading {artifact.path} ({artifact.size} bytes)")

        with artifact.open() as stream:
            result = ctx.storage.upload(ctx.target, artifact.name, artifact.kind, stream, artifact.content_type)

        ctx.uploads.append(result)
        logger.info(f"Stored {result.identifier} ({result.size / 1024 / 1024:.2f} MB)")
        return result

    def _advance(self, state: RunState):
        logger.debug(f"{self.context.state.value} -> {state.value}")
        self.context.state = state

    def _abort(self, message: str, exc_info: bool = False):
        """Log and broadcast a fatal error."""
        self.context.state = RunState.ABORTED
        logger.error(message, exc_info=exc_info)
        self.notifier.broadcast(message, error=True)

    def _log(self, message: str):
        """
        Log an informational message.

        Also broadcast when the notification channel is configured to carry
        every message rather than errors only.
        """
        logger.info(message)

        config = self.context.config
        if config is not None and not config.notification.errors_only:
            self.notifier.broadcast(message)


def run_backup(config_path: Path, headless: bool = False) -> int:
    """
    Execute a backup run with the default backends.

    Args:
        config_path: Persisted configuration file
        headless: Unattended mode

    Returns:
        Process exit code
    """
    executor = BackupExecutor(config_path, headless=headless)
    return executor.execute()
