"""
Backup Manager: unattended database and application data backups.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


__version__ = '1.0.0'


def default_log_dir() -> Path:
    override = os.environ.get('BACKUPMGR_LOG_DIR')
    if override:
        return Path(override).expanduser()
    return Path.home() / '.backupmgr' / 'logs'


def configure_logging(headless: bool = False, verbose: bool = False, log_dir: Optional[Path] = None):
    """
    Configure application logging.

    Console output is omitted in headless mode; the rotating log file is
    written in both modes.

    Args:
        headless: Unattended mode, no console handler
        verbose: Log at DEBUG instead of INFO
        log_dir: Directory for backupmgr.log (default: BACKUPMGR_LOG_DIR or ~/.backupmgr/logs)
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    handlers = []

    # Console handler
    if not headless:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter('%(relativeCreated)-10d%(message)s'))
        handlers.append(console_handler)

    # File handler
    log_dir = Path(log_dir) if log_dir else default_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / 'backupmgr.log',
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)
    except OSError as e:
        if not headless:
            print(f"WARNING: Cannot write log file in {log_dir}: {e}")

    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Library chatter stays out of the backup log unless debugging
    for name in ('paramiko', 'botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
