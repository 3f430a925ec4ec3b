"""Command line entry point for scheduled and interactive backup runs."""

import argparse
import sys
from typing import Iterable, Optional

from . import __version__, configure_logging
from .backup.executor import run_backup
from .config import default_config_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backupmgr',
        description='Back up databases and application data to SFTP, S3 or a local directory.',
    )
    parser.add_argument(
        '-headless', '-cron',
        dest='headless',
        action='store_true',
        help='Unattended mode: no console output and no interactive authorization.',
    )
    parser.add_argument('--config', help='Configuration file (default: ~/BackupManager.v1.json).')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log debug messages.')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging(headless=args.headless, verbose=args.verbose)
    config_path = args.config or default_config_path()

    return run_backup(config_path, headless=args.headless)


if __name__ == '__main__':
    sys.exit(main())
