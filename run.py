#!/usr/bin/env python3
"""Backup runner, e.g. from cron: run.py -cron"""
import sys
from backupmgr.cli import main

if __name__ == '__main__':
    sys.exit(main())
