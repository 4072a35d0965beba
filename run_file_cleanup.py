#!/usr/bin/env python3
"""
Run the file and document retention purges once, outside the schedule

Usage:
    python run_file_cleanup.py [--files-only | --documents-only]
"""

import argparse
import sys

from tasks.scheduled_tasks import cleanup_expired_documents, cleanup_old_files
from utils.logging_setup import configure_logging


def main():
    parser = argparse.ArgumentParser(description="Run retention cleanup now")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--files-only", action="store_true", help="only purge old uploaded files")
    group.add_argument("--documents-only", action="store_true", help="only purge expired documents")
    args = parser.parse_args()

    configure_logging()
    if not args.documents_only:
        result = cleanup_old_files()
        print(f"Files: {result}")
    if not args.files_only:
        result = cleanup_expired_documents()
        print(f"Documents: {result}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
