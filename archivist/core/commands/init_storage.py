#!/usr/bin/env python3
"""
Storage initialization command for Archivist.

Creates the MinIO/S3 buckets archive builds read from and write to, sets the
retention policy on finished archives, prepares the local scratch directory
and creates the database tables.

Usage:
    # Initialize buckets, scratch directory and tables
    python -m archivist.core.commands.init_storage

    # Skip the database step
    python -m archivist.core.commands.init_storage --skip-db

Environment Variables Required:
    - USE_OBJECT_STORAGE=true
    - MINIO_ENDPOINT: MinIO server endpoint (e.g., minio:9000)
    - MINIO_ACCESS_KEY / MINIO_SECRET_KEY
    - MINIO_BUCKET_ASSETS: Source objects bucket
    - MINIO_BUCKET_ARCHIVES: Finished archives bucket
    - DATABASE_URL: Async SQLAlchemy URL

Note:
    - Safe to run multiple times; existing buckets and tables are kept
"""

import argparse
import asyncio
import logging
import sys

from archivist.config import settings
from archivist.core.storage.minio_service import get_minio_service

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s"
)
logger = logging.getLogger(__name__)


def init_buckets() -> int:
    """
    Create buckets and the archive retention policy.

    Returns:
        0 on success, 1 on failure
    """
    if not settings.use_object_storage:
        logger.error("ERROR: Object storage is not enabled")
        logger.error("Set USE_OBJECT_STORAGE=true and configure MinIO settings in .env")
        return 1

    minio = get_minio_service()
    connected, _, error = minio.check_health()
    if not connected:
        logger.error(f"ERROR: Cannot connect to MinIO at {minio.endpoint}: {error}")
        return 1
    logger.info(f"Connected to MinIO at {minio.endpoint}")

    try:
        minio.ensure_bucket(minio.bucket_assets)
        logger.info(f"Assets bucket ready: {minio.bucket_assets}")

        minio.ensure_bucket(minio.bucket_archives)
        minio.set_lifecycle_policy(
            minio.bucket_archives,
            expiration_days=settings.archive_retention_days,
            prefix="archives/",
        )
        logger.info(
            f"Archives bucket ready: {minio.bucket_archives} "
            f"({settings.archive_retention_days} day retention)"
        )
    except Exception as e:
        logger.error(f"ERROR: Failed to create/configure buckets: {e}")
        return 1

    return 0


def init_scratch() -> int:
    try:
        settings.archive_scratch_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"ERROR: Cannot create scratch directory {settings.archive_scratch_path}: {e}")
        return 1
    logger.info(f"Scratch directory ready: {settings.archive_scratch_path}")
    return 0


async def init_database() -> int:
    from archivist.core.shared.database_service import database_service

    try:
        await database_service.init_db()
    except Exception as e:
        logger.error(f"ERROR: Failed to create database tables: {e}")
        return 1
    finally:
        await database_service.close()
    return 0


def main():
    """Main entry point for the command."""
    parser = argparse.ArgumentParser(description="Initialize storage for Archivist")
    parser.add_argument("--skip-db", action="store_true", help="Do not create database tables")
    parser.add_argument("--skip-buckets", action="store_true", help="Do not touch object storage")
    args = parser.parse_args()

    status = 0
    if not args.skip_buckets:
        status = status or init_buckets()
    status = status or init_scratch()
    if not args.skip_db:
        status = status or asyncio.run(init_database())

    if status == 0:
        logger.info("Archivist storage initialized successfully")
    sys.exit(status)


if __name__ == "__main__":
    main()
