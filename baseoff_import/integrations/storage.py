"""
S3-compatible blob storage for uploaded import files.
Works against AWS S3, Backblaze B2, MinIO or any other S3-compatible endpoint.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from baseoff_import.core.config import settings

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class StorageError(Exception):
    """Base exception for storage operations."""

    code = "STORAGE_ERROR"


class StorageConfigurationError(StorageError):
    """Raised when storage credentials or bucket are missing."""


class StorageUploadError(StorageError):
    """Raised when file upload fails."""


class StorageDownloadError(StorageError):
    """Raised when file download fails."""


def get_storage_client():
    """
    Build an S3 client from settings.

    Raises:
        StorageConfigurationError: credentials or bucket are not configured
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConfigurationError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    client_kwargs: Dict[str, Any] = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    }
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    return boto3.client(**client_kwargs)


def build_storage_path(
    file_name: str,
    *,
    user_id: Optional[str] = None,
    folder: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Storage key for an uploaded file: ``<folder>/[<user_id>/]<timestamp>_<file_name>``.

    The millisecond timestamp keeps repeated uploads of the same name apart.
    """
    folder = (folder if folder is not None else settings.storage_imports_folder).strip("/")
    now = now or datetime.now(timezone.utc)
    timestamp = int(now.timestamp() * 1000)
    safe_name = _UNSAFE_KEY_CHARS.sub("_", file_name.strip()) or "upload"

    parts = [folder] if folder else []
    if user_id:
        parts.append(_UNSAFE_KEY_CHARS.sub("_", user_id))
    parts.append(f"{timestamp}_{safe_name}")
    return "/".join(parts)


def upload_file(file_content: bytes, storage_path: str) -> Dict[str, Any]:
    """
    Store ``file_content`` under ``storage_path``.

    Returns:
        Dictionary with ``storage_path``, ``etag`` and ``size`` (bytes)

    Raises:
        StorageUploadError: If upload fails
    """
    try:
        client = get_storage_client()
        response = client.put_object(
            Bucket=settings.storage_bucket_name,
            Key=storage_path,
            Body=file_content,
        )
    except StorageConfigurationError as e:
        raise StorageUploadError(str(e)) from e
    except (ClientError, BotoCoreError) as e:
        logger.error("Storage upload failed for %s: %s", storage_path, e)
        raise StorageUploadError(f"Upload failed: {e}") from e

    logger.info("Uploaded %s (%d bytes)", storage_path, len(file_content))
    return {
        "storage_path": storage_path,
        "etag": response.get("ETag", "").strip('"'),
        "size": len(file_content),
    }


def download_file(storage_path: str) -> bytes:
    """
    Fetch a stored file.

    Raises:
        StorageDownloadError: If the object is missing or the download fails
    """
    try:
        client = get_storage_client()
        response = client.get_object(Bucket=settings.storage_bucket_name, Key=storage_path)
        return response["Body"].read()
    except StorageConfigurationError as e:
        raise StorageDownloadError(str(e)) from e
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        if error_code in ("NoSuchKey", "404"):
            raise StorageDownloadError(f"File not found: {storage_path}") from e
        logger.error("Storage download failed: %s - %s", error_code, e)
        raise StorageDownloadError(f"Download failed: {e}") from e
    except BotoCoreError as e:
        logger.error("Storage download failed for %s: %s", storage_path, e)
        raise StorageDownloadError(f"Download failed: {e}") from e


def delete_file(storage_path: str) -> bool:
    """Remove a stored file; used to roll back an upload whose job could not be created."""
    try:
        client = get_storage_client()
        client.delete_object(Bucket=settings.storage_bucket_name, Key=storage_path)
        return True
    except (StorageError, ClientError, BotoCoreError) as e:
        logger.error("Error deleting %s from storage: %s", storage_path, e)
        return False
