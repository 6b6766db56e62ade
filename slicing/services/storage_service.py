"""
Object storage access for slicing assets.

Downloads the model and slicing configuration, uploads the produced gcode, and
maps asset URLs onto bucket/key/local-path triples.
"""

import logging
import os
import secrets
import string
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from slicing.schemas.jobs import AssetLocation

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_letters + string.digits


class StorageError(Exception):
    """Raised when an S3 transfer fails."""

    def __init__(self, message: str, bucket: Optional[str] = None, key: Optional[str] = None) -> None:
        self.bucket = bucket
        self.key = key
        super().__init__(message)


def unique_token(length: int = 20) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def parse_asset_url(url: str, work_dir: str, endpoint_url: Optional[str] = None) -> AssetLocation:
    """
    Split a path-style storage URL into bucket, key and a fresh local path.

    Only https://<host>/<bucket>/<key> is understood, not virtual-hosted
    https://<bucket>.<host>/<key>. When the objects are served from under
    endpoint_url, that prefix is removed before the bucket is read.

    Args:
        url: Asset URL from the slicing request
        work_dir: Directory for local temporary files
        endpoint_url: Storage endpoint the URL may be rooted at

    Returns:
        AssetLocation: bucket, key and a per-call unique local path

    Raises:
        ValueError: When the URL has no bucket, key or file name
    """
    if not isinstance(url, str) or not url:
        raise ValueError("empty asset URL")

    path = urlparse(url).path
    if endpoint_url:
        base = endpoint_url.rstrip("/")
        if url.startswith(base + "/"):
            path = url[len(base):]
            path = urlparse("http://x" + path).path

    if path.endswith("/"):
        raise ValueError(f"no file name in {url!r}")

    parts = [p for p in path.split("/") if p]
    if len(parts) < 2:
        raise ValueError(f"cannot find bucket and key in {url!r}")

    bucket = parts[0]
    key = "/".join(parts[1:])
    basename = PurePosixPath(key).name
    if not basename:
        raise ValueError(f"no file name in {url!r}")

    local_path = os.path.join(work_dir, f"{unique_token()}-{basename}")
    return AssetLocation(url=url, bucket=bucket, key=key, local_path=local_path)


class StorageService:
    def __init__(self, region: str, endpoint_url: Optional[str] = None, client=None):
        self._s3 = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def download(self, job_id: str, bucket: str, key: str, path: str) -> str:
        if not bucket or not key or not path:
            raise StorageError("download called with invalid arguments", bucket, key)

        logger.debug("%s: downloading s3://%s/%s to %s", job_id, bucket, key, path)
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        try:
            self._s3.download_file(Bucket=bucket, Key=key, Filename=path)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code in ("404", "NoSuchKey"):
                raise StorageError(f"Object not found: s3://{bucket}/{key}", bucket, key) from e
            raise StorageError(f"Failed to download s3://{bucket}/{key}: {e}", bucket, key) from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to download s3://{bucket}/{key}: {e}", bucket, key) from e
        return path

    def upload(self, job_id: str, path: str, bucket: str, key: str) -> None:
        if not bucket or not key or not path:
            raise StorageError("upload called with invalid arguments", bucket, key)

        logger.debug("%s: uploading %s to s3://%s/%s", job_id, path, bucket, key)
        try:
            self._s3.upload_file(Filename=path, Bucket=bucket, Key=key)
        except (S3UploadFailedError, ClientError, BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to upload {path} to s3://{bucket}/{key}: {e}", bucket, key) from e
