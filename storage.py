"""
storage.py — MinIO S3-compatible blob store for BridgeSpace, with local-disk fallback.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

import config

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


@dataclass
class BlobInfo:
    path: str
    size: int
    modified: datetime


def _get_s3_client(endpoint: str):
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=config.MINIO_ACCESS_KEY,
        aws_secret_access_key=config.MINIO_SECRET_KEY,
        config=Config(
            signature_version="s3v4",
            connect_timeout=5,
            read_timeout=30,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name="us-east-1",
    )


def _ensure_bucket(s3_client, bucket: str):
    try:
        s3_client.head_bucket(Bucket=bucket)
    except ClientError as e:
        if e.response["Error"]["Code"] == "404":
            s3_client.create_bucket(Bucket=bucket)
            logger.info(f"Created MinIO bucket: {bucket}")
        else:
            raise


class StorageBackend:

    def __init__(self, use_minio: bool = None, bucket: str = None,
                 local_dir: str = None, endpoint: str = None, public_base_url: str = None):
        self.bucket = bucket or config.MINIO_BUCKET
        self.endpoint = endpoint or config.MINIO_ENDPOINT
        self.local_dir = local_dir or config.LOCAL_UPLOAD_DIR
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.use_minio = config.USE_MINIO if use_minio is None else use_minio
        os.makedirs(self.local_dir, exist_ok=True)

        self._minio_available = False
        self._s3 = None
        if self.use_minio:
            self._init_minio()

    def _init_minio(self):
        try:
            self._s3 = _get_s3_client(self.endpoint)
            _ensure_bucket(self._s3, self.bucket)
            self._minio_available = True
            logger.info(f"MinIO connected: {self.endpoint} / bucket={self.bucket}")
        except Exception as e:
            logger.warning(f"MinIO unavailable ({e}). Falling back to local disk.")
            self._minio_available = False

    @property
    def backend_name(self) -> str:
        return "MinIO" if self._minio_available else "LocalDisk"

    def _local_path(self, key: str) -> str:
        parts = [p for p in key.split("/") if p not in ("", ".", "..")]
        return os.path.join(self.local_dir, *parts)

    def public_ref(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> bool:
        if self._minio_available:
            try:
                self._s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                )
                return True
            except Exception as e:
                logger.error(f"MinIO PUT failed for {key}: {e}. Falling back to disk.")

        try:
            path = self._local_path(key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
            return True
        except Exception as e:
            logger.error(f"LocalDisk PUT failed for {key}: {e}")
            return False

    def get(self, key: str):
        if self._minio_available:
            try:
                response = self._s3.get_object(Bucket=self.bucket, Key=key)
                return response["Body"].read()
            except ClientError as e:
                if e.response["Error"]["Code"] not in _MISSING_CODES:
                    logger.error(f"MinIO GET failed for {key}: {e}")
            except Exception as e:
                logger.error(f"MinIO GET error for {key}: {e}")

        path = self._local_path(key)
        if os.path.exists(path):
            with open(path, "rb") as f:
                return f.read()
        return None

    def delete(self, key: str) -> bool:
        """Remove an object. A missing object counts as removed."""
        ok = True
        if self._minio_available:
            try:
                self._s3.delete_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if e.response["Error"]["Code"] not in _MISSING_CODES:
                    logger.error(f"MinIO DELETE failed for {key}: {e}")
                    ok = False
            except Exception as e:
                logger.error(f"MinIO DELETE failed for {key}: {e}")
                ok = False

        path = self._local_path(key)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.error(f"LocalDisk DELETE failed for {key}: {e}")
                ok = False
        return ok

    def exists(self, key: str) -> bool:
        if self._minio_available:
            try:
                self._s3.head_object(Bucket=self.bucket, Key=key)
                return True
            except Exception:
                pass
        return os.path.exists(self._local_path(key))

    def list(self, prefix: str = "") -> list:
        blobs = {}
        if self._minio_available:
            try:
                paginator = self._s3.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                    for obj in page.get("Contents", []):
                        blobs[obj["Key"]] = BlobInfo(obj["Key"], obj["Size"], obj["LastModified"])
            except Exception as e:
                logger.error(f"MinIO LIST failed for {prefix!r}: {e}")

        for root, _dirs, files in os.walk(self.local_dir):
            for fname in files:
                fpath = os.path.join(root, fname)
                key = os.path.relpath(fpath, self.local_dir).replace(os.sep, "/")
                if key.startswith(prefix) and key not in blobs:
                    stat = os.stat(fpath)
                    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                    blobs[key] = BlobInfo(key, stat.st_size, modified)
        return sorted(blobs.values(), key=lambda b: b.path)

    def get_stats(self) -> dict:
        stats = {
            "backend": self.backend_name,
            "minio_endpoint": self.endpoint if self._minio_available else None,
        }
        try:
            blobs = self.list()
        except OSError as e:
            stats["error"] = str(e)
            return stats
        stats["objects"] = len(blobs)
        stats["total_mb"] = round(sum(b.size for b in blobs) / (1024 * 1024), 2)
        return stats

    def get_health(self) -> dict:
        if not self.use_minio:
            return {"status": "local_disk", "message": "MinIO disabled"}
        if self._minio_available:
            try:
                self._s3.head_bucket(Bucket=self.bucket)
                return {"status": "healthy", "backend": "MinIO", "endpoint": self.endpoint}
            except Exception as e:
                return {"status": "degraded", "backend": "MinIO", "error": str(e)}
        return {"status": "fallback", "backend": "LocalDisk"}
