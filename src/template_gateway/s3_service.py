"""
S3 service module for the gateway's document blobs.

This module provides a thin blob store over an S3-compatible bucket pair:
- "uploads" holds original documents and manifests keyed by archive name
- "conversions" holds converted documents keyed by target filename

Logical bucket names are mapped to real bucket names through the
storage.buckets section of the configuration, and an optional endpoint URL
allows S3-compatible stores (MinIO, Supabase storage) to be used.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError

logger = logging.getLogger(__name__)

UPLOADS_BUCKET = "uploads"
CONVERSIONS_BUCKET = "conversions"


class BlobStore:
    """
    Get/put access to document bytes by logical bucket and path.

    The boto3 client is created lazily on first use so the application can
    start without storage credentials. Creation is serialized because uploads
    run from several worker threads at once.
    """

    def __init__(
        self,
        buckets: Dict[str, str],
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        client=None,
    ):
        self.buckets = dict(buckets)
        self.endpoint_url = endpoint_url
        self.region_name = region_name
        self._client = client
        self._client_lock = Lock()

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = boto3.client(
                    "s3",
                    endpoint_url=self.endpoint_url or None,
                    region_name=self.region_name or None,
                )
            return self._client

    def _bucket(self, bucket: str) -> str:
        try:
            return self.buckets[bucket]
        except KeyError:
            raise StorageError(bucket, "", "bucket is not configured") from None

    def get(self, bucket: str, path: str) -> bytes:
        """
        Download an object.

        Args:
            bucket: Logical bucket name ("uploads" or "conversions")
            path: Object key within the bucket

        Returns:
            The object's bytes

        Raises:
            StorageError: If the object is missing or the store is unreachable
        """
        client = self._get_client()
        try:
            response = client.get_object(Bucket=self._bucket(bucket), Key=path)
            data = response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            logger.error(f"S3 download failed for {bucket}/{path}: {code or e}")
            raise StorageError(bucket, path, code or str(e)) from e
        except BotoCoreError as e:
            logger.error(f"S3 download failed for {bucket}/{path}: {e}")
            raise StorageError(bucket, path, str(e)) from e

        logger.info(f"Downloaded {len(data)} bytes from {bucket}/{path}")
        return data

    def put(self, bucket: str, path: str, data: bytes, overwrite: bool = True) -> str:
        """
        Upload an object and return its stored path.

        Args:
            bucket: Logical bucket name
            path: Object key within the bucket
            data: Bytes to store
            overwrite: Replace an existing object at the same key

        Returns:
            The key the object was stored under

        Raises:
            StorageError: If the upload fails, or the key exists and
                overwrite is False
        """
        client = self._get_client()
        real_bucket = self._bucket(bucket)
        try:
            if not overwrite and self._exists(client, real_bucket, path):
                raise StorageError(bucket, path, "object already exists")
            client.put_object(Bucket=real_bucket, Key=path, Body=data)
        except ClientError as e:
            logger.error(f"S3 upload failed for {bucket}/{path}: {e}")
            raise StorageError(bucket, path, str(e)) from e
        except BotoCoreError as e:
            logger.error(f"S3 upload failed for {bucket}/{path}: {e}")
            raise StorageError(bucket, path, str(e)) from e

        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return path

    @staticmethod
    def _exists(client, bucket: str, path: str) -> bool:
        try:
            client.head_object(Bucket=bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True


def blob_store_from_settings(storage) -> BlobStore:
    """Create a BlobStore from the storage section of the settings."""
    return BlobStore(
        buckets=dict(storage.buckets),
        endpoint_url=storage.get("endpoint_url"),
        region_name=storage.get("region_name"),
    )
