import logging
from pathlib import Path
from typing import Dict, Optional, Set

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from abrpub.config.models import StorageConfig

# Raised by the client for transient and permanent transfer problems alike
STORE_ERRORS = (BotoCoreError, ClientError, OSError)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3ObjectStore:
    """
    Thin client over an S3-compatible bucket.

    One instance owns one boto3 client and its connection pool. Callers scope
    it to a job or a batch run (it is a context manager); nothing here is a
    module-level singleton. SDK-level retries are disabled, retry policy lives
    with the callers.
    """

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self.bucket = config.bucket
        self.logger = logging.getLogger(__name__)
        self._client = client if client is not None else self._build_client(config)

    @staticmethod
    def _build_client(config: StorageConfig):
        if not config.bucket:
            raise ValueError("Storage bucket is not configured (set ABRPUB_S3_BUCKET)")
        return boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=Config(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                max_pool_connections=config.max_pool_connections,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    def __enter__(self) -> "S3ObjectStore":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        close = getattr(self._client, "close", None)
        if close:
            close()

    def list_objects(self, prefix: str) -> Dict[str, int]:
        """Returns key -> size for every object under prefix, following all pages."""
        objects: Dict[str, int] = {}
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                objects[item["Key"]] = int(item.get("Size", 0))
        self.logger.debug(f"Listed {len(objects)} objects under {prefix}")
        return objects

    def list_keys(self, prefix: str) -> Set[str]:
        return set(self.list_objects(prefix))

    def head(self, key: str) -> Optional[int]:
        """Returns the object size, or None when the key does not exist."""
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                return None
            raise
        return int(response.get("ContentLength", 0))

    def put_file(self, path: Path, key: str, content_type: str, cache_control: Optional[str] = None) -> int:
        """Uploads a local file; returns the number of bytes sent."""
        extra = {"ContentType": content_type}
        if cache_control:
            extra["CacheControl"] = cache_control
        size = path.stat().st_size
        with open(path, "rb") as f:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=f, **extra)
        return size

    def download_to(self, key: str, destination: Path, chunk_size: int = 8 * 1024 * 1024) -> int:
        """Streams an object to destination via a .part file; returns bytes written."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        body = response["Body"]
        written = 0
        try:
            with open(partial, "wb") as fh:
                for chunk in body.iter_chunks(chunk_size):
                    if chunk:
                        fh.write(chunk)
                        written += len(chunk)
        finally:
            body.close()
        partial.replace(destination)
        return written

    def delete(self, key: str):
        self._client.delete_object(Bucket=self.bucket, Key=key)
        self.logger.info(f"Deleted s3://{self.bucket}/{key}")
