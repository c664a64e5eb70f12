"""S3 file storage backend implementing IFileStore.

Estimate files arrive under the inbox prefix and are moved to the processed
or failed prefix once an import finishes. S3 has no rename, so a move is a
copy followed by a delete of the source.
"""

from __future__ import annotations

import logging
import mimetypes

import boto3
from botocore.exceptions import ClientError

from collision_sync.core.exceptions import FileStoreError

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})

# Fixed types for estimate extensions; everything else goes through mimetypes.
_CONTENT_TYPES = {".xml": "application/xml", ".bms": "application/xml", ".ems": "text/plain"}


def guess_content_type(path: str) -> str:
    suffix = path[path.rfind("."):].lower() if "." in path else ""
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3FileStore:
    """Production IFileStore backed by one S3 bucket."""

    def __init__(self, bucket: str, region: str = "us-east-1",
                 endpoint_url: str | None = None) -> None:
        self._bucket = bucket
        kwargs: dict = {"region_name": region}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        self._client = boto3.client("s3", **kwargs)

    @property
    def bucket(self) -> str:
        return self._bucket

    def read(self, path: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=path)
            return resp["Body"].read()
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise FileStoreError(f"no such file: s3://{self._bucket}/{path}") from exc
            raise FileStoreError(f"S3 read failed for {path!r}: {exc}") from exc

    def write(self, path: str, data: bytes, content_type: str | None = None) -> str:
        try:
            self._client.put_object(
                Bucket=self._bucket, Key=path, Body=data,
                ContentType=content_type or guess_content_type(path),
            )
        except ClientError as exc:
            raise FileStoreError(f"S3 write failed for {path!r}: {exc}") from exc
        return path

    def move(self, src: str, dst: str) -> None:
        if src == dst:
            return
        try:
            self._client.copy_object(
                Bucket=self._bucket,
                CopySource={"Bucket": self._bucket, "Key": src},
                Key=dst,
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise FileStoreError(f"no such file: s3://{self._bucket}/{src}") from exc
            raise FileStoreError(f"S3 copy {src!r} -> {dst!r} failed: {exc}") from exc
        try:
            self._client.delete_object(Bucket=self._bucket, Key=src)
        except ClientError as exc:
            # The copy exists; a leftover source would be imported again.
            raise FileStoreError(f"S3 delete of moved file {src!r} failed: {exc}") from exc
        logger.debug("Moved s3://%s/%s to %s", self._bucket, src, dst)

    def list_files(self, prefix: str) -> list[str]:
        """Object keys under ``prefix`` in key order, folder markers excluded."""
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []) if not obj["Key"].endswith("/"))
        except ClientError as exc:
            raise FileStoreError(f"S3 list failed for prefix={prefix!r}: {exc}") from exc
        return sorted(keys)
