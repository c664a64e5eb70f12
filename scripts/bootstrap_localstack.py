"""Create the estimate table and file bucket, optionally staging files in the inbox.

Usage:
    python scripts/bootstrap_localstack.py --endpoint-url http://localhost:4566
    python scripts/bootstrap_localstack.py --endpoint-url http://localhost:4566 --upload tests/fixtures
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

import boto3

from collision_sync.core.config import AppSettings, ImportConfig
from collision_sync.persistence.dynamodb_backend import DynamoDBEstimateStore
from collision_sync.persistence.s3_backend import S3FileStore


def create_bucket(s3: Any, bucket: str, region: str) -> None:
    """Create ``bucket`` unless it already exists."""
    existing = {entry["Name"] for entry in s3.list_buckets().get("Buckets", [])}
    if bucket in existing:
        print(f"  Bucket {bucket} already exists, skipping")
        return
    if region == "us-east-1":
        s3.create_bucket(Bucket=bucket)
    else:
        s3.create_bucket(Bucket=bucket, CreateBucketConfiguration={"LocationConstraint": region})
    print(f"  Created bucket {bucket}")


def stage_files(file_store: S3FileStore, directory: Path, importer: ImportConfig) -> list[str]:
    """Upload supported estimate files from ``directory`` into the inbox prefix."""
    staged: list[str] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in importer.extensions:
            continue
        staged.append(file_store.write(f"{importer.inbox_prefix}{path.name}", path.read_bytes()))
        print(f"  Staged {path.name}")
    return staged


def bootstrap(settings: AppSettings, endpoint_url: str | None = None, upload: Path | None = None) -> list[str]:
    dynamo, s3_config = settings.dynamodb, settings.s3
    endpoint = endpoint_url or dynamo.endpoint_url
    DynamoDBEstimateStore(
        table_name=dynamo.table_name,
        table_suffix=dynamo.table_suffix,
        region=dynamo.region,
        endpoint_url=endpoint,
    ).create_table()
    print(f"  Table {dynamo.table_name}{dynamo.table_suffix} ready")

    s3_endpoint = endpoint_url or s3_config.endpoint_url
    kwargs: dict = {"region_name": s3_config.region}
    if s3_endpoint:
        kwargs["endpoint_url"] = s3_endpoint
    create_bucket(boto3.client("s3", **kwargs), s3_config.bucket, s3_config.region)

    if upload is None:
        return []
    file_store = S3FileStore(bucket=s3_config.bucket, region=s3_config.region, endpoint_url=s3_endpoint)
    return stage_files(file_store, upload, settings.importer)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create collision-sync AWS resources")
    parser.add_argument("--endpoint-url", default=None, help="LocalStack endpoint URL")
    parser.add_argument("--upload", type=Path, default=None, help="Directory of estimate files to stage")
    args = parser.parse_args()

    print("Bootstrapping collision-sync resources...")
    staged = bootstrap(AppSettings(), args.endpoint_url, args.upload)
    print(f"Done. {len(staged)} files staged.")


if __name__ == "__main__":
    main()
