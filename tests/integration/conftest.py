"""Integration test fixtures: LocalStack DynamoDB and S3."""

from __future__ import annotations

import os
import uuid

import boto3
import pytest
from botocore.exceptions import BotoCoreError, ClientError

from collision_sync.persistence.dynamodb_backend import DynamoDBEstimateStore
from collision_sync.persistence.s3_backend import S3FileStore

# Default LocalStack endpoint
LOCALSTACK_URL = os.environ.get("LOCALSTACK_URL", "http://localhost:4566")
REGION = "us-east-1"
TABLE_NAME = "collision-sync-estimates"
TABLE_SUFFIX = "-inttest"
BUCKET = "collision-sync-inttest"


def _localstack_available() -> bool:
    """Check if LocalStack is reachable."""
    try:
        client = boto3.client("dynamodb", region_name=REGION, endpoint_url=LOCALSTACK_URL)
        client.list_tables()
        return True
    except (BotoCoreError, ClientError):
        return False


skip_no_localstack = pytest.mark.skipif(
    not _localstack_available(),
    reason="LocalStack not available",
)


@pytest.fixture(scope="session")
def localstack_store():
    """DynamoDBEstimateStore on LocalStack with its table created."""
    store = DynamoDBEstimateStore(
        table_name=TABLE_NAME, table_suffix=TABLE_SUFFIX, region=REGION, endpoint_url=LOCALSTACK_URL,
    )
    store.create_table()
    return store


@pytest.fixture(scope="session")
def localstack_files():
    """S3FileStore on a LocalStack bucket."""
    client = boto3.client("s3", region_name=REGION, endpoint_url=LOCALSTACK_URL)
    existing = {entry["Name"] for entry in client.list_buckets().get("Buckets", [])}
    if BUCKET not in existing:
        client.create_bucket(Bucket=BUCKET)
    return S3FileStore(bucket=BUCKET, region=REGION, endpoint_url=LOCALSTACK_URL)


@pytest.fixture
def run_id() -> str:
    """Unique token so repeated runs against one LocalStack never collide."""
    return uuid.uuid4().hex[:8]
