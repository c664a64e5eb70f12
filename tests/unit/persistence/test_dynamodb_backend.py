"""Unit tests for DynamoDBEstimateStore using moto."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from collision_sync.core.config import ShopConfig
from collision_sync.core.exceptions import CacheError, StoreError, TransactionConflictError, TransactionFailure
from collision_sync.merge.normalizer import JobNormalizer
from collision_sync.models.payload import JobIdentities, NormalizedPayload, PersonCustomer, Vehicle
from collision_sync.models.records import AuditAction, Customer, Shop
from collision_sync.parsers.bms import parse_bms
from collision_sync.persistence.dynamodb_backend import DynamoDBEstimateStore
from tests.fakes import MemoryCacheBackend

TABLE_NAME = "collision-sync-estimates"
TABLE_SUFFIX = "-test"
REGION = "us-east-1"
SHOP_NAME = "Default Auto Body Shop"


class _BrokenCache:
    def get(self, key: str) -> str | None:
        raise CacheError("redis down")

    def setex(self, key: str, ttl: int, value: str) -> None:
        raise CacheError("redis down")

    def delete(self, key: str) -> None:
        raise CacheError("redis down")


def _client_error(code: str, reasons: list[dict] | None = None) -> ClientError:
    response: dict = {"Error": {"Code": code, "Message": code}}
    if reasons is not None:
        response["CancellationReasons"] = reasons
    return ClientError(response, "TransactWriteItems")


# ---------- fixtures ----------

@pytest.fixture
def aws():
    with mock_aws():
        yield boto3.client("dynamodb", region_name=REGION)


@pytest.fixture
def cache():
    return MemoryCacheBackend()


@pytest.fixture
def store(aws, cache):
    estimate_store = DynamoDBEstimateStore(
        table_name=TABLE_NAME, table_suffix=TABLE_SUFFIX, region=REGION, cache=cache,
    )
    estimate_store.create_table()
    return estimate_store


@pytest.fixture
def normalizer(store):
    return JobNormalizer(store, ShopConfig())


@pytest.fixture
def mitchell(mitchell_xml):
    return parse_bms(mitchell_xml)


# ---------- create_table ----------

class TestCreateTable:
    def test_table_is_created_with_suffix(self, store, aws):
        assert f"{TABLE_NAME}{TABLE_SUFFIX}" in aws.list_tables()["TableNames"]

    def test_create_is_idempotent(self, store, aws):
        store.create_table()
        assert aws.list_tables()["TableNames"].count(f"{TABLE_NAME}{TABLE_SUFFIX}") == 1


# ---------- merge round trip ----------

class TestImport:
    def test_creates_all_entities(self, store, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)

        assert len(store.scan_entities("shop")) == 1
        assert len(store.scan_entities("customer")) == 1
        assert len(store.scan_entities("vehicle")) == 1
        (stored,) = store.scan_entities("job")
        assert stored["id"] == job.id
        assert stored["claim_number"] == "CLM-555-123"
        assert Decimal(stored["total_amount"]) == Decimal("639.85")

    def test_identity_index_items_exist(self, store, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        pk = f"SHOP#{job.shop_id}"
        for sk in ("CLAIM#CLM-555-123", "RO#RO-10001", f"JOBNUM#{job.job_number}",
                   "VIN#1HGCM82633A004352", "EMAIL#jane.doe@example.com", "PHONE#(416) 555-0101"):
            item = store.table.get_item(Key={"PK": pk, "SK": sk}).get("Item")
            assert item is not None, sk
            assert item["entity"] == "index"

    def test_reimport_updates_in_place(self, store, normalizer, mitchell):
        first = normalizer.upsert_job(mitchell)
        second = normalizer.upsert_job(mitchell)

        assert second.id == first.id
        assert second.version == first.version + 1
        assert len(store.scan_entities("job")) == 1
        assert len(store.scan_entities("customer")) == 1
        assert len(store.scan_entities("vehicle")) == 1
        assert [entry.action for entry in second.history] == [AuditAction.CREATED, AuditAction.UPDATED]

    def test_job_numbers_continue_across_transactions(self, normalizer, mitchell):
        first = normalizer.upsert_job(mitchell)
        second = normalizer.upsert_job(NormalizedPayload(identities=JobIdentities(claim_number="CLM-2")))
        assert first.job_number.endswith("-001")
        assert second.job_number == first.job_number[:-3] + "002"

    def test_vin_only_estimate_finds_latest_job(self, store, normalizer):
        payload = NormalizedPayload(
            identities=JobIdentities(vin="2T1BURHE0JC043821"),
            vehicle=Vehicle(vin="2T1BURHE0JC043821"),
        )
        first = normalizer.upsert_job(payload)
        again = normalizer.upsert_job(payload)
        assert again.id == first.id
        assert len(store.scan_entities("job")) == 1

    def test_email_case_variants_share_one_customer(self, store, normalizer):
        def payload(claim: str, email: str) -> NormalizedPayload:
            return NormalizedPayload(
                identities=JobIdentities(claim_number=claim),
                customer=PersonCustomer(first_name="Pat", last_name="Quinn", email=email),
            )

        first = normalizer.upsert_job(payload("CLM-A", "Pat@Example.com"))
        normalizer.upsert_job(payload("CLM-B", "pat@example.com"))
        again = normalizer.upsert_job(payload("CLM-A", "Pat@Example.com"))
        assert len(store.scan_entities("customer")) == 1
        assert again.customer_id == first.customer_id

    def test_user_modified_job_is_skipped(self, store, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        with store.transaction() as session:
            loaded = session.find_job_by_claim(job.shop_id, "CLM-555-123")
            loaded.is_user_modified = True
            session.save_job(loaded)

        skipped = normalizer.upsert_job(mitchell)
        assert skipped.history[-1].action == AuditAction.IMPORT_SKIPPED


# ---------- shop cache ----------

class TestShopCache:
    def test_shop_is_cached_after_commit(self, normalizer, cache, mitchell):
        job = normalizer.upsert_job(mitchell)
        cached = cache.get(f"shop:{SHOP_NAME}")
        assert cached is not None
        assert Shop.model_validate_json(cached).id == job.shop_id

    def test_cached_shop_is_reused(self, store, normalizer, cache, mitchell):
        normalizer.upsert_job(mitchell)
        with patch.object(store.table, "get_item", wraps=store.table.get_item) as get_item:
            with store.transaction() as session:
                session.ensure_shop(Shop(name=SHOP_NAME))
        get_item.assert_not_called()

    def test_cache_failure_falls_back_to_table(self, aws, mitchell):
        broken = DynamoDBEstimateStore(
            table_name=TABLE_NAME, table_suffix=TABLE_SUFFIX, region=REGION, cache=_BrokenCache(),
        )
        broken.create_table()
        normalizer = JobNormalizer(broken)
        first = normalizer.upsert_job(mitchell)
        second = normalizer.upsert_job(mitchell)
        assert second.id == first.id
        assert len(broken.scan_entities("shop")) == 1


# ---------- concurrency ----------

class TestConflicts:
    def test_stale_version_raises_conflict(self, store, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        with pytest.raises(TransactionConflictError):
            with store.transaction() as session:
                stale = session.find_job_by_claim(job.shop_id, "CLM-555-123")
                normalizer.upsert_job(mitchell)  # a concurrent import commits first
                session.save_job(stale)

        (stored,) = store.scan_entities("job")
        assert len(stored["history"]) == 2

    def test_duplicate_create_raises_conflict(self, store, mitchell):
        with store.transaction() as session:
            shop = session.ensure_shop(Shop(name=SHOP_NAME))
        racing = Customer(shop_id=shop.id, email="race@example.com")
        with store.transaction() as session:
            session.save_customer(racing)
        with pytest.raises(TransactionConflictError):
            with store.transaction() as session:
                session.save_customer(Customer(id=racing.id, shop_id=shop.id, email="race@example.com"))

    def test_new_and_updated_items_get_conditions(self, store):
        with store.transaction() as session:
            shop = session.ensure_shop(Shop(name=SHOP_NAME))
            items = session.transact_items()
        conditions = {item["Put"]["Item"]["SK"]: item["Put"]["ConditionExpression"] for item in items}
        assert conditions == {"PROFILE": "attribute_not_exists(PK)", "SHOPNAME": "attribute_not_exists(PK)"}
        assert shop.version == 1

    def test_items_carry_plain_attribute_values(self, store, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        with store.transaction() as session:
            loaded = session.find_job_by_claim(job.shop_id, "CLM-555-123")
            session.save_job(loaded)
            items = session.transact_items()
        puts = {item["Put"]["Item"]["SK"]: item["Put"] for item in items}
        job_put = puts[f"JOB#{job.id}"]
        assert job_put["Item"]["PK"] == f"SHOP#{job.shop_id}"
        assert job_put["ConditionExpression"] == "version = :expected"
        assert job_put["ExpressionAttributeValues"] == {":expected": job.version}


class TestCommitErrors:
    def test_cancellation_maps_to_conflict(self, store, mitchell):
        normalizer = JobNormalizer(store)
        error = _client_error("TransactionCanceledException", [{"Code": "ConditionalCheckFailed"}, {"Code": "None"}])
        with patch.object(store._ddb.meta.client, "transact_write_items", side_effect=error):
            with pytest.raises(TransactionConflictError, match="ConditionalCheckFailed"):
                normalizer.upsert_job(mitchell)

    def test_other_cancellation_reasons_are_not_conflicts(self, store, mitchell):
        normalizer = JobNormalizer(store)
        error = _client_error("TransactionCanceledException", [{"Code": "ValidationError"}, {"Code": "None"}])
        with patch.object(store._ddb.meta.client, "transact_write_items", side_effect=error):
            with pytest.raises(TransactionFailure) as excinfo:
                normalizer.upsert_job(mitchell)
        assert not isinstance(excinfo.value, TransactionConflictError)
        assert isinstance(excinfo.value.__cause__, StoreError)

    def test_other_client_errors_become_transaction_failures(self, store, mitchell):
        normalizer = JobNormalizer(store)
        with patch.object(store._ddb.meta.client, "transact_write_items",
                          side_effect=_client_error("ValidationException")):
            with pytest.raises(TransactionFailure) as excinfo:
                normalizer.upsert_job(mitchell)
        assert isinstance(excinfo.value.__cause__, StoreError)
        assert store.scan_entities("job") == []

    def test_read_errors_become_transaction_failures(self, store, mitchell):
        normalizer = JobNormalizer(store)
        throttled = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}}, "GetItem",
        )
        with patch.object(store.table, "get_item", side_effect=throttled):
            with pytest.raises(TransactionFailure):
                normalizer.upsert_job(mitchell)
        assert store.scan_entities("job") == []
