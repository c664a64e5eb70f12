"""DynamoDB backend implementing IEstimateStore with Redis caching.

Single-table layout (``PK``/``SK``):

==========================  ==========================  =======================
PK                          SK                          item
==========================  ==========================  =======================
``SHOPNAME#<name>``         ``SHOPNAME``                name -> shop id index
``SHOP#<shop>``             ``PROFILE``                 shop
``SHOP#<shop>``             ``CUSTOMER#<id>``           customer
``SHOP#<shop>``             ``VEHICLE#<id>``            vehicle
``SHOP#<shop>``             ``JOB#<id>``                job
``SHOP#<shop>``             ``CLAIM#<claim>``           identity index -> job
``SHOP#<shop>``             ``RO#<ro>``                 identity index -> job
``SHOP#<shop>``             ``JOBNUM#<number>``         identity index -> job
``SHOP#<shop>``             ``VEHJOB#<vehicle>#<ts>``   vehicle -> job history
``SHOP#<shop>``             ``VIN#<vin>``               identity index -> vehicle
``SHOP#<shop>``             ``EMAIL#<email>``           identity index -> customer
``SHOP#<shop>``             ``PHONE#<phone>``           identity index -> customer
``SHOP#<shop>``             ``COMPANY#<name>``          identity index -> customer
==========================  ==========================  =======================

Entities are stored as their JSON document in ``data`` so money values keep
their exact decimal text. A session reads through to the table and buffers
every write; ``TransactWriteItems`` commits them atomically. Creates are
guarded with ``attribute_not_exists`` and updates with the version that was
read, so a concurrent import of the same estimate fails with
``TransactionConflictError`` instead of creating a duplicate.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, TypeVar

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import BaseModel

from collision_sync.core.exceptions import CacheError, StoreError, TransactionConflictError
from collision_sync.core.protocols import ICacheBackend
from collision_sync.models.records import Customer, Job, Shop, Vehicle, utcnow

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

_CONFLICT_CODES = ("ConditionalCheckFailedException", "TransactionConflictException")
_CONFLICT_REASONS = ("ConditionalCheckFailed", "TransactionConflict")


def _shop_pk(shop_id: str) -> str:
    return f"SHOP#{shop_id}"


class _PendingWrite:
    __slots__ = ("item", "is_index", "guard")

    def __init__(self, item: dict[str, Any], is_index: bool, guard: Any = None) -> None:
        self.item = item
        self.is_index = is_index
        # entity: version that was read; index: ref_id that was read; None: must not exist
        self.guard = guard

    @property
    def is_new(self) -> bool:
        return self.guard is None


class DynamoDBStoreSession:
    """Read-through, write-behind IStoreSession over one DynamoDB table."""

    def __init__(self, store: DynamoDBEstimateStore) -> None:
        self._store = store
        self._table = store.table
        self._pending: dict[tuple[str, str], _PendingWrite] = {}
        self._loaded_versions: dict[tuple[str, str], int] = {}
        self.shop_to_cache: Optional[Shop] = None

    # ---- low-level ----

    def _get_item(self, pk: str, sk: str) -> Optional[dict[str, Any]]:
        pending = self._pending.get((pk, sk))
        if pending is not None:
            return pending.item
        try:
            resp = self._table.get_item(Key={"PK": pk, "SK": sk}, ConsistentRead=True)
        except ClientError as exc:
            raise StoreError(f"DynamoDB get_item failed for {pk}/{sk}: {exc}") from exc
        return resp.get("Item")

    def _query_prefix(self, pk: str, sk_prefix: str, count_only: bool = False) -> list[dict[str, Any]] | int:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("PK").eq(pk) & Key("SK").begins_with(sk_prefix),
            "ConsistentRead": True,
        }
        if count_only:
            kwargs["Select"] = "COUNT"
        items: list[dict[str, Any]] = []
        total = 0
        try:
            while True:
                resp = self._table.query(**kwargs)
                total += resp.get("Count", 0)
                items.extend(resp.get("Items", []))
                if "LastEvaluatedKey" not in resp:
                    break
                kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        except ClientError as exc:
            raise StoreError(f"DynamoDB query failed for {pk}/{sk_prefix}*: {exc}") from exc
        return total if count_only else items

    def _pending_new(self, pk: str, sk_prefix: str) -> list[dict[str, Any]]:
        return [
            write.item for (p, s), write in self._pending.items()
            if p == pk and s.startswith(sk_prefix) and write.is_new
        ]

    def _load(self, model: type[RecordT], pk: str, sk: str) -> Optional[RecordT]:
        item = self._get_item(pk, sk)
        if item is None:
            return None
        record = model.model_validate_json(item["data"])
        if (pk, sk) not in self._pending:
            self._loaded_versions[(pk, sk)] = int(item["version"])
        return record

    def _lookup(self, model: type[RecordT], shop_id: str, index_sk: str, entity_prefix: str,
                field: str, value: str, fold_case: bool = False) -> Optional[RecordT]:
        pk = _shop_pk(shop_id)
        index = self._get_item(pk, index_sk)
        if index is None:
            return None
        record = self._load(model, pk, f"{entity_prefix}#{index['ref_id']}")
        if record is None:
            return None
        stored = getattr(record, field) or ""
        if fold_case:
            stored, value = stored.lower(), value.lower()
        if stored != value:
            return None  # left behind by an identity change
        return record

    def _put_entity(self, pk: str, sk: str, record: RecordT, entity: str) -> RecordT:
        key = (pk, sk)
        if key in self._pending:
            expected = self._pending[key].guard
        else:
            expected = self._loaded_versions.get(key)
        stored = record.model_copy(deep=True)
        stored.version = (expected if expected is not None else record.version) + 1
        stored.updated_at = utcnow()
        self._pending[key] = _PendingWrite(
            item={
                "PK": pk,
                "SK": sk,
                "entity": entity,
                "id": stored.id,
                "version": stored.version,
                "data": stored.model_dump_json(),
            },
            is_index=False,
            guard=expected,
        )
        return stored

    def _put_index(self, pk: str, sk: str, ref_id: str, **extra: Any) -> None:
        existing = self._get_item(pk, sk)
        if existing is not None and existing.get("ref_id") == ref_id and (pk, sk) not in self._pending:
            return
        if (pk, sk) in self._pending:
            guard = self._pending[(pk, sk)].guard
        else:
            guard = existing.get("ref_id") if existing is not None else None
        self._pending[(pk, sk)] = _PendingWrite(
            item={"PK": pk, "SK": sk, "entity": "index", "ref_id": ref_id, **extra},
            is_index=True,
            guard=guard,
        )

    # ---- IStoreSession ----

    def ensure_shop(self, template: Shop) -> Shop:
        cached = self._store.cached_shop(template.name)
        if cached is not None:
            return cached
        index = self._get_item(f"SHOPNAME#{template.name}", "SHOPNAME")
        if index is not None:
            shop = self._load(Shop, _shop_pk(index["ref_id"]), "PROFILE")
            if shop is not None:
                self.shop_to_cache = shop
                return shop
        logger.info("Creating default shop %r", template.name)
        shop = self._put_entity(_shop_pk(template.id), "PROFILE", template, "shop")
        self._put_index(f"SHOPNAME#{template.name}", "SHOPNAME", shop.id)
        self.shop_to_cache = shop
        return shop

    def find_job_by_claim(self, shop_id: str, claim_number: str) -> Optional[Job]:
        return self._lookup(Job, shop_id, f"CLAIM#{claim_number}", "JOB", "claim_number", claim_number)

    def find_job_by_ro(self, shop_id: str, ro_number: str) -> Optional[Job]:
        return (
            self._lookup(Job, shop_id, f"RO#{ro_number}", "JOB", "estimate_number", ro_number)
            or self._lookup(Job, shop_id, f"JOBNUM#{ro_number}", "JOB", "job_number", ro_number)
        )

    def find_latest_job_for_vehicle(self, shop_id: str, vehicle_id: str) -> Optional[Job]:
        pk = _shop_pk(shop_id)
        prefix = f"VEHJOB#{vehicle_id}#"
        entries = self._query_prefix(pk, prefix) + self._pending_new(pk, prefix)
        for entry in sorted(entries, key=lambda item: item["SK"], reverse=True):
            job = self._load(Job, pk, f"JOB#{entry['ref_id']}")
            if job is not None and job.vehicle_id == vehicle_id:
                return job
        return None

    def find_vehicle_by_vin(self, shop_id: str, vin: str) -> Optional[Vehicle]:
        return self._lookup(Vehicle, shop_id, f"VIN#{vin}", "VEHICLE", "vin", vin)

    def find_customer_by_email(self, shop_id: str, email: str) -> Optional[Customer]:
        return self._lookup(Customer, shop_id, f"EMAIL#{email.lower()}", "CUSTOMER", "email", email, fold_case=True)

    def find_customer_by_phone(self, shop_id: str, phone: str) -> Optional[Customer]:
        return self._lookup(Customer, shop_id, f"PHONE#{phone}", "CUSTOMER", "phone", phone)

    def find_customer_by_company(self, shop_id: str, company_name: str) -> Optional[Customer]:
        return self._lookup(
            Customer, shop_id, f"COMPANY#{company_name.lower()}", "CUSTOMER", "company_name", company_name,
            fold_case=True,
        )

    def count_customers(self, shop_id: str) -> int:
        pk = _shop_pk(shop_id)
        return self._query_prefix(pk, "CUSTOMER#", count_only=True) + len(self._pending_new(pk, "CUSTOMER#"))

    def count_jobs_with_prefix(self, shop_id: str, prefix: str) -> int:
        pk = _shop_pk(shop_id)
        sk_prefix = f"JOBNUM#{prefix}-"
        return self._query_prefix(pk, sk_prefix, count_only=True) + len(self._pending_new(pk, sk_prefix))

    def save_customer(self, customer: Customer) -> Customer:
        pk = _shop_pk(customer.shop_id)
        stored = self._put_entity(pk, f"CUSTOMER#{customer.id}", customer, "customer")
        if stored.email:
            self._put_index(pk, f"EMAIL#{stored.email.lower()}", stored.id)
        if stored.phone:
            self._put_index(pk, f"PHONE#{stored.phone}", stored.id)
        if stored.company_name and stored.customer_type == "business":
            self._put_index(pk, f"COMPANY#{stored.company_name.lower()}", stored.id)
        return stored

    def save_vehicle(self, vehicle: Vehicle) -> Vehicle:
        pk = _shop_pk(vehicle.shop_id)
        stored = self._put_entity(pk, f"VEHICLE#{vehicle.id}", vehicle, "vehicle")
        if stored.vin:
            self._put_index(pk, f"VIN#{stored.vin}", stored.id)
        return stored

    def save_job(self, job: Job) -> Job:
        pk = _shop_pk(job.shop_id)
        stored = self._put_entity(pk, f"JOB#{job.id}", job, "job")
        self._put_index(pk, f"JOBNUM#{stored.job_number}", stored.id)
        if stored.claim_number:
            self._put_index(pk, f"CLAIM#{stored.claim_number}", stored.id)
        if stored.estimate_number:
            self._put_index(pk, f"RO#{stored.estimate_number}", stored.id)
        self._put_index(pk, f"VEHJOB#{stored.vehicle_id}#{stored.created_at.isoformat()}#{stored.id}", stored.id)
        return stored

    # ---- commit ----

    def transact_items(self) -> list[dict[str, Any]]:
        """Build the ``TransactWriteItems`` request for the buffered writes."""
        table_name = self._table.name
        items: list[dict[str, Any]] = []
        for write in self._pending.values():
            put: dict[str, Any] = {
                "TableName": table_name,
                "Item": dict(write.item),
            }
            if write.is_new:
                put["ConditionExpression"] = "attribute_not_exists(PK)"
            elif write.is_index:
                put["ConditionExpression"] = "ref_id = :seen"
                put["ExpressionAttributeValues"] = {":seen": write.guard}
            else:
                put["ConditionExpression"] = "version = :expected"
                put["ExpressionAttributeValues"] = {":expected": write.guard}
            items.append({"Put": put})
        return items

    @property
    def has_writes(self) -> bool:
        return bool(self._pending)


class DynamoDBEstimateStore:
    """Production IEstimateStore backed by DynamoDB + optional Redis cache."""

    CACHE_TTL = 300  # 5 minutes
    MAX_TRANSACTION_ITEMS = 100

    def __init__(self, table_name: str = "collision-sync-estimates", table_suffix: str = "",
                 region: str = "us-east-1", endpoint_url: str | None = None,
                 cache: ICacheBackend | None = None) -> None:
        self._region = region
        self._endpoint_url = endpoint_url
        self._cache = cache
        kwargs: dict = {"region_name": region}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        self._ddb = boto3.resource("dynamodb", **kwargs)
        self.table = self._ddb.Table(f"{table_name}{table_suffix}")

    def create_table(self) -> None:
        """Create the estimate table if it does not exist."""
        client = self._ddb.meta.client
        existing = client.list_tables().get("TableNames", [])
        if self.table.name in existing:
            return
        client.create_table(
            TableName=self.table.name,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        client.get_waiter("table_exists").wait(TableName=self.table.name)
        logger.info("Created DynamoDB table %s", self.table.name)

    # ---- shop cache ----

    @staticmethod
    def _shop_cache_key(name: str) -> str:
        return f"shop:{name}"

    def cached_shop(self, name: str) -> Optional[Shop]:
        if self._cache is None:
            return None
        try:
            cached = self._cache.get(self._shop_cache_key(name))
        except CacheError as exc:
            logger.warning("Shop cache read failed, falling back to DynamoDB: %s", exc)
            return None
        return Shop.model_validate_json(cached) if cached else None

    def _cache_shop(self, shop: Shop) -> None:
        if self._cache is None:
            return
        try:
            self._cache.setex(self._shop_cache_key(shop.name), self.CACHE_TTL, shop.model_dump_json())
        except CacheError as exc:
            logger.warning("Shop cache write failed: %s", exc)

    # ---- IEstimateStore ----

    @contextmanager
    def transaction(self) -> Iterator[DynamoDBStoreSession]:
        session = DynamoDBStoreSession(self)
        yield session
        if session.has_writes:
            self._commit(session)
        if session.shop_to_cache is not None:
            self._cache_shop(session.shop_to_cache)

    def _commit(self, session: DynamoDBStoreSession) -> None:
        items = session.transact_items()
        if len(items) > self.MAX_TRANSACTION_ITEMS:
            raise StoreError(f"transaction has {len(items)} writes; DynamoDB allows {self.MAX_TRANSACTION_ITEMS}")
        try:
            self._ddb.meta.client.transact_write_items(TransactItems=items)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _CONFLICT_CODES:
                raise TransactionConflictError(f"concurrent write conflict ({code})") from exc
            if code == "TransactionCanceledException":
                reasons = [
                    reason.get("Code", "")
                    for reason in exc.response.get("CancellationReasons", [])
                    if reason.get("Code") not in (None, "None")
                ]
                logger.warning("DynamoDB transaction cancelled: %s", reasons or code)
                if reasons and all(reason in _CONFLICT_REASONS for reason in reasons):
                    raise TransactionConflictError(f"concurrent write conflict ({', '.join(reasons)})") from exc
                raise StoreError(f"DynamoDB transaction cancelled ({', '.join(reasons) or code})") from exc
            raise StoreError(f"DynamoDB transact_write_items failed: {exc}") from exc
        logger.debug("Committed %d DynamoDB writes", len(items))

    # ---- inspection ----

    def scan_entities(self, entity: str) -> list[dict[str, Any]]:
        """All stored documents of one entity type, decoded from JSON."""
        kwargs: dict[str, Any] = {
            "FilterExpression": "entity = :entity",
            "ExpressionAttributeValues": {":entity": entity},
        }
        documents: list[dict[str, Any]] = []
        try:
            while True:
                resp = self.table.scan(**kwargs)
                documents.extend(json.loads(item["data"]) for item in resp.get("Items", []))
                if "LastEvaluatedKey" not in resp:
                    break
                kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        except ClientError as exc:
            raise StoreError(f"DynamoDB scan failed for {entity}: {exc}") from exc
        return documents
