"""In-memory backends for unit tests and dry runs: dict-backed fakes."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from collision_sync.core.exceptions import FileStoreError
from collision_sync.models.records import Customer, Job, Shop, Vehicle, utcnow

logger = logging.getLogger(__name__)


class _MemoryState:
    def __init__(self) -> None:
        self.shops: dict[str, Shop] = {}
        self.customers: dict[str, Customer] = {}
        self.vehicles: dict[str, Vehicle] = {}
        self.jobs: dict[str, Job] = {}

    def snapshot(self) -> _MemoryState:
        # Stored records are never mutated in place, so shallow copies suffice.
        copy = _MemoryState()
        copy.shops = dict(self.shops)
        copy.customers = dict(self.customers)
        copy.vehicles = dict(self.vehicles)
        copy.jobs = dict(self.jobs)
        return copy


class MemoryStoreSession:
    """IStoreSession over a ``_MemoryState``; records are copied in and out."""

    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def ensure_shop(self, template: Shop) -> Shop:
        for shop in self._state.shops.values():
            if shop.name == template.name:
                return shop.model_copy(deep=True)
        logger.info("Creating default shop %r", template.name)
        stored = template.model_copy(deep=True)
        self._state.shops[stored.id] = stored
        return stored.model_copy(deep=True)

    def _first_job(self, shop_id: str, predicate) -> Optional[Job]:
        for job in self._state.jobs.values():
            if job.shop_id == shop_id and predicate(job):
                return job.model_copy(deep=True)
        return None

    def find_job_by_claim(self, shop_id: str, claim_number: str) -> Optional[Job]:
        return self._first_job(shop_id, lambda job: job.claim_number == claim_number)

    def find_job_by_ro(self, shop_id: str, ro_number: str) -> Optional[Job]:
        return self._first_job(
            shop_id, lambda job: ro_number in (job.estimate_number, job.job_number),
        )

    def find_latest_job_for_vehicle(self, shop_id: str, vehicle_id: str) -> Optional[Job]:
        matches = [
            job for job in self._state.jobs.values()
            if job.shop_id == shop_id and job.vehicle_id == vehicle_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda job: job.created_at).model_copy(deep=True)

    def find_vehicle_by_vin(self, shop_id: str, vin: str) -> Optional[Vehicle]:
        for vehicle in self._state.vehicles.values():
            if vehicle.shop_id == shop_id and vehicle.vin == vin:
                return vehicle.model_copy(deep=True)
        return None

    def _first_customer(self, shop_id: str, predicate) -> Optional[Customer]:
        for customer in self._state.customers.values():
            if customer.shop_id == shop_id and predicate(customer):
                return customer.model_copy(deep=True)
        return None

    def find_customer_by_email(self, shop_id: str, email: str) -> Optional[Customer]:
        return self._first_customer(shop_id, lambda c: (c.email or "").lower() == email.lower())

    def find_customer_by_phone(self, shop_id: str, phone: str) -> Optional[Customer]:
        return self._first_customer(shop_id, lambda c: c.phone == phone)

    def find_customer_by_company(self, shop_id: str, company_name: str) -> Optional[Customer]:
        return self._first_customer(
            shop_id,
            lambda c: (c.company_name or "").lower() == company_name.lower() and c.customer_type == "business",
        )

    def count_customers(self, shop_id: str) -> int:
        return sum(1 for c in self._state.customers.values() if c.shop_id == shop_id)

    def count_jobs_with_prefix(self, shop_id: str, prefix: str) -> int:
        return sum(
            1 for job in self._state.jobs.values()
            if job.shop_id == shop_id and job.job_number.startswith(f"{prefix}-")
        )

    @staticmethod
    def _stamp(record):
        stored = record.model_copy(deep=True)
        stored.version = record.version + 1
        stored.updated_at = utcnow()
        return stored

    def save_customer(self, customer: Customer) -> Customer:
        stored = self._stamp(customer)
        self._state.customers[stored.id] = stored
        return stored.model_copy(deep=True)

    def save_vehicle(self, vehicle: Vehicle) -> Vehicle:
        stored = self._stamp(vehicle)
        self._state.vehicles[stored.id] = stored
        return stored.model_copy(deep=True)

    def save_job(self, job: Job) -> Job:
        stored = self._stamp(job)
        self._state.jobs[stored.id] = stored
        return stored.model_copy(deep=True)


class MemoryEstimateStore:
    """Dict-backed IEstimateStore; transactions serialize and roll back from a snapshot."""

    def __init__(self) -> None:
        self._state = _MemoryState()
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[MemoryStoreSession]:
        with self._lock:
            snapshot = self._state.snapshot()
            try:
                yield MemoryStoreSession(self._state)
            except BaseException:
                logger.debug("Rolling back in-memory transaction")
                self._state = snapshot
                raise

    # ---- inspection helpers ----

    def shops(self) -> list[Shop]:
        return list(self._state.shops.values())

    def customers(self) -> list[Customer]:
        return list(self._state.customers.values())

    def vehicles(self) -> list[Vehicle]:
        return list(self._state.vehicles.values())

    def jobs(self) -> list[Job]:
        return list(self._state.jobs.values())

    def put_job(self, job: Job) -> None:
        """Replace a stored job directly, e.g. to simulate a user edit."""
        with self._lock:
            self._state.jobs[job.id] = job.model_copy(deep=True)


class MemoryCacheBackend:
    """Dict-backed ICacheBackend for unit tests."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value

    def delete(self, key: str) -> None:
        self._store.pop(key, None)


class MemoryFileStore:
    """Dict-backed IFileStore for unit tests."""

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self._files: dict[str, bytes] = dict(files or {})

    def read(self, path: str) -> bytes:
        try:
            return self._files[path]
        except KeyError as exc:
            raise FileStoreError(f"no such file: {path!r}") from exc

    def write(self, path: str, data: bytes, content_type: str | None = None) -> str:
        self._files[path] = data
        return path

    def move(self, src: str, dst: str) -> None:
        if src not in self._files:
            raise FileStoreError(f"no such file: {src!r}")
        self._files[dst] = self._files.pop(src)

    def list_files(self, prefix: str) -> list[str]:
        return sorted(k for k in self._files if k.startswith(prefix))
