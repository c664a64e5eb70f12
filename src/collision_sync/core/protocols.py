"""Protocol interfaces for collision-sync abstractions.

Layers talk to each other only through these Protocols. Backends satisfy
them structurally, so tests can check them with isinstance().
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collision_sync.models.records import Customer, Job, Shop, Vehicle


# ---------------------------------------------------------------------------
# Persistence: Estimate Store
# ---------------------------------------------------------------------------

@runtime_checkable
class IStoreSession(Protocol):
    """Unit of work over Shop/Customer/Vehicle/Job repositories.

    Reads see the session's own pending writes. Nothing is visible to other
    sessions until the owning ``transaction()`` block exits cleanly.
    """

    def ensure_shop(self, template: Shop) -> Shop: ...

    def find_job_by_claim(self, shop_id: str, claim_number: str) -> Job | None: ...

    def find_job_by_ro(self, shop_id: str, ro_number: str) -> Job | None: ...

    def find_latest_job_for_vehicle(self, shop_id: str, vehicle_id: str) -> Job | None: ...

    def find_vehicle_by_vin(self, shop_id: str, vin: str) -> Vehicle | None: ...

    def find_customer_by_email(self, shop_id: str, email: str) -> Customer | None: ...

    def find_customer_by_phone(self, shop_id: str, phone: str) -> Customer | None: ...

    def find_customer_by_company(self, shop_id: str, company_name: str) -> Customer | None: ...

    def count_customers(self, shop_id: str) -> int: ...

    def count_jobs_with_prefix(self, shop_id: str, prefix: str) -> int: ...

    def save_customer(self, customer: Customer) -> Customer: ...

    def save_vehicle(self, vehicle: Vehicle) -> Vehicle: ...

    def save_job(self, job: Job) -> Job: ...


@runtime_checkable
class IEstimateStore(Protocol):
    """Transactional store: every write happens inside ``transaction()``."""

    def transaction(self) -> AbstractContextManager[IStoreSession]: ...


# ---------------------------------------------------------------------------
# Persistence: Cache Backend
# ---------------------------------------------------------------------------

@runtime_checkable
class ICacheBackend(Protocol):
    """Redis-compatible cache interface."""

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl: int, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# Persistence: File Store
# ---------------------------------------------------------------------------

@runtime_checkable
class IFileStore(Protocol):
    """S3-compatible file storage interface."""

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes, content_type: str | None = None) -> str: ...

    def move(self, src: str, dst: str) -> None: ...

    def list_files(self, prefix: str) -> list[str]: ...
