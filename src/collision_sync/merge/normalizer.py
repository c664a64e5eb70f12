"""JobNormalizer: identity resolution and transactional merge of one payload.

A payload is merged inside a single store transaction:

1. ensure the default shop exists,
2. resolve the existing job (claim number, then RO number, then VIN),
3. stop with an ``import_skipped`` audit entry when a user modified the job,
4. upsert the customer (email, then phone, then company name),
5. upsert the vehicle by VIN,
6. update or create the job,
7. replace imported line detail unless a user edited it,
8. append an audit entry.

Any failure rolls back every write of the call.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from collision_sync.core.config import ShopConfig
from collision_sync.core.exceptions import CollisionSyncError, StoreError, TransactionFailure
from collision_sync.core.protocols import IEstimateStore, IStoreSession
from collision_sync.merge.totals import ZERO, JobTotals, resolve_totals
from collision_sync.models.payload import NormalizedPayload, OrganizationCustomer
from collision_sync.models.records import (
    AuditAction,
    AuditEntry,
    Customer,
    CustomerType,
    Job,
    JobDetails,
    LineDetailRecord,
    Shop,
    Vehicle,
    utcnow,
)
from collision_sync.parsers.values import normalize_phone, present

logger = logging.getLogger(__name__)


def job_number_prefix(when: datetime) -> str:
    return when.strftime("%y%m%d")


class JobNormalizer:
    """Merges normalized payloads into an ``IEstimateStore``."""

    def __init__(self, store: IEstimateStore, shop_config: Optional[ShopConfig] = None) -> None:
        self._store = store
        self._shop_config = shop_config or ShopConfig()

    def upsert_job(self, payload: NormalizedPayload) -> Job:
        """Merge ``payload`` and return the created, updated or skipped job.

        Raises:
            TransactionFailure: the store failed, including backend read or
                commit errors; nothing was written.
        """
        job_key = (
            payload.identities.claim_number or payload.identities.ro_number or payload.identities.vin or "<none>"
        )
        try:
            with self._store.transaction() as session:
                return self._merge(session, payload)
        except StoreError as exc:
            logger.error("Store error while merging %s; nothing was written: %s", job_key, exc)
            raise TransactionFailure(f"store error for {job_key}: {exc}", job_key=job_key) from exc
        except CollisionSyncError:
            raise
        except Exception as exc:
            logger.error("Merge of %s failed and was rolled back: %s", job_key, exc)
            raise TransactionFailure(f"merge failed for {job_key}: {exc}", job_key=job_key) from exc

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _merge(self, session: IStoreSession, payload: NormalizedPayload) -> Job:
        shop = session.ensure_shop(self._shop_template())
        existing = self._find_existing_job(session, shop.id, payload)

        if existing is not None and existing.is_user_modified:
            logger.info("Job %s has user modifications; import skipped", existing.job_number)
            existing.history.append(self._audit(
                payload, AuditAction.IMPORT_SKIPPED, "Job has user modifications - import skipped",
            ))
            return session.save_job(existing)

        customer = self._upsert_customer(session, shop.id, payload)
        vehicle = self._upsert_vehicle(session, shop.id, customer.id, payload)
        totals = resolve_totals(payload.lines, payload.financials)

        if existing is None:
            job = self._create_job(session, shop.id, customer.id, vehicle.id, payload, totals)
            action, description = AuditAction.CREATED, "Job data imported"
        else:
            job = self._update_job(existing, customer.id, vehicle.id, payload, totals)
            action, description = AuditAction.UPDATED, "Job data imported/updated"

        if job.details.user_edited:
            description += "; line detail was edited by a user and was left unchanged"
        else:
            job.details = self._details(payload)

        job.history.append(self._audit(payload, action, description))
        saved = session.save_job(job)
        logger.info("Job %s %s from %s", saved.job_number, action.value, payload.meta.source_system)
        return saved

    def _shop_template(self) -> Shop:
        config = self._shop_config
        return Shop(
            name=config.name,
            business_name=config.business_name or config.name,
            email=config.email,
            phone=config.phone,
            city=config.city,
            state=config.state,
            country=config.country,
        )

    def _find_existing_job(self, session: IStoreSession, shop_id: str, payload: NormalizedPayload) -> Optional[Job]:
        identities = payload.identities
        claim_number = present(identities.claim_number)
        ro_number = present(identities.ro_number)
        vin = present(identities.vin)

        if claim_number:
            job = session.find_job_by_claim(shop_id, claim_number)
            if job is not None:
                return job
        if ro_number:
            job = session.find_job_by_ro(shop_id, ro_number)
            if job is not None:
                return job
        # VIN matching only applies when the estimate carries no job identity.
        if vin and not claim_number and not ro_number:
            vehicle = session.find_vehicle_by_vin(shop_id, vin)
            if vehicle is not None:
                return session.find_latest_job_for_vehicle(shop_id, vehicle.id)
        return None

    def _upsert_customer(self, session: IStoreSession, shop_id: str, payload: NormalizedPayload) -> Customer:
        incoming = payload.customer
        email = present(incoming.email)
        phone = normalize_phone(present(incoming.phone)) if present(incoming.phone) else ""
        company = present(incoming.company_name)
        is_business = isinstance(incoming, OrganizationCustomer)

        existing: Optional[Customer] = None
        if email:
            existing = session.find_customer_by_email(shop_id, email)
        if existing is None and phone:
            existing = session.find_customer_by_phone(shop_id, phone)
        if existing is None and is_business and company:
            existing = session.find_customer_by_company(shop_id, company)

        address = incoming.address
        now = utcnow()
        values: dict[str, Any] = {
            "first_name": present(incoming.first_name) or "Unknown",
            "last_name": present(incoming.last_name) or "Customer",
            "company_name": company or None,
            "email": email or None,
            "phone": phone or None,
            "address": address.address1 or None if address else None,
            "city": address.city or None if address else None,
            "state": address.state_province or None if address else None,
            "postal_code": address.postal_code or None if address else None,
            "customer_type": CustomerType.BUSINESS if is_business else CustomerType.INDIVIDUAL,
            "gst_exempt": not incoming.gst_payable,
            "preferred_contact": "email" if email else "phone",
            "last_visit_date": now,
        }

        if existing is not None:
            logger.debug("Matched existing customer %s", existing.customer_number)
            return session.save_customer(existing.model_copy(update=values))

        number = f"CUST-{session.count_customers(shop_id) + 1:04d}"
        logger.debug("Creating customer %s", number)
        return session.save_customer(Customer(
            shop_id=shop_id, customer_number=number, first_visit_date=now, **values,
        ))

    def _upsert_vehicle(self, session: IStoreSession, shop_id: str, customer_id: str,
                        payload: NormalizedPayload) -> Vehicle:
        incoming = payload.vehicle
        vin = present(incoming.vin)
        values: dict[str, Any] = {
            "customer_id": customer_id,
            "vin": vin or None,
            "year": incoming.year,
            "make": incoming.make or "Unknown",
            "model": incoming.model or "Unknown",
            "trim": incoming.trim or None,
            "body_style": incoming.body_style or None,
            "color": incoming.color or None,
            "engine": incoming.engine or None,
            "transmission": incoming.transmission or None,
            "fuel_type": incoming.fuel_type or None,
            "license_plate": incoming.license_plate or None,
            "license_state": incoming.license_state or None,
            "odometer": incoming.odometer,
        }
        existing = session.find_vehicle_by_vin(shop_id, vin) if vin else None
        if existing is not None:
            if existing.customer_id != customer_id:
                logger.info("Vehicle %s changed owner", vin)
            return session.save_vehicle(existing.model_copy(update=values))
        return session.save_vehicle(Vehicle(shop_id=shop_id, **values))

    def _create_job(self, session: IStoreSession, shop_id: str, customer_id: str, vehicle_id: str,
                    payload: NormalizedPayload, totals: JobTotals) -> Job:
        prefix = job_number_prefix(utcnow())
        sequence = session.count_jobs_with_prefix(shop_id, prefix) + 1
        identities = payload.identities
        job = Job(
            shop_id=shop_id,
            job_number=f"{prefix}-{sequence:03d}",
            customer_id=customer_id,
            vehicle_id=vehicle_id,
            claim_number=present(identities.claim_number) or None,
            estimate_number=present(identities.ro_number) or None,
            is_insurance=bool(present(identities.claim_number)),
            metadata={
                "import_source": payload.meta.source_system,
                "source_format": payload.meta.source_format,
                "original_identities": identities.model_dump(),
                "unknown_tags": list(payload.meta.unknown_tags),
            },
        )
        self._apply_totals(job, payload, totals)
        self._stamp_import(job, payload)
        return job

    def _update_job(self, job: Job, customer_id: str, vehicle_id: str, payload: NormalizedPayload,
                    totals: JobTotals) -> Job:
        identities = payload.identities
        job.customer_id = customer_id
        job.vehicle_id = vehicle_id
        job.claim_number = present(identities.claim_number) or job.claim_number
        job.estimate_number = present(identities.ro_number) or job.estimate_number
        job.is_insurance = job.is_insurance or bool(job.claim_number)
        job.updated_at = utcnow()
        self._apply_totals(job, payload, totals)
        self._stamp_import(job, payload)
        return job

    @staticmethod
    def _apply_totals(job: Job, payload: NormalizedPayload, totals: JobTotals) -> None:
        financials = payload.financials
        job.parts_amount = totals.parts_total
        job.labor_amount = totals.labor_total
        job.materials_amount = totals.materials_total + totals.sublet_total
        job.total_amount = totals.grand_total
        job.totals_source = totals.source
        job.tax_amount = financials.tax_total or ZERO
        if financials.deductible is not None:
            job.deductible = ZERO if financials.deductible_waived else financials.deductible

    @staticmethod
    def _stamp_import(job: Job, payload: NormalizedPayload) -> None:
        # Per-import history lives in the audit trail; metadata keeps only the latest import.
        meta = payload.meta
        job.metadata = {
            **job.metadata,
            "last_import_source": meta.source_system,
            "last_import_at": meta.import_timestamp.isoformat(),
            "last_import_unknown_tags": list(meta.unknown_tags),
        }

    @staticmethod
    def _details(payload: NormalizedPayload) -> JobDetails:
        return JobDetails(
            lines=[
                LineDetailRecord(
                    line_number=line.line_number,
                    parent_line=line.parent_line,
                    description=line.description,
                    line_type=line.line_type,
                    taxable=line.taxable,
                    amount=line.amount,
                    detail=line.detail.model_dump(mode="json") if line.detail is not None else None,
                )
                for line in payload.lines
            ],
            parts=[part.model_dump(mode="json") for part in payload.parts],
            imported_at=payload.meta.import_timestamp,
        )

    @staticmethod
    def _audit(payload: NormalizedPayload, action: AuditAction, description: str) -> AuditEntry:
        return AuditEntry(
            action=action,
            description=description,
            source=payload.meta.source_system,
            metadata={
                "unknown_tags": list(payload.meta.unknown_tags),
                "import_timestamp": payload.meta.import_timestamp.isoformat(),
            },
        )
