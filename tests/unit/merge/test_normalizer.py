"""Unit tests for JobNormalizer against the in-memory store."""

from __future__ import annotations

import re
from decimal import Decimal
from unittest.mock import patch

import pytest

from collision_sync.core.config import ShopConfig
from collision_sync.core.exceptions import (
    RetryableError,
    StoreError,
    TransactionConflictError,
    TransactionFailure,
)
from collision_sync.merge.normalizer import JobNormalizer
from collision_sync.models.payload import (
    Financials,
    JobIdentities,
    NormalizedPayload,
    PayloadMeta,
    PersonCustomer,
    Vehicle,
)
from collision_sync.models.records import AuditAction, CustomerType, JobDetails
from collision_sync.parsers.bms import parse_bms
from collision_sync.parsers.ems import parse_ems
from tests.fakes import MemoryEstimateStore


def _payload(claim: str = "", ro: str = "", vin: str = "", email: str = "", phone: str = "",
             **extra) -> NormalizedPayload:
    return NormalizedPayload(
        identities=JobIdentities(claim_number=claim, ro_number=ro, vin=vin),
        customer=PersonCustomer(first_name="Pat", last_name="Quinn", email=email, phone=phone),
        vehicle=Vehicle(vin=vin, make="Ford", model="Focus"),
        meta=PayloadMeta(source_system="Test BMS"),
        **extra,
    )


# ---------- fixtures ----------

@pytest.fixture
def store():
    return MemoryEstimateStore()


@pytest.fixture
def normalizer(store):
    return JobNormalizer(store, ShopConfig(name="Westside Collision"))


@pytest.fixture
def mitchell(mitchell_xml):
    return parse_bms(mitchell_xml)


# ---------- create ----------

class TestCreate:
    def test_creates_shop_customer_vehicle_and_job(self, normalizer, store, mitchell):
        job = normalizer.upsert_job(mitchell)

        assert [shop.name for shop in store.shops()] == ["Westside Collision"]
        assert len(store.customers()) == 1
        assert len(store.vehicles()) == 1
        assert store.jobs()[0].id == job.id
        assert job.claim_number == "CLM-555-123"
        assert job.estimate_number == "RO-10001"
        assert job.is_insurance is True

    def test_numbers(self, normalizer, store, mitchell):
        job = normalizer.upsert_job(mitchell)
        assert re.fullmatch(r"\d{6}-001", job.job_number)
        assert store.customers()[0].customer_number == "CUST-0001"

    def test_second_job_same_day_gets_next_sequence(self, normalizer, mitchell):
        first = normalizer.upsert_job(mitchell)
        second = normalizer.upsert_job(_payload(claim="OTHER-1"))
        assert second.job_number == first.job_number[:-3] + "002"

    def test_totals_and_deductible(self, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        assert job.total_amount == Decimal("639.85")
        assert job.parts_amount == Decimal("450.00")
        assert job.labor_amount == Decimal("162.50")
        assert job.materials_amount == Decimal("27.35")
        assert job.deductible == Decimal("500.00")
        assert job.totals_source == "lines"

    def test_vendor_totals_fallback_is_flagged(self, normalizer):
        job = normalizer.upsert_job(_payload(claim="C-1", financials=Financials(net_total=Decimal("812.40"))))
        assert job.total_amount == Decimal("812.40")
        assert job.totals_source == "vendor"

    def test_waived_deductible_is_zero(self, normalizer):
        financials = Financials(deductible=Decimal("300"), deductible_waived=True)
        job = normalizer.upsert_job(_payload(claim="C-1", financials=financials))
        assert job.deductible == Decimal("0")

    def test_line_detail_and_audit(self, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        assert len(job.details.lines) == 4
        assert job.details.lines[1].parent_line == 1
        assert len(job.details.parts) == 2
        assert job.history[-1].action == AuditAction.CREATED
        assert job.history[-1].description == "Job data imported"
        assert job.history[-1].metadata["unknown_tags"] == list(mitchell.meta.unknown_tags)

    def test_import_metadata(self, normalizer, mitchell):
        job = normalizer.upsert_job(mitchell)
        assert job.metadata["last_import_source"] == "Mitchell BMS"
        assert job.metadata["last_import_unknown_tags"] == list(mitchell.meta.unknown_tags)
        assert "import_history" not in job.metadata

    def test_business_customer(self, normalizer, store, simple_xml):
        normalizer.upsert_job(parse_bms(simple_xml))
        (customer,) = store.customers()
        assert customer.customer_type == CustomerType.BUSINESS
        assert customer.gst_exempt is False
        assert customer.company_name == "Acme Fleet Services"

    def test_missing_names_get_placeholders(self, normalizer, store):
        normalizer.upsert_job(NormalizedPayload(identities=JobIdentities(claim_number="C-9")))
        (customer,) = store.customers()
        assert (customer.first_name, customer.last_name) == ("Unknown", "Customer")


# ---------- idempotence & matching ----------

class TestReimport:
    def test_same_file_twice_updates_in_place(self, normalizer, store, mitchell):
        first = normalizer.upsert_job(mitchell)
        second = normalizer.upsert_job(mitchell)

        assert second.id == first.id
        assert len(store.jobs()) == 1
        assert len(store.customers()) == 1
        assert len(store.vehicles()) == 1
        assert [entry.action for entry in second.history] == [AuditAction.CREATED, AuditAction.UPDATED]
        assert second.history[-1].description == "Job data imported/updated"

    def test_claim_number_wins_over_ro_number(self, normalizer, store):
        first = normalizer.upsert_job(_payload(claim="CLM-1", ro="RO-1"))
        normalizer.upsert_job(_payload(claim="CLM-2", ro="RO-2"))
        again = normalizer.upsert_job(_payload(claim="CLM-1", ro="RO-2"))
        assert again.id == first.id
        assert again.estimate_number == "RO-2"

    def test_claim_number_wins_over_vin_of_another_job(self, normalizer, store):
        by_claim = normalizer.upsert_job(_payload(claim="CLM-C"))
        by_vin = normalizer.upsert_job(_payload(vin="VIN0000000000000V"))
        again = normalizer.upsert_job(_payload(claim="CLM-C", vin="VIN0000000000000V"))
        assert again.id == by_claim.id
        assert again.id != by_vin.id
        assert len(store.jobs()) == 2

    def test_ro_number_matches_when_claim_is_new(self, normalizer):
        first = normalizer.upsert_job(_payload(ro="RO-7"))
        again = normalizer.upsert_job(_payload(claim="CLM-7", ro="RO-7"))
        assert again.id == first.id
        assert again.claim_number == "CLM-7"

    def test_vin_matches_only_without_job_identity(self, normalizer, store):
        first = normalizer.upsert_job(_payload(vin="VIN00000000000001"))
        again = normalizer.upsert_job(_payload(vin="VIN00000000000001"))
        other = normalizer.upsert_job(_payload(claim="NEW-CLAIM", vin="VIN00000000000001"))
        assert again.id == first.id
        assert other.id != first.id
        assert len(store.vehicles()) == 1

    def test_no_identities_always_creates(self, normalizer, store):
        normalizer.upsert_job(_payload())
        normalizer.upsert_job(_payload())
        assert len(store.jobs()) == 2

    def test_customer_matched_by_email(self, normalizer, store):
        normalizer.upsert_job(_payload(claim="A", email="pat@example.com"))
        normalizer.upsert_job(_payload(claim="B", email="pat@example.com"))
        assert len(store.customers()) == 1

    def test_customer_email_match_ignores_case(self, normalizer, store):
        normalizer.upsert_job(_payload(claim="A", email="Pat@Example.com"))
        normalizer.upsert_job(_payload(claim="B", email="pat@example.com"))
        normalizer.upsert_job(_payload(claim="A", email="Pat@Example.com"))
        assert len(store.customers()) == 1

    def test_customer_matched_by_normalized_phone(self, normalizer, store):
        normalizer.upsert_job(_payload(claim="A", phone="416-555-0199"))
        normalizer.upsert_job(_payload(claim="B", phone="+1 (416) 555 0199"))
        (customer,) = store.customers()
        assert customer.phone == "(416) 555-0199"

    def test_same_file_from_ems_twice(self, normalizer, store, sample_ems):
        first = normalizer.upsert_job(parse_ems(sample_ems))
        second = normalizer.upsert_job(parse_ems(sample_ems))
        assert second.id == first.id
        assert second.total_amount == Decimal("552.50")


# ---------- user edits ----------

class TestUserEdits:
    def test_user_modified_job_is_skipped(self, normalizer, store, mitchell):
        job = normalizer.upsert_job(mitchell)
        store.put_job(job.model_copy(update={"is_user_modified": True, "total_amount": Decimal("1.00")}))

        skipped = normalizer.upsert_job(mitchell)

        assert skipped.total_amount == Decimal("1.00")
        assert skipped.history[-1].action == AuditAction.IMPORT_SKIPPED
        assert skipped.history[-1].description == "Job has user modifications - import skipped"
        assert store.jobs()[0].history[-1].action == AuditAction.IMPORT_SKIPPED

    def test_user_edited_details_are_kept(self, normalizer, store, mitchell):
        job = normalizer.upsert_job(mitchell)
        store.put_job(job.model_copy(update={"details": JobDetails(user_edited=True)}))

        updated = normalizer.upsert_job(mitchell)

        assert updated.details.lines == []
        assert updated.details.user_edited is True
        assert updated.total_amount == Decimal("639.85")
        assert "left unchanged" in updated.history[-1].description


# ---------- atomicity ----------

class TestRollback:
    def test_failure_mid_merge_leaves_store_untouched(self, normalizer, store, mitchell):
        with patch.object(JobNormalizer, "_upsert_vehicle", side_effect=RuntimeError("disk full")):
            with pytest.raises(TransactionFailure) as excinfo:
                normalizer.upsert_job(mitchell)

        assert excinfo.value.job_key == "CLM-555-123"
        assert store.shops() == []
        assert store.customers() == []
        assert store.jobs() == []

    def test_failure_on_reimport_keeps_previous_state(self, normalizer, store, mitchell):
        normalizer.upsert_job(mitchell)
        with patch.object(JobNormalizer, "_update_job", side_effect=ValueError("bad data")):
            with pytest.raises(TransactionFailure):
                normalizer.upsert_job(mitchell)

        (job,) = store.jobs()
        assert [entry.action for entry in job.history] == [AuditAction.CREATED]

    def test_domain_errors_propagate_unwrapped(self, normalizer, store, mitchell):
        with patch.object(JobNormalizer, "_upsert_customer", side_effect=TransactionConflictError("stale")):
            with pytest.raises(TransactionConflictError):
                normalizer.upsert_job(mitchell)
        assert store.customers() == []

    def test_store_errors_become_retryable_failures(self, normalizer, store, mitchell):
        with patch.object(JobNormalizer, "_upsert_customer", side_effect=StoreError("throttled")):
            with pytest.raises(TransactionFailure) as excinfo:
                normalizer.upsert_job(mitchell)
        assert isinstance(excinfo.value, RetryableError)
        assert isinstance(excinfo.value.__cause__, StoreError)
        assert store.shops() == []
