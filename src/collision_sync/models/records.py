"""Persisted entities owned by the estimate store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    IMPORT_SKIPPED = "import_skipped"


class CustomerType(StrEnum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"


class _Record(BaseModel):
    id: str = Field(default_factory=new_id)
    version: int = 0  # bumped on every committed write
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Shop(_Record):
    """Tenant root; created once."""

    name: str
    business_name: str = ""
    email: str = ""
    phone: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    is_active: bool = True


class Customer(_Record):
    shop_id: str
    customer_number: str = ""
    customer_type: CustomerType = CustomerType.INDIVIDUAL
    first_name: str = "Unknown"
    last_name: str = "Customer"
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None  # normalized
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    gst_exempt: bool = True
    preferred_contact: str = "phone"
    first_visit_date: Optional[datetime] = None
    last_visit_date: Optional[datetime] = None


class Vehicle(_Record):
    shop_id: str
    customer_id: str
    vin: Optional[str] = None
    year: Optional[int] = None
    make: str = "Unknown"
    model: str = "Unknown"
    trim: Optional[str] = None
    body_style: Optional[str] = None
    color: Optional[str] = None
    engine: Optional[str] = None
    transmission: Optional[str] = None
    fuel_type: Optional[str] = None
    license_plate: Optional[str] = None
    license_state: Optional[str] = None
    odometer: Optional[int] = None


class AuditEntry(BaseModel):
    """One import attempt recorded on a job's history."""

    timestamp: datetime = Field(default_factory=utcnow)
    action: AuditAction
    description: str = ""
    source: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class LineDetailRecord(BaseModel):
    line_number: int
    parent_line: Optional[int] = None
    description: str = ""
    line_type: str = ""
    taxable: bool = False
    amount: Decimal = Decimal("0")
    detail: Optional[dict[str, Any]] = None


class JobDetails(BaseModel):
    """Imported line-item detail attached to a job."""

    lines: list[LineDetailRecord] = Field(default_factory=list)
    parts: list[dict[str, Any]] = Field(default_factory=list)
    user_edited: bool = False  # set by the application when someone edits lines by hand
    imported_at: Optional[datetime] = None


class Job(_Record):
    """A repair order; mutated by imports until a user marks it modified."""

    shop_id: str
    job_number: str
    customer_id: str
    vehicle_id: str
    status: str = "estimate"
    job_type: str = "collision"
    source: str = "import"
    claim_number: Optional[str] = None
    estimate_number: Optional[str] = None
    is_insurance: bool = False
    is_user_modified: bool = False

    parts_amount: Decimal = Decimal("0")
    labor_amount: Decimal = Decimal("0")
    materials_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    deductible: Decimal = Decimal("0")
    totals_source: str = "lines"  # "lines" or "vendor"

    metadata: dict[str, Any] = Field(default_factory=dict)
    details: JobDetails = Field(default_factory=JobDetails)
    history: list[AuditEntry] = Field(default_factory=list)
