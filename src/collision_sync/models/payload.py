"""Canonical estimate payload: the normalized structure every parser produces.

BMS and EMS files, whatever the vendor dialect, are decoded into a
``NormalizedPayload``. The merge engine consumes it exactly once; it has no
identity of its own in the store. All money and hour figures are ``Decimal``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

_FROZEN = {"frozen": True, "str_strip_whitespace": True}


class JobIdentities(BaseModel):
    """Best-effort deduplication keys; any of them may be empty."""

    model_config = _FROZEN

    ro_number: str = ""
    claim_number: str = ""
    vin: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.ro_number or self.claim_number or self.vin)


class Address(BaseModel):
    model_config = _FROZEN

    address1: str = ""
    address2: str = ""
    city: str = ""
    state_province: str = ""
    postal_code: str = ""
    country: str = ""


class Phones(BaseModel):
    """Phone numbers bucketed by the vendor's communication qualifier."""

    model_config = _FROZEN

    home: str = ""
    work: str = ""
    cell: str = ""
    fax: str = ""


class _CustomerBase(BaseModel):
    model_config = _FROZEN

    first_name: str = ""
    last_name: str = ""
    company_name: str = ""
    email: str = ""
    phone: str = ""  # raw, as sent; ``phones`` holds the formatted numbers
    phones: Phones = Phones()
    address: Optional[Address] = None
    gst_payable: bool = False
    insurance_company: str = ""
    policy_number: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.company_name


class PersonCustomer(_CustomerBase):
    kind: Literal["person"] = "person"


class OrganizationCustomer(_CustomerBase):
    kind: Literal["organization"] = "organization"
    gst_payable: bool = True  # business customers are billed GST


Customer = Annotated[Union[PersonCustomer, OrganizationCustomer], Field(discriminator="kind")]


class Vehicle(BaseModel):
    model_config = _FROZEN

    vin: str = ""
    year: Optional[int] = None
    make: str = ""
    model: str = ""
    trim: str = ""
    body_style: str = ""
    color: str = ""
    odometer: Optional[int] = None
    engine: str = ""
    transmission: str = ""
    fuel_type: str = ""
    drivetrain: str = ""
    license_plate: str = ""
    license_state: str = ""
    drivable: Optional[bool] = None
    valuation: Optional[Decimal] = None
    shop_ro_number: str = ""  # RO number found in a free-text memo


class PartInfo(BaseModel):
    model_config = _FROZEN

    kind: Literal["part"] = "part"
    part_number: str = ""
    oem_part_number: str = ""
    description: str = ""
    price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("1")
    part_type: str = ""
    source_code: str = ""
    taxable: bool = False
    is_material: bool = False

    @property
    def extended_price(self) -> Decimal:
        return self.price * self.quantity


class LaborInfo(BaseModel):
    model_config = _FROZEN

    kind: Literal["labor"] = "labor"
    labor_type: str = ""
    operation: str = ""
    hours: Decimal = Decimal("0")
    rate: Optional[Decimal] = None
    database_hours: Optional[Decimal] = None
    paint_stages: Optional[int] = None
    taxable: bool = False

    @property
    def amount(self) -> Decimal:
        if self.rate is None:
            return Decimal("0")
        return self.hours * self.rate


class OtherChargesInfo(BaseModel):
    model_config = _FROZEN

    kind: Literal["other"] = "other"
    charge_type: str = ""
    price: Decimal = Decimal("0")
    taxable: bool = False


LineDetail = Annotated[Union[PartInfo, LaborInfo, OtherChargesInfo], Field(discriminator="kind")]


class EstimateLine(BaseModel):
    """One printed estimate line carrying at most one detail variant."""

    model_config = _FROZEN

    line_number: int
    parent_line: Optional[int] = None
    description: str = ""
    line_type: str = ""
    taxable: bool = False
    amount: Decimal = Decimal("0")
    detail: Optional[LineDetail] = None

    @property
    def part_info(self) -> Optional[PartInfo]:
        return self.detail if isinstance(self.detail, PartInfo) else None

    @property
    def labor_info(self) -> Optional[LaborInfo]:
        return self.detail if isinstance(self.detail, LaborInfo) else None

    @property
    def other_charges_info(self) -> Optional[OtherChargesInfo]:
        return self.detail if isinstance(self.detail, OtherChargesInfo) else None


class PartRecord(BaseModel):
    """Flattened view of a line carrying part data."""

    model_config = _FROZEN

    line_number: int
    part_number: str = ""
    oem_part_number: str = ""
    description: str = ""
    price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("1")
    part_type: str = ""
    supplier: str = ""
    is_material: bool = False


class Financials(BaseModel):
    """Totals as reported by the vendor; used for display fallback only."""

    model_config = _FROZEN

    parts_total: Optional[Decimal] = None
    labor_total: Optional[Decimal] = None
    materials_total: Optional[Decimal] = None
    sublet_total: Optional[Decimal] = None
    tax_total: Optional[Decimal] = None
    gross_total: Optional[Decimal] = None
    net_total: Optional[Decimal] = None
    deductible: Optional[Decimal] = None
    deductible_waived: bool = False

    @property
    def grand_total(self) -> Optional[Decimal]:
        """Net total when present, gross total otherwise."""
        if self.net_total is not None:
            return self.net_total
        return self.gross_total


class TaxDetails(BaseModel):
    model_config = _FROZEN

    gst_rate: Optional[Decimal] = None
    gst_amount: Optional[Decimal] = None
    pst_rate: Optional[Decimal] = None
    pst_amount: Optional[Decimal] = None


class SpecialRequirements(BaseModel):
    model_config = _FROZEN

    adas_calibration: bool = False
    post_scan: bool = False
    four_wheel_alignment: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PayloadMeta(BaseModel):
    model_config = _FROZEN

    source_system: str = ""
    source_format: Literal["BMS", "EMS"] = "BMS"
    estimate_type: str = ""
    exported_at: Optional[datetime] = None
    import_timestamp: datetime = Field(default_factory=_utcnow)
    unknown_tags: tuple[str, ...] = ()


class NormalizedPayload(BaseModel):
    """Parser output: one repair job with its customer, vehicle and lines."""

    model_config = _FROZEN

    identities: JobIdentities = JobIdentities()
    customer: Customer = Field(default_factory=PersonCustomer)
    vehicle: Vehicle = Vehicle()
    lines: tuple[EstimateLine, ...] = ()
    parts: tuple[PartRecord, ...] = ()
    financials: Financials = Financials()
    tax: TaxDetails = TaxDetails()
    special_requirements: SpecialRequirements = SpecialRequirements()
    meta: PayloadMeta = PayloadMeta()


def parts_view(lines: tuple[EstimateLine, ...] | list[EstimateLine]) -> tuple[PartRecord, ...]:
    """Flatten the lines that carry part data, keeping line order."""
    return tuple(
        PartRecord(
            line_number=line.line_number,
            part_number=part.part_number,
            oem_part_number=part.oem_part_number,
            description=part.description or line.description,
            price=part.price,
            quantity=part.quantity,
            part_type=part.part_type,
            supplier=part.source_code,
            is_material=part.is_material,
        )
        for line in lines
        if (part := line.part_info) is not None
    )
