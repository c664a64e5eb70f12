"""EMS parser: pipe-delimited record files.

Each non-blank line is one record: ``TAG|field1|field2|...``. Parsing runs in
two phases. Records are first bucketed by tag and decoded through the
positional layouts below; line records (``LIN``, ``PRT``, ``LAB``, ``MTL``)
are then joined on their line number.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from collision_sync.core.exceptions import StructuralParseError
from collision_sync.models.payload import (
    Address,
    EstimateLine,
    Financials,
    JobIdentities,
    LaborInfo,
    NormalizedPayload,
    OrganizationCustomer,
    OtherChargesInfo,
    PartInfo,
    PayloadMeta,
    PersonCustomer,
    Phones,
    SpecialRequirements,
    Vehicle,
    parts_view,
)
from collision_sync.parsers.session import ParseSession
from collision_sync.parsers.values import (
    contains_any,
    normalize_phone,
    parse_date,
    parse_datetime,
    present,
    to_bool,
    to_decimal,
    to_int,
)

logger = logging.getLogger(__name__)

RECORD_LAYOUTS: dict[str, tuple[str, ...]] = {
    "HDR": ("version", "vendor", "system", "date", "time"),
    "CLM": ("claim_number", "policy_number", "deductible", "loss_date", "adjuster", "insurance_company"),
    "CST": ("first_name", "last_name", "company", "address", "city", "state", "zip", "phone", "email",
            "gst_flag"),
    "VEH": ("vin", "year", "make", "model", "trim", "body_style", "color", "license", "mileage", "engine",
            "transmission", "fuel_type"),
    "EST": ("estimate_number", "date", "status", "total_labor", "total_parts", "total_materials",
            "gross_total"),
    "LIN": ("line_number", "description", "type", "amount", "taxable", "parent_line"),
    "PRT": ("line_number", "part_number", "description", "oem_number", "quantity", "price", "part_type",
            "source", "taxable"),
    "LAB": ("line_number", "operation", "hours", "rate", "labor_type", "taxable", "paint_stages"),
    "MTL": ("line_number", "material_type", "description", "price", "taxable"),
    "TOT": ("type", "sub_type", "amount", "taxable_amount", "tax_amount"),
}

SOURCE_SYSTEMS = (
    ("mitchell", "Mitchell"),
    ("ccc", "CCC ONE"),
    ("audatex", "Audatex"),
    ("qapter", "Qapter"),
)

_LINE_TAGS = ("PRT", "LAB", "MTL")


@dataclass
class EmsRecord:
    tag: str
    fields: dict[str, str]
    raw: list[str] = field(default_factory=list)

    def get(self, name: str) -> str:
        return present(self.fields.get(name, ""))


def split_records(text: str, session: ParseSession) -> dict[str, list[EmsRecord]]:
    """Bucket lines by record tag. Unknown tags keep their raw fields."""
    buckets: dict[str, list[EmsRecord]] = defaultdict(list)
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = [part.strip() for part in line.split("|")]
        tag = parts[0].upper()
        values = parts[1:]
        layout = RECORD_LAYOUTS.get(tag)
        if layout is None:
            session.note_unknown(f"record_type:{tag}")
            buckets[tag].append(EmsRecord(tag=tag, fields={}, raw=values))
            continue
        decoded = {name: values[index] if index < len(values) else "" for index, name in enumerate(layout)}
        buckets[tag].append(EmsRecord(tag=tag, fields=decoded, raw=values))
    return buckets


def parse_ems(content: str | bytes) -> NormalizedPayload:
    """Parse an EMS record file.

    Raises:
        StructuralParseError: no recognizable records were found.
    """
    text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
    text = text.lstrip("\ufeff")
    session = ParseSession(source="EMS")
    buckets = split_records(text, session)
    if not any(tag in RECORD_LAYOUTS for tag in buckets):
        raise StructuralParseError("EMS", "no recognizable EMS records found")

    header = _first(buckets, "HDR")
    claim = _first(buckets, "CLM")
    estimate = _first(buckets, "EST")
    vehicle = _build_vehicle(_first(buckets, "VEH"))
    lines = _join_lines(buckets)

    payload = NormalizedPayload(
        identities=JobIdentities(
            ro_number=estimate.get("estimate_number") if estimate else "",
            claim_number=claim.get("claim_number") if claim else "",
            vin=vehicle.vin,
        ),
        customer=_build_customer(_first(buckets, "CST"), claim),
        vehicle=vehicle,
        lines=tuple(lines),
        parts=parts_view(lines),
        financials=_build_financials(buckets.get("TOT", []), estimate, claim),
        special_requirements=SpecialRequirements(
            adas_calibration=any(contains_any(line.description, ("adas", "calibration")) for line in lines),
            post_scan=any(contains_any(line.description, ("scan", "diagnostic")) for line in lines),
            four_wheel_alignment=any(
                contains_any(line.description, ("alignment", "4 wheel align")) for line in lines
            ),
        ),
        meta=PayloadMeta(
            source_system=_source_system(header),
            source_format="EMS",
            estimate_type=f"ems_{header.get('version')}" if header and header.get("version") else "ems",
            exported_at=parse_datetime(header.get("date"), header.get("time")) if header else None,
            unknown_tags=session.frozen_tags(),
        ),
    )
    if claim and claim.get("loss_date") and parse_date(claim.get("loss_date")) is None:
        logger.warning("EMS loss date %r is not a valid calendar date; ignoring it", claim.get("loss_date"))
    logger.info(
        "Parsed EMS estimate: ro=%r claim=%r vin=%r lines=%d unknown_tags=%d",
        payload.identities.ro_number, payload.identities.claim_number, vehicle.vin,
        len(lines), len(session.unknown_tags),
    )
    return payload


def _first(buckets: dict[str, list[EmsRecord]], tag: str) -> Optional[EmsRecord]:
    records = buckets.get(tag)
    return records[0] if records else None


def _source_system(header: Optional[EmsRecord]) -> str:
    if header is None:
        return "EMS"
    label = f"{header.get('vendor')} {header.get('system')}".lower()
    for needle, name in SOURCE_SYSTEMS:
        if needle in label:
            return f"{name} EMS"
    vendor = header.get("vendor") or header.get("system")
    return f"{vendor} EMS" if vendor else "EMS"


def _build_customer(record: Optional[EmsRecord], claim: Optional[EmsRecord]) -> PersonCustomer | OrganizationCustomer:
    insurance = {
        "insurance_company": claim.get("insurance_company") if claim else "",
        "policy_number": claim.get("policy_number") if claim else "",
    }
    if record is None:
        return PersonCustomer(**insurance)
    phone = record.get("phone")
    address = Address(
        address1=record.get("address"),
        city=record.get("city"),
        state_province=record.get("state"),
        postal_code=record.get("zip"),
    )
    fields = dict(
        first_name=record.get("first_name"),
        last_name=record.get("last_name"),
        company_name=record.get("company"),
        email=record.get("email"),
        phone=phone,
        phones=Phones(home=normalize_phone(phone)) if phone else Phones(),
        address=address if (address.address1 or address.city or address.postal_code) else None,
        **insurance,
    )
    if record.get("company"):
        # A company is billed GST whatever the flag says.
        return OrganizationCustomer(gst_payable=True, **fields)
    return PersonCustomer(gst_payable=to_bool(record.get("gst_flag")), **fields)


def _build_vehicle(record: Optional[EmsRecord]) -> Vehicle:
    if record is None:
        return Vehicle()
    return Vehicle(
        vin=record.get("vin").upper(),
        year=to_int(record.get("year")),
        make=record.get("make"),
        model=record.get("model"),
        trim=record.get("trim"),
        body_style=record.get("body_style"),
        color=record.get("color"),
        license_plate=record.get("license"),
        odometer=to_int(record.get("mileage")),
        engine=record.get("engine"),
        transmission=record.get("transmission"),
        fuel_type=record.get("fuel_type"),
    )


def _part(record: EmsRecord) -> PartInfo:
    return PartInfo(
        part_number=record.get("part_number"),
        oem_part_number=record.get("oem_number"),
        description=record.get("description"),
        price=to_decimal(record.get("price"), Decimal("0")),
        quantity=to_decimal(record.get("quantity"), Decimal("1")),
        part_type=record.get("part_type"),
        source_code=record.get("source"),
        taxable=to_bool(record.get("taxable")),
    )


def _labor(record: EmsRecord) -> LaborInfo:
    return LaborInfo(
        labor_type=record.get("labor_type"),
        operation=record.get("operation"),
        hours=to_decimal(record.get("hours"), Decimal("0")),
        rate=to_decimal(record.get("rate")),
        paint_stages=to_int(record.get("paint_stages")),
        taxable=to_bool(record.get("taxable")),
    )


def _material(record: EmsRecord) -> OtherChargesInfo:
    return OtherChargesInfo(
        charge_type=record.get("material_type") or "material",
        price=to_decimal(record.get("price"), Decimal("0")),
        taxable=to_bool(record.get("taxable")),
    )


def _detail_for(record: EmsRecord) -> tuple[str, PartInfo | LaborInfo | OtherChargesInfo]:
    if record.tag == "PRT":
        return "part", _part(record)
    if record.tag == "LAB":
        return "labor", _labor(record)
    return "material", _material(record)


def _amount(detail: PartInfo | LaborInfo | OtherChargesInfo) -> Decimal:
    if isinstance(detail, PartInfo):
        return detail.extended_price
    if isinstance(detail, LaborInfo):
        return detail.amount
    return detail.price


def _join_lines(buckets: dict[str, list[EmsRecord]]) -> list[EstimateLine]:
    """Join detail records onto ``LIN`` records by line number.

    ``LIN`` order comes first; detail records without a ``LIN`` follow in the
    order they first appeared. When a line number carries more than one
    detail, the first stays on the line and the rest become child lines.
    """
    details: dict[int, list[EmsRecord]] = defaultdict(list)
    orphan_order: list[int] = []
    for tag in _LINE_TAGS:
        for record in buckets.get(tag, []):
            number = to_int(record.get("line_number"))
            if number is None:
                logger.debug("Skipping %s record without a line number: %s", tag, record.raw)
                continue
            details[number].append(record)

    lines: list[EstimateLine] = []
    seen: set[int] = set()
    for record in buckets.get("LIN", []):
        number = to_int(record.get("line_number"))
        if number is None:
            continue
        seen.add(number)
        _emit_line(lines, number, record, details.get(number, []))

    for tag in _LINE_TAGS:
        for record in buckets.get(tag, []):
            number = to_int(record.get("line_number"))
            if number is not None and number not in seen and number not in orphan_order:
                orphan_order.append(number)
    for number in orphan_order:
        _emit_line(lines, number, None, details[number])
    return lines


def _emit_line(lines: list[EstimateLine], number: int, header: Optional[EmsRecord],
               records: list[EmsRecord]) -> None:
    description = header.get("description") if header else ""
    line_type = header.get("type").lower() if header else ""
    taxable = to_bool(header.get("taxable")) if header else False
    parent = to_int(header.get("parent_line")) if header else None
    amount = to_decimal(header.get("amount")) if header else None

    if not records:
        lines.append(EstimateLine(
            line_number=number, parent_line=parent, description=description,
            line_type=line_type or "note", taxable=taxable, amount=amount or Decimal("0"),
        ))
        return

    for index, record in enumerate(records):
        kind, detail = _detail_for(record)
        own_description = description or record.get("description") or record.get("operation")
        if index == 0:
            lines.append(EstimateLine(
                line_number=number,
                parent_line=parent,
                description=own_description,
                line_type=line_type or kind,
                taxable=taxable or detail.taxable,
                amount=amount if amount is not None else _amount(detail),
                detail=detail,
            ))
        else:
            lines.append(EstimateLine(
                line_number=number,
                parent_line=number,
                description=own_description,
                line_type=kind,
                taxable=detail.taxable,
                amount=_amount(detail),
                detail=detail,
            ))


def _build_financials(totals: list[EmsRecord], estimate: Optional[EmsRecord],
                      claim: Optional[EmsRecord]) -> Financials:
    values: dict[str, Optional[Decimal]] = {}
    if estimate is not None:
        values["labor_total"] = to_decimal(estimate.get("total_labor"))
        values["parts_total"] = to_decimal(estimate.get("total_parts"))
        values["materials_total"] = to_decimal(estimate.get("total_materials"))
        values["gross_total"] = to_decimal(estimate.get("gross_total"))

    for record in totals:
        total_type = record.get("type").upper()
        sub_type = record.get("sub_type").upper()
        amount = to_decimal(record.get("amount"))
        if amount is None:
            continue
        if (total_type, sub_type) == ("TOT", "TT") or total_type == "NET":
            values["net_total"] = amount
        elif (total_type, sub_type) == ("TOT", "CE") or total_type == "GROSS":
            values["gross_total"] = amount
        elif total_type == "TAX":
            values["tax_total"] = amount
        elif total_type == "PARTS":
            values["parts_total"] = amount
        elif total_type == "LABOR":
            values["labor_total"] = amount
        tax_amount = to_decimal(record.get("tax_amount"))
        if tax_amount is not None and values.get("tax_total") is None:
            values["tax_total"] = tax_amount

    deductible = to_decimal(claim.get("deductible")) if claim else None
    return Financials(deductible=deductible, **values)
