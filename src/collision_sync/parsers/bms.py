"""BMS parser: decodes the XML estimate dialects into a ``NormalizedPayload``.

Three shapes are in circulation:

* the CIECA ``VehicleDamageEstimateAddRq`` request (Mitchell, CCC ONE, Audatex),
* a generic upper-case ``BMS_ESTIMATE`` export,
* a simplified ``Estimate``/``estimate`` document used by smaller tools.

Vendors mix these freely, so every field is resolved through an ordered list
of candidate paths (see ``first_text``) instead of a per-vendor schema.
Elements we do not understand are recorded in ``meta.unknown_tags`` and never
fail the parse.
"""

from __future__ import annotations

import logging
import re
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
    TaxDetails,
    Vehicle,
    parts_view,
)
from collision_sync.parsers.detector import KNOWN_BMS_ROOTS
from collision_sync.parsers.session import ParseSession
from collision_sync.parsers.tree import XmlNode, first_node, first_text, parse_xml
from collision_sync.parsers.values import (
    contains_any,
    normalize_phone,
    parse_datetime,
    present,
    to_bool,
    to_decimal,
    to_int,
)

logger = logging.getLogger(__name__)

ROOT_DIALECTS: dict[str, str] = {
    "VehicleDamageEstimateAddRq": "mitchell_bms",
    "BMS_ESTIMATE": "generic_bms",
    "Estimate": "simple_estimate",
    "estimate": "simple_estimate",
    "estimateData": "estimate_data",
    "estimateInfo": "estimate_info",
}

KNOWN_SECTIONS = frozenset({
    # CIECA request
    "RqUID", "AsyncRqUID", "PartnerKey", "DocumentInfo", "ApplicationInfo", "EventInfo",
    "AdminInfo", "ClaimInfo", "VehicleInfo", "DamageLineInfo", "RepairTotalsInfo",
    "RepairTotalsHistory", "ProfileInfo", "RefClaimNum", "RepairOrderNum",
    "SpecialRequirements",
    # simplified documents
    "Customer", "customer", "Vehicle", "vehicle", "EstimateInfo", "estimateInfo",
    "Insurance", "insurance", "LineItems", "lineItems", "Totals", "totals",
    "ClaimNumber", "PolicyNumber", "PolicyNum",
    # generic upper-case export
    "CUSTOMER_INFO", "VEHICLE_INFO", "CLAIM_INFO", "ESTIMATE_INFO", "DAMAGE_ASSESSMENT",
})

KNOWN_DAMAGE_LINE_FIELDS = frozenset({
    "LineNum", "UniqueSequenceNum", "ParentLineNum", "ManualLineInd", "AutomatedEntry",
    "LineStatusCode", "LineDesc", "LineDescCode", "LineType", "LineAmt", "LineMemo",
    "MessageCode", "VendorRefNum", "PartInfo", "LaborInfo", "RefinishLaborInfo",
    "OtherChargesInfo", "MaterialType", "SubletInfo",
})

VENDOR_CODES = {"M": "Mitchell", "C": "CCC ONE", "A": "Audatex"}

PHONE_BUCKETS = {"HP": "home", "WP": "work", "CP": "cell", "MP": "cell", "FX": "fax"}

_MEMO_RO = re.compile(r"RO\s*[:#]\s*([A-Z0-9][A-Z0-9-]*)", re.IGNORECASE)

_ADAS_KEYWORDS = ("adas", "calibration")
_SCAN_KEYWORDS = ("scan", "diagnostic")
_ALIGNMENT_KEYWORDS = ("alignment", "4 wheel align")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_bms(content: str | bytes) -> NormalizedPayload:
    """Parse a BMS XML document.

    Raises:
        StructuralParseError: the XML is not well-formed or has no known root.
    """
    document = parse_xml(content)
    root, estimate_type = locate_root(document)
    session = ParseSession(source="BMS")

    for section in root.children:
        if section.tag not in KNOWN_SECTIONS:
            session.note_unknown(section.tag)

    vehicle = _extract_vehicle(root)
    identities = _extract_identities(root, vehicle)
    lines = _extract_lines(root, session)
    payload = NormalizedPayload(
        identities=identities,
        customer=_extract_customer(root),
        vehicle=vehicle,
        lines=tuple(lines),
        parts=parts_view(lines),
        financials=_extract_financials(root),
        tax=_extract_tax(root),
        special_requirements=_extract_special_requirements(root, lines),
        meta=PayloadMeta(
            source_system=_detect_source_system(root, estimate_type),
            source_format="BMS",
            estimate_type=estimate_type,
            exported_at=parse_datetime(first_text(root, "DocumentInfo/CreateDateTime")),
            unknown_tags=session.frozen_tags(),
        ),
    )
    logger.info(
        "Parsed BMS estimate (%s): ro=%r claim=%r vin=%r lines=%d unknown_tags=%d",
        estimate_type, identities.ro_number, identities.claim_number, identities.vin,
        len(lines), len(session.unknown_tags),
    )
    return payload


def locate_root(document: XmlNode) -> tuple[XmlNode, str]:
    """Find the estimate root: the document element or one level below an envelope."""
    if document.tag in ROOT_DIALECTS:
        return document, ROOT_DIALECTS[document.tag]
    for name in KNOWN_BMS_ROOTS:
        found = document.child(name)
        if found is not None:
            return found, ROOT_DIALECTS[name]
    raise StructuralParseError("BMS", f"no valid estimate root found (document element <{document.tag}>)")


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------

@dataclass
class _Party:
    first_name: str = ""
    last_name: str = ""
    company_name: str = ""
    email: str = ""
    phone: str = ""
    phones: dict[str, str] = field(default_factory=dict)
    address: Optional[Address] = None

    @property
    def has_name(self) -> bool:
        return bool(self.first_name or self.last_name or self.company_name)


def _read_address(node: Optional[XmlNode]) -> Optional[Address]:
    if node is None:
        return None
    address = Address(
        address1=first_text(node, "Address1", "Street", "street", "STREET", "address"),
        address2=first_text(node, "Address2"),
        city=first_text(node, "City", "city", "CITY"),
        state_province=first_text(node, "StateProvince", "State", "state", "STATE"),
        postal_code=first_text(node, "PostalCode", "Zip", "zip", "ZIP"),
        country=first_text(node, "Country", "country"),
    )
    if not (address.address1 or address.city or address.postal_code):
        return None
    return address


def _read_communications(party: _Party, nodes: list[XmlNode]) -> None:
    for comm in nodes:
        qualifier = first_text(comm, "CommQualifier").upper()
        phone = first_text(comm, "CommPhone")
        email = first_text(comm, "CommEmail")
        if phone:
            formatted = normalize_phone(phone)
            bucket = PHONE_BUCKETS.get(qualifier)
            if bucket and not party.phones.get(bucket):
                party.phones[bucket] = formatted
            if not party.phone and bucket != "fax":
                party.phone = phone
        elif email and qualifier in ("EM", ""):
            party.email = party.email or email
        if party.address is None and comm.child("Address") is not None:
            party.address = _read_address(comm.child("Address"))


def _read_cieca_party(node: Optional[XmlNode]) -> _Party:
    party = _Party()
    if node is None:
        return party
    party.first_name = first_text(node, "PersonInfo/PersonName/FirstName")
    party.last_name = first_text(node, "PersonInfo/PersonName/LastName")
    party.company_name = first_text(node, "OrgInfo/CompanyName")
    _read_communications(party, node.find_all("ContactInfo/Communications"))
    _read_communications(party, node.find_all("PersonInfo/Communications"))
    _read_communications(party, node.find_all("OrgInfo/Communications"))
    return party


def _read_simple_party(node: Optional[XmlNode]) -> _Party:
    party = _Party()
    if node is None:
        return party
    party.first_name = first_text(node, "FirstName", "firstName", "FIRST_NAME")
    party.last_name = first_text(node, "LastName", "lastName", "LAST_NAME")
    party.company_name = first_text(node, "CompanyName", "companyName", "Company", "COMPANY_NAME")
    party.email = first_text(node, "Email", "email", "EMAIL")
    phone = first_text(node, "Phone", "phone", "PHONE")
    cell = first_text(node, "CellPhone", "cellPhone", "CELL_PHONE")
    work = first_text(node, "WorkPhone", "workPhone", "WORK_PHONE")
    party.phone = phone or cell or work
    if cell:
        party.phones["cell"] = normalize_phone(cell)
    if work:
        party.phones["work"] = normalize_phone(work)
    nested = first_node(node, "Address", "address", "ADDRESS")
    if nested is not None and nested.children:
        party.address = _read_address(nested)
    else:
        party.address = _read_address(node)
    return party


def _extract_customer(root: XmlNode) -> PersonCustomer | OrganizationCustomer:
    # Owner first; some exports only populate the policy holder.
    candidates = [
        _read_cieca_party(root.find("AdminInfo/Owner/Party")),
        _read_cieca_party(root.find("AdminInfo/PolicyHolder/Party")),
        _read_simple_party(first_node(root, "Customer", "customer")),
        _read_simple_party(root.find("CUSTOMER_INFO")),
    ]
    named = next((party for party in candidates if party.has_name), _Party())

    def pick(attr: str) -> str:
        own = getattr(named, attr)
        if own:
            return own
        return next((getattr(p, attr) for p in candidates if getattr(p, attr)), "")

    phones: dict[str, str] = {}
    for party in [named, *candidates]:
        for bucket, number in party.phones.items():
            phones.setdefault(bucket, number)
    address = named.address or next((p.address for p in candidates if p.address), None)

    fields = dict(
        first_name=named.first_name,
        last_name=named.last_name,
        company_name=named.company_name,
        email=pick("email"),
        phone=pick("phone"),
        phones=Phones(**phones),
        address=address,
        insurance_company=first_text(
            root,
            "AdminInfo/InsuranceCompany/Party/OrgInfo/CompanyName",
            "Insurance/Company",
            "insurance/company",
            "CLAIM_INFO/INSURANCE_COMPANY",
        ),
        policy_number=first_text(
            root,
            "ClaimInfo/PolicyInfo/PolicyNum",
            "PolicyNumber",
            "PolicyNum",
            "Insurance/PolicyNumber",
            "CLAIM_INFO/POLICY_NUMBER",
        ),
    )
    if named.company_name:
        return OrganizationCustomer(gst_payable=True, **fields)
    return PersonCustomer(gst_payable=False, **fields)


# ---------------------------------------------------------------------------
# Vehicle & identities
# ---------------------------------------------------------------------------

def _extract_vehicle(root: XmlNode) -> Vehicle:
    memo = first_text(root, "VehicleInfo/VehicleDesc/VehicleDescMemo", "VehicleInfo/VehicleDescMemo")
    memo_match = _MEMO_RO.search(memo)
    if memo_match:
        logger.debug("Found shop RO %s in vehicle memo", memo_match.group(1))
    drivable = first_text(root, "VehicleInfo/DrivableInd", "Vehicle/Drivable", "vehicle/drivable")
    valuation = first_text(root, "VehicleInfo/ValuationInfo/ValuationAmt", "vehicle/valuation")

    return Vehicle(
        vin=first_text(
            root,
            "VehicleInfo/VINInfo/VIN/VINNum",
            "VehicleInfo/VINInfo/VINNum",
            "Vehicle/VIN", "vehicle/vin", "VEHICLE_INFO/VIN",
        ).upper(),
        year=to_int(first_text(
            root, "VehicleInfo/VehicleDesc/ModelYear", "Vehicle/Year", "vehicle/year", "VEHICLE_INFO/YEAR",
        )),
        make=first_text(
            root, "VehicleInfo/VehicleDesc/MakeDesc", "VehicleInfo/VehicleDesc/MakeCode",
            "Vehicle/Make", "vehicle/make", "VEHICLE_INFO/MAKE",
        ),
        model=first_text(
            root, "VehicleInfo/VehicleDesc/ModelName", "Vehicle/Model", "vehicle/model", "VEHICLE_INFO/MODEL",
        ),
        trim=first_text(
            root, "VehicleInfo/VehicleDesc/SubModelDesc", "Vehicle/Trim", "vehicle/trim", "VEHICLE_INFO/TRIM",
        ),
        body_style=first_text(
            root, "VehicleInfo/Body/BodyStyle", "VehicleInfo/VehicleDesc/BodyStyle",
            "Vehicle/BodyStyle", "vehicle/bodyStyle",
        ),
        color=first_text(
            root, "VehicleInfo/Paint/Exterior/Color/ColorName", "Vehicle/Color", "vehicle/color",
            "VEHICLE_INFO/COLOR",
        ),
        odometer=to_int(first_text(
            root, "VehicleInfo/VehicleDesc/OdometerInfo/OdometerReading", "Vehicle/Mileage",
            "vehicle/mileage", "VEHICLE_INFO/MILEAGE",
        )),
        engine=first_text(
            root, "VehicleInfo/Powertrain/EngineDesc", "Vehicle/EngineType", "vehicle/engine",
            "VEHICLE_INFO/ENGINE",
        ),
        transmission=first_text(
            root, "VehicleInfo/Powertrain/TransmissionInfo/TransmissionDesc", "Vehicle/Transmission",
            "vehicle/transmission", "VEHICLE_INFO/TRANSMISSION",
        ),
        fuel_type=first_text(root, "VehicleInfo/Powertrain/FuelType", "Vehicle/FuelType", "vehicle/fuelType"),
        drivetrain=first_text(root, "VehicleInfo/Powertrain/DrivetrainDesc", "vehicle/drivetrain"),
        license_plate=first_text(
            root, "VehicleInfo/License/LicensePlateNum", "Vehicle/LicensePlate", "vehicle/license",
            "VEHICLE_INFO/LICENSE_PLATE",
        ),
        license_state=first_text(root, "VehicleInfo/License/LicensePlateStateProvince"),
        drivable=to_bool(drivable) if drivable else None,
        valuation=to_decimal(valuation),
        shop_ro_number=memo_match.group(1) if memo_match else "",
    )


def _extract_identities(root: XmlNode, vehicle: Vehicle) -> JobIdentities:
    ro_number = first_text(
        root,
        "RqUID",
        "RepairOrderNum",
        "DocumentInfo/RepairOrderNum",
        "EstimateInfo/EstimateNumber",
        "estimateInfo/estimateNumber",
        "ESTIMATE_INFO/ESTIMATE_NUMBER",
        "DocumentInfo/DocumentID",
    ) or vehicle.shop_ro_number
    claim_number = first_text(
        root,
        "RefClaimNum",
        "ClaimInfo/ClaimNum",
        "ClaimNumber",
        "EstimateInfo/ClaimNumber",
        "estimateInfo/claimNumber",
        "Insurance/ClaimNumber",
        "CLAIM_INFO/CLAIM_NUMBER",
    )
    return JobIdentities(ro_number=ro_number, claim_number=claim_number, vin=vehicle.vin)


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------

class _LineBuilder:
    """Appends lines in document order, numbering any that lack a line number."""

    def __init__(self) -> None:
        self.lines: list[EstimateLine] = []

    def next_number(self) -> int:
        return max((line.line_number for line in self.lines), default=0) + 1

    def add(self, line_number: Optional[int], description: str, line_type: str,
            detail: PartInfo | LaborInfo | OtherChargesInfo | None,
            taxable: bool = False, parent_line: Optional[int] = None,
            amount: Optional[Decimal] = None) -> int:
        number = line_number if line_number is not None else self.next_number()
        if amount is None:
            amount = _detail_amount(detail)
        self.lines.append(EstimateLine(
            line_number=number,
            parent_line=parent_line,
            description=description,
            line_type=line_type,
            taxable=taxable or bool(detail is not None and detail.taxable),
            amount=amount,
            detail=detail,
        ))
        return number


def _detail_amount(detail: PartInfo | LaborInfo | OtherChargesInfo | None) -> Decimal:
    if isinstance(detail, PartInfo):
        return detail.extended_price
    if isinstance(detail, LaborInfo):
        return detail.amount
    if isinstance(detail, OtherChargesInfo):
        return detail.price
    return Decimal("0")


def _labor_rates(root: XmlNode) -> dict[str, Decimal]:
    """Rates from ``ProfileInfo/RateInfo`` keyed by labor type code (LAB, LAR, ...)."""
    rates: dict[str, Decimal] = {}
    for info in root.find_all("ProfileInfo/RateInfo"):
        rate_type = first_text(info, "RateType").upper()
        rate = to_decimal(first_text(info, "Rate", "RateTierInfo/Rate"))
        if rate_type and rate is not None:
            rates.setdefault(rate_type, rate)
    return rates


def _cieca_labor(node: XmlNode, rates: dict[str, Decimal]) -> LaborInfo:
    labor_type = first_text(node, "LaborType")
    rate = to_decimal(first_text(node, "LaborRate", "Rate"))
    if rate is None:
        rate = rates.get(labor_type.upper())
    return LaborInfo(
        labor_type=labor_type,
        operation=first_text(node, "LaborOperation"),
        hours=to_decimal(first_text(node, "LaborHours", "LaborHoursCalc"), Decimal("0")),
        rate=rate,
        database_hours=to_decimal(first_text(node, "DatabaseLaborHours")),
        paint_stages=to_int(first_text(node, "PaintStagesNum")),
        taxable=to_bool(first_text(node, "TaxableInd")),
    )


def _damage_lines(root: XmlNode, builder: _LineBuilder, session: ParseSession) -> None:
    rates = _labor_rates(root)
    for line in root.children_named("DamageLineInfo"):
        for child in line.children:
            if child.tag not in KNOWN_DAMAGE_LINE_FIELDS:
                session.note_unknown(f"DamageLineInfo/{child.tag}")

        number = to_int(first_text(line, "LineNum", "UniqueSequenceNum"))
        parent = to_int(first_text(line, "ParentLineNum"))
        description = first_text(line, "LineDesc")
        line_type = first_text(line, "LineType")
        part_node = line.child("PartInfo")
        labor_node = line.child("LaborInfo")
        refinish_node = line.child("RefinishLaborInfo")
        other_node = line.child("OtherChargesInfo")
        sublet_node = line.child("SubletInfo")
        material_type = first_text(line, "MaterialType", "OtherChargesInfo/MaterialType")

        details: list[tuple[str, PartInfo | LaborInfo | OtherChargesInfo]] = []
        if part_node is not None:
            details.append(("part", PartInfo(
                part_number=first_text(part_node, "PartNum"),
                oem_part_number=first_text(part_node, "OEMPartNum"),
                description=description,
                price=to_decimal(first_text(part_node, "PartPrice", "OEMPartPrice", "ActualPrice"), Decimal("0")),
                quantity=to_decimal(first_text(part_node, "Quantity"), Decimal("1")),
                part_type=first_text(part_node, "PartType"),
                source_code=first_text(part_node, "PartSourceCode"),
                taxable=to_bool(first_text(part_node, "TaxableInd")),
            )))
        elif material_type or other_node is not None:
            # Materials ride along as pseudo-parts so part totals stay complete.
            details.append(("material", PartInfo(
                part_number=material_type or "Material",
                description=description,
                price=to_decimal(first_text(other_node, "Price", "OtherChargesAmt"), Decimal("0")),
                quantity=Decimal("1"),
                part_type=material_type or "MATERIAL",
                source_code="99",
                taxable=to_bool(first_text(other_node, "TaxableInd")) if other_node is not None else True,
                is_material=True,
            )))
        if labor_node is not None:
            details.append(("labor", _cieca_labor(labor_node, rates)))
        if refinish_node is not None:
            details.append(("refinish", _cieca_labor(refinish_node, rates)))
        if sublet_node is not None:
            details.append(("sublet", OtherChargesInfo(
                charge_type="sublet",
                price=to_decimal(first_text(sublet_node, "SubletAmt", "Price"), Decimal("0")),
                taxable=to_bool(first_text(sublet_node, "TaxableInd")),
            )))

        if not details:
            builder.add(number, description, line_type or "note", None,
                        parent_line=parent, amount=to_decimal(first_text(line, "LineAmt"), Decimal("0")))
            continue

        kind, primary = details[0]
        own_number = builder.add(number, description, line_type or kind, primary, parent_line=parent)
        for kind, extra in details[1:]:
            builder.add(own_number, description, kind, extra, parent_line=own_number)


def _simple_line_items(root: XmlNode, builder: _LineBuilder, session: ParseSession) -> None:
    for item in root.find_all("LineItems/LineItem") + root.find_all("lineItems/lineItem"):
        kind = first_text(item, "Type", "type").lower()
        number = to_int(first_text(item, "LineNumber", "lineNumber"))
        description = first_text(item, "Description", "description")
        taxable = to_bool(first_text(item, "Taxable", "taxable"))
        quantity = to_decimal(first_text(item, "Quantity", "quantity"), Decimal("1"))
        unit_price = to_decimal(first_text(item, "UnitPrice", "unitPrice"))
        parts_amount = to_decimal(first_text(item, "PartsAmount", "partsAmount"))
        hours = to_decimal(first_text(item, "LaborHours", "laborHours"))
        labor = LaborInfo(
            operation=first_text(item, "Operation", "operation") or description,
            labor_type=first_text(item, "LaborType", "laborType") or "body",
            hours=hours or Decimal("0"),
            rate=to_decimal(first_text(item, "LaborRate", "laborRate")),
            taxable=taxable,
        )

        if kind in ("part", "material"):
            if unit_price is None and parts_amount is not None:
                unit_price, quantity = parts_amount, Decimal("1")
            part = PartInfo(
                part_number=first_text(item, "PartNumber", "partNumber"),
                description=description,
                price=unit_price or Decimal("0"),
                quantity=quantity,
                part_type=first_text(item, "PartType", "partType") or kind.title(),
                taxable=taxable,
                is_material=kind == "material",
            )
            own_number = builder.add(number, description, kind, part, taxable=taxable)
            if hours:
                builder.add(own_number, description, "labor", labor, parent_line=own_number)
        elif kind == "labor":
            builder.add(number, description, "labor", labor, taxable=taxable,
                        amount=to_decimal(first_text(item, "LaborAmount", "laborAmount")) or labor.amount)
        elif kind == "sublet":
            builder.add(number, description, "sublet", OtherChargesInfo(
                charge_type="sublet",
                price=to_decimal(first_text(item, "Amount", "amount", "UnitPrice"), Decimal("0")),
                taxable=taxable,
            ), taxable=taxable)
        else:
            session.note_unknown(f"LineItem/Type:{kind or 'missing'}")
            builder.add(number, description, kind or "unknown", None, taxable=taxable,
                        amount=to_decimal(first_text(item, "Amount", "amount"), Decimal("0")))


def _generic_damage_lines(root: XmlNode, builder: _LineBuilder) -> None:
    for item in root.find_all("DAMAGE_ASSESSMENT/DAMAGE_LINES/LINE_ITEM"):
        number = to_int(first_text(item, "LINE_NUMBER"))
        description = first_text(item, "PART_NAME", "DESCRIPTION")
        own_number: Optional[int] = None
        if first_text(item, "PART_NAME", "PART_NUMBER"):
            own_number = builder.add(number, description, "part", PartInfo(
                part_number=first_text(item, "PART_NUMBER"),
                description=description,
                price=to_decimal(first_text(item, "PART_COST"), Decimal("0")),
                quantity=to_decimal(first_text(item, "QUANTITY"), Decimal("1")),
                part_type=first_text(item, "PART_TYPE"),
            ))

        extras: list[tuple[str, PartInfo | LaborInfo]] = []
        labor_hours = to_decimal(first_text(item, "LABOR_HOURS"))
        if labor_hours:
            extras.append(("labor", LaborInfo(
                labor_type="body",
                operation=first_text(item, "OPERATION_TYPE"),
                hours=labor_hours,
                rate=to_decimal(first_text(item, "LABOR_RATE")),
            )))
        paint_hours = to_decimal(first_text(item, "PAINT_HOURS"))
        if paint_hours:
            extras.append(("refinish", LaborInfo(
                labor_type="refinish",
                operation="Refinish",
                hours=paint_hours,
                rate=to_decimal(first_text(item, "PAINT_RATE")),
            )))
        material_cost = to_decimal(first_text(item, "MATERIAL_COST"))
        if material_cost:
            extras.append(("material", PartInfo(
                part_number="Material", description=f"{description} materials".strip(),
                price=material_cost, part_type="MATERIAL", source_code="99", is_material=True,
            )))

        for kind, detail in extras:
            if own_number is None:
                own_number = builder.add(number, description, kind, detail)
            else:
                builder.add(own_number, description, kind, detail, parent_line=own_number)


def _extract_lines(root: XmlNode, session: ParseSession) -> list[EstimateLine]:
    builder = _LineBuilder()
    _damage_lines(root, builder, session)
    _simple_line_items(root, builder, session)
    _generic_damage_lines(root, builder)
    return builder.lines


# ---------------------------------------------------------------------------
# Financials, tax, special requirements
# ---------------------------------------------------------------------------

def _adjustments(root: XmlNode) -> list[XmlNode]:
    found: list[XmlNode] = []
    for node in root.find_all("RepairTotalsInfo/Adjustments"):
        if node.child("AdjustmentDesc") is not None or node.child("AdjustmentAmt") is not None:
            found.append(node)
        else:
            found.extend(node.children)
    return found


def _extract_financials(root: XmlNode) -> Financials:
    values: dict[str, Optional[Decimal]] = {
        "parts_total": to_decimal(first_text(
            root, "RepairTotalsInfo/PartsTotalsInfo/TotalAmt", "Totals/PartsTotal", "totals/partsTotal",
            "DAMAGE_ASSESSMENT/PARTS_TOTAL",
        )),
        "labor_total": to_decimal(first_text(
            root, "RepairTotalsInfo/LaborTotalsInfo/TotalAmt", "Totals/LaborTotal", "totals/laborTotal",
            "DAMAGE_ASSESSMENT/LABOR_TOTAL",
        )),
        "materials_total": to_decimal(first_text(
            root, "RepairTotalsInfo/OtherChargesTotalsInfo/TotalAmt", "Totals/MaterialsTotal",
            "totals/materialsTotal", "DAMAGE_ASSESSMENT/PAINT_MATERIALS_TOTAL",
        )),
        "sublet_total": to_decimal(first_text(root, "Totals/SubletTotal", "totals/subletTotal")),
        "tax_total": to_decimal(first_text(root, "Totals/Tax", "totals/tax", "DAMAGE_ASSESSMENT/TAX_TOTAL")),
        "gross_total": to_decimal(first_text(
            root, "Totals/Subtotal", "totals/subtotal", "DAMAGE_ASSESSMENT/TOTAL_ESTIMATE",
        )),
        "net_total": to_decimal(first_text(
            root, "Totals/GrandTotal", "totals/grandTotal", "DAMAGE_ASSESSMENT/TOTALS_BREAKDOWN/FINAL_TOTAL",
        )),
    }

    # CIECA summary totals are tagged (TotalType, TotalSubType).
    for total in root.find_all("RepairTotalsInfo/SummaryTotalsInfo"):
        total_type = first_text(total, "TotalType")
        sub_type = first_text(total, "TotalSubType")
        amount = to_decimal(first_text(total, "TotalAmt"))
        if amount is None:
            continue
        if (total_type, sub_type) == ("TOT", "TT") or total_type == "NetTotal":
            values["net_total"] = amount
        elif (total_type, sub_type) == ("TOT", "CE") or total_type == "GrossTotal":
            values["gross_total"] = amount

    deductible = to_decimal(first_text(
        root,
        "ClaimInfo/PolicyInfo/CoverageInfo/Coverage/DeductibleInfo/DeductibleAmt",
        "Insurance/Deductible",
        "DAMAGE_ASSESSMENT/TOTALS_BREAKDOWN/DEDUCTIBLE",
    ))
    status = first_text(root, "ClaimInfo/PolicyInfo/CoverageInfo/Coverage/DeductibleInfo/DeductibleStatus").lower()
    waived = "waive" in status or (deductible == 0 and "no deductible" in status)
    if deductible is None:
        for adjustment in _adjustments(root):
            if "deductible" in first_text(adjustment, "AdjustmentDesc").lower():
                amount = to_decimal(first_text(adjustment, "AdjustmentAmt"))
                if amount is not None:
                    deductible = abs(amount)  # adjustments carry it as a negative
                    break

    return Financials(deductible=deductible, deductible_waived=waived, **values)


def _extract_tax(root: XmlNode) -> TaxDetails:
    found: dict[str, Optional[Decimal]] = {}
    for adjustment in _adjustments(root):
        if first_text(adjustment, "AdjustmentType").lower() != "tax":
            continue
        description = first_text(adjustment, "AdjustmentDesc").upper()
        amount = to_decimal(first_text(adjustment, "AdjustmentAmt"))
        rate = to_decimal(first_text(adjustment, "AdjustmentRate", "AdjustmentPct"))
        if "GST" in description or "FEDERAL" in description:
            found.setdefault("gst_amount", amount)
            found.setdefault("gst_rate", rate)
        if "PST" in description or "PROVINCIAL" in description:
            found.setdefault("pst_amount", amount)
            found.setdefault("pst_rate", rate)
    return TaxDetails(**found)


def _extract_special_requirements(root: XmlNode, lines: list[EstimateLine]) -> SpecialRequirements:
    adas = post_scan = alignment = False
    for line in lines:
        adas = adas or contains_any(line.description, _ADAS_KEYWORDS)
        post_scan = post_scan or contains_any(line.description, _SCAN_KEYWORDS)
        alignment = alignment or contains_any(line.description, _ALIGNMENT_KEYWORDS)
    flags = root.child("SpecialRequirements")
    if flags is not None:
        adas = adas or to_bool(first_text(flags, "ADASCalibration"))
        post_scan = post_scan or to_bool(first_text(flags, "PostScan"))
        alignment = alignment or to_bool(first_text(flags, "FourWheelAlignment"))
    adas = adas or to_bool(first_text(root, "Vehicle/RequiresCalibration", "vehicle/requiresCalibration"))
    return SpecialRequirements(adas_calibration=adas, post_scan=post_scan, four_wheel_alignment=alignment)


def _detect_source_system(root: XmlNode, estimate_type: str) -> str:
    vendor = VENDOR_CODES.get(first_text(root, "DocumentInfo/VendorCode").upper())
    if vendor:
        return f"{vendor} BMS"
    for app in root.children_named("ApplicationInfo"):
        if first_text(app, "ApplicationType").lower() == "estimating":
            name = first_text(app, "ApplicationName")
            if name:
                return f"{name} BMS"
    name = present(first_text(root, "ApplicationInfo/ApplicationName", "EstimateInfo/Source", "SourceSystem"))
    return f"{name} BMS" if name else f"BMS {estimate_type}"
