"""Exact-decimal job totals computed from imported line detail."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from collision_sync.models.payload import EstimateLine, Financials

ZERO = Decimal("0")


class JobTotals(BaseModel):
    model_config = {"frozen": True}

    parts_total: Decimal = ZERO
    labor_total: Decimal = ZERO
    materials_total: Decimal = ZERO
    sublet_total: Decimal = ZERO
    grand_total: Decimal = ZERO
    source: str = "lines"


def compute_totals(lines: Iterable[EstimateLine]) -> JobTotals:
    """Sum line detail: parts price x quantity, labor hours x rate, other charges.

    Labor without a rate contributes nothing. Material pseudo-parts and
    non-sublet other charges count as materials.
    """
    parts = labor = materials = sublet = ZERO
    for line in lines:
        if (part := line.part_info) is not None:
            if part.is_material:
                materials += part.extended_price
            else:
                parts += part.extended_price
        elif (work := line.labor_info) is not None:
            labor += work.amount
        elif (charge := line.other_charges_info) is not None:
            if charge.charge_type.lower() == "sublet":
                sublet += charge.price
            else:
                materials += charge.price
    return JobTotals(
        parts_total=parts,
        labor_total=labor,
        materials_total=materials,
        sublet_total=sublet,
        grand_total=parts + labor + materials + sublet,
    )


def resolve_totals(lines: Iterable[EstimateLine], financials: Financials) -> JobTotals:
    """Line-detail totals, or the vendor's figures when the lines sum to zero."""
    computed = compute_totals(lines)
    vendor_total = financials.grand_total
    if computed.grand_total != ZERO or not vendor_total:
        return computed
    return JobTotals(
        parts_total=financials.parts_total or ZERO,
        labor_total=financials.labor_total or ZERO,
        materials_total=financials.materials_total or ZERO,
        sublet_total=financials.sublet_total or ZERO,
        grand_total=vendor_total,
        source="vendor",
    )
