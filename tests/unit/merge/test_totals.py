"""Unit tests for job total computation."""

from __future__ import annotations

from decimal import Decimal

from collision_sync.merge.totals import compute_totals, resolve_totals
from collision_sync.models.payload import EstimateLine, Financials, LaborInfo, OtherChargesInfo, PartInfo
from collision_sync.parsers.bms import parse_bms
from collision_sync.parsers.ems import parse_ems


def _line(number: int, detail=None) -> EstimateLine:
    return EstimateLine(line_number=number, detail=detail)


# ---------- compute_totals ----------

class TestComputeTotals:
    def test_mitchell_estimate(self, mitchell_xml):
        totals = compute_totals(parse_bms(mitchell_xml).lines)
        assert totals.parts_total == Decimal("450.00")
        assert totals.labor_total == Decimal("162.50")
        assert totals.materials_total == Decimal("27.35")
        assert totals.grand_total == Decimal("639.85")

    def test_order_of_lines_does_not_change_totals(self, mitchell_xml):
        lines = parse_bms(mitchell_xml).lines
        assert compute_totals(list(reversed(lines))).grand_total == Decimal("639.85")
        assert compute_totals(lines[1:] + lines[:1]).grand_total == Decimal("639.85")

    def test_ems_estimate(self, sample_ems):
        totals = compute_totals(parse_ems(sample_ems).lines)
        assert totals.parts_total == Decimal("300.00")
        assert totals.labor_total == Decimal("227.50")
        assert totals.materials_total == Decimal("25.00")
        assert totals.grand_total == Decimal("552.50")

    def test_part_price_times_quantity(self):
        totals = compute_totals([_line(1, PartInfo(price=Decimal("19.99"), quantity=Decimal("3")))])
        assert totals.parts_total == Decimal("59.97")

    def test_labor_without_rate_contributes_nothing(self):
        totals = compute_totals([_line(1, LaborInfo(hours=Decimal("4")))])
        assert totals.labor_total == Decimal("0")
        assert totals.grand_total == Decimal("0")

    def test_sublet_is_kept_apart_from_materials(self):
        totals = compute_totals([
            _line(1, OtherChargesInfo(charge_type="Sublet", price=Decimal("120.00"))),
            _line(2, OtherChargesInfo(charge_type="PAINT", price=Decimal("30.00"))),
        ])
        assert totals.sublet_total == Decimal("120.00")
        assert totals.materials_total == Decimal("30.00")
        assert totals.grand_total == Decimal("150.00")

    def test_lines_without_detail_are_ignored(self):
        line = EstimateLine(line_number=1, amount=Decimal("95.00"))
        assert compute_totals([line]).grand_total == Decimal("0")

    def test_decimal_arithmetic_is_exact(self):
        lines = [_line(n, PartInfo(price=Decimal("0.10"))) for n in range(1, 4)]
        assert compute_totals(lines).grand_total == Decimal("0.30")


# ---------- resolve_totals ----------

class TestResolveTotals:
    def test_line_totals_win_when_non_zero(self, mitchell_xml):
        payload = parse_bms(mitchell_xml)
        totals = resolve_totals(payload.lines, payload.financials)
        assert totals.source == "lines"
        assert totals.grand_total == Decimal("639.85")

    def test_vendor_fallback_when_lines_sum_to_zero(self):
        financials = Financials(parts_total=Decimal("80"), labor_total=Decimal("20"), net_total=Decimal("113"))
        totals = resolve_totals([], financials)
        assert totals.source == "vendor"
        assert totals.grand_total == Decimal("113")
        assert totals.parts_total == Decimal("80")
        assert totals.materials_total == Decimal("0")

    def test_gross_total_used_when_net_missing(self):
        totals = resolve_totals([], Financials(gross_total=Decimal("64.00")))
        assert totals.grand_total == Decimal("64.00")

    def test_no_vendor_figures_keeps_zero_line_totals(self):
        totals = resolve_totals([], Financials())
        assert totals.source == "lines"
        assert totals.grand_total == Decimal("0")
