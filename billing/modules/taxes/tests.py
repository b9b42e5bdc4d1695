"""
Tests del cálculo de montos de líneas y documentos
"""
from decimal import Decimal

from billing.modules.taxes.calculator import compute_document_totals, compute_line, round_money


def item(quantity, unit_price, discount="0", description="Item"):
    return {
        "description": description,
        "quantity": Decimal(str(quantity)),
        "unit_price": Decimal(str(unit_price)),
        "discount": Decimal(str(discount)),
    }


class TestComputeLine:

    def test_basic_line(self):
        """2 x 100.00 al 18% -> 200.00 / 36.00 / 236.00"""
        line = compute_line(item(2, "100.00"), 18, 0)
        assert line.subtotal == Decimal("200.00")
        assert line.tax == Decimal("36.00")
        assert line.total == Decimal("236.00")
        assert line.position == 0

    def test_discount_is_fixed_amount(self):
        line = compute_line(item(3, "50.00", discount="15.00"), 18, 0)
        assert line.subtotal == Decimal("135.00")
        assert line.tax == Decimal("24.30")
        assert line.total == Decimal("159.30")

    def test_rounding_is_half_up(self):
        line = compute_line(item(1, "0.25"), 10, 0)
        assert line.tax == Decimal("0.03")

    def test_fractional_quantity(self):
        line = compute_line(item("1.5", "10.33"), 18, 0)
        assert line.subtotal == Decimal("15.50")
        assert line.tax == Decimal("2.79")
        assert line.total == Decimal("18.28")

    def test_float_input_does_not_leak_binary_error(self):
        line = compute_line({"quantity": 3, "unit_price": 0.1, "discount": 0}, 0, 0)
        assert line.subtotal == Decimal("0.30")

    def test_missing_discount_defaults_to_zero(self):
        line = compute_line({"quantity": 1, "unit_price": "10"}, 18, 0)
        assert line.discount == Decimal("0")
        assert line.total == Decimal("11.80")


class TestComputeDocumentTotals:

    def test_golden_single_line(self):
        totals = compute_document_totals([item(2, "100.00")], 18)
        assert totals.subtotal == Decimal("200.00")
        assert totals.discount == Decimal("0.00")
        assert totals.tax == Decimal("36.00")
        assert totals.total == Decimal("236.00")

    def test_identities(self):
        lines = [
            item(2, "19.99", discount="1.50"),
            item("0.75", "8.40"),
            item(10, "3.33", discount="0.33"),
        ]
        totals = compute_document_totals(lines, 18)

        assert totals.subtotal == sum(line.subtotal for line in totals.lines)
        assert totals.discount == Decimal("1.83")
        assert totals.total == totals.subtotal + totals.tax
        assert totals.tax == round_money(totals.subtotal * Decimal("0.18"))
        assert [line.position for line in totals.lines] == [0, 1, 2]

    def test_document_tax_is_computed_on_aggregated_subtotal(self):
        """Puede diferir en un céntimo de la suma de impuestos por línea"""
        totals = compute_document_totals([item(1, "0.03") for _ in range(3)], 18)

        assert sum(line.tax for line in totals.lines) == Decimal("0.03")
        assert totals.subtotal == Decimal("0.09")
        assert totals.tax == Decimal("0.02")
        assert totals.total == Decimal("0.11")

    def test_document_total_can_differ_from_line_totals(self):
        totals = compute_document_totals([item("1.5", "10.33")], 18)
        assert totals.lines[0].total == Decimal("18.28")
        assert totals.total == Decimal("18.29")

    def test_zero_tax_rate(self):
        totals = compute_document_totals([item(4, "12.50")], 0)
        assert totals.tax == Decimal("0.00")
        assert totals.total == totals.subtotal == Decimal("50.00")

    def test_discount_larger_than_gross_gives_negative_subtotal(self):
        totals = compute_document_totals([item(1, "10.00", discount="15.00")], 18)
        assert totals.subtotal == Decimal("-5.00")
        assert totals.tax == Decimal("-0.90")
        assert totals.total == Decimal("-5.90")

    def test_accepts_orm_like_objects(self):
        class Line:
            description = "Servicio"
            product_id = None
            unit = "ZZ"
            quantity = Decimal("1")
            unit_price = Decimal("100")
            discount = Decimal("0")

        totals = compute_document_totals([Line()], Decimal("18.00"))
        assert totals.total == Decimal("118.00")
        assert totals.lines[0].unit == "ZZ"
