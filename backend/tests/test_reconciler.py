import unittest
from decimal import Decimal

from docledger.errors import InconsistentTotals, LedgerValidationError
from docledger.services.reconciler_service import LineItemInput, reconcile


def item(qty, price, discount="0", tax="0", ref="P-1"):
    return LineItemInput(
        product_ref=ref,
        quantity=Decimal(qty),
        unit_price=Decimal(price),
        discount_amount=Decimal(discount),
        tax_amount=Decimal(tax),
    )


class ReconcileTotalsTests(unittest.TestCase):
    def test_single_line_with_tax(self):
        totals = reconcile([item("2", "100.00", tax="15.00")])

        self.assertEqual(totals.subtotal, Decimal("200.00"))
        self.assertEqual(totals.tax_amount, Decimal("15.00"))
        self.assertEqual(totals.discount_amount, Decimal("0.00"))
        self.assertEqual(totals.total_amount, Decimal("215.00"))
        self.assertEqual(totals.lines[0].line_total, Decimal("215.00"))

    def test_declared_total_within_a_cent_is_accepted(self):
        totals = reconcile([item("2", "100.00", tax="15.00")], declared_total="215.01")
        # Canonical figure wins over the declaration
        self.assertEqual(totals.total_amount, Decimal("215.00"))

    def test_declared_total_off_by_more_than_a_cent_is_rejected(self):
        with self.assertRaises(InconsistentTotals) as ctx:
            reconcile([item("2", "100.00", tax="15.00")], declared_total="216")
        self.assertEqual(ctx.exception.details["calc_total"], "215.00")
        self.assertEqual(ctx.exception.details["declared_total"], "216.00")

    def test_declared_subtotal_is_checked(self):
        reconcile([item("2", "100.00")], declared_subtotal="200.00")
        with self.assertRaises(InconsistentTotals):
            reconcile([item("2", "100.00")], declared_subtotal="199.98")

    def test_discounts_reduce_total(self):
        totals = reconcile([
            item("3", "10.00", discount="5.00", tax="2.00"),
            item("1", "4.50", ref="P-2"),
        ])
        self.assertEqual(totals.subtotal, Decimal("34.50"))
        self.assertEqual(totals.discount_amount, Decimal("5.00"))
        self.assertEqual(totals.total_amount, Decimal("31.50"))

    def test_tax_override_is_apportioned_by_net_value(self):
        totals = reconcile(
            [item("1", "100.00"), item("2", "100.00", ref="P-2")],
            tax_override="10.00",
        )
        self.assertEqual(totals.tax_amount, Decimal("10.00"))
        self.assertEqual([line.tax_amount for line in totals.lines], [Decimal("3.33"), Decimal("6.67")])
        self.assertEqual(totals.total_amount, Decimal("310.00"))

    def test_tax_override_remainder_lands_on_last_line(self):
        totals = reconcile(
            [item("1", "1.00"), item("1", "1.00"), item("1", "1.00")],
            tax_override="0.10",
        )
        taxes = [line.tax_amount for line in totals.lines]
        self.assertEqual(sum(taxes), Decimal("0.10"))
        self.assertEqual(taxes[-1], Decimal("0.04"))


class ReconcileValidationTests(unittest.TestCase):
    def test_requires_items(self):
        with self.assertRaises(LedgerValidationError):
            reconcile([])

    def test_rejects_non_positive_quantity(self):
        with self.assertRaises(LedgerValidationError):
            reconcile([item("0", "10.00")])

    def test_rejects_negative_price_discount_or_tax(self):
        for bad in (item("1", "-1.00"), item("1", "1.00", discount="-1"), item("1", "1.00", tax="-1")):
            with self.assertRaises(LedgerValidationError):
                reconcile([bad])

    def test_rejects_negative_total(self):
        with self.assertRaises(LedgerValidationError):
            reconcile([item("1", "10.00", discount="11.00")])

    def test_from_dict_requires_product_ref(self):
        with self.assertRaises(LedgerValidationError):
            LineItemInput.from_dict({"quantity": "1", "unit_price": "1.00"})

    def test_from_dict_reports_bad_numbers(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            LineItemInput.from_dict({"product_ref": "P-1", "quantity": "two", "unit_price": "1.00"}, 2)
        self.assertIn("Item 3", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
