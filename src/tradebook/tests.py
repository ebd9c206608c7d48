import json
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import CommandError, call_command
from django.http import HttpResponse
from django.test import RequestFactory, TestCase, override_settings

from . import documents, reports, stock
from .accounting import (
    account_balance,
    account_ledger,
    available_advance,
    ensure_default_accounts,
    party_balance,
    party_ledger,
    post_legs,
    post_pair,
    record_customer_advance,
    record_expense,
    record_payment_against_bill,
    record_payment_against_invoice,
    record_purchase_cost,
    record_sales_revenue,
    recompute_account_balance,
    recompute_party_balance,
    toggle_reconciled,
    transfer_funds,
)
from .exceptions import (
    InsufficientBalance,
    InsufficientStock,
    InvalidAmount,
    InvalidTransition,
    QuantityExceedsRemaining,
    ReadOnlyHistorical,
    TradebookError,
    UnbalancedPosting,
)
from .lifecycle import derive_payment_status, derive_status
from .middleware import TenantMiddleware, resolve_tenant
from .models import (
    DocumentKind,
    Expense,
    FinancialAccount,
    LedgerEntry,
    ManualStockTransaction,
    Party,
    PaymentStatus,
    Product,
    PurchaseStatus,
    SalesStatus,
    StockTransfer,
    Tenant,
    TradeDocument,
    TransactionType,
    Zone,
)
from .snapshot import dump_state, load_state


class EngineTestCase(TestCase):
    def setUp(self):
        self.tenant = Tenant.objects.create(name="Acme Distributors", slug="acme")
        accounts = ensure_default_accounts(self.tenant)
        self.cash = accounts["Main Cash"]
        self.bank = accounts["Main Bank"]
        self.customer = Party.objects.create(tenant=self.tenant, name="Ravi Traders", kind=Party.CUSTOMER)
        self.supplier = Party.objects.create(tenant=self.tenant, name="Volt Supplies", kind=Party.SUPPLIER)
        self.product = Product.objects.create(
            tenant=self.tenant,
            name="Ceiling Fan",
            sku="FAN-01",
            brand="Breeze",
            sales_price=Decimal("100.00"),
            cost=Decimal("60.00"),
        )

    def sales_order(self, qty=10, reserve=False, unit_price="100.00"):
        quote = documents.create_quotation(
            tenant=self.tenant,
            party=self.customer,
            lines=[{"product": self.product, "qty": qty, "unit_price": unit_price}],
        )
        return documents.confirm(quote, reserve=reserve)


class StockLedgerTests(EngineTestCase):
    def test_transfer_moves_quantity_between_zones(self):
        stock.receive(self.product, Zone.GODOWN, 10, reference="GRN-1")
        stock.transfer(self.product, Zone.GODOWN, Zone.DISPLAY, 4, performed_by="store")

        levels = stock.quantities(self.product)
        self.assertEqual(levels[Zone.GODOWN], 6)
        self.assertEqual(levels[Zone.DISPLAY], 4)
        self.assertEqual(stock.total(self.product), 10)
        self.assertEqual(stock.sellable(self.product), 10)

    def test_transfer_shortage_leaves_state_unchanged(self):
        stock.receive(self.product, Zone.GODOWN, 3)

        with self.assertRaises(InsufficientStock):
            stock.transfer(self.product, Zone.GODOWN, Zone.DISPLAY, 5)

        self.assertEqual(stock.available(self.product, Zone.GODOWN), 3)
        self.assertEqual(stock.available(self.product, Zone.DISPLAY), 0)
        self.assertFalse(StockTransfer.objects.exists())

    def test_deliver_shortage_is_rejected(self):
        stock.receive(self.product, Zone.DISPLAY, 2)

        with self.assertRaises(InsufficientStock):
            stock.deliver(self.product, Zone.DISPLAY, 5, party_name="Walk-in")

        self.assertEqual(stock.available(self.product, Zone.DISPLAY), 2)
        self.assertEqual(ManualStockTransaction.objects.count(), 1)

    def test_rejects_bad_quantities_and_zones(self):
        stock.receive(self.product, Zone.GODOWN, 5)
        for qty in (0, -2, 1.5):
            with self.assertRaises(InvalidAmount):
                stock.transfer(self.product, Zone.GODOWN, Zone.DISPLAY, qty)
        with self.assertRaises(InvalidAmount):
            stock.transfer(self.product, Zone.GODOWN, Zone.GODOWN, 1)
        with self.assertRaises(TradebookError):
            stock.receive(self.product, "SHOWROOM", 1)

    def test_historical_zones_are_read_only(self):
        with self.assertRaises(ReadOnlyHistorical):
            stock.receive(self.product, Zone.HISTORICAL, 1)
        with self.assertRaises(ReadOnlyHistorical):
            stock.transfer(self.product, Zone.ARCHIVE, Zone.GODOWN, 1)

    def test_sellable_excludes_booked_and_repair(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        stock.transfer(self.product, Zone.GODOWN, Zone.BOOKED, 2)
        stock.transfer(self.product, Zone.GODOWN, Zone.REPAIR, 3)

        self.assertEqual(stock.total(self.product), 10)
        self.assertEqual(stock.sellable(self.product), 5)

    def test_opening_stock_keeps_history_reconstructable(self):
        stock.receive(self.product, Zone.GODOWN, 5)
        stock.transfer(self.product, Zone.GODOWN, Zone.DISPLAY, 1)
        stock.set_opening_stock(self.product, {Zone.GODOWN: 2, Zone.DISPLAY: 7})

        levels = stock.quantities(self.product)
        self.assertEqual(levels[Zone.GODOWN], 2)
        self.assertEqual(levels[Zone.DISPLAY], 7)
        self.assertEqual(stock.replay_quantities(self.product), levels)

        opening = ManualStockTransaction.objects.filter(kind=ManualStockTransaction.OPENING, zone=Zone.GODOWN).get()
        self.assertEqual(opening.quantity, -2)

    def test_movements_merge_transfers_and_manual_transactions(self):
        stock.receive(self.product, Zone.GODOWN, 4, date=date(2024, 1, 1))
        stock.transfer(self.product, Zone.GODOWN, Zone.DISPLAY, 1, date=date(2024, 1, 5))

        rows = stock.movements(self.product)
        self.assertEqual([row.kind for row in rows], ["TRANSFER", ManualStockTransaction.RECEIPT])

    def test_stock_ageing_orders_oldest_first(self):
        lamp = Product.objects.create(tenant=self.tenant, name="Desk Lamp", sku="LAMP-01")
        stock.receive(self.product, Zone.GODOWN, 4, date=date(2024, 1, 1))
        stock.receive(lamp, Zone.DISPLAY, 2, date=date(2024, 3, 1))

        rows = stock.stock_ageing(self.tenant, as_of=date(2024, 3, 11))
        self.assertEqual([row["sku"] for row in rows], ["FAN-01", "LAMP-01"])
        self.assertEqual(rows[0]["days"], 70)
        self.assertEqual(rows[1]["days"], 10)


class LedgerTests(EngineTestCase):
    def test_payment_pair_is_balanced(self):
        legs = record_payment_against_invoice(
            tenant=self.tenant, party=self.customer, amount="250", account=self.cash, transaction_id="INV-1",
        )
        self.assertEqual(sum(leg.debit for leg in legs), sum(leg.credit for leg in legs))
        self.assertIsNone(legs[0].party)
        self.assertIsNone(legs[1].account)

    def test_post_pair_rejects_unbalanced_legs(self):
        with self.assertRaises(UnbalancedPosting):
            post_pair(
                tenant=self.tenant,
                leg_a={"type": TransactionType.FUND_TRANSFER, "account": self.cash, "debit": "100"},
                leg_b={"type": TransactionType.FUND_TRANSFER, "account": self.bank, "credit": "90"},
            )
        self.assertFalse(LedgerEntry.objects.exists())

    def test_leg_cannot_reference_account_and_party(self):
        with self.assertRaises(UnbalancedPosting):
            post_legs(
                tenant=self.tenant,
                legs=[{"type": TransactionType.REVENUE, "account": self.cash, "party": self.customer, "debit": "1"}],
            )

    def test_recipes_reject_non_positive_amounts(self):
        with self.assertRaises(InvalidAmount):
            record_customer_advance(tenant=self.tenant, party=self.customer, amount="0", account=self.cash)

    def test_cached_balances_match_full_scan(self):
        record_customer_advance(tenant=self.tenant, party=self.customer, amount="500", account=self.cash)
        record_sales_revenue(tenant=self.tenant, party=self.customer, amount="800", transaction_id="INV-7")
        entries = record_payment_against_invoice(
            tenant=self.tenant, party=self.customer, amount="300", account=self.bank, transaction_id="INV-7",
        )

        self.assertEqual(account_balance(self.cash), recompute_account_balance(self.cash))
        self.assertEqual(account_balance(self.bank), Decimal("300.00"))
        self.assertEqual(party_balance(self.customer), Decimal("0.00"))
        self.assertEqual(party_balance(self.customer), recompute_party_balance(self.customer))

        toggle_reconciled(entries[0])
        self.assertTrue(LedgerEntry.objects.get(pk=entries[0].pk).reconciled)
        self.assertEqual(account_balance(self.bank), Decimal("300.00"))
        self.assertEqual(recompute_account_balance(self.bank), Decimal("300.00"))

    def test_supplier_balance_uses_credit_normal_sign(self):
        record_purchase_cost(tenant=self.tenant, party=self.supplier, amount="400", transaction_id="BILL-1")
        record_payment_against_bill(
            tenant=self.tenant, party=self.supplier, amount="150", account=self.bank, transaction_id="BILL-1",
        )
        self.assertEqual(party_balance(self.supplier), Decimal("250.00"))
        self.assertEqual(account_balance(self.bank), Decimal("-150.00"))

    def test_transfer_funds_requires_source_balance(self):
        with self.assertRaises(InsufficientBalance):
            transfer_funds(tenant=self.tenant, from_account=self.cash, to_account=self.bank, amount="50")
        self.assertFalse(LedgerEntry.objects.exists())

        self.cash.opening_balance = Decimal("500.00")
        self.cash.save()
        legs = transfer_funds(tenant=self.tenant, from_account=self.cash, to_account=self.bank, amount="200")

        self.assertEqual(len(legs), 2)
        self.assertEqual(account_balance(self.cash), Decimal("300.00"))
        self.assertEqual(account_balance(self.bank), Decimal("200.00"))

    def test_account_ledger_is_most_recent_first(self):
        self.cash.opening_balance = Decimal("100.00")
        self.cash.save()
        record_customer_advance(
            tenant=self.tenant, party=self.customer, amount="50", account=self.cash, entry_date=date(2024, 5, 1),
        )
        expense = record_expense(
            tenant=self.tenant, account=self.cash, amount="30", category="Rent", entry_date=date(2024, 5, 2),
        )

        rows = account_ledger(self.cash)
        self.assertEqual([row.running_balance for row in rows], [Decimal("120.00"), Decimal("150.00")])
        self.assertEqual(rows[0].entry, expense.ledger_entry)
        self.assertEqual(Expense.objects.get().amount, Decimal("30.00"))

    def test_party_ledger_starts_from_opening_balance(self):
        self.customer.opening_balance = Decimal("75.00")
        self.customer.save()
        record_sales_revenue(tenant=self.tenant, party=self.customer, amount="25", transaction_id="INV-2")

        rows = party_ledger(self.customer)
        self.assertEqual(rows[0].running_balance, Decimal("100.00"))
        self.assertEqual(party_balance(self.customer), Decimal("100.00"))


class DeriveStatusTests(TestCase):
    def test_status_depends_only_on_summed_quantities(self):
        first = derive_status(DocumentKind.SALES, [(5, 5, 0), (5, 0, 0)])
        second = derive_status(DocumentKind.SALES, [(5, 0, 0), (5, 5, 0)])
        self.assertEqual(first, second)
        self.assertEqual(first, SalesStatus.PARTIALLY_DELIVERED)

    def test_sales_statuses(self):
        self.assertEqual(derive_status(DocumentKind.SALES, [(3, 0, 0)]), SalesStatus.SALES_ORDER)
        self.assertEqual(derive_status(DocumentKind.SALES, [(3, 3, 0)]), SalesStatus.FULLY_DELIVERED)
        self.assertEqual(derive_status(DocumentKind.SALES, [(3, 3, 1)]), SalesStatus.PARTIALLY_BILLED)
        self.assertEqual(derive_status(DocumentKind.SALES, [(3, 3, 3)]), SalesStatus.FULLY_BILLED)
        self.assertEqual(
            derive_status(DocumentKind.SALES, [(3, 0, 0)], stage=SalesStatus.QUOTATION_SENT),
            SalesStatus.QUOTATION_SENT,
        )

    def test_purchase_statuses(self):
        self.assertEqual(derive_status(DocumentKind.PURCHASE, [(4, 0, 0)]), PurchaseStatus.PO)
        self.assertEqual(derive_status(DocumentKind.PURCHASE, [(4, 2, 0)]), PurchaseStatus.GRN_PARTIAL)
        self.assertEqual(derive_status(DocumentKind.PURCHASE, [(4, 4, 2)]), PurchaseStatus.GRN_COMPLETED)
        self.assertEqual(derive_status(DocumentKind.PURCHASE, [(4, 4, 4)]), PurchaseStatus.BILLED)

    def test_payment_status(self):
        self.assertEqual(derive_payment_status("0", "100"), PaymentStatus.UNPAID)
        self.assertEqual(derive_payment_status("40", "100"), PaymentStatus.PARTIAL)
        self.assertEqual(derive_payment_status("100", "100"), PaymentStatus.PAID)


class SalesLifecycleTests(EngineTestCase):
    def test_deliver_settle_and_collect_full_order(self):
        stock.receive(self.product, Zone.GODOWN, 20)
        order = self.sales_order(qty=10)
        self.assertEqual(order.status, SalesStatus.SALES_ORDER)
        self.assertTrue(order.order_number.startswith("SO-"))

        documents.record_fulfillment(order, [{"product": self.product, "qty": 10}], zone=Zone.GODOWN)
        self.assertEqual(order.status, SalesStatus.FULLY_DELIVERED)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 10)

        invoice = documents.settle(order, [{"product": self.product, "qty": 10}])
        self.assertEqual(order.status, SalesStatus.FULLY_BILLED)
        revenue = LedgerEntry.objects.get(tenant=self.tenant, type=TransactionType.REVENUE)
        self.assertEqual(revenue.debit, Decimal("1000.00"))
        self.assertEqual(revenue.party, self.customer)
        self.assertEqual(revenue.transaction_id, invoice.number)
        self.assertEqual(party_balance(self.customer), Decimal("1000.00"))

        documents.collect_payment(order, "1000.00", self.cash, reference="cash")
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertEqual(account_balance(self.cash), Decimal("1000.00"))
        self.assertEqual(party_balance(self.customer), Decimal("0.00"))

    def test_confirm_books_stock_and_delivery_consumes_booking(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        order = self.sales_order(qty=6, reserve=True)
        line = order.lines.get()
        self.assertEqual(line.reserved_qty, 6)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 6)
        self.assertEqual(stock.sellable(self.product), 4)

        documents.record_fulfillment(order, [{"product": self.product, "qty": 4}])
        line.refresh_from_db()
        self.assertEqual(order.status, SalesStatus.PARTIALLY_DELIVERED)
        self.assertEqual(line.reserved_qty, 2)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 2)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 4)

        with self.assertRaises(InvalidTransition):
            documents.cancel(order)

    @override_settings(TRADEBOOK_RESERVE_ON_CONFIRM=False)
    def test_reservation_can_be_disabled_in_settings(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        quote = documents.create_quotation(
            tenant=self.tenant, party=self.customer, lines=[{"product": self.product, "qty": 3}],
        )
        documents.confirm(quote)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 0)

    def test_cancel_releases_booking(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        order = self.sales_order(qty=6, reserve=True)

        documents.cancel(order)
        self.assertEqual(order.status, SalesStatus.CANCELLED)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 10)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 0)
        with self.assertRaises(InvalidTransition):
            documents.record_fulfillment(order, [{"product": self.product, "qty": 1}])

    def test_failed_booking_leaves_quotation_untouched(self):
        stock.receive(self.product, Zone.GODOWN, 2)
        quote = documents.create_quotation(
            tenant=self.tenant, party=self.customer, lines=[{"product": self.product, "qty": 5}],
        )

        with self.assertRaises(InsufficientStock):
            documents.confirm(quote, reserve=True)

        quote.refresh_from_db()
        self.assertEqual(quote.status, SalesStatus.QUOTATION)
        self.assertEqual(quote.order_number, "")
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 2)

    def test_quantities_cannot_exceed_remaining(self):
        stock.receive(self.product, Zone.GODOWN, 20)
        order = self.sales_order(qty=10)

        with self.assertRaises(QuantityExceedsRemaining):
            documents.settle(order, [{"product": self.product, "qty": 1}])
        with self.assertRaises(QuantityExceedsRemaining):
            documents.record_fulfillment(order, [{"product": self.product, "qty": 11}])
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 20)

        documents.record_fulfillment(order, [{"product": self.product, "qty": 4}])
        record = documents.settle(order, [{"product": self.product, "qty": 3}])
        self.assertEqual(order.status, SalesStatus.PARTIALLY_BILLED)
        self.assertEqual(record.amount, Decimal("300.00"))
        with self.assertRaises(QuantityExceedsRemaining):
            documents.settle(order, [{"product": self.product, "qty": 2}])

        for line in order.lines.all():
            self.assertTrue(0 <= line.settled_qty <= line.fulfilled_qty <= line.ordered_qty)

    def test_delivery_shortage_changes_nothing(self):
        stock.receive(self.product, Zone.GODOWN, 3)
        order = self.sales_order(qty=5)

        with self.assertRaises(InsufficientStock):
            documents.record_fulfillment(order, [{"product": self.product, "qty": 5}])

        self.assertEqual(order.lines.get().fulfilled_qty, 0)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 3)

    def test_payment_cannot_exceed_outstanding(self):
        order = self.sales_order(qty=2)
        with self.assertRaises(InvalidAmount):
            documents.collect_payment(order, "500", self.cash)

    def test_quotation_can_be_sent_and_edited(self):
        quote = documents.create_quotation(
            tenant=self.tenant, party=self.customer, lines=[{"product": self.product, "qty": 2}],
        )
        self.assertEqual(quote.grand_total, Decimal("200.00"))
        documents.mark_sent(quote)
        self.assertEqual(quote.status, SalesStatus.QUOTATION_SENT)
        with self.assertRaises(InvalidTransition):
            documents.mark_sent(quote)

        documents.update_document(
            quote,
            lines=[{"product": self.product, "qty": 3, "unit_price": "100", "discount": "10", "tax_rate": "18"}],
            remarks="revised",
        )
        self.assertEqual(quote.subtotal, Decimal("300.00"))
        self.assertEqual(quote.discount_total, Decimal("10.00"))
        self.assertEqual(quote.tax_total, Decimal("52.20"))
        self.assertEqual(quote.grand_total, Decimal("342.20"))
        self.assertEqual(quote.lines.get().ordered_qty, 3)

        documents.confirm(quote, reserve=False)
        self.assertEqual(quote.status, SalesStatus.SALES_ORDER)

    def test_partial_invoices_add_up_to_line_total(self):
        stock.receive(self.product, Zone.GODOWN, 3)
        quote = documents.create_quotation(
            tenant=self.tenant,
            party=self.customer,
            lines=[{"product": self.product, "qty": 3, "unit_price": "10", "discount": "1", "tax_rate": "18"}],
        )
        order = documents.confirm(quote, reserve=False)
        self.assertEqual(order.grand_total, Decimal("34.22"))
        documents.record_fulfillment(order, [{"product": self.product, "qty": 3}])

        invoices = [documents.settle(order, [{"product": self.product, "qty": 1}]) for _ in range(3)]
        self.assertEqual([invoice.amount for invoice in invoices],
                         [Decimal("11.41"), Decimal("11.40"), Decimal("11.41")])
        self.assertEqual(sum(invoice.tax_amount for invoice in invoices), order.tax_total)
        self.assertEqual(party_balance(self.customer), order.grand_total)

        documents.collect_payment(order, order.grand_total, self.cash)
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertEqual(party_balance(self.customer), Decimal("0.00"))

    def test_booked_stock_cannot_be_delivered_by_another_order(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        reserved = self.sales_order(qty=5, reserve=True)
        other = self.sales_order(qty=5)

        with self.assertRaises(TradebookError) as caught:
            documents.record_fulfillment(other, [{"product": self.product, "qty": 5}], zone=Zone.BOOKED)
        self.assertEqual(caught.exception.code, "invalid_zone")
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 5)
        self.assertEqual(other.lines.get().fulfilled_qty, 0)

        documents.record_fulfillment(reserved, [{"product": self.product, "qty": 5}])
        self.assertEqual(reserved.status, SalesStatus.FULLY_DELIVERED)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 0)

    def test_failed_edit_of_booked_order_keeps_its_zone(self):
        stock.receive(self.product, Zone.GODOWN, 5)
        order = self.sales_order(qty=5, reserve=True)

        with self.assertRaises(InsufficientStock):
            documents.update_document(order, zone=Zone.DISPLAY)
        self.assertEqual(order.zone, Zone.GODOWN)
        self.assertEqual(order.lines.get().reserved_qty, 5)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 5)

        documents.cancel(order)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 5)
        self.assertEqual(stock.available(self.product, Zone.DISPLAY), 0)

    def test_edit_rebooks_counting_released_stock(self):
        stock.receive(self.product, Zone.GODOWN, 8)
        order = self.sales_order(qty=5, reserve=True)

        documents.update_document(order, lines=[{"product": self.product, "qty": 8}])
        self.assertEqual(order.lines.get().reserved_qty, 8)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 8)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 0)

    def test_duplicate_products_are_rejected(self):
        with self.assertRaises(TradebookError):
            documents.create_quotation(
                tenant=self.tenant,
                party=self.customer,
                lines=[{"product": self.product, "qty": 1}, {"product": self.product, "qty": 2}],
            )


class PurchaseLifecycleTests(EngineTestCase):
    def rfq(self, qty=5):
        return documents.create_rfq(
            tenant=self.tenant,
            party=self.supplier,
            lines=[{"product": self.product, "qty": qty, "unit_price": "60.00"}],
        )

    def test_receive_bill_and_pay(self):
        rfq = self.rfq()
        self.assertEqual(rfq.status, PurchaseStatus.RFQ)
        self.assertTrue(rfq.number.startswith("RFQ-"))

        documents.confirm(rfq)
        self.assertEqual(rfq.status, PurchaseStatus.PO)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 0)

        grn = documents.record_fulfillment(rfq, [{"product": self.product, "qty": 2}])
        self.assertEqual(rfq.status, PurchaseStatus.GRN_PARTIAL)
        self.assertTrue(grn.number.startswith("GRN-"))
        documents.record_fulfillment(rfq, [{"product": self.product, "qty": 3}])
        self.assertEqual(rfq.status, PurchaseStatus.GRN_COMPLETED)
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 5)

        documents.settle(rfq, [{"product": self.product, "qty": 5}])
        self.assertEqual(rfq.status, PurchaseStatus.BILLED)
        cost = LedgerEntry.objects.get(type=TransactionType.COST)
        self.assertEqual(cost.credit, Decimal("300.00"))
        self.assertEqual(party_balance(self.supplier), Decimal("300.00"))

        documents.record_vendor_payment(rfq, "300", self.bank)
        self.assertEqual(rfq.payment_status, PaymentStatus.PAID)
        self.assertEqual(party_balance(self.supplier), Decimal("0.00"))
        self.assertEqual(account_balance(self.bank), Decimal("-300.00"))

    def test_cancel_before_receipt(self):
        rfq = self.rfq()
        documents.confirm(rfq)
        documents.cancel(rfq)
        self.assertEqual(rfq.status, PurchaseStatus.CANCELLED)

    def test_goods_cannot_be_received_into_booked(self):
        rfq = self.rfq()
        documents.confirm(rfq)
        with self.assertRaises(TradebookError):
            documents.record_fulfillment(rfq, [{"product": self.product, "qty": 5}], zone=Zone.BOOKED)
        self.assertEqual(stock.available(self.product, Zone.BOOKED), 0)
        self.assertEqual(rfq.status, PurchaseStatus.PO)

    def test_vendor_payment_only_on_purchase_documents(self):
        order = documents.create_quotation(
            tenant=self.tenant, party=self.customer, lines=[{"product": self.product, "qty": 1}],
        )
        with self.assertRaises(InvalidTransition):
            documents.record_vendor_payment(order, "10", self.bank)


class HistoricalImportTests(EngineTestCase):
    def setUp(self):
        super().setUp()
        (self.document,) = documents.import_historical(
            tenant=self.tenant,
            kind=DocumentKind.SALES,
            records=[
                {
                    "number": "OLD-17",
                    "party": self.customer,
                    "issue_date": date(2021, 4, 1),
                    "lines": [{"product": self.product, "qty": 2, "unit_price": "50"}],
                }
            ],
        )

    def test_import_has_no_stock_or_ledger_effect(self):
        self.assertEqual(self.document.status, SalesStatus.MIGRATED)
        self.assertTrue(self.document.is_historical)
        self.assertEqual(self.document.zone, Zone.HISTORICAL)
        self.assertEqual(self.document.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.document.amount_paid, Decimal("100.00"))
        self.assertEqual(self.document.lines.get().settled_qty, 2)
        self.assertEqual(stock.total(self.product), 0)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_every_mutation_is_rejected(self):
        line = [{"product": self.product, "qty": 1}]
        operations = [
            lambda: documents.confirm(self.document),
            lambda: documents.record_fulfillment(self.document, line),
            lambda: documents.settle(self.document, line),
            lambda: documents.collect_payment(self.document, "1", self.cash),
            lambda: documents.reconcile_advance(self.document, "1"),
            lambda: documents.update_document(self.document, remarks="edited"),
            lambda: documents.cancel(self.document),
        ]
        for operation in operations:
            with self.assertRaises(ReadOnlyHistorical):
                operation()


class AdvanceTests(EngineTestCase):
    def test_advance_applies_only_when_reconciled(self):
        documents.record_advance(tenant=self.tenant, party=self.customer, amount="1000", account=self.cash)
        documents.record_advance(tenant=self.tenant, party=self.customer, amount="1000", account=self.cash)
        stock.receive(self.product, Zone.GODOWN, 10)
        order = self.sales_order(qty=10)
        documents.record_fulfillment(order, [{"product": self.product, "qty": 10}])
        documents.settle(order, [{"product": self.product, "qty": 10}])

        self.assertEqual(order.payment_status, PaymentStatus.UNPAID)
        self.assertEqual(available_advance(self.customer), Decimal("2000.00"))
        self.assertEqual(account_balance(self.cash), Decimal("2000.00"))
        balance_before = party_balance(self.customer)
        self.assertEqual(balance_before, Decimal("-1000.00"))

        documents.reconcile_advance(order, "1000")
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertEqual(available_advance(self.customer), Decimal("1000.00"))
        self.assertEqual(party_balance(self.customer), balance_before)
        self.assertEqual(account_balance(self.cash), Decimal("2000.00"))

    def test_reconcile_beyond_available_advance_is_rejected(self):
        documents.record_advance(tenant=self.tenant, party=self.customer, amount="100", account=self.cash)
        order = self.sales_order(qty=5)

        with self.assertRaises(InsufficientBalance):
            documents.reconcile_advance(order, "200")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("0.00"))

    def test_vendor_advance(self):
        documents.record_advance(tenant=self.tenant, party=self.supplier, amount="250", account=self.bank)
        self.assertEqual(available_advance(self.supplier), Decimal("250.00"))
        self.assertEqual(party_balance(self.supplier), Decimal("-250.00"))
        self.assertEqual(account_balance(self.bank), Decimal("-250.00"))


class ReportTests(EngineTestCase):
    def test_receivables_ageing_sorted_by_due(self):
        other = Party.objects.create(tenant=self.tenant, name="Mehta Stores", kind=Party.CUSTOMER)
        record_sales_revenue(tenant=self.tenant, party=self.customer, amount="1000", transaction_id="INV-1")
        record_payment_against_invoice(
            tenant=self.tenant, party=self.customer, amount="400", account=self.cash, transaction_id="INV-1",
        )
        record_sales_revenue(tenant=self.tenant, party=other, amount="200", transaction_id="INV-2")

        rows = reports.receivables_ageing(self.tenant)
        self.assertEqual([row["party_id"] for row in rows], [self.customer.pk, other.pk])
        self.assertEqual(rows[0]["total"], Decimal("1000.00"))
        self.assertEqual(rows[0]["paid"], Decimal("400.00"))
        self.assertEqual(rows[0]["due"], Decimal("600.00"))
        self.assertEqual(reports.payables_ageing(self.tenant), [])

    def test_ageing_ignores_advance_netting(self):
        record_customer_advance(tenant=self.tenant, party=self.customer, amount="300", account=self.cash)
        order = self.sales_order(qty=10)
        stock.receive(self.product, Zone.GODOWN, 10)
        documents.record_fulfillment(order, [{"product": self.product, "qty": 10}])
        documents.settle(order, [{"product": self.product, "qty": 10}])
        documents.reconcile_advance(order, "300")

        (row,) = reports.receivables_ageing(self.tenant)
        self.assertEqual(row["total"], Decimal("1000.00"))
        self.assertEqual(row["paid"], Decimal("300.00"))
        self.assertEqual(row["due"], Decimal("700.00"))

    def test_payables_ageing(self):
        record_purchase_cost(tenant=self.tenant, party=self.supplier, amount="500", transaction_id="BILL-1")
        record_payment_against_bill(
            tenant=self.tenant, party=self.supplier, amount="100", account=self.bank, transaction_id="BILL-1",
        )
        (row,) = reports.payables_ageing(self.tenant)
        self.assertEqual(row["due"], Decimal("400.00"))
        self.assertEqual(row["paid"], Decimal("100.00"))

    def test_cash_flow_statement_categories(self):
        day = date(2024, 6, 1)
        record_payment_against_invoice(
            tenant=self.tenant, party=self.customer, amount="500", account=self.cash, transaction_id="INV-1",
            entry_date=day,
        )
        transfer_funds(tenant=self.tenant, from_account=self.cash, to_account=self.bank, amount="200", entry_date=day)
        record_expense(
            tenant=self.tenant, account=self.cash, amount="100", category="Salary",
            description="Staff salary June", entry_date=day,
        )
        record_expense(tenant=self.tenant, account=self.cash, amount="50", category="Rent", entry_date=day)
        record_payment_against_bill(
            tenant=self.tenant, party=self.supplier, amount="80", account=self.bank, transaction_id="BILL-1",
            entry_date=day + timedelta(days=10),
        )

        flow = reports.cash_flow_statement(self.tenant)
        inflows = {bucket["category"]: bucket["amount"] for bucket in flow["inflows"]}
        outflows = {bucket["category"]: bucket["amount"] for bucket in flow["outflows"]}
        self.assertEqual(inflows, {"Customer Receipts": Decimal("500.00"), "Internal Transfers": Decimal("200.00")})
        self.assertEqual(
            outflows,
            {
                "Internal Transfers": Decimal("200.00"),
                "Payroll Payments": Decimal("100.00"),
                "Expense Payments": Decimal("50.00"),
                "Vendor Payments": Decimal("80.00"),
            },
        )
        self.assertEqual(flow["cash_in"], Decimal("700.00"))
        self.assertEqual(flow["cash_out"], Decimal("430.00"))
        self.assertEqual(flow["net_flow"], Decimal("270.00"))

        ranged = reports.cash_flow_statement(self.tenant, start=day, end=day)
        self.assertEqual(ranged["cash_out"], Decimal("350.00"))

    def test_cash_flow_counts_advances_as_receipts_and_payments(self):
        documents.record_advance(tenant=self.tenant, party=self.customer, amount="500", account=self.cash)
        documents.record_advance(tenant=self.tenant, party=self.supplier, amount="200", account=self.bank)

        flow = reports.cash_flow_statement(self.tenant)
        inflows = {bucket["category"]: bucket["amount"] for bucket in flow["inflows"]}
        outflows = {bucket["category"]: bucket["amount"] for bucket in flow["outflows"]}
        self.assertEqual(inflows, {"Customer Receipts": Decimal("500.00")})
        self.assertEqual(outflows, {"Vendor Payments": Decimal("200.00")})

    def test_cash_flow_accepts_iso_date_strings(self):
        record_customer_advance(
            tenant=self.tenant, party=self.customer, amount="40", account=self.cash, entry_date=date(2024, 5, 2),
        )
        record_customer_advance(
            tenant=self.tenant, party=self.customer, amount="60", account=self.cash, entry_date=date(2024, 6, 2),
        )
        flow = reports.cash_flow_statement(self.tenant, start="2024-06-01", end="2024-06-30")
        self.assertEqual(flow["cash_in"], Decimal("60.00"))

    def test_day_wise_cash_book_carries_closing_forward(self):
        start = date(2024, 7, 10)
        self.cash.opening_balance = Decimal("100.00")
        self.cash.save()
        record_customer_advance(
            tenant=self.tenant, party=self.customer, amount="50", account=self.cash,
            entry_date=start - timedelta(days=1),
        )
        record_customer_advance(
            tenant=self.tenant, party=self.customer, amount="200", account=self.bank, entry_date=start,
        )
        record_expense(
            tenant=self.tenant, account=self.cash, amount="30", category="Tea", entry_date=start + timedelta(days=2),
        )

        days = reports.day_wise_cash_book(self.tenant, start, start + timedelta(days=2))
        self.assertEqual(len(days), 3)
        self.assertEqual(days[0]["opening"], Decimal("150.00"))
        self.assertEqual(days[0]["receipts"], Decimal("200.00"))
        self.assertEqual(days[0]["closing"], Decimal("350.00"))
        self.assertEqual(days[1]["opening"], Decimal("350.00"))
        self.assertEqual(days[1]["closing"], Decimal("350.00"))
        self.assertEqual(days[2]["payments"], Decimal("30.00"))
        self.assertEqual(days[2]["closing"], Decimal("320.00"))

    def test_profit_and_loss(self):
        record_sales_revenue(tenant=self.tenant, party=self.customer, amount="1000", transaction_id="INV-1")
        record_purchase_cost(tenant=self.tenant, party=self.supplier, amount="600", transaction_id="BILL-1")
        self.bank.opening_balance = Decimal("500.00")
        self.bank.save()
        record_expense(tenant=self.tenant, account=self.bank, amount="100", category="Rent")

        summary = reports.profit_and_loss(self.tenant)
        self.assertEqual(summary["gross_sales"], Decimal("1000.00"))
        self.assertEqual(summary["cost_of_goods"], Decimal("600.00"))
        self.assertEqual(summary["operating_expenses"], Decimal("100.00"))
        self.assertEqual(summary["net_income"], Decimal("300.00"))

    def test_brand_profitability_from_settlements(self):
        stock.receive(self.product, Zone.GODOWN, 5)
        order = self.sales_order(qty=5)
        documents.record_fulfillment(order, [{"product": self.product, "qty": 5}])
        documents.settle(order, [{"product": self.product, "qty": 3}])

        (row,) = reports.brand_profitability(self.tenant)
        self.assertEqual(row["brand"], "Breeze")
        self.assertEqual(row["revenue"], Decimal("300.00"))
        self.assertEqual(row["cost"], Decimal("180.00"))
        self.assertEqual(row["gross_profit"], Decimal("120.00"))
        self.assertEqual(row["margin"], Decimal("40.00"))


class TenantMiddlewareTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.tenant = Tenant.objects.create(name="Acme", slug="acme")
        self.middleware = TenantMiddleware(lambda request: HttpResponse("ok"))

    def test_session_tenant_is_attached(self):
        request = self.factory.get("/")
        request.session = {"active_tenant_id": self.tenant.id}
        self.middleware(request)
        self.assertEqual(request.tenant, self.tenant)

    def test_header_slug_is_attached(self):
        request = self.factory.get("/", HTTP_X_TENANT="acme")
        self.middleware(request)
        self.assertEqual(request.tenant, self.tenant)

    def test_inactive_tenant_is_ignored(self):
        self.tenant.is_active = False
        self.tenant.save()
        request = self.factory.get("/", HTTP_X_TENANT="acme")
        response = self.middleware(request)
        self.assertIsNone(request.tenant)
        self.assertEqual(response.status_code, 200)

    def test_resolve_tenant(self):
        self.assertEqual(resolve_tenant("acme"), self.tenant)
        self.assertEqual(resolve_tenant(self.tenant.pk), self.tenant)
        self.assertEqual(resolve_tenant(self.tenant), self.tenant)
        with self.assertRaises(Tenant.DoesNotExist):
            resolve_tenant("missing")


class RebuildBalancesCommandTests(EngineTestCase):
    def test_rebuild_restores_cached_totals(self):
        record_sales_revenue(tenant=self.tenant, party=self.customer, amount="700", transaction_id="INV-1")
        record_payment_against_invoice(
            tenant=self.tenant, party=self.customer, amount="200", account=self.cash, transaction_id="INV-1",
        )
        FinancialAccount.objects.filter(pk=self.cash.pk).update(ledger_total=Decimal("999.00"))
        Party.objects.filter(pk=self.customer.pk).update(ledger_total=Decimal("0.00"))

        out = StringIO()
        call_command("rebuild_balances", tenant="acme", stdout=out)

        self.assertIn("Cached balances rebuilt.", out.getvalue())
        self.assertEqual(account_balance(self.cash), Decimal("200.00"))
        self.assertEqual(party_balance(self.customer), recompute_party_balance(self.customer))
        self.assertEqual(party_balance(self.customer), Decimal("500.00"))

    def test_unknown_tenant(self):
        with self.assertRaises(CommandError):
            call_command("rebuild_balances", tenant="nobody", stdout=StringIO())


class SnapshotTests(EngineTestCase):
    def test_load_restores_dumped_state(self):
        stock.receive(self.product, Zone.GODOWN, 10)
        order = self.sales_order(qty=4, reserve=True)
        documents.record_fulfillment(order, [{"product": self.product, "qty": 4}])
        documents.settle(order, [{"product": self.product, "qty": 4}])
        documents.collect_payment(order, "150", self.cash)

        state = json.loads(json.dumps(dump_state(self.tenant)))
        self.assertEqual(state["tenant"], "acme")

        stock.receive(self.product, Zone.DISPLAY, 3)
        record_customer_advance(tenant=self.tenant, party=self.customer, amount="90", account=self.cash)

        load_state(self.tenant, state)

        self.assertEqual(stock.available(self.product, Zone.GODOWN), 6)
        self.assertEqual(stock.available(self.product, Zone.DISPLAY), 0)
        self.assertEqual(account_balance(self.cash), Decimal("150.00"))
        self.assertEqual(party_balance(self.customer), Decimal("250.00"))
        self.assertEqual(party_balance(self.customer), recompute_party_balance(self.customer))
        restored = TradeDocument.objects.get(pk=order.pk)
        self.assertEqual(restored.status, SalesStatus.FULLY_BILLED)
        self.assertEqual(restored.settlements.get().items[0]["qty"], 4)

    def test_snapshot_only_loads_into_its_own_tenant(self):
        stock.receive(self.product, Zone.GODOWN, 4)
        state = dump_state(self.tenant)
        other = Tenant.objects.create(name="Other Co", slug="other")

        with self.assertRaises(TradebookError) as caught:
            load_state(other, state)
        self.assertEqual(caught.exception.code, "tenant_mismatch")
        self.assertEqual(stock.available(self.product, Zone.GODOWN), 4)
        self.assertFalse(Product.objects.filter(tenant=other).exists())
