"""Pure lifecycle rules shared by sales and purchase documents.

Nothing in here touches the database: status is always derived from the
summed line quantities so it can never drift from the lines themselves.
"""
from collections import namedtuple
from decimal import Decimal

from .accounting import ZERO, money
from .models import DocumentKind, PaymentStatus, PurchaseStatus, SalesStatus

LineAmounts = namedtuple("LineAmounts", ["gross", "discount", "tax", "total"])

# Stages set explicitly by an operation rather than derived from quantities.
SALES_EXPLICIT_STAGES = {
    SalesStatus.QUOTATION,
    SalesStatus.QUOTATION_SENT,
    SalesStatus.CANCELLED,
    SalesStatus.MIGRATED,
}
PURCHASE_EXPLICIT_STAGES = {
    PurchaseStatus.RFQ,
    PurchaseStatus.CANCELLED,
    PurchaseStatus.MIGRATED,
}

PRE_ORDER_STAGES = {SalesStatus.QUOTATION, SalesStatus.QUOTATION_SENT, PurchaseStatus.RFQ}
CLOSED_STAGES = {SalesStatus.CANCELLED, SalesStatus.MIGRATED}


def sum_quantities(quantities):
    ordered = fulfilled = settled = 0
    for ordered_qty, fulfilled_qty, settled_qty in quantities:
        ordered += ordered_qty
        fulfilled += fulfilled_qty
        settled += settled_qty
    return ordered, fulfilled, settled


def derive_status(kind, quantities, stage=None):
    """Return the document status implied by ``quantities``.

    ``quantities`` is an iterable of ``(ordered, fulfilled, settled)`` triples
    and ``stage`` the document's current status. Explicit stages (quotation,
    RFQ, cancelled, migrated) are returned unchanged; every other status is a
    function of the summed quantities only.
    """
    ordered, fulfilled, settled = sum_quantities(quantities)

    if kind == DocumentKind.SALES:
        if stage in SALES_EXPLICIT_STAGES:
            return SalesStatus(stage)
        if settled > 0:
            return SalesStatus.FULLY_BILLED if settled >= ordered else SalesStatus.PARTIALLY_BILLED
        if fulfilled > 0:
            return SalesStatus.FULLY_DELIVERED if fulfilled >= ordered else SalesStatus.PARTIALLY_DELIVERED
        return SalesStatus.SALES_ORDER

    if stage in PURCHASE_EXPLICIT_STAGES:
        return PurchaseStatus(stage)
    if settled > 0 and settled >= ordered:
        return PurchaseStatus.BILLED
    if fulfilled > 0:
        return PurchaseStatus.GRN_COMPLETED if fulfilled >= ordered else PurchaseStatus.GRN_PARTIAL
    return PurchaseStatus.PO


def derive_payment_status(amount_paid, grand_total):
    amount_paid = money(amount_paid)
    grand_total = money(grand_total)
    if amount_paid <= ZERO:
        return PaymentStatus.UNPAID
    if amount_paid >= grand_total:
        return PaymentStatus.PAID
    return PaymentStatus.PARTIAL


def line_amounts(qty, unit_price, discount=ZERO, tax_rate=ZERO):
    gross = money(Decimal(qty) * money(unit_price))
    discount = money(discount)
    taxable = gross - discount
    tax = money(taxable * Decimal(str(tax_rate)) / Decimal("100"))
    return LineAmounts(gross=gross, discount=discount, tax=tax, total=money(taxable + tax))


def _settled_through(line, qty):
    discount_share = money(line.discount * Decimal(qty) / Decimal(line.ordered_qty))
    return line_amounts(qty, line.unit_price, discount_share, line.tax_rate)


def settlement_amounts(line, qty):
    """Amounts for settling the next ``qty`` units of ``line``.

    Each settlement is the difference between the cumulative pro-rata amounts
    after and before it, so the settlements of a fully billed line add up to
    exactly its ``line_total``.
    """
    before = _settled_through(line, line.settled_qty)
    after = _settled_through(line, line.settled_qty + qty)
    return LineAmounts(
        gross=after.gross - before.gross,
        discount=after.discount - before.discount,
        tax=after.tax - before.tax,
        total=after.total - before.total,
    )
