"""Read-side rollups over the ledger, expenses and settlements. Nothing here writes."""
from collections import OrderedDict
from datetime import timedelta
from decimal import Decimal

from django.db.models import Sum

from . import conf
from .accounting import ZERO, money
from .filters import LedgerEntryFilter
from .models import (
    DocumentKind,
    Expense,
    FinancialAccount,
    LedgerEntry,
    Product,
    SettlementRecord,
    TransactionType,
)

CUSTOMER_MARKERS = {TransactionType.REVENUE, TransactionType.CUSTOMER_PAYMENT, TransactionType.CUSTOMER_ADVANCE}
SUPPLIER_MARKERS = {TransactionType.COST, TransactionType.VENDOR_PAYMENT, TransactionType.VENDOR_ADVANCE}

INFLOW_CATEGORIES = {
    TransactionType.CUSTOMER_PAYMENT: "Customer Receipts",
    TransactionType.CUSTOMER_ADVANCE: "Customer Receipts",
    TransactionType.REVENUE: "Cash Sales",
    TransactionType.FUND_TRANSFER: "Internal Transfers",
}
OUTFLOW_CATEGORIES = {
    TransactionType.VENDOR_PAYMENT: "Vendor Payments",
    TransactionType.VENDOR_ADVANCE: "Vendor Payments",
    TransactionType.FUND_TRANSFER: "Internal Transfers",
}


def _party_legs(tenant):
    grouped = OrderedDict()
    legs = (
        LedgerEntry.objects
        .filter(tenant=tenant, party__isnull=False, account__isnull=True)
        .order_by("date", "id")
    )
    for leg in legs:
        grouped.setdefault(leg.party_id, []).append(leg)
    return grouped


def _ageing(tenant, receivable):
    markers = CUSTOMER_MARKERS if receivable else SUPPLIER_MARKERS
    anchor_type = TransactionType.REVENUE if receivable else TransactionType.COST
    advance_type = TransactionType.CUSTOMER_ADVANCE if receivable else TransactionType.VENDOR_ADVANCE
    tolerance = conf.balance_tolerance()

    rows = []
    for party_id, legs in _party_legs(tenant).items():
        if not any(leg.type in markers for leg in legs):
            continue
        debit = sum((leg.debit for leg in legs), ZERO)
        credit = sum((leg.credit for leg in legs), ZERO)
        # Advance applications post a consuming leg on the normal side; drop it from both columns.
        if receivable:
            netted = sum((leg.debit for leg in legs if leg.type == advance_type), ZERO)
            charged, settled = debit - netted, credit - netted
        else:
            netted = sum((leg.credit for leg in legs if leg.type == advance_type), ZERO)
            charged, settled = credit - netted, debit - netted
        due = money(charged - settled)
        if abs(due) <= tolerance:
            continue

        anchor = next((leg for leg in legs if leg.type == anchor_type), legs[0])
        rows.append(
            {
                "party_id": party_id,
                "party_name": anchor.party_name,
                "reference": anchor.reference or "MULTIPLE",
                "date": anchor.date,
                "total": money(charged),
                "paid": money(settled),
                "due": due,
            }
        )
    rows.sort(key=lambda row: row["due"], reverse=True)
    return rows


def receivables_ageing(tenant):
    return _ageing(tenant, receivable=True)


def payables_ageing(tenant):
    return _ageing(tenant, receivable=False)


def cash_flow_statement(tenant, start=None, end=None):
    data = {"start": start, "end": end}
    treasury = LedgerEntry.objects.filter(account__isnull=False).order_by("date", "id")
    legs = LedgerEntryFilter(data, queryset=treasury, tenant=tenant).qs
    payroll_words = conf.payroll_keywords()

    inflows = OrderedDict()
    outflows = OrderedDict()
    for leg in legs:
        if leg.debit > 0:
            category = INFLOW_CATEGORIES.get(leg.type, "Other Income")
            bucket = inflows.setdefault(category, {"category": category, "amount": ZERO, "transactions": []})
            bucket["amount"] += leg.debit
            bucket["transactions"].append(leg)
        if leg.credit > 0:
            if leg.type == TransactionType.OPERATIONAL_EXPENSE:
                text = leg.description.lower()
                is_payroll = any(word in text for word in payroll_words)
                category = "Payroll Payments" if is_payroll else "Expense Payments"
            else:
                category = OUTFLOW_CATEGORIES.get(leg.type, "Other Payments")
            bucket = outflows.setdefault(category, {"category": category, "amount": ZERO, "transactions": []})
            bucket["amount"] += leg.credit
            bucket["transactions"].append(leg)

    cash_in = money(sum((bucket["amount"] for bucket in inflows.values()), ZERO))
    cash_out = money(sum((bucket["amount"] for bucket in outflows.values()), ZERO))
    return {
        "cash_in": cash_in,
        "cash_out": cash_out,
        "net_flow": money(cash_in - cash_out),
        "inflows": list(inflows.values()),
        "outflows": list(outflows.values()),
    }


def day_wise_cash_book(tenant, start, end):
    """Opening, receipts, payments and closing for every calendar day in ``start..end``."""
    opening = FinancialAccount.objects.filter(tenant=tenant).aggregate(total=Sum("opening_balance"))["total"]
    prior = (
        LedgerEntry.objects
        .filter(tenant=tenant, account__isnull=False, date__lt=start)
        .aggregate(debit=Sum("debit"), credit=Sum("credit"))
    )
    running = money(opening) + money(prior["debit"]) - money(prior["credit"])

    per_day = {
        row["date"]: row
        for row in (
            LedgerEntry.objects
            .filter(tenant=tenant, account__isnull=False, date__gte=start, date__lte=end)
            .values("date")
            .annotate(debit=Sum("debit"), credit=Sum("credit"))
        )
    }

    days = []
    current = start
    while current <= end:
        row = per_day.get(current, {})
        receipts = money(row.get("debit"))
        payments = money(row.get("credit"))
        closing = money(running + receipts - payments)
        days.append(
            {"date": current, "opening": money(running), "receipts": receipts, "payments": payments, "closing": closing}
        )
        running = closing
        current += timedelta(days=1)
    return days


def profit_and_loss(tenant):
    legs = LedgerEntry.objects.filter(tenant=tenant)
    gross_sales = money(legs.filter(type=TransactionType.REVENUE).aggregate(total=Sum("debit"))["total"])
    cost_of_goods = money(legs.filter(type=TransactionType.COST).aggregate(total=Sum("credit"))["total"])
    operating_expenses = money(Expense.objects.filter(tenant=tenant).aggregate(total=Sum("amount"))["total"])
    return {
        "gross_sales": gross_sales,
        "cost_of_goods": cost_of_goods,
        "operating_expenses": operating_expenses,
        "net_income": money(gross_sales - cost_of_goods - operating_expenses),
    }


def brand_profitability(tenant):
    """Revenue per brand from sales settlements, costed at the product's current cost."""
    settlements = SettlementRecord.objects.filter(tenant=tenant, document__kind=DocumentKind.SALES)
    products = {product.pk: product for product in Product.objects.filter(tenant=tenant)}

    brands = {}
    for settlement in settlements:
        for item in settlement.items:
            product = products.get(item["product_id"])
            if product is None:
                continue
            name = product.brand or "Unbranded"
            bucket = brands.setdefault(name, {"brand": name, "revenue": ZERO, "cost": ZERO})
            bucket["revenue"] += Decimal(item["taxable"])
            bucket["cost"] += product.cost * item["qty"]

    rows = []
    for bucket in brands.values():
        revenue = money(bucket["revenue"])
        cost = money(bucket["cost"])
        profit = revenue - cost
        margin = money(profit / revenue * 100) if revenue > 0 else ZERO
        rows.append({"brand": bucket["brand"], "revenue": revenue, "cost": cost, "gross_profit": profit, "margin": margin})
    rows.sort(key=lambda row: row["revenue"], reverse=True)
    return rows
