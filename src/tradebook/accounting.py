import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.db import transaction
from django.db.models import Sum

from . import conf
from .exceptions import AccountNotFound, InsufficientBalance, InvalidAmount, PartyNotFound, UnbalancedPosting
from .models import FinancialAccount, Expense, LedgerEntry, Party, TransactionType

logger = logging.getLogger(__name__)

MONEY_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

CUSTOMER_TYPES = {TransactionType.REVENUE, TransactionType.CUSTOMER_PAYMENT, TransactionType.CUSTOMER_ADVANCE}
SUPPLIER_TYPES = {TransactionType.COST, TransactionType.VENDOR_PAYMENT, TransactionType.VENDOR_ADVANCE}


@dataclass
class LedgerRow:
    entry: LedgerEntry
    running_balance: Decimal


def money(value):
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    try:
        return Decimal(str(value)).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return ZERO


def positive_amount(value, label="Amount"):
    amount = money(value)
    if amount <= ZERO:
        raise InvalidAmount(f"{label} must be greater than zero (got {value}).")
    return amount


def ensure_default_accounts(tenant):
    created_or_existing = {}
    for name, kind in conf.default_accounts():
        account, _ = FinancialAccount.objects.get_or_create(
            tenant=tenant,
            name=name,
            defaults={"kind": kind, "is_active": True},
        )
        created_or_existing[name] = account
    return created_or_existing


def get_account(tenant, account):
    account_id = getattr(account, "pk", account)
    found = FinancialAccount.objects.filter(tenant=tenant, pk=account_id, is_active=True).first()
    if not found:
        raise AccountNotFound(f"Account {account_id} does not exist for this tenant.")
    return found


def get_party(tenant, party, kind=None):
    party_id = getattr(party, "pk", party)
    found = Party.objects.filter(tenant=tenant, pk=party_id).first()
    if not found:
        raise PartyNotFound(f"Party {party_id} does not exist for this tenant.")
    if kind and found.kind != kind:
        raise PartyNotFound(f"Party {found.name} is not a {kind}.")
    return found


def _prepare_leg(tenant, leg, entry_date):
    debit = money(leg.get("debit"))
    credit = money(leg.get("credit"))
    if debit < ZERO or credit < ZERO:
        raise InvalidAmount("Debit and credit amounts cannot be negative.")
    if debit > ZERO and credit > ZERO:
        raise UnbalancedPosting("A ledger leg cannot contain both debit and credit amounts.")

    account = leg.get("account")
    party = leg.get("party")
    if account is not None and party is not None:
        raise UnbalancedPosting("A ledger leg cannot reference both an account and a party.")
    if account is None and party is None:
        raise UnbalancedPosting("A ledger leg must reference an account or a party.")
    if account is not None:
        account = get_account(tenant, account)
    if party is not None:
        party = get_party(tenant, party)

    kwargs = {
        "tenant": tenant,
        "type": leg["type"],
        "debit": debit,
        "credit": credit,
        "account": account,
        "party": party,
        "party_name": leg.get("party_name") or (party.name if party else ""),
        "transaction_id": str(leg.get("transaction_id") or ""),
        "reference": leg.get("reference", ""),
        "description": leg.get("description", ""),
        "is_migrated": leg.get("is_migrated", False),
        "is_historical": leg.get("is_historical", False),
    }
    leg_date = leg.get("date") or entry_date
    if leg_date is not None:
        kwargs["date"] = leg_date
    return LedgerEntry(**kwargs)


def post_legs(*, tenant, legs, entry_date=None):
    """Append ledger legs as-is. Pairing is the caller's recipe, not checked here."""
    prepared = [_prepare_leg(tenant, leg, entry_date) for leg in legs]
    with transaction.atomic():
        for entry in prepared:
            entry.save()
    return prepared


def post_pair(*, tenant, leg_a, leg_b, entry_date=None):
    total_debit = money(leg_a.get("debit")) + money(leg_b.get("debit"))
    total_credit = money(leg_a.get("credit")) + money(leg_b.get("credit"))
    if total_debit <= ZERO or total_debit != total_credit:
        raise UnbalancedPosting(f"Posting is not balanced (debit {total_debit}, credit {total_credit}).")
    first, second = post_legs(tenant=tenant, legs=[leg_a, leg_b], entry_date=entry_date)
    return first, second


# ----- balances ---------------------------------------------------------------

def party_sign(party):
    return Decimal("1") if party.kind == Party.CUSTOMER else Decimal("-1")


def account_balance(account):
    opening, total = FinancialAccount.objects.values_list("opening_balance", "ledger_total").get(pk=account.pk)
    return money(opening + total)


def party_balance(party):
    opening, total = Party.objects.values_list("opening_balance", "ledger_total").get(pk=party.pk)
    return money(opening + total)


def _net_movement(queryset):
    totals = queryset.aggregate(debit=Sum("debit"), credit=Sum("credit"))
    return money(totals["debit"]) - money(totals["credit"])


def account_movement(account):
    return _net_movement(LedgerEntry.objects.filter(tenant_id=account.tenant_id, account=account))


def party_movement(party):
    qs = LedgerEntry.objects.filter(tenant_id=party.tenant_id, party=party, account__isnull=True)
    return money(_net_movement(qs) * party_sign(party))


def recompute_account_balance(account):
    account.refresh_from_db(fields=["opening_balance"])
    return money(account.opening_balance + account_movement(account))


def recompute_party_balance(party):
    party.refresh_from_db(fields=["opening_balance"])
    return money(party.opening_balance + party_movement(party))


def account_balances(tenant):
    results = []
    for account in FinancialAccount.objects.filter(tenant=tenant):
        totals = account.entries.aggregate(debit=Sum("debit"), credit=Sum("credit"))
        debit = money(totals["debit"])
        credit = money(totals["credit"])
        results.append(
            {
                "account_id": account.id,
                "name": account.name,
                "kind": account.kind,
                "opening_balance": money(account.opening_balance),
                "debit": debit,
                "credit": credit,
                "balance": money(account.opening_balance + debit - credit),
            }
        )
    return results


def _with_running_balance(entries, opening, sign=Decimal("1")):
    balance = money(opening)
    rows = []
    for entry in entries:
        balance += (entry.debit - entry.credit) * sign
        rows.append(LedgerRow(entry=entry, running_balance=money(balance)))
    rows.reverse()
    return rows


def account_ledger(account):
    entries = LedgerEntry.objects.filter(tenant_id=account.tenant_id, account=account).order_by("date", "id")
    account.refresh_from_db(fields=["opening_balance"])
    return _with_running_balance(entries, account.opening_balance)


def party_ledger(party):
    types = CUSTOMER_TYPES if party.kind == Party.CUSTOMER else SUPPLIER_TYPES
    entries = (
        LedgerEntry.objects
        .filter(tenant_id=party.tenant_id, party=party, account__isnull=True, type__in=types)
        .order_by("date", "id")
    )
    party.refresh_from_db(fields=["opening_balance"])
    return _with_running_balance(entries, party.opening_balance, party_sign(party))


def toggle_reconciled(entry):
    entry.reconciled = not entry.reconciled
    entry.save(update_fields=["reconciled"])
    logger.info("Ledger entry %s reconciled=%s", entry.pk, entry.reconciled)
    return entry


# ----- posting recipes --------------------------------------------------------

def _advance_pair(*, tenant, party, amount, account, reference, entry_date, is_customer):
    amount = positive_amount(amount)
    account = get_account(tenant, account)
    party = get_party(tenant, party, Party.CUSTOMER if is_customer else Party.SUPPLIER)
    kind = TransactionType.CUSTOMER_ADVANCE if is_customer else TransactionType.VENDOR_ADVANCE
    treasury = {
        "type": kind,
        "account": account,
        "party_name": party.name,
        "reference": reference,
        "description": f"Advance receipt: {party.name}" if is_customer else f"Advance payment to {party.name}",
    }
    party_leg = {
        "type": kind,
        "party": party,
        "reference": reference,
        "description": f"Advance from {party.name}" if is_customer else f"Advance paid: {party.name}",
    }
    if is_customer:
        treasury["debit"], party_leg["credit"] = amount, amount
    else:
        treasury["credit"], party_leg["debit"] = amount, amount
    legs = post_pair(tenant=tenant, leg_a=treasury, leg_b=party_leg, entry_date=entry_date)
    logger.info("Recorded %s of %s for party %s via account %s", kind, amount, party.pk, account.pk)
    return legs


def record_customer_advance(*, tenant, party, amount, account, reference="", entry_date=None):
    return _advance_pair(
        tenant=tenant, party=party, amount=amount, account=account,
        reference=reference, entry_date=entry_date, is_customer=True,
    )


def record_vendor_advance(*, tenant, party, amount, account, reference="", entry_date=None):
    return _advance_pair(
        tenant=tenant, party=party, amount=amount, account=account,
        reference=reference, entry_date=entry_date, is_customer=False,
    )


def record_sales_revenue(*, tenant, party, amount, transaction_id, reference="", entry_date=None, description=""):
    amount = positive_amount(amount)
    party = get_party(tenant, party, Party.CUSTOMER)
    (entry,) = post_legs(
        tenant=tenant,
        entry_date=entry_date,
        legs=[
            {
                "type": TransactionType.REVENUE,
                "party": party,
                "debit": amount,
                "transaction_id": transaction_id,
                "reference": reference,
                "description": description or f"Invoice Generated: {reference}",
            }
        ],
    )
    logger.info("Posted revenue %s for party %s (%s)", amount, party.pk, transaction_id)
    return entry


def record_purchase_cost(*, tenant, party, amount, transaction_id, reference="", entry_date=None, description=""):
    amount = positive_amount(amount)
    party = get_party(tenant, party, Party.SUPPLIER)
    (entry,) = post_legs(
        tenant=tenant,
        entry_date=entry_date,
        legs=[
            {
                "type": TransactionType.COST,
                "party": party,
                "credit": amount,
                "transaction_id": transaction_id,
                "reference": reference,
                "description": description or f"Vendor Bill: {reference}",
            }
        ],
    )
    logger.info("Posted cost %s for party %s (%s)", amount, party.pk, transaction_id)
    return entry


def record_payment_against_invoice(*, tenant, party, amount, account, transaction_id, reference="", entry_date=None):
    amount = positive_amount(amount)
    account = get_account(tenant, account)
    party = get_party(tenant, party, Party.CUSTOMER)
    legs = post_pair(
        tenant=tenant,
        entry_date=entry_date,
        leg_a={
            "type": TransactionType.CUSTOMER_PAYMENT,
            "account": account,
            "party_name": party.name,
            "debit": amount,
            "transaction_id": transaction_id,
            "reference": reference,
            "description": f"Payment Received: {transaction_id}",
        },
        leg_b={
            "type": TransactionType.CUSTOMER_PAYMENT,
            "party": party,
            "credit": amount,
            "transaction_id": transaction_id,
            "reference": reference,
            "description": f"Credit for payment: {transaction_id}",
        },
    )
    logger.info("Customer payment %s from party %s into account %s", amount, party.pk, account.pk)
    return legs


def record_payment_against_bill(*, tenant, party, amount, account, transaction_id, reference="", entry_date=None):
    amount = positive_amount(amount)
    account = get_account(tenant, account)
    party = get_party(tenant, party, Party.SUPPLIER)
    legs = post_pair(
        tenant=tenant,
        entry_date=entry_date,
        leg_a={
            "type": TransactionType.VENDOR_PAYMENT,
            "account": account,
            "party_name": party.name,
            "credit": amount,
            "transaction_id": transaction_id,
            "reference": reference,
            "description": f"Bill Payment: {transaction_id}",
        },
        leg_b={
            "type": TransactionType.VENDOR_PAYMENT,
            "party": party,
            "debit": amount,
            "transaction_id": transaction_id,
            "reference": reference,
            "description": f"Debit for payment: {transaction_id}",
        },
    )
    logger.info("Vendor payment %s to party %s from account %s", amount, party.pk, account.pk)
    return legs


def available_advance(party):
    """Unapplied advance held for ``party``, always reported as a positive amount."""
    advance_type = TransactionType.CUSTOMER_ADVANCE if party.kind == Party.CUSTOMER else TransactionType.VENDOR_ADVANCE
    qs = LedgerEntry.objects.filter(tenant_id=party.tenant_id, party=party, account__isnull=True, type=advance_type)
    return money(-_net_movement(qs) * party_sign(party))


def reconcile_advance(*, tenant, party, amount, transaction_id, reference="", entry_date=None):
    """Apply part of a party's advance against a document.

    Posts a party-only netting pair: one leg consumes the advance, the other
    records it as a payment tagged with ``transaction_id``. The party's net
    balance does not move; the earlier advance legs are left untouched.
    """
    amount = positive_amount(amount)
    party = get_party(tenant, party)
    available = available_advance(party)
    if amount > available:
        logger.warning("Advance reconcile of %s rejected for party %s (available %s)", amount, party.pk, available)
        raise InsufficientBalance(
            f"Cannot apply {amount} of advance for {party.name}; only {available} is unapplied."
        )

    if party.kind == Party.CUSTOMER:
        consume = {"type": TransactionType.CUSTOMER_ADVANCE, "debit": amount}
        applied = {"type": TransactionType.CUSTOMER_PAYMENT, "credit": amount}
    else:
        consume = {"type": TransactionType.VENDOR_ADVANCE, "credit": amount}
        applied = {"type": TransactionType.VENDOR_PAYMENT, "debit": amount}
    for leg in (consume, applied):
        leg.update({"party": party, "transaction_id": transaction_id, "reference": reference})
    consume["description"] = f"Advance applied to {transaction_id}"
    applied["description"] = f"Advance adjusted against {transaction_id}"

    legs = post_pair(tenant=tenant, leg_a=consume, leg_b=applied, entry_date=entry_date)
    logger.info("Applied advance %s for party %s to %s", amount, party.pk, transaction_id)
    return legs


def record_expense(*, tenant, account, amount, category, description="", party=None, tax_amount=ZERO, entry_date=None):
    amount = positive_amount(amount)
    account = get_account(tenant, account)
    if party is not None:
        party = get_party(tenant, party)
    with transaction.atomic():
        (entry,) = post_legs(
            tenant=tenant,
            entry_date=entry_date,
            legs=[
                {
                    "type": TransactionType.OPERATIONAL_EXPENSE,
                    "account": account,
                    "credit": amount,
                    "party_name": party.name if party else "",
                    "reference": "EXPENSE",
                    "description": description or category,
                }
            ],
        )
        expense = Expense.objects.create(
            tenant=tenant,
            date=entry.date,
            category=category,
            description=description,
            amount=amount,
            account=account,
            party=party,
            party_name=party.name if party else "",
            tax_amount=money(tax_amount),
            ledger_entry=entry,
        )
    logger.info("Recorded expense %s (%s) from account %s", amount, category, account.pk)
    return expense


def transfer_funds(*, tenant, from_account, to_account, amount, reference="", entry_date=None):
    amount = positive_amount(amount)
    source = get_account(tenant, from_account)
    destination = get_account(tenant, to_account)
    if source.pk == destination.pk:
        raise InvalidAmount("Source and destination accounts must differ.")

    with transaction.atomic():
        list(FinancialAccount.objects.select_for_update().filter(pk__in=[source.pk, destination.pk]))
        available = account_balance(source)
        if available < amount:
            logger.warning("Fund transfer of %s from account %s rejected (balance %s)", amount, source.pk, available)
            raise InsufficientBalance(
                f"Account {source.name} holds {available}, cannot transfer {amount}."
            )
        legs = post_pair(
            tenant=tenant,
            entry_date=entry_date,
            leg_a={
                "type": TransactionType.FUND_TRANSFER,
                "account": source,
                "credit": amount,
                "reference": reference,
                "description": f"Transfer to {destination.name}",
            },
            leg_b={
                "type": TransactionType.FUND_TRANSFER,
                "account": destination,
                "debit": amount,
                "reference": reference,
                "description": f"Transfer from {source.name}",
            },
        )
    logger.info("Transferred %s from account %s to %s", amount, source.pk, destination.pk)
    return legs
