"""Sales and purchase document lifecycle.

Every operation validates the whole request (quantities, stock, balances)
before its first write, then performs its stock moves, ledger legs and
document updates inside one ``transaction.atomic()`` block. Status is never
assigned by hand once an order exists: it is re-derived from the line
quantities after each change.
"""
import logging

from django.db import transaction

from . import accounting, conf, stock
from .accounting import ZERO, money, positive_amount, transfer_funds  # noqa: F401
from .exceptions import (
    InsufficientStock,
    InvalidAmount,
    InvalidTransition,
    PartyNotFound,
    QuantityExceedsRemaining,
    ReadOnlyHistorical,
    TradebookError,
)
from .lifecycle import (
    PRE_ORDER_STAGES,
    derive_payment_status,
    derive_status,
    line_amounts,
    settlement_amounts,
)
from .models import (
    DocumentKind,
    DocumentSequence,
    FulfillmentRecord,
    LineItem,
    Party,
    PaymentStatus,
    Product,
    PurchaseStatus,
    SalesStatus,
    SettlementRecord,
    TradeDocument,
    Zone,
)

logger = logging.getLogger(__name__)

PREFIXES = {
    DocumentKind.SALES: {"draft": "QT", "order": "SO", "fulfillment": "DO", "settlement": "INV"},
    DocumentKind.PURCHASE: {"draft": "RFQ", "order": "PO", "fulfillment": "GRN", "settlement": "BILL"},
}
CANCELLED = {SalesStatus.CANCELLED, PurchaseStatus.CANCELLED}
EDITABLE_FIELDS = ("issue_date", "expected_date", "remarks")


# ----- helpers ----------------------------------------------------------------

def _ensure_mutable(document):
    if document.is_historical or document.status in (SalesStatus.MIGRATED, PurchaseStatus.MIGRATED):
        logger.warning("Rejected change to historical document %s", document.number)
        raise ReadOnlyHistorical(f"Document {document.number} is a migrated record and cannot be changed.")


def _ensure_open_order(document, action):
    _ensure_mutable(document)
    if document.status in CANCELLED:
        raise InvalidTransition(f"Cannot {action} cancelled document {document.number}.")
    if document.status in PRE_ORDER_STAGES:
        raise InvalidTransition(f"Cannot {action} {document.number} before it is confirmed.")


def _party_kind(kind):
    return Party.CUSTOMER if kind == DocumentKind.SALES else Party.SUPPLIER


def _document_zone(zone):
    zone = stock.validate_zone(zone)
    if zone == Zone.BOOKED:
        raise TradebookError("Documents cannot be issued or fulfilled against the Booked zone.", code="invalid_zone")
    return zone


def _resolve_product(tenant, product):
    product_id = getattr(product, "pk", product)
    found = Product.objects.filter(tenant=tenant, pk=product_id).first()
    if not found:
        raise TradebookError(f"Product {product_id} does not exist for this tenant.", code="product_not_found")
    return found


def _prepare_lines(tenant, kind, lines):
    if not lines:
        raise InvalidAmount("A document needs at least one line.")

    prepared = []
    seen = set()
    for raw in lines:
        product = _resolve_product(tenant, raw["product"])
        if product.pk in seen:
            raise TradebookError(f"{product.name} appears more than once on the document.", code="duplicate_line")
        seen.add(product.pk)

        qty = stock.validate_quantity(raw.get("qty"))
        default_price = product.sales_price if kind == DocumentKind.SALES else product.cost
        unit_price = money(raw.get("unit_price", default_price))
        discount = money(raw.get("discount", ZERO))
        tax_rate = money(raw.get("tax_rate", ZERO))
        if unit_price < ZERO or discount < ZERO or tax_rate < ZERO:
            raise InvalidAmount(f"Price, discount and tax rate for {product.name} cannot be negative.")
        amounts = line_amounts(qty, unit_price, discount, tax_rate)
        if discount > amounts.gross:
            raise InvalidAmount(f"Discount on {product.name} exceeds the line value {amounts.gross}.")

        prepared.append(
            {
                "product": product,
                "product_name": product.name,
                "sku": product.sku,
                "image": product.image,
                "ordered_qty": qty,
                "unit_price": unit_price,
                "discount": discount,
                "tax_rate": tax_rate,
                "line_total": amounts.total,
            }
        )
    return prepared


def _recalculate_totals(document):
    subtotal = discount_total = tax_total = ZERO
    for line in document.lines.all():
        amounts = line_amounts(line.ordered_qty, line.unit_price, line.discount, line.tax_rate)
        subtotal += amounts.gross
        discount_total += amounts.discount
        tax_total += amounts.tax
    document.subtotal = money(subtotal)
    document.discount_total = money(discount_total)
    document.tax_total = money(tax_total)
    document.grand_total = money(subtotal - discount_total + tax_total)
    document.payment_status = derive_payment_status(document.amount_paid, document.grand_total)


def _refresh_status(document, stage=None):
    quantities = document.lines.values_list("ordered_qty", "fulfilled_qty", "settled_qty")
    document.status = derive_status(document.kind, quantities, stage=stage)


def _lock(document):
    return TradeDocument.objects.select_for_update().get(pk=document.pk)


def _requested_quantities(document, lines):
    """Map document lines to requested quantities, merging repeated products."""
    by_product = {line.product_id: line for line in document.lines.select_related("product")}
    requested = {}
    for raw in lines:
        product_id = getattr(raw["product"], "pk", raw["product"])
        line = by_product.get(product_id)
        if line is None:
            raise TradebookError(
                f"Product {product_id} is not on document {document.number}.", code="unknown_line"
            )
        qty = stock.validate_quantity(raw.get("qty"))
        requested[line.pk] = (line, requested.get(line.pk, (line, 0))[1] + qty)
    return list(requested.values())


def _reserve(document, lines, performed_by):
    for line in lines:
        qty = line.ordered_qty - line.fulfilled_qty
        if not line.product.track_inventory or qty <= 0:
            continue
        stock.transfer(
            line.product,
            document.zone,
            Zone.BOOKED,
            qty,
            performed_by=performed_by,
            party_name=document.party_name,
            remarks=f"Reserved for {document.order_number or document.number}",
        )
        line.reserved_qty = qty
        line.save()


def _open_quantities(lines):
    return [(line.product, line.ordered_qty - line.fulfilled_qty) for line in lines]


def _check_reservable(document, zone, wanted, returning=None):
    """Raise unless every (product, qty) in ``wanted`` can be booked out of ``zone``.

    ``returning`` maps product ids to booked quantities that go back to ``zone``
    before the new booking is made.
    """
    returning = returning or {}
    for product, qty in wanted:
        if not product.track_inventory or qty <= 0:
            continue
        on_hand = stock.available(product, zone) + returning.get(product.pk, 0)
        if on_hand < qty:
            logger.warning("Cannot reserve %s x %s for %s: %s on hand", qty, product.sku, document.number, on_hand)
            raise InsufficientStock(
                f"Insufficient stock for {product.name} in {zone}: {on_hand} on hand, {qty} requested."
            )


def _release(document, lines, performed_by):
    for line in lines:
        if not line.reserved_qty:
            continue
        stock.transfer(
            line.product,
            Zone.BOOKED,
            document.zone,
            line.reserved_qty,
            performed_by=performed_by,
            party_name=document.party_name,
            remarks=f"Released from {document.order_number or document.number}",
        )
        line.reserved_qty = 0
        line.save()


def _check_releasable(lines):
    for line in lines:
        if line.reserved_qty and stock.available(line.product, Zone.BOOKED) < line.reserved_qty:
            raise InsufficientStock(
                f"Booked stock for {line.product_name} is below its reservation of {line.reserved_qty}."
            )


# ----- drafting ---------------------------------------------------------------

def create_document(*, tenant, kind, party, lines, zone=Zone.GODOWN, issue_date=None, expected_date=None,
                    remarks="", number=None):
    kind = DocumentKind(kind)
    party = accounting.get_party(tenant, party, _party_kind(kind))
    zone = _document_zone(zone)
    prepared = _prepare_lines(tenant, kind, lines)

    with transaction.atomic():
        document = TradeDocument(
            tenant=tenant,
            kind=kind,
            number=number or DocumentSequence.next_number(tenant, PREFIXES[kind]["draft"]),
            party=party,
            party_name=party.name,
            zone=zone,
            expected_date=expected_date,
            remarks=remarks,
            status=SalesStatus.QUOTATION if kind == DocumentKind.SALES else PurchaseStatus.RFQ,
        )
        if issue_date:
            document.issue_date = issue_date
        document.save()
        for values in prepared:
            LineItem.objects.create(document=document, **values)
        _recalculate_totals(document)
        document.save()

    logger.info("Created %s %s for %s (%s lines, total %s)", kind, document.number, party.name,
                len(prepared), document.grand_total)
    return document


def create_quotation(*, tenant, party, lines, **kwargs):
    return create_document(tenant=tenant, kind=DocumentKind.SALES, party=party, lines=lines, **kwargs)


def create_rfq(*, tenant, party, lines, **kwargs):
    return create_document(tenant=tenant, kind=DocumentKind.PURCHASE, party=party, lines=lines, **kwargs)


def update_document(document, *, lines=None, party=None, zone=None, performed_by="System", **fields):
    """Edit a document that has not started fulfilment, re-reserving stock if it was booked."""
    _ensure_mutable(document)
    if document.status in CANCELLED:
        raise InvalidTransition(f"Cannot edit cancelled document {document.number}.")
    current = list(document.lines.select_related("product"))
    if any(line.fulfilled_qty for line in current):
        raise InvalidTransition(f"Document {document.number} has fulfilments and can no longer be edited.")
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise TradebookError(f"Fields {sorted(unknown)} cannot be edited.", code="invalid_field")

    new_party = accounting.get_party(document.tenant, party, _party_kind(document.kind)) if party else None
    new_zone = _document_zone(zone) if zone else None
    prepared = _prepare_lines(document.tenant, document.kind, lines) if lines is not None else None
    was_reserved = any(line.reserved_qty for line in current)
    if was_reserved:
        _check_releasable(current)
        target_zone = new_zone or document.zone
        if prepared is not None:
            wanted = [(values["product"], values["ordered_qty"]) for values in prepared]
        else:
            wanted = _open_quantities(current)
        returning = {}
        if target_zone == document.zone:
            returning = {line.product_id: line.reserved_qty for line in current}
        _check_reservable(document, target_zone, wanted, returning)

    with transaction.atomic():
        _lock(document)
        if was_reserved:
            _release(document, current, performed_by)
        if new_party:
            document.party = new_party
            document.party_name = new_party.name
        if new_zone:
            document.zone = new_zone
        for name, value in fields.items():
            setattr(document, name, value)
        if prepared is not None:
            document.lines.all().delete()
            for values in prepared:
                LineItem.objects.create(document=document, **values)
        if was_reserved:
            refreshed = list(document.lines.select_related("product"))
            _reserve(document, refreshed, performed_by)
        _recalculate_totals(document)
        document.save()

    logger.info("Updated %s %s", document.kind, document.number)
    return document


def mark_sent(document):
    _ensure_mutable(document)
    if document.kind != DocumentKind.SALES or document.status != SalesStatus.QUOTATION:
        raise InvalidTransition(f"Only an unsent quotation can be marked as sent ({document.number} is {document.status}).")
    document.status = SalesStatus.QUOTATION_SENT
    document.save()
    logger.info("Quotation %s marked as sent", document.number)
    return document


def confirm(document, reserve=None, performed_by="System"):
    """Turn a quotation or RFQ into an order, optionally booking its stock."""
    _ensure_mutable(document)
    if document.status not in PRE_ORDER_STAGES:
        raise InvalidTransition(f"Document {document.number} is {document.status} and cannot be confirmed.")
    if reserve is None:
        reserve = conf.reserve_on_confirm()
    reserve = reserve and document.kind == DocumentKind.SALES

    lines = list(document.lines.select_related("product"))
    if reserve:
        _check_reservable(document, document.zone, _open_quantities(lines))

    with transaction.atomic():
        _lock(document)
        document.order_number = DocumentSequence.next_number(document.tenant, PREFIXES[document.kind]["order"])
        if reserve:
            _reserve(document, lines, performed_by)
        _refresh_status(document)
        document.save()

    logger.info("Confirmed %s as %s (reserved=%s)", document.number, document.order_number, reserve)
    return document


def cancel(document, performed_by="System"):
    _ensure_mutable(document)
    if document.status in CANCELLED:
        raise InvalidTransition(f"Document {document.number} is already cancelled.")
    lines = list(document.lines.select_related("product"))
    if any(line.fulfilled_qty for line in lines):
        raise InvalidTransition(f"Document {document.number} has fulfilments and cannot be cancelled.")
    _check_releasable(lines)

    with transaction.atomic():
        _lock(document)
        _release(document, lines, performed_by)
        document.status = SalesStatus.CANCELLED if document.kind == DocumentKind.SALES else PurchaseStatus.CANCELLED
        document.save()

    logger.info("Cancelled %s", document.number)
    return document


# ----- fulfilment and settlement ----------------------------------------------

def record_fulfillment(document, lines, zone=None, reference="", performed_by="System", date=None):
    """Deliver (sales) or receive (purchase) goods against the document's lines."""
    _ensure_open_order(document, "fulfil")
    zone = _document_zone(zone or document.zone)
    requested = _requested_quantities(document, lines)
    is_sales = document.kind == DocumentKind.SALES

    plan = []
    for line, qty in requested:
        if qty > line.remaining_to_fulfil:
            logger.warning("Fulfilment of %s x %s on %s exceeds remaining %s", qty, line.sku, document.number,
                           line.remaining_to_fulfil)
            raise QuantityExceedsRemaining(
                f"{line.product_name}: cannot fulfil {qty}, only {line.remaining_to_fulfil} remaining."
            )
        from_booked = min(line.reserved_qty, qty) if is_sales else 0
        plan.append((line, qty, from_booked, qty - from_booked))

    if is_sales:
        needed = {}
        for line, qty, from_booked, from_zone in plan:
            if not line.product.track_inventory:
                continue
            if from_booked:
                needed[(line.product, Zone.BOOKED)] = from_booked
            if from_zone:
                key = (line.product, zone)
                needed[key] = needed.get(key, 0) + from_zone
        for (product, source), qty in needed.items():
            on_hand = stock.available(product, source)
            if on_hand < qty:
                logger.warning("Delivery for %s short on %s in %s: %s on hand, %s needed", document.number,
                               product.sku, source, on_hand, qty)
                raise InsufficientStock(
                    f"Insufficient stock for {product.name} in {source}: {on_hand} on hand, {qty} requested."
                )

    prefix = PREFIXES[document.kind]["fulfillment"]
    with transaction.atomic():
        _lock(document)
        number = DocumentSequence.next_number(document.tenant, prefix)
        items = []
        for line, qty, from_booked, from_zone in plan:
            moves = {"party_name": document.party_name, "reference": number, "performed_by": performed_by,
                     "date": date}
            if line.product.track_inventory:
                if not is_sales:
                    stock.receive(line.product, zone, qty, **moves)
                else:
                    if from_booked:
                        stock.deliver(line.product, Zone.BOOKED, from_booked, **moves)
                    if from_zone:
                        stock.deliver(line.product, zone, from_zone, **moves)
            line.reserved_qty -= from_booked
            line.fulfilled_qty += qty
            line.save()
            items.append({"product_id": line.product_id, "sku": line.sku, "name": line.product_name, "qty": qty})

        record = FulfillmentRecord(
            tenant=document.tenant, document=document, number=number, zone=zone, reference=reference, items=items,
        )
        if date:
            record.date = date
        record.save()
        _refresh_status(document, stage=document.status)
        document.save()

    logger.info("Recorded %s %s against %s: %s", prefix, number, document.number, items)
    return record


def settle(document, lines, number=None, date=None):
    """Invoice (sales) or bill (purchase) fulfilled quantities and post the matching ledger leg."""
    _ensure_open_order(document, "settle")
    if not document.party_id:
        raise PartyNotFound(f"Document {document.number} has no party to settle against.")
    requested = _requested_quantities(document, lines)

    items = []
    amount = tax = ZERO
    for line, qty in requested:
        if qty > line.remaining_to_settle:
            logger.warning("Settlement of %s x %s on %s exceeds remaining %s", qty, line.sku, document.number,
                           line.remaining_to_settle)
            raise QuantityExceedsRemaining(
                f"{line.product_name}: cannot settle {qty}, only {line.remaining_to_settle} fulfilled and unsettled."
            )
        amounts = settlement_amounts(line, qty)
        amount += amounts.total
        tax += amounts.tax
        items.append(
            {
                "product_id": line.product_id,
                "sku": line.sku,
                "name": line.product_name,
                "qty": qty,
                "unit_price": str(line.unit_price),
                "taxable": str(amounts.gross - amounts.discount),
                "tax": str(amounts.tax),
                "amount": str(amounts.total),
            }
        )

    is_sales = document.kind == DocumentKind.SALES
    with transaction.atomic():
        _lock(document)
        number = number or DocumentSequence.next_number(document.tenant, PREFIXES[document.kind]["settlement"])
        record = SettlementRecord(
            tenant=document.tenant, document=document, number=number, amount=money(amount), tax_amount=money(tax),
            items=items,
        )
        if date:
            record.date = date
        record.save()

        if amount > ZERO:
            recipe = accounting.record_sales_revenue if is_sales else accounting.record_purchase_cost
            recipe(
                tenant=document.tenant,
                party=document.party,
                amount=amount,
                transaction_id=number,
                reference=document.number,
                entry_date=date,
            )
        for line, qty in requested:
            line.settled_qty += qty
            line.save()
        _refresh_status(document, stage=document.status)
        document.save()

    logger.info("Settled %s as %s for %s", document.number, number, record.amount)
    return record


# ----- money ------------------------------------------------------------------

def _apply_payment(document, amount, post):
    _ensure_mutable(document)
    if document.status in CANCELLED:
        raise InvalidTransition(f"Cannot take payment on cancelled document {document.number}.")
    if not document.party_id:
        raise PartyNotFound(f"Document {document.number} has no party to pay against.")
    amount = positive_amount(amount)
    if amount > document.outstanding:
        logger.warning("Payment %s on %s exceeds outstanding %s", amount, document.number, document.outstanding)
        raise InvalidAmount(f"Payment of {amount} exceeds the outstanding {document.outstanding} on {document.number}.")

    with transaction.atomic():
        _lock(document)
        post(amount)
        document.amount_paid = money(document.amount_paid + amount)
        document.payment_status = derive_payment_status(document.amount_paid, document.grand_total)
        document.save()
    return document


def collect_payment(document, amount, account, reference="", date=None):
    if document.kind != DocumentKind.SALES:
        raise InvalidTransition("Customer payments can only be collected on sales documents.")

    def post(value):
        accounting.record_payment_against_invoice(
            tenant=document.tenant, party=document.party, amount=value, account=account,
            transaction_id=document.number, reference=reference, entry_date=date,
        )

    _apply_payment(document, amount, post)
    logger.info("Collected %s on %s (%s)", amount, document.number, document.payment_status)
    return document


def record_vendor_payment(document, amount, account, reference="", date=None):
    if document.kind != DocumentKind.PURCHASE:
        raise InvalidTransition("Vendor payments can only be recorded on purchase documents.")

    def post(value):
        accounting.record_payment_against_bill(
            tenant=document.tenant, party=document.party, amount=value, account=account,
            transaction_id=document.number, reference=reference, entry_date=date,
        )

    _apply_payment(document, amount, post)
    logger.info("Paid %s on %s (%s)", amount, document.number, document.payment_status)
    return document


def record_advance(*, tenant, party, amount, account, reference="", date=None):
    party = accounting.get_party(tenant, party)
    recipe = accounting.record_customer_advance if party.is_customer else accounting.record_vendor_advance
    return recipe(tenant=tenant, party=party, amount=amount, account=account, reference=reference, entry_date=date)


def reconcile_advance(document, amount, reference="", date=None):
    """Apply part of the party's unapplied advance to this document."""

    def post(value):
        accounting.reconcile_advance(
            tenant=document.tenant, party=document.party, amount=value,
            transaction_id=document.number, reference=reference, entry_date=date,
        )

    _apply_payment(document, amount, post)
    logger.info("Applied advance %s to %s (%s)", amount, document.number, document.payment_status)
    return document


# ----- migration --------------------------------------------------------------

def import_historical(*, tenant, kind, records):
    """Import already-completed documents as read-only history.

    Each record is a dict with ``lines`` plus optional ``number``, ``party``,
    ``party_name``, ``issue_date`` and ``remarks``. Migrated documents are
    fully fulfilled, settled and paid, and touch neither stock nor the ledger.
    """
    kind = DocumentKind(kind)
    status = SalesStatus.MIGRATED if kind == DocumentKind.SALES else PurchaseStatus.MIGRATED
    prepared = []
    for record in records:
        party = record.get("party")
        if party is not None:
            party = accounting.get_party(tenant, party, _party_kind(kind))
        prepared.append((record, party, _prepare_lines(tenant, kind, record.get("lines"))))

    documents = []
    with transaction.atomic():
        for record, party, lines in prepared:
            document = TradeDocument(
                tenant=tenant,
                kind=kind,
                number=record.get("number") or DocumentSequence.next_number(tenant, "MIG"),
                party=party,
                party_name=record.get("party_name") or (party.name if party else ""),
                zone=Zone.HISTORICAL,
                status=status,
                is_historical=True,
                source=TradeDocument.MIGRATION,
                remarks=record.get("remarks", ""),
            )
            if record.get("issue_date"):
                document.issue_date = record["issue_date"]
            document.save()
            for values in lines:
                qty = values["ordered_qty"]
                LineItem.objects.create(document=document, fulfilled_qty=qty, settled_qty=qty, **values)
            _recalculate_totals(document)
            document.amount_paid = document.grand_total
            document.payment_status = PaymentStatus.PAID
            document.save()
            documents.append(document)

    logger.info("Imported %s historical %s documents", len(documents), kind)
    return documents
