import logging
from dataclasses import dataclass
from datetime import date as date_cls
from datetime import datetime

from django.db import transaction
from django.db.models import Max, Sum
from django.utils import timezone

from .exceptions import InsufficientStock, InvalidAmount, ReadOnlyHistorical, TradebookError
from .models import (
    OPERABLE_ZONES,
    READ_ONLY_ZONES,
    ManualStockTransaction,
    Product,
    StockRecord,
    StockTransfer,
    Zone,
)

logger = logging.getLogger(__name__)


@dataclass
class MovementRow:
    date: date_cls
    created_at: datetime
    kind: str
    source_zone: str
    destination_zone: str
    quantity: int
    party_name: str
    reference: str
    performed_by: str


def validate_quantity(qty):
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise InvalidAmount(f"Quantity must be a whole number (got {qty!r}).")
    if qty <= 0:
        raise InvalidAmount(f"Quantity must be greater than 0 (got {qty}).")
    return qty


def validate_zone(zone):
    if zone in READ_ONLY_ZONES:
        raise ReadOnlyHistorical(f"Zone {zone} holds archived stock and cannot be moved.")
    if zone not in OPERABLE_ZONES:
        raise TradebookError(f"Unknown stock zone {zone!r}.", code="unknown_zone")
    return Zone(zone)


def _locked_row(product, zone):
    row = (
        StockRecord.objects
        .select_for_update()
        .filter(tenant_id=product.tenant_id, product=product, zone=zone)
        .first()
    )
    if not row:
        row = StockRecord(tenant_id=product.tenant_id, product=product, zone=zone, quantity=0)
    return row


def _adjust_stock(product, zone, delta):
    row = _locked_row(product, zone)
    new_total = row.quantity + delta
    if new_total < 0:
        raise InsufficientStock(
            f"Insufficient stock for {product.name} in {zone}: {row.quantity} on hand, {-delta} requested."
        )
    row.quantity = new_total
    row.save()
    return row


def available(product, zone):
    row = StockRecord.objects.filter(tenant_id=product.tenant_id, product=product, zone=zone).first()
    return row.quantity if row else 0


def _require_available(product, zone, qty):
    on_hand = available(product, zone)
    if on_hand < qty:
        logger.warning("Rejected move of %s x %s from %s: only %s on hand", qty, product.sku, zone, on_hand)
        raise InsufficientStock(
            f"Insufficient stock for {product.name} in {zone}: {on_hand} on hand, {qty} requested."
        )


def transfer(product, from_zone, to_zone, qty, *, performed_by="System", date=None, party_name="", remarks=""):
    qty = validate_quantity(qty)
    from_zone = validate_zone(from_zone)
    to_zone = validate_zone(to_zone)
    if from_zone == to_zone:
        raise InvalidAmount("Source and destination zones must differ.")

    with transaction.atomic():
        _locked_row(product, from_zone)
        _require_available(product, from_zone, qty)
        _adjust_stock(product, from_zone, -qty)
        _adjust_stock(product, to_zone, qty)
        move = StockTransfer.objects.create(
            tenant_id=product.tenant_id,
            product=product,
            source_zone=from_zone,
            destination_zone=to_zone,
            quantity=qty,
            date=date or timezone.localdate(),
            performed_by=performed_by,
            party_name=party_name,
            remarks=remarks,
        )
    logger.info("Transferred %s x %s from %s to %s", qty, product.sku, from_zone, to_zone)
    return move


def receive(product, zone, qty, *, party_name="", reference="", performed_by="System", date=None):
    qty = validate_quantity(qty)
    zone = validate_zone(zone)
    with transaction.atomic():
        _adjust_stock(product, zone, qty)
        move = ManualStockTransaction.objects.create(
            tenant_id=product.tenant_id,
            product=product,
            kind=ManualStockTransaction.RECEIPT,
            zone=zone,
            quantity=qty,
            reference=reference,
            party_name=party_name,
            performed_by=performed_by,
            date=date or timezone.localdate(),
        )
    logger.info("Received %s x %s into %s (%s)", qty, product.sku, zone, reference)
    return move


def deliver(product, zone, qty, *, party_name="", reference="", performed_by="System", date=None):
    qty = validate_quantity(qty)
    zone = validate_zone(zone)
    with transaction.atomic():
        _locked_row(product, zone)
        _require_available(product, zone, qty)
        _adjust_stock(product, zone, -qty)
        move = ManualStockTransaction.objects.create(
            tenant_id=product.tenant_id,
            product=product,
            kind=ManualStockTransaction.DELIVERY,
            zone=zone,
            quantity=qty,
            reference=reference,
            party_name=party_name,
            performed_by=performed_by,
            date=date or timezone.localdate(),
        )
    logger.info("Delivered %s x %s from %s (%s)", qty, product.sku, zone, reference)
    return move


def set_opening_stock(product, quantities, *, performed_by="Import", date=None, reference="Opening stock"):
    """Overwrite zone quantities from an import, logging every change as an OPENING movement."""
    cleaned = {}
    for zone, qty in quantities.items():
        zone = validate_zone(zone)
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
            raise InvalidAmount(f"Opening quantity for {zone} must be a whole number >= 0 (got {qty!r}).")
        cleaned[zone] = qty

    movements = []
    with transaction.atomic():
        for zone, qty in cleaned.items():
            row = _locked_row(product, zone)
            delta = qty - row.quantity
            if delta == 0:
                continue
            row.quantity = qty
            row.save()
            movements.append(
                ManualStockTransaction.objects.create(
                    tenant_id=product.tenant_id,
                    product=product,
                    kind=ManualStockTransaction.OPENING,
                    zone=zone,
                    quantity=delta,
                    reference=reference,
                    performed_by=performed_by,
                    date=date or timezone.localdate(),
                )
            )
    logger.info("Opening stock set for %s: %s", product.sku, cleaned)
    return movements


def quantities(product):
    result = {zone: 0 for zone in OPERABLE_ZONES}
    rows = StockRecord.objects.filter(tenant_id=product.tenant_id, product=product, zone__in=OPERABLE_ZONES)
    for zone, qty in rows.values_list("zone", "quantity"):
        result[Zone(zone)] = qty
    return result


def total(product):
    return sum(quantities(product).values())


def sellable(product):
    levels = quantities(product)
    return sum(levels.values()) - levels[Zone.BOOKED] - levels[Zone.REPAIR]


def movements(product):
    rows = []
    transfers = StockTransfer.objects.filter(tenant_id=product.tenant_id, product=product)
    for move in transfers:
        rows.append(
            MovementRow(
                date=move.date,
                created_at=move.created_at,
                kind="TRANSFER",
                source_zone=move.source_zone,
                destination_zone=move.destination_zone,
                quantity=move.quantity,
                party_name=move.party_name,
                reference=move.remarks,
                performed_by=move.performed_by,
            )
        )
    manual = ManualStockTransaction.objects.filter(tenant_id=product.tenant_id, product=product)
    for move in manual:
        outbound = move.kind == ManualStockTransaction.DELIVERY
        rows.append(
            MovementRow(
                date=move.date,
                created_at=move.created_at,
                kind=move.kind,
                source_zone=move.zone if outbound else "",
                destination_zone="" if outbound else move.zone,
                quantity=move.quantity,
                party_name=move.party_name,
                reference=move.reference,
                performed_by=move.performed_by,
            )
        )
    rows.sort(key=lambda row: (row.date, row.created_at), reverse=True)
    return rows


def replay_quantities(product):
    """Rebuild zone quantities from the movement log alone."""
    result = {zone: 0 for zone in OPERABLE_ZONES}
    for move in ManualStockTransaction.objects.filter(tenant_id=product.tenant_id, product=product):
        result[Zone(move.zone)] += move.signed_quantity
    for move in StockTransfer.objects.filter(tenant_id=product.tenant_id, product=product):
        result[Zone(move.source_zone)] -= move.quantity
        result[Zone(move.destination_zone)] += move.quantity
    return result


def stock_ageing(tenant, as_of=None):
    """Products holding operable stock, with days since their last movement, oldest first."""
    as_of = as_of or timezone.localdate()
    on_hand = (
        StockRecord.objects
        .filter(tenant=tenant, zone__in=OPERABLE_ZONES)
        .values("product_id")
        .annotate(quantity=Sum("quantity"))
        .filter(quantity__gt=0)
    )
    quantity_by_product = {row["product_id"]: row["quantity"] for row in on_hand}
    last_transfer = dict(
        StockTransfer.objects
        .filter(tenant=tenant, product_id__in=quantity_by_product)
        .values("product_id")
        .annotate(last=Max("date"))
        .values_list("product_id", "last")
    )
    last_manual = dict(
        ManualStockTransaction.objects
        .filter(tenant=tenant, product_id__in=quantity_by_product)
        .values("product_id")
        .annotate(last=Max("date"))
        .values_list("product_id", "last")
    )

    results = []
    for product in Product.objects.filter(tenant=tenant, pk__in=quantity_by_product):
        dates = [d for d in (last_transfer.get(product.pk), last_manual.get(product.pk)) if d]
        last_movement = max(dates) if dates else None
        results.append(
            {
                "product_id": product.pk,
                "sku": product.sku,
                "name": product.name,
                "quantity": quantity_by_product[product.pk],
                "last_movement": last_movement,
                "days": (as_of - last_movement).days if last_movement else None,
            }
        )
    results.sort(key=lambda row: (row["days"] is not None, -(row["days"] or 0)))
    return results
