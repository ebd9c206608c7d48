"""Whole-tenant snapshots for the persistence adapter.

``dump_state`` returns a JSON-safe dict; ``load_state`` replaces every row the
tenant owns with the snapshot's contents. Restored rows keep their primary keys,
so a snapshot only loads back into the tenant it was dumped from. Restored rows
are saved raw, so cached balances come back exactly as dumped instead of being
re-applied.
"""
import json
import logging

from django.core import serializers
from django.db import transaction
from django.utils import timezone

from .exceptions import TradebookError
from .models import (
    DocumentSequence,
    Expense,
    FinancialAccount,
    FulfillmentRecord,
    LedgerEntry,
    LineItem,
    ManualStockTransaction,
    Party,
    Product,
    SettlementRecord,
    StockRecord,
    StockTransfer,
    TradeDocument,
)

logger = logging.getLogger(__name__)

# Referenced rows come before the rows pointing at them.
SNAPSHOT_MODELS = (
    Party,
    Product,
    FinancialAccount,
    DocumentSequence,
    StockRecord,
    StockTransfer,
    ManualStockTransaction,
    LedgerEntry,
    Expense,
    TradeDocument,
    LineItem,
    FulfillmentRecord,
    SettlementRecord,
)


def _tenant_rows(model, tenant):
    if model is LineItem:
        return model.objects.filter(document__tenant=tenant).order_by("pk")
    return model.objects.filter(tenant=tenant).order_by("pk")


def dump_state(tenant):
    objects = []
    for model in SNAPSHOT_MODELS:
        objects.extend(json.loads(serializers.serialize("json", _tenant_rows(model, tenant))))
    logger.info("Dumped %s rows for tenant %s", len(objects), tenant.slug)
    return {
        "tenant": tenant.slug,
        "updated_at": timezone.now().isoformat(),
        "objects": objects,
    }


def load_state(tenant, state):
    if state.get("tenant") != tenant.slug:
        raise TradebookError(
            f"Snapshot of tenant {state.get('tenant')!r} cannot be loaded into {tenant.slug!r}.",
            code="tenant_mismatch",
        )
    objects = []
    for item in state["objects"]:
        if "tenant" in item["fields"]:
            item = dict(item, fields=dict(item["fields"], tenant=tenant.pk))
        objects.append(item)

    with transaction.atomic():
        for model in reversed(SNAPSHOT_MODELS):
            _tenant_rows(model, tenant).delete()
        for restored in serializers.deserialize("python", objects):
            restored.save()

    logger.info("Loaded %s rows into tenant %s (snapshot of %s)", len(objects), tenant.slug, state.get("updated_at"))
    return len(objects)
