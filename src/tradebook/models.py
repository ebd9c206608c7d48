from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

MONEY = {"max_digits": 14, "decimal_places": 2}


class Tenant(models.Model):
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=150, unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class DocumentSequence(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="sequences")
    prefix = models.CharField(max_length=10)
    current_number = models.PositiveIntegerField(default=1001)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "prefix"], name="uniq_sequence_prefix_per_tenant"),
        ]

    @classmethod
    def next_number(cls, tenant, prefix):
        tracker, _ = cls.objects.select_for_update().get_or_create(tenant=tenant, prefix=prefix)
        number = tracker.current_number
        tracker.current_number += 1
        tracker.save(update_fields=["current_number"])
        return f"{prefix}-{number}"


class Party(models.Model):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    KIND_CHOICES = [
        (CUSTOMER, "Customer"),
        (SUPPLIER, "Supplier"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="parties")
    name = models.CharField(max_length=200)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, db_index=True)
    mobile = models.CharField(max_length=50, blank=True, default="")
    address = models.CharField(max_length=255, blank=True, default="")
    gst_no = models.CharField(max_length=50, blank=True, default="")
    opening_balance = models.DecimalField(**MONEY, default=Decimal("0.00"))
    # Signed sum of posted party legs (debit - credit for customers, credit - debit for suppliers).
    ledger_total = models.DecimalField(**MONEY, default=Decimal("0.00"), editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name", "id"]

    @property
    def is_customer(self):
        return self.kind == self.CUSTOMER

    def __str__(self):
        return self.name


class Product(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="products")
    name = models.CharField(max_length=150)
    sku = models.CharField(max_length=100)
    brand = models.CharField(max_length=100, blank=True, default="")
    image = models.CharField(max_length=255, blank=True, default="")
    sales_price = models.DecimalField(**MONEY, default=Decimal("0.00"))
    cost = models.DecimalField(**MONEY, default=Decimal("0.00"))
    track_inventory = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "sku"], name="uniq_product_sku_per_tenant"),
        ]

    def __str__(self):
        return f"{self.sku} - {self.name}"


class Zone(models.TextChoices):
    GODOWN = "GODOWN", _("Godown")
    DISPLAY = "DISPLAY", _("Display")
    BOOKED = "BOOKED", _("Booked")
    REPAIR = "REPAIR", _("Repair")
    HISTORICAL = "HISTORICAL", _("Historical")
    ARCHIVE = "ARCHIVE", _("Archive")


OPERABLE_ZONES = (Zone.GODOWN, Zone.DISPLAY, Zone.BOOKED, Zone.REPAIR)
READ_ONLY_ZONES = (Zone.HISTORICAL, Zone.ARCHIVE)


class StockRecord(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="stock_records")
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="stock_records")
    zone = models.CharField(max_length=20, choices=Zone.choices)
    quantity = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "product", "zone"], name="uniq_stock_zone_per_product"),
        ]

    def __str__(self):
        return f"{self.product.name} @ {self.zone}: {self.quantity}"


class StockTransfer(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="stock_transfers")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_transfers")
    source_zone = models.CharField(max_length=20, choices=Zone.choices)
    destination_zone = models.CharField(max_length=20, choices=Zone.choices)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    date = models.DateField(default=timezone.localdate)
    performed_by = models.CharField(max_length=150, blank=True, default="System")
    party_name = models.CharField(max_length=200, blank=True, default="")
    remarks = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def clean(self):
        super().clean()
        if self.product_id and self.product.tenant_id != self.tenant_id:
            raise ValidationError({"product": _("Product must belong to the selected tenant.")})
        if self.source_zone == self.destination_zone:
            raise ValidationError({"destination_zone": _("Source and destination zones must differ.")})

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.product.name} {self.source_zone} -> {self.destination_zone} ({self.quantity})"


class ManualStockTransaction(models.Model):
    RECEIPT = "RECEIPT"
    DELIVERY = "DELIVERY"
    OPENING = "OPENING"
    KIND_CHOICES = [
        (RECEIPT, "Receipt"),
        (DELIVERY, "Delivery"),
        (OPENING, "Opening Stock"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="manual_stock_transactions")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="manual_stock_transactions")
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    zone = models.CharField(max_length=20, choices=Zone.choices)
    # Signed only for OPENING rows, where it holds the adjustment applied to the zone.
    quantity = models.IntegerField()
    reference = models.CharField(max_length=120, blank=True, default="")
    party_name = models.CharField(max_length=200, blank=True, default="")
    performed_by = models.CharField(max_length=150, blank=True, default="System")
    date = models.DateField(default=timezone.localdate)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def clean(self):
        super().clean()
        if self.product_id and self.product.tenant_id != self.tenant_id:
            raise ValidationError({"product": _("Product must belong to the selected tenant.")})
        if self.kind == self.OPENING:
            if self.quantity == 0:
                raise ValidationError({"quantity": _("Opening adjustments cannot be zero.")})
        elif self.quantity is None or self.quantity <= 0:
            raise ValidationError({"quantity": _("Quantity must be greater than 0.")})

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    @property
    def signed_quantity(self):
        if self.kind == self.DELIVERY:
            return -self.quantity
        return self.quantity

    def __str__(self):
        return f"{self.product.name} {self.kind} @ {self.zone} ({self.quantity})"


class AccountKind(models.TextChoices):
    CASH = "CASH", _("Cash")
    BANK = "BANK", _("Bank")
    UPI = "UPI", _("UPI")
    CARD = "CARD", _("Card")
    CHEQUE = "CHEQUE", _("Cheque")


class FinancialAccount(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="financial_accounts")
    name = models.CharField(max_length=120)
    kind = models.CharField(max_length=10, choices=AccountKind.choices, default=AccountKind.CASH)
    opening_balance = models.DecimalField(**MONEY, default=Decimal("0.00"))
    # Sum of debit - credit over posted treasury legs.
    ledger_total = models.DecimalField(**MONEY, default=Decimal("0.00"), editable=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "name"], name="uniq_account_name_per_tenant"),
        ]
        ordering = ["name", "id"]

    def __str__(self):
        return f"{self.name} ({self.kind})"


class TransactionType(models.TextChoices):
    CUSTOMER_ADVANCE = "CUSTOMER_ADVANCE", _("Customer Advance")
    CUSTOMER_PAYMENT = "CUSTOMER_PAYMENT", _("Customer Payment")
    VENDOR_ADVANCE = "VENDOR_ADVANCE", _("Vendor Advance")
    VENDOR_PAYMENT = "VENDOR_PAYMENT", _("Vendor Payment")
    REVENUE = "REVENUE", _("Revenue")
    COST = "COST", _("Cost")
    OPERATIONAL_EXPENSE = "OPERATIONAL_EXPENSE", _("Operational Expense")
    FUND_TRANSFER = "FUND_TRANSFER", _("Fund Transfer")


class LedgerEntry(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="ledger_entries")
    date = models.DateField(default=timezone.localdate)
    type = models.CharField(max_length=30, choices=TransactionType.choices)
    debit = models.DecimalField(**MONEY, default=Decimal("0.00"))
    credit = models.DecimalField(**MONEY, default=Decimal("0.00"))
    account = models.ForeignKey(
        FinancialAccount,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="entries",
    )
    party = models.ForeignKey(
        Party,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    party_name = models.CharField(max_length=200, blank=True, default="")
    transaction_id = models.CharField(max_length=80, blank=True, default="", db_index=True)
    reference = models.CharField(max_length=120, blank=True, default="")
    description = models.CharField(max_length=255, blank=True, default="")
    reconciled = models.BooleanField(default=False)
    is_migrated = models.BooleanField(default=False)
    is_historical = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["date", "id"]
        indexes = [
            models.Index(fields=["tenant", "date"]),
        ]

    def clean(self):
        super().clean()
        if self.account_id and self.account.tenant_id != self.tenant_id:
            raise ValidationError({"account": _("Account must belong to the selected tenant.")})
        if self.party_id and self.party.tenant_id != self.tenant_id:
            raise ValidationError({"party": _("Party must belong to the selected tenant.")})
        if self.account_id and self.party_id:
            raise ValidationError(_("A ledger leg cannot reference both an account and a party."))
        if not self.account_id and not self.party_id:
            raise ValidationError(_("A ledger leg must reference an account or a party."))
        if self.debit < 0 or self.credit < 0:
            raise ValidationError(_("Debit and credit amounts cannot be negative."))
        if self.debit > 0 and self.credit > 0:
            raise ValidationError(_("A leg cannot have both debit and credit values."))

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.type} {self.date} (D:{self.debit} C:{self.credit})"


class Expense(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="expenses")
    date = models.DateField(default=timezone.localdate)
    category = models.CharField(max_length=120)
    description = models.CharField(max_length=255, blank=True, default="")
    amount = models.DecimalField(**MONEY)
    account = models.ForeignKey(FinancialAccount, on_delete=models.PROTECT, related_name="expenses")
    party = models.ForeignKey(Party, on_delete=models.SET_NULL, null=True, blank=True, related_name="expenses")
    party_name = models.CharField(max_length=200, blank=True, default="")
    tax_amount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    ledger_entry = models.OneToOneField(
        LedgerEntry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="expense",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.category} - {self.amount}"


class DocumentKind(models.TextChoices):
    SALES = "SALES", _("Sales Order")
    PURCHASE = "PURCHASE", _("Purchase Order")


class SalesStatus(models.TextChoices):
    QUOTATION = "QUOTATION", _("Quotation")
    QUOTATION_SENT = "QUOTATION_SENT", _("Quotation Sent")
    SALES_ORDER = "SALES_ORDER", _("Sales Order")
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED", _("Partially Delivered")
    FULLY_DELIVERED = "FULLY_DELIVERED", _("Fully Delivered")
    PARTIALLY_BILLED = "PARTIALLY_BILLED", _("Partially Billed")
    FULLY_BILLED = "FULLY_BILLED", _("Fully Billed")
    CANCELLED = "CANCELLED", _("Cancelled")
    MIGRATED = "MIGRATED", _("Migrated")


class PurchaseStatus(models.TextChoices):
    RFQ = "RFQ", _("Request for Quotation")
    PO = "PO", _("Purchase Order")
    GRN_PARTIAL = "GRN_PARTIAL", _("Partially Received")
    GRN_COMPLETED = "GRN_COMPLETED", _("Fully Received")
    BILLED = "BILLED", _("Billed")
    CANCELLED = "CANCELLED", _("Cancelled")
    MIGRATED = "MIGRATED", _("Migrated")


class PaymentStatus(models.TextChoices):
    UNPAID = "UNPAID", _("Unpaid")
    PARTIAL = "PARTIAL", _("Partial")
    PAID = "PAID", _("Paid")


class TradeDocument(models.Model):
    LIVE = "live"
    MIGRATION = "migration"
    SOURCE_CHOICES = [
        (LIVE, "Live"),
        (MIGRATION, "Migration"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="trade_documents")
    kind = models.CharField(max_length=10, choices=DocumentKind.choices)
    number = models.CharField(max_length=50)
    order_number = models.CharField(max_length=50, blank=True, default="")
    issue_date = models.DateField(default=timezone.localdate)
    expected_date = models.DateField(null=True, blank=True)
    party = models.ForeignKey(Party, on_delete=models.PROTECT, null=True, blank=True, related_name="documents")
    party_name = models.CharField(max_length=200, blank=True, default="")
    zone = models.CharField(max_length=20, choices=Zone.choices, default=Zone.GODOWN)
    subtotal = models.DecimalField(**MONEY, default=Decimal("0.00"))
    tax_total = models.DecimalField(**MONEY, default=Decimal("0.00"))
    discount_total = models.DecimalField(**MONEY, default=Decimal("0.00"))
    grand_total = models.DecimalField(**MONEY, default=Decimal("0.00"))
    amount_paid = models.DecimalField(**MONEY, default=Decimal("0.00"))
    status = models.CharField(max_length=30)
    payment_status = models.CharField(max_length=10, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    is_historical = models.BooleanField(default=False)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default=LIVE)
    remarks = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-issue_date", "-id"]
        constraints = [
            models.UniqueConstraint(fields=["tenant", "kind", "number"], name="uniq_document_number_per_tenant"),
        ]

    @property
    def is_sales(self):
        return self.kind == DocumentKind.SALES

    @property
    def outstanding(self):
        return self.grand_total - self.amount_paid

    def clean(self):
        super().clean()
        statuses = SalesStatus.values if self.is_sales else PurchaseStatus.values
        if self.status not in statuses:
            raise ValidationError({"status": _("Status is not valid for this document kind.")})
        if self.party_id:
            if self.party.tenant_id != self.tenant_id:
                raise ValidationError({"party": _("Party must belong to the selected tenant.")})
            expected = Party.CUSTOMER if self.is_sales else Party.SUPPLIER
            if self.party.kind != expected:
                raise ValidationError({"party": _("Party kind does not match the document kind.")})

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return self.number


class LineItem(models.Model):
    document = models.ForeignKey(TradeDocument, on_delete=models.CASCADE, related_name="lines")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="line_items")
    product_name = models.CharField(max_length=150, blank=True, default="")
    sku = models.CharField(max_length=100, blank=True, default="")
    image = models.CharField(max_length=255, blank=True, default="")
    ordered_qty = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    fulfilled_qty = models.PositiveIntegerField(default=0)
    settled_qty = models.PositiveIntegerField(default=0)
    reserved_qty = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(**MONEY, default=Decimal("0.00"))
    discount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    line_total = models.DecimalField(**MONEY, default=Decimal("0.00"))

    class Meta:
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(fields=["document", "product"], name="uniq_product_per_document"),
        ]

    @property
    def remaining_to_fulfil(self):
        return self.ordered_qty - self.fulfilled_qty

    @property
    def remaining_to_settle(self):
        return self.fulfilled_qty - self.settled_qty

    def clean(self):
        super().clean()
        if self.product_id and self.document_id and self.product.tenant_id != self.document.tenant_id:
            raise ValidationError({"product": _("Product must belong to the document tenant.")})
        if not (0 <= self.settled_qty <= self.fulfilled_qty <= self.ordered_qty):
            raise ValidationError(_("Line quantities must satisfy settled <= fulfilled <= ordered."))
        if self.reserved_qty > self.ordered_qty - self.fulfilled_qty:
            raise ValidationError({"reserved_qty": _("Reserved quantity exceeds the undelivered quantity.")})
        if self.unit_price < 0 or self.discount < 0 or self.tax_rate < 0:
            raise ValidationError(_("Price, discount and tax rate cannot be negative."))

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.product_name} x {self.ordered_qty}"


class FulfillmentRecord(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="fulfillment_records")
    document = models.ForeignKey(TradeDocument, on_delete=models.CASCADE, related_name="fulfillments")
    number = models.CharField(max_length=50)
    date = models.DateField(default=timezone.localdate)
    zone = models.CharField(max_length=20, choices=Zone.choices)
    reference = models.CharField(max_length=120, blank=True, default="")
    items = models.JSONField(default=list)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.number} ({self.document.number})"


class SettlementRecord(models.Model):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="settlement_records")
    document = models.ForeignKey(TradeDocument, on_delete=models.CASCADE, related_name="settlements")
    number = models.CharField(max_length=50)
    date = models.DateField(default=timezone.localdate)
    amount = models.DecimalField(**MONEY)
    tax_amount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    items = models.JSONField(default=list)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.number} ({self.document.number})"
