from django.db.models import F
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import FinancialAccount, LedgerEntry, Party


@receiver(post_save, sender=LedgerEntry)
def apply_leg_to_cached_balances(sender, instance, created, raw=False, **kwargs):
    # Snapshot restores carry their own cached totals.
    if raw or not created:
        return

    delta = instance.debit - instance.credit
    if instance.account_id:
        FinancialAccount.objects.filter(pk=instance.account_id).update(ledger_total=F("ledger_total") + delta)
    if instance.party_id:
        Party.objects.filter(pk=instance.party_id, kind=Party.CUSTOMER).update(ledger_total=F("ledger_total") + delta)
        Party.objects.filter(pk=instance.party_id, kind=Party.SUPPLIER).update(ledger_total=F("ledger_total") - delta)
