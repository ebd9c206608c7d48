from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from tradebook.accounting import account_movement, party_movement
from tradebook.models import FinancialAccount, Party, Tenant


class Command(BaseCommand):
    help = "Rewrites cached account and party balances from a full scan of the ledger"

    def add_arguments(self, parser):
        parser.add_argument("--tenant", help="Slug of a single tenant to rebuild")
        parser.add_argument("--batch-size", type=int, default=500)

    def handle(self, *args, **options):
        tenants = Tenant.objects.all()
        if options["tenant"]:
            tenants = tenants.filter(slug=options["tenant"])
            if not tenants.exists():
                raise CommandError(f"Tenant '{options['tenant']}' does not exist.")

        batch_size = options["batch_size"]
        for tenant in tenants:
            accounts = list(FinancialAccount.objects.filter(tenant=tenant))
            for account in accounts:
                account.ledger_total = account_movement(account)
            parties = list(Party.objects.filter(tenant=tenant))
            for party in parties:
                party.ledger_total = party_movement(party)

            with transaction.atomic():
                FinancialAccount.objects.bulk_update(accounts, ["ledger_total"], batch_size=batch_size)
                Party.objects.bulk_update(parties, ["ledger_total"], batch_size=batch_size)

            self.stdout.write(f"{tenant.slug}: {len(accounts)} accounts, {len(parties)} parties")

        self.stdout.write(self.style.SUCCESS("Cached balances rebuilt."))
