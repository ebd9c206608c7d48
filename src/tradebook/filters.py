import django_filters

from .models import LedgerEntry, TransactionType


class LedgerEntryFilter(django_filters.FilterSet):
    start = django_filters.DateFilter(field_name="date", lookup_expr="gte")
    end = django_filters.DateFilter(field_name="date", lookup_expr="lte")
    type = django_filters.MultipleChoiceFilter(choices=TransactionType.choices)
    reconciled = django_filters.BooleanFilter()

    class Meta:
        model = LedgerEntry
        fields = ["start", "end", "type", "reconciled"]

    def __init__(self, *args, **kwargs):
        tenant = kwargs.pop("tenant", None)
        super().__init__(*args, **kwargs)
        if tenant is not None:
            self.queryset = self.queryset.filter(tenant=tenant)
