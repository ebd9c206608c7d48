from decimal import Decimal

from django.conf import settings

DEFAULT_ACCOUNTS = (
    ("Main Cash", "CASH"),
    ("Main Bank", "BANK"),
)


def reserve_on_confirm():
    return getattr(settings, "TRADEBOOK_RESERVE_ON_CONFIRM", True)


def payroll_keywords():
    keywords = getattr(settings, "TRADEBOOK_PAYROLL_KEYWORDS", ("salary", "payroll"))
    return tuple(word.lower() for word in keywords)


def balance_tolerance():
    return Decimal(str(getattr(settings, "TRADEBOOK_BALANCE_TOLERANCE", "0.01")))


def default_accounts():
    return tuple(getattr(settings, "TRADEBOOK_DEFAULT_ACCOUNTS", DEFAULT_ACCOUNTS))
