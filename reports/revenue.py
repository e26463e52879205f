# reports/revenue.py
"""
Revenue aggregation over ledger entries.

The aggregation functions are pure: they accept any iterable of Payment
instances or plain mappings with ``amount``, ``payment_method`` and
``client_name`` and never touch the database.
"""
from collections import defaultdict
from decimal import Decimal

from core.models import SystemSetting
from core.utils import quantize_money, to_decimal

UNKNOWN_METHOD = 'unknown'
UNKNOWN_CLIENT = 'Unknown Client'

DEFAULT_CLINIC_PERCENTAGE = Decimal('60')
DEFAULT_PHYSICIAN_PERCENTAGE = Decimal('40')


def _field(payment, name):
    if isinstance(payment, dict):
        return payment.get(name)
    return getattr(payment, name, None)


def _amount(payment):
    value = _field(payment, 'amount')
    return to_decimal(value) if value is not None else Decimal('0')


def total_revenue(payments):
    return sum((_amount(payment) for payment in payments), Decimal('0'))


def revenue_by_method(payments):
    """{payment_method: total}; entries without a method count as 'unknown'"""
    totals = defaultdict(Decimal)
    for payment in payments:
        totals[_field(payment, 'payment_method') or UNKNOWN_METHOD] += _amount(payment)
    return dict(totals)


def revenue_by_client(payments):
    """{client_name: total}; entries without a name count as 'Unknown Client'"""
    totals = defaultdict(Decimal)
    for payment in payments:
        totals[_field(payment, 'client_name') or UNKNOWN_CLIENT] += _amount(payment)
    return dict(totals)


def split_revenue(total, clinic_percentage):
    """
    Split ``total`` by percentage.

    Returns (clinic_share, physician_share); the physician gets whatever is
    left after the clinic share, so the two always add up to ``total``.
    """
    total = to_decimal(total)
    clinic_share = total * to_decimal(clinic_percentage) / Decimal('100')
    return clinic_share, total - clinic_share


def get_revenue_sharing():
    """Clinic and physician percentages from system settings"""
    return {
        'clinic_percentage': SystemSetting.get_decimal_setting(
            'revenue_clinic_percentage', DEFAULT_CLINIC_PERCENTAGE
        ),
        'physician_percentage': SystemSetting.get_decimal_setting(
            'revenue_physician_percentage', DEFAULT_PHYSICIAN_PERCENTAGE
        ),
    }


def get_revenue_summary(payments, revenue_sharing=None):
    """
    Total, per-method and per-client revenue plus the clinic/physician split.

    ``revenue_sharing`` is a dict with ``clinic_percentage``; it defaults to
    the configured system settings.
    """
    payments = list(payments)
    if revenue_sharing is None:
        revenue_sharing = get_revenue_sharing()

    total = total_revenue(payments)
    clinic_share, physician_share = split_revenue(total, revenue_sharing['clinic_percentage'])

    return {
        'total': total,
        'by_method': revenue_by_method(payments),
        'by_client': revenue_by_client(payments),
        'clinic_share': clinic_share,
        'physician_share': physician_share,
    }


def serialize_summary(summary):
    """Revenue summary with amounts rounded to cents as strings, for JSON responses"""
    return {
        'total': str(quantize_money(summary['total'])),
        'by_method': {key: str(quantize_money(value)) for key, value in summary['by_method'].items()},
        'by_client': {key: str(quantize_money(value)) for key, value in summary['by_client'].items()},
        'clinic_share': str(quantize_money(summary['clinic_share'])),
        'physician_share': str(quantize_money(summary['physician_share'])),
    }


def pending_payments_count(clinic=None):
    """Appointments that still owe money (unpaid or partially paid)"""
    from appointments.models import Appointment

    queryset = Appointment.objects.filter(
        payment_status__in=[Appointment.PAYMENT_UNPAID, Appointment.PAYMENT_PARTIAL]
    )
    if clinic is not None:
        queryset = queryset.filter(clinic=clinic)
    return queryset.count()
