# appointments/ledger.py
"""
Payment ledger: append and read access to Payment rows.

No business validation happens here; payment_engine validates before it
appends. Reads are always scoped explicitly by clinic.
"""
from datetime import datetime

from core.utils import get_day_bounds
from .models import Payment


def record_payment(appointment, amount, method, state, user=None, notes=''):
    """
    Append one ledger entry for ``appointment``.

    ``state`` is the appointment payment state *after* this transaction
    (payment_status, sessions_paid, is_prepayment).
    """
    return Payment.objects.create(
        appointment=appointment,
        client_id=appointment.client_id,
        client_name=appointment.client_name,
        clinic_id=appointment.clinic_id,
        amount=amount,
        payment_method=method,
        payment_status=state['payment_status'],
        session_date=appointment.start,
        is_package=appointment.is_package,
        package_sessions=appointment.package_sessions if appointment.is_package else 1,
        sessions_paid=state['sessions_paid'],
        is_prepayment=state.get('is_prepayment', False),
        notes=notes or f"{method.replace('_', ' ').title()} payment - {amount}",
        created_by=user,
    )


def scoped_payments(clinic=None):
    """Ledger entries for one clinic, or all clinics when none is given"""
    queryset = Payment.objects.select_related('appointment', 'created_by')
    if clinic is not None:
        queryset = queryset.filter(clinic=clinic)
    return queryset


def payments_for_appointment(appointment_id, clinic=None):
    return scoped_payments(clinic).filter(appointment_id=appointment_id).order_by('created_at', 'pk')


def payments_for_client(client_id, clinic=None):
    return scoped_payments(clinic).filter(client_id=client_id).order_by('-session_date', '-pk')


def _range_start(value):
    if isinstance(value, datetime):
        return value
    return get_day_bounds(value)[0]


def payments_in_range(start=None, end=None, clinic=None):
    """
    Ledger entries whose session date falls in [start, end].

    ``start``/``end`` may be dates (whole days, inclusive) or aware datetimes.
    """
    queryset = scoped_payments(clinic)
    if start is not None:
        queryset = queryset.filter(session_date__gte=_range_start(start))
    if end is not None:
        if isinstance(end, datetime):
            queryset = queryset.filter(session_date__lte=end)
        else:
            # Dates are inclusive: the whole end day is part of the range
            queryset = queryset.filter(session_date__lt=get_day_bounds(end)[1])
    return queryset.order_by('session_date', 'pk')

