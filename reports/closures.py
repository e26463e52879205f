# reports/closures.py
"""
Daily closure reconciliation.

Closing a day is two steps: ``compute_expected_revenue`` stores what the
paid appointments of that day should have brought in, then ``close_day``
records what staff actually counted. A day cannot be closed before its
expected revenue was computed.
"""
import logging
from decimal import Decimal

from django.db import DatabaseError, transaction
from django.db.models import Count, Sum

from appointments.models import Appointment
from core.exceptions import (
    DuplicateClosure, InvalidAmount, MissingExpectedRevenue, PaymentFailed,
)
from core.models import AuditLog, SystemSetting
from core.utils import get_day_bounds, to_decimal
from .models import DailyClosure, ExpectedRevenueSnapshot

logger = logging.getLogger(__name__)


def _staff_user(user):
    if user is not None and getattr(user, 'is_authenticated', False):
        return user
    return None


def _scope(queryset, clinic):
    if clinic is not None:
        return queryset.filter(clinic=clinic)
    return queryset.filter(clinic__isnull=True)


def compute_expected_revenue(day, clinic=None, user=None):
    """
    Sum of ``amount`` over paid appointments starting on ``day`` (clinic
    local time). ``clinic=None`` covers every clinic. Stores and returns the
    snapshot.
    """
    start, end = get_day_bounds(day)
    appointments = Appointment.objects.filter(
        start__gte=start,
        start__lt=end,
        payment_status=Appointment.PAYMENT_PAID,
    )
    if clinic is not None:
        appointments = appointments.filter(clinic=clinic)

    try:
        totals = appointments.aggregate(total=Sum('amount'), count=Count('pk'))
        snapshot = ExpectedRevenueSnapshot.objects.create(
            date=day,
            clinic=clinic,
            amount=totals['total'] or Decimal('0'),
            appointment_count=totals['count'] or 0,
            computed_by=_staff_user(user),
        )
    except DatabaseError as e:
        logger.exception(f"Failed to compute expected revenue for {day}: {e}")
        raise PaymentFailed('Expected revenue could not be calculated. Please try again.', date=day) from e

    logger.info(
        f"Expected revenue for {day} ({clinic or 'all clinics'}): "
        f"{snapshot.amount} from {snapshot.appointment_count} paid appointment(s)"
    )
    return snapshot


def get_expected_revenue(day, clinic=None):
    """Most recent snapshot for ``day`` in this scope, or None"""
    return _scope(ExpectedRevenueSnapshot.objects.filter(date=day), clinic).first()


def close_day(day, confirmed_amount, notes='', clinic=None, user=None):
    """Record the confirmed revenue for ``day`` against its expected revenue"""
    user = _staff_user(user)
    try:
        confirmed = to_decimal(confirmed_amount)
    except (ValueError, TypeError, ArithmeticError):
        raise InvalidAmount('Confirmed revenue must be a number.', amount=confirmed_amount)
    if not confirmed.is_finite() or confirmed < 0:
        logger.warning(f"Rejected closure for {day}: confirmed revenue {confirmed_amount} is not valid")
        raise InvalidAmount('Confirmed revenue cannot be negative.', amount=confirmed_amount)

    try:
        expected = get_expected_revenue(day, clinic)
        already_closed = (
            SystemSetting.get_bool_setting('enforce_unique_daily_closure', False)
            and is_day_closed(day, clinic)
        )
    except DatabaseError as e:
        logger.exception(f"Failed to load closure state for {day}: {e}")
        raise PaymentFailed('The closure could not be saved. Please try again.', date=day) from e

    if expected is None:
        logger.warning(f"Rejected closure for {day}: expected revenue not calculated")
        raise MissingExpectedRevenue(date=day)

    if already_closed:
        logger.warning(f"Rejected closure for {day}: day already closed")
        raise DuplicateClosure(date=day)

    try:
        with transaction.atomic():
            closure = DailyClosure.objects.create(
                date=day,
                clinic=clinic,
                expected_revenue=expected.amount,
                confirmed_revenue=confirmed,
                notes=notes or '',
                closed_by=user,
            )
            AuditLog.log_action(
                user,
                AuditLog.ACTION_CLOSE_DAY,
                closure,
                changes={
                    'expected_revenue': {'old': None, 'new': f"{expected.amount:.2f}",
                                         'label': 'Expected Revenue'},
                    'confirmed_revenue': {'old': None, 'new': f"{confirmed:.2f}",
                                          'label': 'Confirmed Revenue'},
                },
                description=f"Closed {day} with difference {closure.difference:.2f}"
            )
    except DatabaseError as e:
        logger.exception(f"Failed to record closure for {day}: {e}")
        raise PaymentFailed('The closure could not be saved. Please try again.', date=day) from e

    logger.info(
        f"Closed {day}: expected {expected.amount}, confirmed {confirmed}, "
        f"difference {closure.difference}"
    )
    return closure


def get_daily_closures(start=None, end=None, limit=None, clinic=None):
    """Closures newest first, optionally limited to [start, end] and ``limit`` rows"""
    closures = DailyClosure.objects.select_related('closed_by')
    if clinic is not None:
        closures = closures.filter(clinic=clinic)
    if start is not None:
        closures = closures.filter(date__gte=start)
    if end is not None:
        closures = closures.filter(date__lte=end)
    closures = closures.order_by('-date', '-closed_at', '-pk')
    if limit and limit > 0:
        closures = closures[:limit]
    return closures


def is_day_closed(day, clinic=None):
    try:
        return _scope(DailyClosure.objects.filter(date=day), clinic).exists()
    except DatabaseError as e:
        logger.exception(f"Failed to check closures for {day}: {e}")
        raise PaymentFailed('Closures could not be loaded. Please try again.', date=day) from e


def get_latest_closure(clinic=None):
    return get_daily_closures(clinic=clinic).first()
