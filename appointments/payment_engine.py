# appointments/payment_engine.py
"""
Payment collection, refunds and privileged corrections.

Every operation validates first and only then writes. Appointment payment
fields are changed with a compare-and-swap on ``Appointment.version`` inside
the same database transaction as the ledger/refund/correction insert, so a
failed write leaves nothing behind and a concurrent writer forces a re-read
and re-validation instead of a lost update.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import (
    BillingError, ConfirmationRequired, DuplicatePayment, InvalidAmount,
    InvalidPaymentMethod, MissingReason, NotFound, PaymentFailed,
)
from core.models import AuditLog, SystemSetting
from core.utils import quantize_money, to_decimal
from . import ledger
from .models import AMOUNT_TOLERANCE, Appointment, Payment, PaymentCorrection, Refund

logger = logging.getLogger(__name__)

VALID_METHODS = [choice for choice, _ in Payment.PAYMENT_METHOD_CHOICES]


class VersionConflict(Exception):
    """The appointment changed between read and write"""


# Helpers

def _conflict_retries():
    return max(1, int(getattr(settings, 'PAYMENT_CONFLICT_RETRIES', 3)))


def _staff_user(user):
    if user is not None and getattr(user, 'is_authenticated', False):
        return user
    return None


def parse_amount(value):
    """Decimal from user input; InvalidAmount for anything that is not a finite number"""
    if value is None or isinstance(value, bool):
        raise InvalidAmount('Amount must be a number.', amount=value)
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount('Amount must be a number.', amount=value)
    if not amount.is_finite():
        raise InvalidAmount('Amount must be a number.', amount=value)
    try:
        return quantize_money(amount)
    except InvalidOperation:
        raise InvalidAmount('Amount is too large.', amount=value)


def _validate_method(method):
    if method not in VALID_METHODS:
        raise InvalidPaymentMethod(
            f"Unknown payment method '{method}'. Use one of: {', '.join(VALID_METHODS)}.",
            method=method
        )
    return method


def _get_appointment(appointment_id, clinic=None):
    queryset = Appointment.objects.select_related('client', 'clinic')
    if clinic is not None:
        queryset = queryset.filter(clinic=clinic)
    try:
        return queryset.get(pk=appointment_id)
    except (Appointment.DoesNotExist, ValueError, TypeError):
        raise NotFound(f'Appointment {appointment_id} does not exist.', appointment_id=appointment_id)


def _get_payment(payment_id, clinic=None, for_update=False):
    queryset = Payment.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    if clinic is not None:
        queryset = queryset.filter(clinic=clinic)
    try:
        return queryset.get(pk=payment_id)
    except (Payment.DoesNotExist, ValueError, TypeError):
        raise NotFound(f'Payment {payment_id} does not exist.', payment_id=payment_id)


def _compare_and_swap(appointment, changes, now):
    """
    Write ``changes`` only if nobody else touched the appointment since it
    was read, then mirror the write on ``appointment``.
    """
    updated = Appointment.objects.filter(
        pk=appointment.pk,
        version=appointment.version,
    ).update(
        last_payment_update=now,
        updated_at=now,
        version=F('version') + 1,
        **changes
    )
    if not updated:
        raise VersionConflict(appointment.pk)

    for field, value in changes.items():
        setattr(appointment, field, value)
    appointment.last_payment_update = now
    appointment.updated_at = now
    appointment.version += 1


def _appointment_state(appointment):
    return {
        'amount_paid': appointment.amount_paid,
        'sessions_paid': appointment.sessions_paid,
        'payment_status': appointment.payment_status,
    }


# Planning (pure, no writes)

def plan_collection(appointment, amount, is_prepayment=False):
    """
    Validate a collection of ``amount`` against ``appointment`` and return the
    appointment payment state after it:
    {amount_paid, sessions_paid, payment_status, is_prepayment}.

    Raises InvalidAmount or DuplicatePayment; never writes.
    """
    if amount <= 0:
        raise InvalidAmount('Payment amount must be greater than zero.', amount=amount)

    if appointment.amount <= 0:
        raise InvalidAmount('This appointment has no price to collect against.', amount=amount)

    if appointment.is_package:
        if appointment.sessions_paid >= appointment.package_sessions:
            raise DuplicatePayment('Every session of this package has already been paid.')
    elif (appointment.payment_status == Appointment.PAYMENT_PAID
          or appointment.amount_paid >= appointment.amount - AMOUNT_TOLERANCE):
        raise DuplicatePayment('This appointment has already been paid in full.')

    remaining = appointment.amount - appointment.amount_paid
    if amount > remaining + AMOUNT_TOLERANCE:
        raise InvalidAmount(
            f'Payment amount cannot exceed the outstanding balance of {remaining:.2f}.',
            amount=amount, remaining=remaining
        )

    if not appointment.is_package:
        if is_prepayment:
            raise InvalidAmount('Only package appointments can be prepaid.', amount=amount)
        amount_paid = appointment.amount_paid + amount
        return {
            'amount_paid': amount_paid,
            'sessions_paid': appointment.sessions_paid,
            'payment_status': appointment.derive_payment_status(amount_paid=amount_paid),
            'is_prepayment': False,
        }

    # Whole package bought in one transaction
    full_purchase = (
        appointment.sessions_paid == 0
        and abs(amount - appointment.amount) <= AMOUNT_TOLERANCE
    )
    if full_purchase:
        return {
            'amount_paid': appointment.amount,
            'sessions_paid': appointment.package_sessions,
            'payment_status': Appointment.PAYMENT_PAID,
            'is_prepayment': True,
        }

    if is_prepayment:
        raise InvalidAmount(
            f'A package prepayment must cover the full package price of {appointment.amount:.2f} '
            f'before any session is paid.',
            amount=amount
        )

    session_price = appointment.session_price
    if amount > session_price + AMOUNT_TOLERANCE:
        raise InvalidAmount(
            f'Amount cannot exceed {session_price:.2f} per session.',
            amount=amount, session_price=session_price
        )

    amount_paid = appointment.amount_paid + amount
    sessions_paid = appointment.sessions_paid + 1
    if amount_paid >= appointment.amount - AMOUNT_TOLERANCE:
        # Whole package price collected
        sessions_paid = appointment.package_sessions
    return {
        'amount_paid': amount_paid,
        'sessions_paid': sessions_paid,
        'payment_status': appointment.derive_payment_status(amount_paid, sessions_paid),
        'is_prepayment': False,
    }


def plan_refund_reversal(appointment, refund_amount):
    """Appointment payment state after giving ``refund_amount`` back"""
    amount_paid = max(Decimal('0'), appointment.amount_paid - refund_amount)
    sessions_paid = appointment.sessions_paid

    if appointment.is_package:
        session_price = appointment.session_price
        if session_price > 0:
            # Only sessions still covered by the money kept stay paid
            covered = int((amount_paid + AMOUNT_TOLERANCE) // session_price)
            sessions_paid = min(sessions_paid, covered)
        else:
            sessions_paid = 0

    return {
        'amount_paid': amount_paid,
        'sessions_paid': sessions_paid,
        'payment_status': appointment.derive_payment_status(amount_paid, sessions_paid),
    }


def plan_correction(appointment, payment, new_amount, sessions_paid=None, confirm_downgrade=False):
    """Appointment payment state after changing ``payment`` to ``new_amount``"""
    if new_amount <= 0:
        raise InvalidAmount('Corrected amount must be greater than zero.', amount=new_amount)

    amount_paid = appointment.amount_paid + (new_amount - payment.amount)
    if amount_paid < 0 or amount_paid > appointment.amount + AMOUNT_TOLERANCE:
        raise InvalidAmount(
            f'Corrected amount would leave {amount_paid:.2f} paid on an appointment '
            f'priced at {appointment.amount:.2f}.',
            amount=new_amount
        )

    new_sessions = appointment.sessions_paid
    if sessions_paid is not None:
        if not appointment.is_package:
            raise InvalidAmount('Sessions can only be corrected on package appointments.')
        if sessions_paid < 0 or sessions_paid > appointment.package_sessions:
            raise InvalidAmount(
                f'Sessions paid must be between 0 and {appointment.package_sessions}.',
                sessions_paid=sessions_paid
            )
        new_sessions = sessions_paid

    new_status = appointment.derive_payment_status(amount_paid, new_sessions)
    if (appointment.payment_status == Appointment.PAYMENT_PAID
            and new_status != Appointment.PAYMENT_PAID
            and not confirm_downgrade):
        raise ConfirmationRequired(current_status=appointment.payment_status, new_status=new_status)

    return {
        'amount_paid': min(amount_paid, appointment.amount),
        'sessions_paid': new_sessions,
        'payment_status': new_status,
    }


# Operations

def collect_payment(appointment_id, amount, method, is_prepayment=False, *, clinic=None, user=None, notes=''):
    """
    Record a payment against an appointment and update its payment state.

    Returns the appointment payment snapshot plus the new ledger entry's
    ``payment_id``/``receipt_number``. Raises InvalidAmount,
    DuplicatePayment, NotFound or PaymentFailed; on any error nothing is
    written.
    """
    user = _staff_user(user)
    try:
        amount = parse_amount(amount)
        method = _validate_method(method)
    except BillingError as e:
        logger.warning(f"Rejected payment for appointment {appointment_id}: {e.message}")
        raise

    retries = _conflict_retries()
    for attempt in range(1, retries + 1):
        try:
            appointment = _get_appointment(appointment_id, clinic)
            try:
                plan = plan_collection(appointment, amount, is_prepayment)
            except BillingError as e:
                logger.warning(f"Rejected payment of {amount} for appointment {appointment.pk}: {e.message}")
                raise

            before = _appointment_state(appointment)
            with transaction.atomic():
                now = timezone.now()
                _compare_and_swap(appointment, {
                    'amount_paid': plan['amount_paid'],
                    'sessions_paid': plan['sessions_paid'],
                    'payment_status': plan['payment_status'],
                }, now)
                payment = ledger.record_payment(appointment, amount, method, plan, user=user, notes=notes)
                AuditLog.log_action(
                    user,
                    AuditLog.ACTION_PAYMENT,
                    appointment,
                    changes=AuditLog.build_changes(before, {
                        'amount_paid': plan['amount_paid'],
                        'sessions_paid': plan['sessions_paid'],
                        'payment_status': plan['payment_status'],
                    }),
                    description=f"Collected {amount:.2f} ({method}) - receipt {payment.receipt_number}"
                )
        except VersionConflict:
            logger.info(
                f"Appointment {appointment_id} changed during payment collection "
                f"(attempt {attempt}/{retries}), retrying"
            )
            continue
        except DatabaseError as e:
            logger.exception(f"Failed to record payment for appointment {appointment_id}: {e}")
            raise PaymentFailed(appointment_id=appointment_id) from e

        logger.info(
            f"Payment {payment.receipt_number}: {amount:.2f} via {method} for appointment "
            f"{appointment.pk} -> {appointment.payment_status}"
        )

        snapshot = appointment.payment_snapshot()
        snapshot.update({
            'payment_id': payment.pk,
            'receipt_number': payment.receipt_number,
            'payment_amount': str(quantize_money(payment.amount)),
            'is_prepayment': payment.is_prepayment,
        })
        return snapshot

    logger.error(f"Gave up collecting payment for appointment {appointment_id} after {retries} conflicts")
    raise PaymentFailed(
        'The appointment was being updated by someone else. No payment was recorded; please try again.',
        appointment_id=appointment_id
    )


def refund_payment(payment_id, refund_amount, reason, *, clinic=None, user=None):
    """
    Record that part or all of a payment was returned to the client.

    The appointment's payment state is only reversed when the system setting
    ``refund_reverses_appointment_payment`` is enabled.
    """
    user = _staff_user(user)
    try:
        amount = parse_amount(refund_amount)
        if amount <= 0:
            raise InvalidAmount('Refund amount must be greater than zero.', amount=amount)
        reason = (reason or '').strip()
        if not reason:
            raise MissingReason('A reason is required to record a refund.')
    except BillingError as e:
        logger.warning(f"Rejected refund for payment {payment_id}: {e.message}")
        raise

    try:
        # Existence and bounds are checked before any write
        payment = _get_payment(payment_id, clinic)
        _check_refund_bounds(payment, amount)
        reverse = SystemSetting.get_bool_setting('refund_reverses_appointment_payment', False)
    except DatabaseError as e:
        logger.exception(f"Failed to load payment {payment_id} for refund: {e}")
        raise PaymentFailed('The refund could not be saved. No changes were made; please try again.',
                            payment_id=payment_id) from e

    retries = _conflict_retries()
    for attempt in range(1, retries + 1):
        try:
            with transaction.atomic():
                # Lock the ledger row so concurrent refunds see each other's totals
                payment = _get_payment(payment_id, clinic, for_update=True)
                balance = _check_refund_bounds(payment, amount)

                appointment = None
                if reverse:
                    appointment = Appointment.objects.get(pk=payment.appointment_id)
                    _compare_and_swap(appointment, plan_refund_reversal(appointment, amount), timezone.now())

                refund = Refund.objects.create(
                    payment=payment,
                    amount=amount,
                    reason=reason,
                    reversed_appointment=reverse,
                    created_by=user,
                )
                AuditLog.log_action(
                    user,
                    AuditLog.ACTION_REFUND,
                    payment,
                    changes={'refunded': {'old': '0.00', 'new': f"{amount:.2f}", 'label': 'Refunded'}},
                    description=f"Refunded {amount:.2f} of {payment.receipt_number}: {reason}"
                )
        except VersionConflict:
            logger.info(
                f"Appointment for payment {payment_id} changed during refund "
                f"(attempt {attempt}/{retries}), retrying"
            )
            continue
        except DatabaseError as e:
            logger.exception(f"Failed to record refund for payment {payment_id}: {e}")
            raise PaymentFailed('The refund could not be saved. No changes were made; please try again.',
                                payment_id=payment_id) from e

        logger.info(f"Refund {refund.pk}: {amount:.2f} of payment {payment.receipt_number} (reversed={reverse})")

        snapshot = appointment.payment_snapshot() if appointment is not None else None

        return {
            'refund_id': refund.pk,
            'payment_id': payment.pk,
            'refund_amount': str(quantize_money(refund.amount)),
            'refundable_balance': str(quantize_money(max(balance - amount, Decimal('0')))),
            'reason': refund.reason,
            'status': refund.status,
            'reversed_appointment': refund.reversed_appointment,
            'appointment': snapshot,
        }

    logger.error(f"Gave up refunding payment {payment_id} after {retries} conflicts")
    raise PaymentFailed(
        'The appointment was being updated by someone else. No refund was recorded; please try again.',
        payment_id=payment_id
    )


def _check_refund_bounds(payment, amount):
    balance = payment.refundable_balance
    if amount > balance + AMOUNT_TOLERANCE:
        logger.warning(f"Rejected refund of {amount} for payment {payment.pk}: only {balance} refundable")
        raise InvalidAmount(
            f'Refund amount cannot exceed the refundable balance of {balance:.2f}.',
            amount=amount, refundable_balance=balance
        )
    return balance


def correct_payment(payment_id, *, reason, amount=None, sessions_paid=None, confirm_downgrade=False,
                    clinic=None, user=None):
    """
    Privileged edit of a ledger entry.

    Changes the entry's amount (and, for packages, the appointment's paid
    session count), re-derives the appointment payment status, and keeps a
    PaymentCorrection record. Moving a paid appointment back to partial or
    unpaid requires ``confirm_downgrade``.
    """
    user = _staff_user(user)
    try:
        reason = (reason or '').strip()
        if not reason:
            raise MissingReason('A reason is required to correct a payment.')
        new_amount = parse_amount(amount) if amount is not None else None
        if sessions_paid is not None:
            sessions_paid = int(sessions_paid)
    except (ValueError, TypeError):
        raise InvalidAmount('Sessions paid must be a whole number.', sessions_paid=sessions_paid)
    except BillingError as e:
        logger.warning(f"Rejected correction for payment {payment_id}: {e.message}")
        raise

    retries = _conflict_retries()
    for attempt in range(1, retries + 1):
        payment = None
        try:
            payment = _get_payment(payment_id, clinic)
            appointment = _get_appointment(payment.appointment_id)
            target_amount = payment.amount if new_amount is None else new_amount
            try:
                plan = plan_correction(appointment, payment, target_amount, sessions_paid, confirm_downgrade)
            except BillingError as e:
                logger.warning(f"Rejected correction for payment {payment.pk}: {e.message}")
                raise

            previous_amount = payment.amount
            previous_status = payment.payment_status
            before = _appointment_state(appointment)
            with transaction.atomic():
                _compare_and_swap(appointment, plan, timezone.now())

                payment.amount = target_amount
                payment.payment_status = plan['payment_status']
                if appointment.is_package:
                    payment.sessions_paid = plan['sessions_paid']
                payment._allow_correction = True
                payment.save(update_fields=['amount', 'payment_status', 'sessions_paid'])

                correction = PaymentCorrection.objects.create(
                    payment=payment,
                    previous_amount=previous_amount,
                    new_amount=target_amount,
                    previous_status=previous_status,
                    new_status=plan['payment_status'],
                    reason=reason,
                    corrected_by=user,
                )
                changes = AuditLog.build_changes(before, plan)
                changes.update(AuditLog.build_changes(
                    {'payment_amount': previous_amount}, {'payment_amount': target_amount}
                ))
                AuditLog.log_action(
                    user,
                    AuditLog.ACTION_CORRECTION,
                    payment,
                    changes=changes,
                    description=f"Corrected {payment.receipt_number}: {reason}"
                )
        except VersionConflict:
            logger.info(
                f"Appointment for payment {payment_id} changed during payment correction "
                f"(attempt {attempt}/{retries}), retrying"
            )
            continue
        except DatabaseError as e:
            logger.exception(f"Failed to correct payment {payment_id}: {e}")
            raise PaymentFailed('The correction could not be saved. No changes were made; please try again.',
                                payment_id=payment_id) from e
        finally:
            if payment is not None:
                payment._allow_correction = False

        logger.info(
            f"Payment {payment.receipt_number} corrected {previous_amount} -> {target_amount}; "
            f"appointment {appointment.pk} now {appointment.payment_status}"
        )

        snapshot = appointment.payment_snapshot()
        snapshot.update({
            'payment_id': payment.pk,
            'correction_id': correction.pk,
            'payment_amount': str(quantize_money(payment.amount)),
        })
        return snapshot

    logger.error(f"Gave up correcting payment {payment_id} after {retries} conflicts")
    raise PaymentFailed(
        'The appointment was being updated by someone else. No correction was recorded; please try again.',
        payment_id=payment_id
    )
