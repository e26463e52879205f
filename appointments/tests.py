# appointments/tests.py
"""
Tests for appointment payment state, the payment ledger and the payment engine
"""
import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest import mock

from django.core.exceptions import ValidationError
from django.db import DatabaseError, OperationalError
from django.db.models import F
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from clients.models import Client as ClinicClient
from core.exceptions import (
    ConfirmationRequired, DuplicatePayment, InvalidAmount, InvalidPaymentMethod,
    MissingReason, NotFound, PaymentFailed,
)
from core.models import AuditLog, Clinic, SystemSetting
from users.models import Role, User
from . import ledger, payment_engine
from .models import Appointment, Payment, PaymentCorrection, ReceiptSequence, Refund


def aware(*args):
    return timezone.make_aware(datetime(*args))


class BillingFixturesMixin:
    """Shared clinic, client and appointment factories"""

    def setUp(self):
        self.clinic = Clinic.objects.create(name='Downtown')
        self.client_record = ClinicClient.objects.create(first_name='Maria', last_name='Lopez')

    def make_appointment(self, amount='100', start=None, clinic=None, **kwargs):
        start = start or aware(2024, 1, 10, 10, 0)
        return Appointment.objects.create(
            client=self.client_record,
            clinic=clinic or self.clinic,
            start=start,
            end=start + timedelta(hours=1),
            amount=Decimal(amount),
            **kwargs
        )

    def make_package(self, amount='400', sessions=4, **kwargs):
        return self.make_appointment(amount=amount, is_package=True, package_sessions=sessions, **kwargs)


class AppointmentModelTest(BillingFixturesMixin, TestCase):
    """Test Appointment payment helpers and validation"""

    def test_client_name_filled_from_client(self):
        """Test client name is denormalized on save"""
        appointment = self.make_appointment()
        self.assertEqual(appointment.client_name, 'Maria Lopez')

    def test_derive_status_single_session(self):
        """Test status rule for non-package appointments"""
        appointment = self.make_appointment(amount='100')

        self.assertEqual(appointment.derive_payment_status(Decimal('0')), Appointment.PAYMENT_UNPAID)
        self.assertEqual(appointment.derive_payment_status(Decimal('40')), Appointment.PAYMENT_PARTIAL)
        self.assertEqual(appointment.derive_payment_status(Decimal('100')), Appointment.PAYMENT_PAID)
        # Within half a cent counts as paid
        self.assertEqual(appointment.derive_payment_status(Decimal('99.996')), Appointment.PAYMENT_PAID)

    def test_derive_status_package(self):
        """Test status rule for packages follows sessions, not money"""
        package = self.make_package(amount='400', sessions=4)

        self.assertEqual(package.derive_payment_status(Decimal('0'), 0), Appointment.PAYMENT_UNPAID)
        self.assertEqual(package.derive_payment_status(Decimal('100'), 1), Appointment.PAYMENT_PARTIAL)
        self.assertEqual(package.derive_payment_status(Decimal('300'), 4), Appointment.PAYMENT_PAID)

    def test_package_progress(self):
        """Test package progress percentage"""
        package = self.make_package(amount='400', sessions=4, sessions_paid=1, amount_paid=Decimal('100'))
        single = self.make_appointment()

        self.assertEqual(package.package_progress, 25)
        self.assertEqual(package.session_price, Decimal('100'))
        self.assertEqual(package.remaining_amount, Decimal('300'))
        self.assertEqual(single.package_progress, 100)

    def test_clean_rejects_bad_times(self):
        """Test end must be after start and last at least 15 minutes"""
        start = aware(2024, 1, 10, 10, 0)
        backwards = Appointment(client=self.client_record, start=start, end=start - timedelta(minutes=30))
        too_short = Appointment(client=self.client_record, start=start, end=start + timedelta(minutes=10))

        with self.assertRaises(ValidationError):
            backwards.clean()
        with self.assertRaises(ValidationError):
            too_short.clean()

    def test_clean_rejects_overpaid_amounts(self):
        """Test amount paid cannot exceed the price"""
        appointment = self.make_appointment(amount='100')
        appointment.amount_paid = Decimal('150')

        with self.assertRaises(ValidationError):
            appointment.clean()

    def test_conflicting_appointments(self):
        """Test overlap detection for the same client"""
        first = self.make_appointment(start=aware(2024, 1, 10, 10, 0))
        self.make_appointment(start=aware(2024, 1, 10, 14, 0))

        conflicts = Appointment.get_conflicting_appointments(
            self.client_record, aware(2024, 1, 10, 10, 30), aware(2024, 1, 10, 11, 30)
        )
        self.assertEqual(list(conflicts), [first])

        conflicts = Appointment.get_conflicting_appointments(
            self.client_record, aware(2024, 1, 10, 10, 30), aware(2024, 1, 10, 11, 30),
            exclude_appointment_id=first.pk
        )
        self.assertFalse(conflicts.exists())


class PaymentLedgerTest(BillingFixturesMixin, TestCase):
    """Test ledger entries and ledger queries"""

    def record(self, appointment, amount='50'):
        return ledger.record_payment(
            appointment, Decimal(amount), Payment.METHOD_CASH,
            {'payment_status': Appointment.PAYMENT_PARTIAL, 'sessions_paid': 0}
        )

    def test_receipt_numbers_increment(self):
        """Test receipt numbers are sequential per day"""
        appointment = self.make_appointment()
        first = self.record(appointment)
        second = self.record(appointment)

        today = timezone.localtime(timezone.now()).strftime('%Y%m%d')
        self.assertEqual(first.receipt_number, f'RCP-{today}-0001')
        self.assertEqual(second.receipt_number, f'RCP-{today}-0002')

    def test_receipt_numbers_continue_past_four_digits(self):
        """Test the daily sequence keeps counting numerically after 9999"""
        appointment = self.make_appointment()
        today = timezone.localtime(timezone.now()).strftime('%Y%m%d')
        for number in ('9999', '10000'):
            Payment.objects.create(
                appointment=appointment, client=self.client_record, amount=Decimal('1'),
                session_date=appointment.start, receipt_number=f'RCP-{today}-{number}',
            )

        first = self.record(appointment)
        second = self.record(appointment)

        self.assertEqual(first.receipt_number, f'RCP-{today}-10001')
        self.assertEqual(second.receipt_number, f'RCP-{today}-10002')

    def test_receipt_sequence_is_shared_across_appointments(self):
        """Test entries for different appointments draw from one daily counter"""
        first = self.record(self.make_appointment())
        second = self.record(self.make_appointment(start=aware(2024, 1, 11, 9, 0)))

        self.assertNotEqual(first.receipt_number, second.receipt_number)
        sequence = ReceiptSequence.objects.get()
        self.assertEqual(sequence.last_number, 2)
        self.assertTrue(second.receipt_number.endswith('-0002'))

    def test_entry_copies_appointment_details(self):
        """Test entries snapshot client, clinic and session date"""
        appointment = self.make_appointment()
        payment = self.record(appointment)

        self.assertEqual(payment.client_id, self.client_record.pk)
        self.assertEqual(payment.client_name, 'Maria Lopez')
        self.assertEqual(payment.clinic_id, self.clinic.pk)
        self.assertEqual(payment.session_date, appointment.start)
        self.assertEqual(payment.notes, 'Cash payment - 50')

    def test_entries_are_immutable(self):
        """Test entries cannot be edited or deleted outside the correction path"""
        payment = self.record(self.make_appointment())

        payment.amount = Decimal('10')
        with self.assertRaises(ValidationError):
            payment.save()
        with self.assertRaises(ValidationError):
            payment.delete()

        payment.refresh_from_db()
        self.assertEqual(payment.amount, Decimal('50'))

    def test_payments_in_range_includes_whole_end_day(self):
        """Test date ranges are inclusive of the end day"""
        late = self.make_appointment(start=aware(2024, 1, 10, 22, 0))
        next_day = self.make_appointment(start=aware(2024, 1, 11, 9, 0))
        late_payment = self.record(late)
        self.record(next_day)

        payments = ledger.payments_in_range(date(2024, 1, 10), date(2024, 1, 10))
        self.assertEqual(list(payments), [late_payment])

    def test_queries_are_scoped_by_clinic(self):
        """Test ledger reads only see the requested clinic"""
        other_clinic = Clinic.objects.create(name='Uptown')
        ours = self.record(self.make_appointment())
        self.record(self.make_appointment(clinic=other_clinic))

        self.assertEqual(list(ledger.payments_in_range(clinic=self.clinic)), [ours])
        self.assertEqual(ledger.payments_for_client(self.client_record.pk).count(), 2)
        self.assertEqual(ledger.payments_for_client(self.client_record.pk, clinic=self.clinic).count(), 1)


class CollectPaymentTest(BillingFixturesMixin, TestCase):
    """Test the payment collection engine"""

    def test_full_payment_marks_appointment_paid(self):
        """Test paying the full price of a single session"""
        appointment = self.make_appointment(amount='100')

        result = payment_engine.collect_payment(appointment.pk, 100, 'cash')

        appointment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('100'))
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PAID)
        self.assertIsNotNone(appointment.last_payment_update)
        self.assertEqual(appointment.payments.count(), 1)
        self.assertEqual(appointment.payments.get().amount, Decimal('100'))
        self.assertEqual(result['payment_status'], 'paid')
        self.assertEqual(result['remaining_amount'], '0.00')
        self.assertTrue(result['receipt_number'].startswith('RCP-'))

    def test_second_payment_on_paid_appointment_is_duplicate(self):
        """Test a paid single session rejects further payments without side effects"""
        appointment = self.make_appointment(amount='100')
        payment_engine.collect_payment(appointment.pk, 100, 'cash')
        appointment.refresh_from_db()
        version = appointment.version

        with self.assertRaises(DuplicatePayment):
            payment_engine.collect_payment(appointment.pk, 50, 'card')

        appointment.refresh_from_db()
        self.assertEqual(appointment.payments.count(), 1)
        self.assertEqual(appointment.version, version)
        self.assertEqual(appointment.amount_paid, Decimal('100'))

    def test_partial_payments_accumulate(self):
        """Test incremental payments on a single session"""
        appointment = self.make_appointment(amount='100')

        result = payment_engine.collect_payment(appointment.pk, '40', 'cash')
        self.assertEqual(result['payment_status'], 'partial')
        self.assertEqual(result['amount_paid'], '40.00')

        result = payment_engine.collect_payment(appointment.pk, '60', 'card')
        self.assertEqual(result['payment_status'], 'paid')
        self.assertEqual(result['amount_paid'], '100.00')
        self.assertEqual(result['version'], 2)
        self.assertEqual(Payment.objects.filter(appointment=appointment).count(), 2)

    def test_full_package_prepayment(self):
        """Test buying a whole package in one transaction"""
        package = self.make_package(amount='400', sessions=4)

        result = payment_engine.collect_payment(package.pk, 400, 'cash', True)

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 4)
        self.assertEqual(package.amount_paid, Decimal('400'))
        self.assertEqual(package.payment_status, Appointment.PAYMENT_PAID)
        self.assertTrue(package.payments.get().is_prepayment)
        self.assertTrue(result['is_prepayment'])
        self.assertEqual(result['package_progress'], 100)

    def test_full_package_amount_counts_as_prepayment_without_flag(self):
        """Test paying the package price marks the whole package paid"""
        package = self.make_package(amount='400', sessions=4)

        payment_engine.collect_payment(package.pk, 400, 'card')

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 4)
        self.assertTrue(package.payments.get().is_prepayment)

    def test_prepayment_flag_with_wrong_amount(self):
        """Test a prepayment must cover the whole package"""
        package = self.make_package(amount='400', sessions=4)

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(package.pk, 300, 'cash', True)
        self.assertFalse(Payment.objects.exists())

    def test_package_session_payments(self):
        """Test each package payment pays one session"""
        package = self.make_package(amount='400', sessions=4)

        result = payment_engine.collect_payment(package.pk, 100, 'cash')
        self.assertEqual(result['sessions_paid'], 1)
        self.assertEqual(result['payment_status'], 'partial')
        self.assertEqual(result['package_progress'], 25)

        for _ in range(3):
            result = payment_engine.collect_payment(package.pk, 100, 'cash')

        self.assertEqual(result['sessions_paid'], 4)
        self.assertEqual(result['payment_status'], 'paid')
        self.assertFalse(Payment.objects.filter(is_prepayment=True).exists())

    def test_package_mid_progress_cap(self):
        """Test a mid-progress package payment cannot exceed the session price"""
        package = self.make_package(amount='400', sessions=4, sessions_paid=1,
                                    amount_paid=Decimal('100'), payment_status=Appointment.PAYMENT_PARTIAL)

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(package.pk, 150, 'cash')

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 1)
        self.assertEqual(package.amount_paid, Decimal('100'))
        self.assertFalse(Payment.objects.exists())

    def test_first_package_payment_is_capped_per_session(self):
        """Test the first session payment cannot exceed the session price either"""
        package = self.make_package(amount='400', sessions=4)

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(package.pk, 250, 'cash')

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 0)
        self.assertEqual(package.payment_status, Appointment.PAYMENT_UNPAID)
        self.assertFalse(Payment.objects.exists())

    def test_uneven_session_prices_still_reach_paid(self):
        """Test a package whose price does not divide evenly ends fully paid"""
        package = self.make_package(amount='100', sessions=3)

        for _ in range(3):
            result = payment_engine.collect_payment(package.pk, '33.33', 'cash')

        self.assertEqual(result['sessions_paid'], 3)
        self.assertEqual(result['payment_status'], 'paid')
        self.assertEqual(result['amount_paid'], '99.99')

    def test_collecting_the_full_price_pays_every_session(self):
        """Test a package is never left partial once its whole price is collected"""
        package = self.make_package(amount='400', sessions=4, sessions_paid=1,
                                    amount_paid=Decimal('300'), payment_status=Appointment.PAYMENT_PARTIAL)

        result = payment_engine.collect_payment(package.pk, 100, 'cash')

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 4)
        self.assertEqual(package.payment_status, Appointment.PAYMENT_PAID)
        self.assertEqual(result['remaining_amount'], '0.00')

    def test_prepayment_flag_on_single_session(self):
        """Test only packages can be prepaid"""
        appointment = self.make_appointment(amount='100')

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(appointment.pk, 100, 'cash', True)

        appointment.refresh_from_db()
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_UNPAID)
        self.assertFalse(Payment.objects.exists())

    def test_fully_paid_package_is_duplicate(self):
        """Test a package with every session paid rejects payments"""
        package = self.make_package(amount='400', sessions=4, sessions_paid=4,
                                    amount_paid=Decimal('400'), payment_status=Appointment.PAYMENT_PAID)

        with self.assertRaises(DuplicatePayment):
            payment_engine.collect_payment(package.pk, 100, 'cash')

    def test_rejects_non_positive_amounts(self):
        """Test zero, negative and non-numeric amounts"""
        appointment = self.make_appointment(amount='100')

        for amount in (0, '-5', 'abc', 'NaN', None, '0.001'):
            with self.assertRaises(InvalidAmount):
                payment_engine.collect_payment(appointment.pk, amount, 'cash')

        appointment.refresh_from_db()
        self.assertEqual(appointment.version, 0)
        self.assertFalse(Payment.objects.exists())

    def test_rejects_amount_over_remaining(self):
        """Test payments cannot exceed what is owed"""
        appointment = self.make_appointment(amount='100')
        payment_engine.collect_payment(appointment.pk, 70, 'cash')

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(appointment.pk, 50, 'cash')

        appointment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('70'))
        self.assertEqual(appointment.payments.count(), 1)

    def test_rejects_unknown_method(self):
        """Test payment methods are validated"""
        appointment = self.make_appointment(amount='100')

        with self.assertRaises(InvalidPaymentMethod) as ctx:
            payment_engine.collect_payment(appointment.pk, 50, 'bitcoin')
        self.assertIsInstance(ctx.exception, InvalidAmount)

    def test_rejects_unpriced_appointment(self):
        """Test appointments without a price cannot collect payments"""
        appointment = self.make_appointment(amount='0')

        with self.assertRaises(InvalidAmount):
            payment_engine.collect_payment(appointment.pk, 10, 'cash')

    def test_unknown_appointment(self):
        """Test collecting against a missing appointment"""
        with self.assertRaises(NotFound):
            payment_engine.collect_payment(999999, 10, 'cash')

    def test_clinic_scope(self):
        """Test an appointment of another clinic is not found"""
        other_clinic = Clinic.objects.create(name='Uptown')
        appointment = self.make_appointment(amount='100')

        with self.assertRaises(NotFound):
            payment_engine.collect_payment(appointment.pk, 10, 'cash', clinic=other_clinic)

        result = payment_engine.collect_payment(appointment.pk, 10, 'cash', clinic=self.clinic)
        self.assertEqual(result['amount_paid'], '10.00')

    def test_audit_log_and_collector(self):
        """Test payments record who collected them"""
        staff = User.objects.create_user(username='frontdesk', password='pass12345')
        appointment = self.make_appointment(amount='100')

        payment_engine.collect_payment(appointment.pk, 100, 'cash', user=staff)

        self.assertEqual(Payment.objects.get().created_by, staff)
        log = AuditLog.objects.get(action=AuditLog.ACTION_PAYMENT)
        self.assertEqual(log.user, staff)
        self.assertEqual(log.object_id, appointment.pk)
        self.assertEqual(log.changes['payment_status']['new'], 'paid')

    def test_database_failure_leaves_nothing_behind(self):
        """Test a failed ledger insert rolls back the appointment update"""
        appointment = self.make_appointment(amount='100')

        with mock.patch('appointments.payment_engine.ledger.record_payment',
                        side_effect=DatabaseError('disk full')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    payment_engine.collect_payment(appointment.pk, 100, 'cash')

        appointment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('0'))
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_UNPAID)
        self.assertEqual(appointment.version, 0)
        self.assertFalse(Payment.objects.exists())
        self.assertFalse(AuditLog.objects.exists())

    def test_failed_appointment_lookup_is_payment_failed(self):
        """Test a store failure while reading the appointment surfaces as PaymentFailed"""
        appointment = self.make_appointment(amount='100')

        with mock.patch('appointments.payment_engine._get_appointment',
                        side_effect=OperationalError('db down')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    payment_engine.collect_payment(appointment.pk, 100, 'cash')

        self.assertFalse(Payment.objects.exists())


class ConcurrentCollectionTest(BillingFixturesMixin, TestCase):
    """Test compare-and-swap retries when another writer gets there first"""

    def race_after_planning(self, amount_paid):
        """plan_collection that lets a competing payment land right after planning"""
        real_plan = payment_engine.plan_collection
        calls = []

        def racing_plan(appointment, amount, is_prepayment=False):
            plan = real_plan(appointment, amount, is_prepayment)
            if not calls:
                Appointment.objects.filter(pk=appointment.pk).update(
                    amount_paid=Decimal(amount_paid),
                    payment_status=Appointment.PAYMENT_PARTIAL,
                    version=F('version') + 1,
                )
            calls.append(amount)
            return plan

        return racing_plan, calls

    def test_retry_revalidates_against_fresh_state(self):
        """Test a lost race re-reads the appointment and still collects"""
        appointment = self.make_appointment(amount='100')
        racing_plan, calls = self.race_after_planning('60')

        with mock.patch('appointments.payment_engine.plan_collection', side_effect=racing_plan):
            result = payment_engine.collect_payment(appointment.pk, 40, 'cash')

        self.assertEqual(len(calls), 2)
        appointment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('100'))
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PAID)
        self.assertEqual(appointment.version, 2)
        self.assertEqual(result['payment_status'], 'paid')
        self.assertEqual(Payment.objects.count(), 1)

    def test_retry_rejects_when_fresh_state_no_longer_allows_payment(self):
        """Test the retried validation sees the competing payment"""
        appointment = self.make_appointment(amount='100')
        racing_plan, calls = self.race_after_planning('60')

        with mock.patch('appointments.payment_engine.plan_collection', side_effect=racing_plan):
            with self.assertRaises(InvalidAmount):
                payment_engine.collect_payment(appointment.pk, 50, 'cash')

        appointment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('60'))
        self.assertFalse(Payment.objects.exists())

    @override_settings(PAYMENT_CONFLICT_RETRIES=2)
    def test_gives_up_after_configured_retries(self):
        """Test persistent conflicts end in PaymentFailed with nothing written"""
        appointment = self.make_appointment(amount='100')

        with mock.patch('appointments.payment_engine._compare_and_swap',
                        side_effect=payment_engine.VersionConflict) as cas:
            with self.assertRaises(PaymentFailed):
                payment_engine.collect_payment(appointment.pk, 40, 'cash')

        self.assertEqual(cas.call_count, 2)
        self.assertFalse(Payment.objects.exists())


class RefundPaymentTest(BillingFixturesMixin, TestCase):
    """Test the refund engine"""

    def setUp(self):
        super().setUp()
        self.appointment = self.make_appointment(amount='100')
        result = payment_engine.collect_payment(self.appointment.pk, 100, 'cash')
        self.payment = Payment.objects.get(pk=result['payment_id'])

    def test_partial_refund_keeps_appointment_paid(self):
        """Test refunds are financial records only by default"""
        result = payment_engine.refund_payment(self.payment.pk, 30, 'Client moved away')

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_PAID)
        self.assertEqual(self.appointment.amount_paid, Decimal('100'))

        refund = Refund.objects.get()
        self.assertEqual(refund.payment, self.payment)
        self.assertEqual(refund.amount, Decimal('30'))
        self.assertEqual(refund.status, Refund.STATUS_COMPLETED)
        self.assertFalse(refund.reversed_appointment)
        self.assertEqual(result['refundable_balance'], '70.00')
        self.assertIsNone(result['appointment'])
        self.assertTrue(AuditLog.objects.filter(action=AuditLog.ACTION_REFUND).exists())

    def test_rejects_invalid_amounts(self):
        """Test refund amount bounds"""
        with self.assertRaises(InvalidAmount):
            payment_engine.refund_payment(self.payment.pk, 0, 'Mistake')
        with self.assertRaises(InvalidAmount):
            payment_engine.refund_payment(self.payment.pk, 150, 'Mistake')
        self.assertFalse(Refund.objects.exists())

    def test_cumulative_refunds_cannot_exceed_payment(self):
        """Test prior refunds reduce the refundable balance"""
        payment_engine.refund_payment(self.payment.pk, 60, 'First part')

        with self.assertRaises(InvalidAmount):
            payment_engine.refund_payment(self.payment.pk, 50, 'Second part')

        payment_engine.refund_payment(self.payment.pk, 40, 'Second part')
        self.assertEqual(self.payment.refundable_balance, Decimal('0'))

    def test_requires_reason(self):
        """Test refunds need a reason"""
        for reason in ('', '   ', None):
            with self.assertRaises(MissingReason):
                payment_engine.refund_payment(self.payment.pk, 10, reason)
        self.assertFalse(Refund.objects.exists())

    def test_unknown_payment(self):
        """Test refunding a missing payment"""
        with self.assertRaises(NotFound):
            payment_engine.refund_payment(999999, 10, 'Mistake')

    def test_failed_setting_lookup_is_payment_failed(self):
        """Test a store failure before the refund is written surfaces as PaymentFailed"""
        with mock.patch('appointments.payment_engine.SystemSetting.get_bool_setting',
                        side_effect=OperationalError('db down')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    payment_engine.refund_payment(self.payment.pk, 10, 'Mistake')

        self.assertFalse(Refund.objects.exists())

    def test_reversal_when_enabled(self):
        """Test the reversal setting moves the appointment back to partial"""
        SystemSetting.set_setting('refund_reverses_appointment_payment', 'true')

        result = payment_engine.refund_payment(self.payment.pk, 40, 'Session cut short')

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.amount_paid, Decimal('60'))
        self.assertEqual(self.appointment.payment_status, Appointment.PAYMENT_PARTIAL)
        self.assertEqual(self.appointment.version, 2)
        self.assertTrue(result['reversed_appointment'])
        self.assertEqual(result['appointment']['payment_status'], 'partial')

    def test_reversal_on_package_drops_uncovered_sessions(self):
        """Test a package refund only keeps sessions still covered by the money kept"""
        SystemSetting.set_setting('refund_reverses_appointment_payment', 'true')
        package = self.make_package(amount='400', sessions=4)
        result = payment_engine.collect_payment(package.pk, 400, 'cash')

        payment_engine.refund_payment(result['payment_id'], 100, 'One session cancelled')

        package.refresh_from_db()
        self.assertEqual(package.amount_paid, Decimal('300'))
        self.assertEqual(package.sessions_paid, 3)
        self.assertEqual(package.payment_status, Appointment.PAYMENT_PARTIAL)


class CorrectPaymentTest(BillingFixturesMixin, TestCase):
    """Test privileged ledger corrections"""

    def setUp(self):
        super().setUp()
        self.admin = User.objects.create_user(username='manager', password='pass12345')

    def collect(self, appointment, amount):
        result = payment_engine.collect_payment(appointment.pk, amount, 'cash')
        return Payment.objects.get(pk=result['payment_id'])

    def test_requires_reason(self):
        """Test corrections need a reason"""
        payment = self.collect(self.make_appointment(amount='100'), 40)

        with self.assertRaises(MissingReason):
            payment_engine.correct_payment(payment.pk, reason='  ', amount=30)

    def test_amount_correction_adjusts_appointment(self):
        """Test correcting an amount shifts the appointment total by the difference"""
        appointment = self.make_appointment(amount='100')
        payment = self.collect(appointment, 40)

        result = payment_engine.correct_payment(payment.pk, reason='Typo at the desk', amount=30, user=self.admin)

        appointment.refresh_from_db()
        payment.refresh_from_db()
        self.assertEqual(appointment.amount_paid, Decimal('30'))
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PARTIAL)
        self.assertEqual(payment.amount, Decimal('30'))
        self.assertEqual(result['amount_paid'], '30.00')

        correction = PaymentCorrection.objects.get()
        self.assertEqual(correction.previous_amount, Decimal('40'))
        self.assertEqual(correction.new_amount, Decimal('30'))
        self.assertEqual(correction.corrected_by, self.admin)
        self.assertEqual(AuditLog.objects.filter(action=AuditLog.ACTION_CORRECTION).count(), 1)

    def test_downgrade_needs_confirmation(self):
        """Test a paid appointment only moves back with explicit confirmation"""
        appointment = self.make_appointment(amount='100')
        payment = self.collect(appointment, 100)

        with self.assertRaises(ConfirmationRequired):
            payment_engine.correct_payment(payment.pk, reason='Card declined later', amount=50)

        appointment.refresh_from_db()
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PAID)
        self.assertFalse(PaymentCorrection.objects.exists())

        payment_engine.correct_payment(payment.pk, reason='Card declined later', amount=50, confirm_downgrade=True)

        appointment.refresh_from_db()
        self.assertEqual(appointment.payment_status, Appointment.PAYMENT_PARTIAL)
        self.assertEqual(appointment.amount_paid, Decimal('50'))

    def test_cannot_overpay_through_correction(self):
        """Test a correction cannot push the appointment past its price"""
        appointment = self.make_appointment(amount='100')
        first = self.collect(appointment, 40)
        self.collect(appointment, 60)

        with self.assertRaises(InvalidAmount):
            payment_engine.correct_payment(first.pk, reason='Wrong amount', amount=50)

        with self.assertRaises(InvalidAmount):
            payment_engine.correct_payment(first.pk, reason='Wrong amount', amount=0)

    def test_package_session_correction(self):
        """Test correcting the paid session count of a package"""
        package = self.make_package(amount='400', sessions=4)
        payment = self.collect(package, 100)
        self.collect(package, 100)

        payment_engine.correct_payment(payment.pk, reason='Second session never happened', sessions_paid=1)

        package.refresh_from_db()
        self.assertEqual(package.sessions_paid, 1)
        self.assertEqual(package.amount_paid, Decimal('200'))
        self.assertEqual(package.payment_status, Appointment.PAYMENT_PARTIAL)

    def test_session_correction_on_single_session(self):
        """Test sessions can only be corrected on packages"""
        payment = self.collect(self.make_appointment(amount='100'), 40)

        with self.assertRaises(InvalidAmount):
            payment_engine.correct_payment(payment.pk, reason='Nope', sessions_paid=1)

    def test_failed_lookup_is_payment_failed(self):
        """Test a store failure while reading the appointment surfaces as PaymentFailed"""
        payment = self.collect(self.make_appointment(amount='100'), 40)

        with mock.patch('appointments.payment_engine._get_appointment',
                        side_effect=OperationalError('db down')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    payment_engine.correct_payment(payment.pk, reason='Typo', amount=30)

        payment.refresh_from_db()
        self.assertEqual(payment.amount, Decimal('40'))
        self.assertFalse(PaymentCorrection.objects.exists())

    def test_entry_stays_immutable_after_correction(self):
        """Test the correction permission does not outlive the correction"""
        payment = self.collect(self.make_appointment(amount='100'), 40)
        payment_engine.correct_payment(payment.pk, reason='Typo', amount=30)

        payment = Payment.objects.get(pk=payment.pk)
        payment.amount = Decimal('20')
        with self.assertRaises(ValidationError):
            payment.save()


class PaymentViewsTest(BillingFixturesMixin, TestCase):
    """Test the JSON payment endpoints"""

    def setUp(self):
        super().setUp()
        self.admin_role = Role.objects.create(name=Role.ADMIN, display_name='Admin', is_default=True)
        self.staff_role = Role.objects.create(name=Role.STAFF, display_name='Staff', is_default=True)
        self.admin = User.objects.create_user(username='admin', password='pass12345', role=self.admin_role)
        self.staff = User.objects.create_user(username='staff', password='pass12345', role=self.staff_role)
        self.appointment = self.make_appointment(amount='100')

    def post_json(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def collect_url(self, pk=None):
        return reverse('appointments:collect_payment', args=[pk or self.appointment.pk])

    def test_collect_payment(self):
        """Test collecting through the API"""
        self.client.force_login(self.staff)

        response = self.post_json(self.collect_url(), {'amount': '100', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['payment_status'], 'paid')
        self.assertEqual(Payment.objects.get().created_by, self.staff)

    def test_collect_form_encoded(self):
        """Test form posts are accepted too"""
        self.client.force_login(self.staff)

        response = self.client.post(self.collect_url(), {'amount': '40', 'payment_method': 'card'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['payment_status'], 'partial')

    def test_duplicate_payment_is_conflict(self):
        """Test duplicate payments answer 409"""
        self.client.force_login(self.staff)
        self.post_json(self.collect_url(), {'amount': '100', 'payment_method': 'cash'})

        response = self.post_json(self.collect_url(), {'amount': '50', 'payment_method': 'card'})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'duplicate_payment')
        self.assertEqual(Payment.objects.count(), 1)

    def test_invalid_amount_is_bad_request(self):
        """Test validation errors answer 400"""
        self.client.force_login(self.staff)

        response = self.post_json(self.collect_url(), {'amount': '0', 'payment_method': 'cash'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_amount')

        response = self.post_json(self.collect_url(), {'amount': 'lots', 'payment_method': 'cash'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_request')

        response = self.post_json(self.collect_url(), {'amount': '10', 'payment_method': 'barter'})
        self.assertEqual(response.status_code, 400)

    def test_malformed_body(self):
        """Test broken JSON answers 400"""
        self.client.force_login(self.staff)

        response = self.client.post(self.collect_url(), data='{amount', content_type='application/json')

        self.assertEqual(response.status_code, 400)

    def test_unknown_appointment_is_not_found(self):
        """Test missing appointments answer 404"""
        self.client.force_login(self.staff)

        response = self.post_json(self.collect_url(999999), {'amount': '10', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'not_found')

    def test_store_failure_is_service_unavailable(self):
        """Test store failures answer 503"""
        self.client.force_login(self.staff)

        with mock.patch('appointments.payment_engine.ledger.record_payment',
                        side_effect=DatabaseError('locked')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                response = self.post_json(self.collect_url(), {'amount': '10', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['error'], 'payment_failed')

    def test_store_read_failure_is_service_unavailable(self):
        """Test store failures while reading answer 503"""
        self.client.force_login(self.staff)

        with mock.patch('appointments.payment_engine._get_appointment',
                        side_effect=OperationalError('db down')):
            with self.assertLogs('appointments.payment_engine', level='ERROR'):
                response = self.post_json(self.collect_url(), {'amount': '10', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['error'], 'payment_failed')

    def test_audit_entry_records_request_origin(self):
        """Test payments collected through the API log the caller's IP and user agent"""
        self.client.force_login(self.staff)

        self.client.post(
            self.collect_url(),
            data=json.dumps({'amount': '100', 'payment_method': 'cash'}),
            content_type='application/json',
            HTTP_USER_AGENT='front-desk-tablet',
        )

        log = AuditLog.objects.get(action=AuditLog.ACTION_PAYMENT)
        self.assertEqual(log.user, self.staff)
        self.assertEqual(log.ip_address, '127.0.0.1')
        self.assertEqual(log.user_agent, 'front-desk-tablet')

    def test_requires_login(self):
        """Test anonymous requests are redirected to login"""
        response = self.post_json(self.collect_url(), {'amount': '10', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 302)
        self.assertFalse(Payment.objects.exists())

    def test_requires_billing_permission(self):
        """Test users without billing access are refused"""
        viewer_role = Role.objects.create(name='viewer', display_name='Viewer', permissions={'appointments': True})
        viewer = User.objects.create_user(username='viewer', password='pass12345', role=viewer_role)
        self.client.force_login(viewer)

        response = self.post_json(self.collect_url(), {'amount': '10', 'payment_method': 'cash'})

        self.assertEqual(response.status_code, 403)

    def test_get_not_allowed(self):
        """Test collecting requires POST"""
        self.client.force_login(self.staff)

        response = self.client.get(self.collect_url())

        self.assertEqual(response.status_code, 405)

    def test_refund(self):
        """Test refunding through the API"""
        self.client.force_login(self.staff)
        result = payment_engine.collect_payment(self.appointment.pk, 100, 'cash')
        url = reverse('appointments:refund_payment', args=[result['payment_id']])

        response = self.post_json(url, {'amount': '25', 'reason': 'Late start'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['refundable_balance'], '75.00')

        response = self.post_json(url, {'amount': '25', 'reason': ''})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'missing_reason')

    def test_correction_requires_corrections_permission(self):
        """Test only roles with correction rights can correct payments"""
        result = payment_engine.collect_payment(self.appointment.pk, 100, 'cash')
        url = reverse('appointments:correct_payment', args=[result['payment_id']])
        payload = {'amount': '80', 'reason': 'Discount missed'}

        self.client.force_login(self.staff)
        self.assertEqual(self.post_json(url, payload).status_code, 403)

        self.client.force_login(self.admin)
        response = self.post_json(url, payload)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'confirmation_required')

        response = self.post_json(url, {**payload, 'confirm_downgrade': True})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['payment_status'], 'partial')

    def test_correction_needs_a_change(self):
        """Test corrections without amount or sessions are rejected"""
        self.client.force_login(self.admin)
        result = payment_engine.collect_payment(self.appointment.pk, 40, 'cash')
        url = reverse('appointments:correct_payment', args=[result['payment_id']])

        response = self.post_json(url, {'reason': 'Nothing really'})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_request')

    def test_appointment_payments(self):
        """Test listing the ledger of an appointment"""
        self.client.force_login(self.staff)
        payment_engine.collect_payment(self.appointment.pk, 40, 'cash')
        payment_engine.collect_payment(self.appointment.pk, 60, 'card')

        response = self.client.get(reverse('appointments:appointment_payments', args=[self.appointment.pk]))

        self.assertEqual(response.status_code, 200)
        payments = response.json()['payments']
        self.assertEqual([p['amount'] for p in payments], ['40.00', '60.00'])
        self.assertEqual([p['payment_method'] for p in payments], ['cash', 'card'])
