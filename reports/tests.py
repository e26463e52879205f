# reports/tests.py
"""
Tests for revenue aggregation and daily closure reconciliation
"""
import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from appointments import payment_engine
from appointments.ledger import payments_in_range
from appointments.models import Appointment
from clients.models import Client as ClinicClient
from core.exceptions import DuplicateClosure, InvalidAmount, MissingExpectedRevenue, PaymentFailed
from core.models import AuditLog, Clinic, SystemSetting
from users.models import Role, User
from . import closures, revenue
from .models import DailyClosure, ExpectedRevenueSnapshot


def aware(*args):
    return timezone.make_aware(datetime(*args))


class RevenueAggregationTest(TestCase):
    """Test the pure revenue functions"""

    def setUp(self):
        self.payments = [
            {'amount': Decimal('100'), 'payment_method': 'cash', 'client_name': 'Maria Lopez'},
            {'amount': Decimal('50'), 'payment_method': 'card', 'client_name': 'Maria Lopez'},
            {'amount': Decimal('25.50'), 'payment_method': 'cash', 'client_name': 'Ahmed Said'},
            {'amount': Decimal('10'), 'payment_method': None, 'client_name': ''},
        ]

    def test_total_and_split(self):
        """Test the cash/card example totals and a 60/40 split"""
        payments = [
            {'amount': 100, 'payment_method': 'cash'},
            {'amount': 50, 'payment_method': 'card'},
        ]

        total = revenue.total_revenue(payments)
        self.assertEqual(total, Decimal('150'))
        self.assertEqual(revenue.split_revenue(total, 60), (Decimal('90'), Decimal('60')))

    def test_empty_input(self):
        """Test empty ledgers produce zero and empty mappings"""
        self.assertEqual(revenue.total_revenue([]), Decimal('0'))
        self.assertEqual(revenue.revenue_by_method([]), {})
        self.assertEqual(revenue.revenue_by_client([]), {})
        self.assertEqual(revenue.split_revenue(0, 60), (Decimal('0'), Decimal('0')))

    def test_grouping_with_fallbacks(self):
        """Test missing methods and client names get placeholder keys"""
        by_method = revenue.revenue_by_method(self.payments)
        by_client = revenue.revenue_by_client(self.payments)

        self.assertEqual(by_method, {
            'cash': Decimal('125.50'),
            'card': Decimal('50'),
            'unknown': Decimal('10'),
        })
        self.assertEqual(by_client['Maria Lopez'], Decimal('150'))
        self.assertEqual(by_client['Unknown Client'], Decimal('10'))

    def test_groupings_partition_the_total(self):
        """Test per-method and per-client sums add up to the total"""
        total = revenue.total_revenue(self.payments)

        self.assertEqual(sum(revenue.revenue_by_method(self.payments).values()), total)
        self.assertEqual(sum(revenue.revenue_by_client(self.payments).values()), total)

    def test_split_shares_add_up(self):
        """Test the two shares always add up to the total"""
        clinic_share, physician_share = revenue.split_revenue(Decimal('185.50'), Decimal('33'))
        self.assertEqual(clinic_share + physician_share, Decimal('185.50'))

    def test_summary_uses_configured_sharing(self):
        """Test the summary reads revenue percentages from system settings"""
        SystemSetting.set_setting('revenue_clinic_percentage', '70')
        SystemSetting.set_setting('revenue_physician_percentage', '30')

        summary = revenue.get_revenue_summary(self.payments[:2])

        self.assertEqual(summary['total'], Decimal('150'))
        self.assertEqual(summary['clinic_share'], Decimal('105'))
        self.assertEqual(summary['physician_share'], Decimal('45'))
        self.assertEqual(summary['by_method'], {'cash': Decimal('100'), 'card': Decimal('50')})

    def test_default_sharing(self):
        """Test 60/40 when nothing is configured"""
        self.assertEqual(revenue.get_revenue_sharing(), {
            'clinic_percentage': Decimal('60'),
            'physician_percentage': Decimal('40'),
        })


class LedgerRevenueTest(TestCase):
    """Test aggregation over real ledger entries"""

    def setUp(self):
        self.clinic = Clinic.objects.create(name='Downtown')
        self.maria = ClinicClient.objects.create(first_name='Maria', last_name='Lopez')
        self.ahmed = ClinicClient.objects.create(first_name='Ahmed', last_name='Said')

    def make_appointment(self, client, amount, start):
        return Appointment.objects.create(
            client=client, clinic=self.clinic, start=start,
            end=start + timedelta(hours=1), amount=Decimal(amount)
        )

    def test_summary_over_payments(self):
        """Test a ledger slice aggregates by method and client"""
        first = self.make_appointment(self.maria, '100', aware(2024, 1, 10, 9, 0))
        second = self.make_appointment(self.ahmed, '80', aware(2024, 1, 10, 11, 0))
        payment_engine.collect_payment(first.pk, 100, 'cash')
        payment_engine.collect_payment(second.pk, 30, 'card')

        summary = revenue.get_revenue_summary(
            payments_in_range(date(2024, 1, 10), date(2024, 1, 10), clinic=self.clinic),
            {'clinic_percentage': Decimal('60')}
        )

        self.assertEqual(summary['total'], Decimal('130'))
        self.assertEqual(summary['by_client'], {'Maria Lopez': Decimal('100'), 'Ahmed Said': Decimal('30')})
        self.assertEqual(summary['clinic_share'], Decimal('78'))

    def test_pending_payments_count(self):
        """Test unpaid and partially paid appointments are pending"""
        paid = self.make_appointment(self.maria, '100', aware(2024, 1, 10, 9, 0))
        partial = self.make_appointment(self.maria, '100', aware(2024, 1, 11, 9, 0))
        self.make_appointment(self.ahmed, '100', aware(2024, 1, 12, 9, 0))
        payment_engine.collect_payment(paid.pk, 100, 'cash')
        payment_engine.collect_payment(partial.pk, 40, 'cash')

        self.assertEqual(revenue.pending_payments_count(self.clinic), 2)
        self.assertEqual(revenue.pending_payments_count(Clinic.objects.create(name='Empty')), 0)


class DailyClosureTest(TestCase):
    """Test expected revenue and day closing"""

    def setUp(self):
        self.clinic = Clinic.objects.create(name='Downtown')
        self.client_record = ClinicClient.objects.create(first_name='Maria', last_name='Lopez')
        self.day = date(2024, 1, 10)

    def make_appointment(self, amount, start, paid=True, clinic=None):
        return Appointment.objects.create(
            client=self.client_record,
            clinic=clinic or self.clinic,
            start=start,
            end=start + timedelta(hours=1),
            amount=Decimal(amount),
            amount_paid=Decimal(amount) if paid else Decimal('0'),
            payment_status=Appointment.PAYMENT_PAID if paid else Appointment.PAYMENT_UNPAID,
        )

    def seed_day(self):
        self.make_appointment('100', aware(2024, 1, 10, 9, 0))
        self.make_appointment('200', aware(2024, 1, 10, 23, 30))
        self.make_appointment('150', aware(2024, 1, 10, 12, 0), paid=False)
        self.make_appointment('500', aware(2024, 1, 11, 0, 30))

    def test_expected_revenue_then_close(self):
        """Test closing a day against the sum of its paid appointments"""
        self.seed_day()

        snapshot = closures.compute_expected_revenue(self.day)
        self.assertEqual(snapshot.amount, Decimal('300'))
        self.assertEqual(snapshot.appointment_count, 2)

        closure = closures.close_day(self.day, 280, 'short by $20, client discount')

        closure.refresh_from_db()
        self.assertEqual(closure.expected_revenue, Decimal('300'))
        self.assertEqual(closure.confirmed_revenue, Decimal('280'))
        self.assertEqual(closure.difference, Decimal('-20'))
        self.assertEqual(closure.notes, 'short by $20, client discount')
        self.assertEqual(closure.date, self.day)

    def test_close_without_expected_revenue(self):
        """Test the two-step workflow is enforced"""
        with self.assertRaises(MissingExpectedRevenue):
            closures.close_day(self.day, 280)
        self.assertFalse(DailyClosure.objects.exists())

    def test_rejects_negative_confirmed_amount(self):
        """Test confirmed revenue cannot be negative"""
        closures.compute_expected_revenue(self.day)

        with self.assertRaises(InvalidAmount):
            closures.close_day(self.day, -1)
        with self.assertRaises(InvalidAmount):
            closures.close_day(self.day, 'plenty')

        closure = closures.close_day(self.day, 0)
        self.assertEqual(closure.confirmed_revenue, Decimal('0'))

    def test_closing_does_not_touch_appointments(self):
        """Test closures leave appointment payment state alone"""
        self.seed_day()
        versions = list(Appointment.objects.order_by('pk').values_list('version', 'payment_status'))

        closures.compute_expected_revenue(self.day)
        closures.close_day(self.day, 300)

        self.assertEqual(list(Appointment.objects.order_by('pk').values_list('version', 'payment_status')), versions)

    def test_latest_snapshot_wins(self):
        """Test recomputing expected revenue before closing"""
        self.seed_day()
        closures.compute_expected_revenue(self.day)
        Appointment.objects.filter(amount=Decimal('150')).update(
            payment_status=Appointment.PAYMENT_PAID, amount_paid=Decimal('150')
        )
        closures.compute_expected_revenue(self.day)

        closure = closures.close_day(self.day, 450)

        self.assertEqual(closure.expected_revenue, Decimal('450'))

    def test_duplicate_closures_allowed_by_default(self):
        """Test a day can be closed twice unless uniqueness is enforced"""
        closures.compute_expected_revenue(self.day)
        closures.close_day(self.day, 100)
        closures.close_day(self.day, 120)

        self.assertEqual(DailyClosure.objects.filter(date=self.day).count(), 2)

    def test_duplicate_closures_rejected_when_enforced(self):
        """Test the uniqueness setting"""
        SystemSetting.set_setting('enforce_unique_daily_closure', 'true')
        closures.compute_expected_revenue(self.day)
        closures.close_day(self.day, 100)

        with self.assertRaises(DuplicateClosure):
            closures.close_day(self.day, 120)
        self.assertEqual(DailyClosure.objects.count(), 1)

    def test_closures_are_immutable(self):
        """Test closure records cannot be edited or deleted"""
        closures.compute_expected_revenue(self.day)
        closure = closures.close_day(self.day, 100)

        closure.confirmed_revenue = Decimal('1000')
        with self.assertRaises(ValidationError):
            closure.save()
        with self.assertRaises(ValidationError):
            closure.delete()

    def test_clinic_scope(self):
        """Test expected revenue and closures per clinic"""
        uptown = Clinic.objects.create(name='Uptown')
        self.seed_day()
        self.make_appointment('70', aware(2024, 1, 10, 15, 0), clinic=uptown)

        self.assertEqual(closures.compute_expected_revenue(self.day, clinic=uptown).amount, Decimal('70'))
        self.assertEqual(closures.compute_expected_revenue(self.day).amount, Decimal('370'))

        # The uptown snapshot does not cover downtown
        with self.assertRaises(MissingExpectedRevenue):
            closures.close_day(self.day, 300, clinic=self.clinic)

        closures.close_day(self.day, 70, clinic=uptown)
        self.assertTrue(closures.is_day_closed(self.day, uptown))
        self.assertFalse(closures.is_day_closed(self.day, self.clinic))

    def test_closure_history(self):
        """Test history filters, ordering and the latest closure"""
        for offset in range(5):
            day = self.day + timedelta(days=offset)
            closures.compute_expected_revenue(day)
            closures.close_day(day, 100 + offset)

        history = closures.get_daily_closures(start=date(2024, 1, 11), end=date(2024, 1, 13))
        self.assertEqual([c.date for c in history], [date(2024, 1, 13), date(2024, 1, 12), date(2024, 1, 11)])
        self.assertEqual(len(closures.get_daily_closures(limit=2)), 2)
        self.assertEqual(closures.get_latest_closure().date, date(2024, 1, 14))
        self.assertTrue(closures.is_day_closed(self.day))
        self.assertFalse(closures.is_day_closed(date(2024, 2, 1)))

    def test_latest_closure_when_none(self):
        """Test no closures yet"""
        self.assertIsNone(closures.get_latest_closure())

    def test_close_day_is_audited(self):
        """Test closing a day writes an audit entry"""
        closures.compute_expected_revenue(self.day)
        closure = closures.close_day(self.day, 90)

        log = AuditLog.objects.get(action=AuditLog.ACTION_CLOSE_DAY)
        self.assertEqual(log.object_id, closure.pk)
        self.assertEqual(log.changes['confirmed_revenue']['new'], '90.00')

    def test_store_failure_while_computing_is_payment_failed(self):
        """Test a failing aggregate surfaces as PaymentFailed and stores nothing"""
        self.seed_day()

        with mock.patch('django.db.models.query.QuerySet.aggregate', side_effect=OperationalError('db down')):
            with self.assertLogs('reports.closures', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    closures.compute_expected_revenue(self.day)

        self.assertFalse(ExpectedRevenueSnapshot.objects.exists())

    def test_store_failure_before_closing_is_payment_failed(self):
        """Test a failing snapshot lookup surfaces as PaymentFailed and closes nothing"""
        closures.compute_expected_revenue(self.day)

        with mock.patch('reports.closures.get_expected_revenue', side_effect=OperationalError('db down')):
            with self.assertLogs('reports.closures', level='ERROR'):
                with self.assertRaises(PaymentFailed):
                    closures.close_day(self.day, 100)

        self.assertFalse(DailyClosure.objects.exists())


class CloseDayCommandTest(TestCase):
    """Test the close_day management command"""

    def setUp(self):
        client_record = ClinicClient.objects.create(first_name='Maria', last_name='Lopez')
        start = aware(2024, 1, 10, 9, 0)
        Appointment.objects.create(
            client=client_record, start=start, end=start + timedelta(hours=1),
            amount=Decimal('300'), amount_paid=Decimal('300'), payment_status=Appointment.PAYMENT_PAID
        )

    def test_closes_day(self):
        """Test the command computes and records the closure"""
        out = StringIO()

        call_command('close_day', '280', '--date', '2024-01-10', '--notes', 'Client discount', stdout=out)

        closure = DailyClosure.objects.get()
        self.assertEqual(closure.expected_revenue, Decimal('300'))
        self.assertEqual(closure.confirmed_revenue, Decimal('280'))
        self.assertIn('Expected revenue for 2024-01-10: 300.00', out.getvalue())

    def test_invalid_input(self):
        """Test bad dates and amounts fail the command"""
        with self.assertRaises(CommandError):
            call_command('close_day', '280', '--date', '10/01/2024', stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('close_day', '-5', '--date', '2024-01-10', stdout=StringIO())
        self.assertFalse(DailyClosure.objects.exists())


class ReportsViewsTest(TestCase):
    """Test the JSON report and closure endpoints"""

    def setUp(self):
        admin_role = Role.objects.create(name=Role.ADMIN, display_name='Admin', is_default=True)
        staff_role = Role.objects.create(name=Role.STAFF, display_name='Staff', is_default=True)
        self.admin = User.objects.create_user(username='admin', password='pass12345', role=admin_role)
        self.staff = User.objects.create_user(username='staff', password='pass12345', role=staff_role)

        client_record = ClinicClient.objects.create(first_name='Maria', last_name='Lopez')
        start = aware(2024, 1, 10, 9, 0)
        self.appointment = Appointment.objects.create(
            client=client_record, start=start, end=start + timedelta(hours=1), amount=Decimal('150')
        )
        payment_engine.collect_payment(self.appointment.pk, 100, 'cash')
        payment_engine.collect_payment(self.appointment.pk, 50, 'card')

    def post_json(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def test_revenue_summary(self):
        """Test the revenue endpoint"""
        self.client.force_login(self.admin)

        response = self.client.get(reverse('reports:revenue_summary'), {'start': '2024-01-10', 'end': '2024-01-10'})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['total'], '150.00')
        self.assertEqual(data['by_method'], {'cash': '100.00', 'card': '50.00'})
        self.assertEqual(data['clinic_share'], '90.00')
        self.assertEqual(data['physician_share'], '60.00')
        self.assertEqual(data['pending_payments'], 0)

    def test_revenue_summary_bad_dates(self):
        """Test invalid dates answer 400"""
        self.client.force_login(self.admin)

        response = self.client.get(reverse('reports:revenue_summary'), {'start': 'yesterday'})

        self.assertEqual(response.status_code, 400)

    def test_unknown_clinic(self):
        """Test an unknown clinic answers 404"""
        self.client.force_login(self.admin)

        response = self.client.get(reverse('reports:revenue_summary'), {'clinic': '999'})

        self.assertEqual(response.status_code, 404)

    def test_reports_permission(self):
        """Test users without report access are refused"""
        self.client.force_login(self.staff)

        self.assertEqual(self.client.get(reverse('reports:revenue_summary')).status_code, 403)
        self.assertEqual(self.post_json(reverse('reports:close_day'), {'confirmed_revenue': '1'}).status_code, 403)

    def test_compute_and_close(self):
        """Test the two-step closing workflow through the API"""
        self.client.force_login(self.admin)

        response = self.post_json(reverse('reports:close_day'), {'date': '2024-01-10', 'confirmed_revenue': '140'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'missing_expected_revenue')

        response = self.post_json(reverse('reports:compute_expected'), {'date': '2024-01-10'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['expected_revenue'], '150.00')
        self.assertFalse(response.json()['already_closed'])

        response = self.post_json(reverse('reports:close_day'), {
            'date': '2024-01-10', 'confirmed_revenue': '140', 'notes': 'Change given twice',
        })
        self.assertEqual(response.status_code, 201)
        closure = response.json()['closure']
        self.assertEqual(closure['expected_revenue'], '150.00')
        self.assertEqual(closure['confirmed_revenue'], '140.00')
        self.assertEqual(closure['difference'], '-10.00')
        self.assertEqual(closure['closed_by'], 'admin')

    def test_compute_store_failure_is_service_unavailable(self):
        """Test store failures while computing answer 503"""
        self.client.force_login(self.admin)

        with mock.patch('django.db.models.query.QuerySet.aggregate', side_effect=OperationalError('db down')):
            with self.assertLogs('reports.closures', level='ERROR'):
                response = self.post_json(reverse('reports:compute_expected'), {'date': '2024-01-10'})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['error'], 'payment_failed')

    def test_close_requires_confirmed_amount(self):
        """Test the confirmed amount is mandatory"""
        self.client.force_login(self.admin)

        response = self.post_json(reverse('reports:close_day'), {'date': '2024-01-10'})

        self.assertEqual(response.status_code, 400)

    def test_duplicate_closure_is_conflict(self):
        """Test enforced uniqueness answers 409"""
        SystemSetting.set_setting('enforce_unique_daily_closure', 'true')
        self.client.force_login(self.admin)
        self.post_json(reverse('reports:compute_expected'), {'date': '2024-01-10'})
        self.post_json(reverse('reports:close_day'), {'date': '2024-01-10', 'confirmed_revenue': '150'})

        response = self.post_json(reverse('reports:close_day'), {'date': '2024-01-10', 'confirmed_revenue': '150'})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'duplicate_closure')

    def test_closure_history(self):
        """Test listing closures"""
        self.client.force_login(self.admin)
        closures.compute_expected_revenue(date(2024, 1, 10))
        closures.close_day(date(2024, 1, 10), 150)

        response = self.client.get(reverse('reports:closure_history'), {'limit': '5'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()['closures']), 1)

        response = self.client.get(reverse('reports:closure_history'), {'limit': 'many'})
        self.assertEqual(response.status_code, 400)
