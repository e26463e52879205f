# core/tests.py
"""
Tests for shared settings, audit logging, errors and helpers
"""
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.db import DatabaseError
from django.test import RequestFactory, TestCase
from django.urls import reverse
from django.utils import timezone

from users.models import User
from .exceptions import BillingError, DuplicatePayment, InvalidAmount, NotFound, PaymentFailed
from .middleware import (
    AuditMiddleware, get_current_request, get_current_user, set_current_request, set_current_user,
)
from .models import AuditLog, Clinic, SystemSetting
from .utils import get_day_bounds, get_request_data, parse_date, quantize_money, resolve_clinic


class SystemSettingTest(TestCase):
    """Test typed setting getters"""

    def test_typed_getters(self):
        """Test values are parsed by type"""
        SystemSetting.set_setting('retries', '5')
        SystemSetting.set_setting('share', '62.5')
        SystemSetting.set_setting('enabled', 'Yes')

        self.assertEqual(SystemSetting.get_int_setting('retries'), 5)
        self.assertEqual(SystemSetting.get_decimal_setting('share'), Decimal('62.5'))
        self.assertTrue(SystemSetting.get_bool_setting('enabled'))
        self.assertEqual(SystemSetting.get_setting('missing', 'fallback'), 'fallback')

    def test_invalid_values_fall_back_to_default(self):
        """Test unparseable values return the default"""
        SystemSetting.set_setting('retries', 'three')
        SystemSetting.set_setting('share', 'sixty')

        self.assertEqual(SystemSetting.get_int_setting('retries', 3), 3)
        self.assertEqual(SystemSetting.get_decimal_setting('share', Decimal('60')), Decimal('60'))

    def test_inactive_settings_are_ignored(self):
        """Test deactivated settings behave as missing"""
        setting = SystemSetting.set_setting('enforce_unique_daily_closure', 'true')
        setting.is_active = False
        setting.save()

        self.assertFalse(SystemSetting.get_bool_setting('enforce_unique_daily_closure', False))

    def test_initialize_billing_settings_is_idempotent(self):
        """Test seeding only creates missing keys"""
        SystemSetting.set_setting('revenue_clinic_percentage', '70')

        created = SystemSetting.initialize_billing_settings()

        self.assertNotIn('revenue_clinic_percentage', created)
        self.assertEqual(len(created), len(SystemSetting.BILLING_DEFAULTS) - 1)
        self.assertEqual(SystemSetting.get_setting('revenue_clinic_percentage'), '70')
        self.assertEqual(SystemSetting.initialize_billing_settings(), [])

    def test_initialize_settings_command(self):
        """Test the management command seeds the defaults"""
        out = StringIO()

        call_command('initialize_settings', stdout=out)

        self.assertEqual(SystemSetting.objects.count(), len(SystemSetting.BILLING_DEFAULTS))
        self.assertFalse(SystemSetting.get_bool_setting('refund_reverses_appointment_payment', True))
        self.assertIn('4 created', out.getvalue())


class AuditLogTest(TestCase):
    """Test audit entries"""

    def setUp(self):
        self.user = User.objects.create_user(username='auditor', password='pass12345')
        self.clinic = Clinic.objects.create(name='Downtown')

    def tearDown(self):
        set_current_user(None)
        set_current_request(None)

    def test_build_changes_only_keeps_differences(self):
        """Test unchanged values are left out and decimals are formatted"""
        changes = AuditLog.build_changes(
            {'amount_paid': Decimal('40'), 'payment_status': 'partial'},
            {'amount_paid': Decimal('100'), 'payment_status': 'partial'},
        )

        self.assertEqual(changes, {
            'amount_paid': {'old': '40.00', 'new': '100.00', 'label': 'Amount Paid'},
        })

    def test_log_action_records_request_details(self):
        """Test IP and user agent come from the request"""
        request = RequestFactory().post('/', HTTP_USER_AGENT='pytest', HTTP_X_FORWARDED_FOR='10.0.0.1, 10.0.0.2')

        log = AuditLog.log_action(self.user, AuditLog.ACTION_PAYMENT, self.clinic, request=request,
                                  description='Collected')

        self.assertEqual(log.ip_address, '10.0.0.1')
        self.assertEqual(log.user_agent, 'pytest')
        self.assertEqual(log.model_name, 'clinic')
        self.assertEqual(log.object_repr, 'Downtown')

    def test_log_action_falls_back_to_request_user(self):
        """Test entries without an explicit user use the current request user"""
        set_current_user(self.user)

        log = AuditLog.log_action(None, AuditLog.ACTION_PAYMENT, self.clinic)

        self.assertEqual(log.user, self.user)

    def test_log_action_falls_back_to_current_request(self):
        """Test entries without an explicit request use the request stored by the middleware"""
        set_current_request(RequestFactory().post('/', HTTP_USER_AGENT='front-desk', REMOTE_ADDR='192.168.1.20'))

        log = AuditLog.log_action(self.user, AuditLog.ACTION_PAYMENT, self.clinic)

        self.assertEqual(log.ip_address, '192.168.1.20')
        self.assertEqual(log.user_agent, 'front-desk')

    def test_middleware_clears_user_after_request(self):
        """Test the current user and request only live for the request"""
        seen = []
        middleware = AuditMiddleware(lambda request: seen.append((get_current_user(), get_current_request())))
        request = RequestFactory().get('/')
        request.user = self.user

        middleware(request)

        self.assertEqual(seen, [(self.user, request)])
        self.assertIsNone(get_current_user())
        self.assertIsNone(get_current_request())


class BillingErrorTest(TestCase):
    """Test the error taxonomy"""

    def test_as_dict(self):
        """Test errors serialize with code, message and details"""
        error = InvalidAmount('Too much.', amount=Decimal('150'))

        self.assertEqual(error.as_dict(), {
            'error': 'invalid_amount',
            'message': 'Too much.',
            'details': {'amount': '150'},
        })

    def test_status_codes(self):
        """Test each error maps to an HTTP status"""
        self.assertEqual(InvalidAmount().status_code, 400)
        self.assertEqual(DuplicatePayment().status_code, 409)
        self.assertEqual(NotFound().status_code, 404)
        self.assertEqual(PaymentFailed().status_code, 503)
        self.assertTrue(issubclass(PaymentFailed, BillingError))
        self.assertEqual(str(DuplicatePayment()), DuplicatePayment.default_message)


class UtilsTest(TestCase):
    """Test shared helpers"""

    def test_day_bounds_cover_the_local_day(self):
        """Test day bounds are aware and one day apart"""
        start, end = get_day_bounds(date(2024, 1, 10))

        self.assertTrue(timezone.is_aware(start))
        self.assertEqual(timezone.localtime(start).date(), date(2024, 1, 10))
        self.assertEqual(end - start, timedelta(days=1))

    def test_quantize_money(self):
        """Test rounding to cents"""
        self.assertEqual(str(quantize_money('10.005')), '10.01')
        self.assertEqual(str(quantize_money(3)), '3.00')

    def test_parse_date(self):
        """Test date parsing"""
        self.assertEqual(parse_date('2024-01-10'), date(2024, 1, 10))
        self.assertIsNone(parse_date(''))
        with self.assertRaises(ValueError):
            parse_date('10/01/2024')

    def test_request_data(self):
        """Test JSON and form bodies"""
        factory = RequestFactory()
        json_request = factory.post('/', data='{"amount": "10"}', content_type='application/json')
        form_request = factory.post('/', data={'amount': '10'})
        list_request = factory.post('/', data='[1, 2]', content_type='application/json')

        self.assertEqual(get_request_data(json_request), {'amount': '10'})
        self.assertEqual(get_request_data(form_request), {'amount': '10'})
        with self.assertRaises(ValueError):
            get_request_data(list_request)

    def test_resolve_clinic(self):
        """Test clinic lookup from request values"""
        clinic = Clinic.objects.create(name='Downtown')

        self.assertIsNone(resolve_clinic(''))
        self.assertEqual(resolve_clinic(str(clinic.pk)), clinic)
        with self.assertRaises(NotFound):
            resolve_clinic('abc')


class HealthCheckTest(TestCase):
    """Test the health endpoint"""

    def test_ok(self):
        """Test a healthy app answers 200"""
        response = self.client.get(reverse('health_check'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'ok')

    def test_database_down(self):
        """Test database failures answer 500"""
        with mock.patch('core.health_check.connection') as connection:
            connection.cursor.side_effect = DatabaseError('gone')
            with self.assertLogs('core.health_check', level='ERROR'):
                response = self.client.get(reverse('health_check'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['status'], 'error')
