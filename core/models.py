# core/models.py
from decimal import Decimal, InvalidOperation

from django.db import models


class Clinic(models.Model):
    """
    A clinic location. Every appointment, payment and closure can be scoped
    to one clinic; queries take the clinic explicitly instead of reading a
    "currently selected location" from the request.
    """
    name = models.CharField(max_length=100, unique=True)
    location = models.CharField(max_length=200, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class SystemSetting(models.Model):
    """Simplified system settings - just key-value pairs"""
    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Billing defaults: key -> (value, description)
    BILLING_DEFAULTS = {
        'revenue_clinic_percentage': ('60', 'Share of revenue attributed to the clinic (percent)'),
        'revenue_physician_percentage': ('40', 'Share of revenue attributed to the physician (percent)'),
        'refund_reverses_appointment_payment': (
            'false', 'Reverse the appointment payment status and counters when a refund is recorded'
        ),
        'enforce_unique_daily_closure': ('false', 'Reject a second closure for the same day'),
    }

    class Meta:
        verbose_name = 'System Setting'
        verbose_name_plural = 'System Settings'
        ordering = ['key']

    def __str__(self):
        return f"{self.key}: {self.value}"

    @classmethod
    def get_setting(cls, key, default=None):
        """Get a setting value by key"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return setting.value
        except cls.DoesNotExist:
            return default

    @classmethod
    def get_int_setting(cls, key, default=0):
        """Get an integer setting value"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return int(setting.value)
        except (cls.DoesNotExist, ValueError):
            return default

    @classmethod
    def get_decimal_setting(cls, key, default=Decimal('0')):
        """Get a decimal setting value"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return Decimal(setting.value.strip())
        except (cls.DoesNotExist, InvalidOperation):
            return default

    @classmethod
    def get_bool_setting(cls, key, default=False):
        """Get a boolean setting value"""
        try:
            setting = cls.objects.get(key=key, is_active=True)
            return setting.value.lower() in ('true', '1', 'yes', 'on')
        except cls.DoesNotExist:
            return default

    @classmethod
    def set_setting(cls, key, value, description=''):
        """Set or update a setting"""
        setting, created = cls.objects.get_or_create(
            key=key,
            defaults={
                'value': str(value),
                'description': description,
                'is_active': True
            }
        )
        if not created:
            setting.value = str(value)
            setting.description = description or setting.description
            setting.is_active = True
            setting.save()
        return setting

    @classmethod
    def initialize_billing_settings(cls):
        """Create missing billing settings with their defaults. Returns the keys created."""
        created_keys = []
        for key, (value, description) in cls.BILLING_DEFAULTS.items():
            _, created = cls.objects.get_or_create(
                key=key,
                defaults={
                    'value': value,
                    'description': description,
                    'is_active': True
                }
            )
            if created:
                created_keys.append(key)
        return created_keys


class AuditLog(models.Model):
    """Audit trail for financial mutations and other staff actions"""
    ACTION_PAYMENT = 'payment'
    ACTION_REFUND = 'refund'
    ACTION_CORRECTION = 'correction'
    ACTION_CLOSE_DAY = 'close_day'

    ACTION_CHOICES = [
        (ACTION_PAYMENT, 'Payment Collected'),
        (ACTION_REFUND, 'Refund'),
        (ACTION_CORRECTION, 'Payment Correction'),
        (ACTION_CLOSE_DAY, 'Close Day'),
    ]

    # User and action info
    user = models.ForeignKey('users.User', on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)

    # Model info
    model_name = models.CharField(max_length=50)
    object_id = models.PositiveIntegerField(null=True, blank=True)
    object_repr = models.CharField(max_length=200, blank=True)

    # Change details
    changes = models.JSONField(default=dict, blank=True)
    description = models.TextField(blank=True, help_text="Human-readable description of the change")

    # Request info
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)

    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['user', 'timestamp'], name='core_auditl_user_id_9e3a2b_idx'),
            models.Index(fields=['model_name', 'timestamp'], name='core_auditl_model_n_4c1f7e_idx'),
            models.Index(fields=['action', 'timestamp'], name='core_auditl_action_8d2b61_idx'),
            models.Index(fields=['timestamp'], name='core_auditl_timesta_5a7c90_idx'),
        ]
        verbose_name = 'Audit Log'
        verbose_name_plural = 'Audit Logs'

    def __str__(self):
        user_str = self.user.username if self.user else 'Anonymous'
        return f"{user_str} {self.action} {self.model_name} at {self.timestamp}"

    @classmethod
    def log_action(cls, user, action, model_instance, changes=None, request=None, description=''):
        """
        Log an action with optional change details

        Args:
            user: User who performed the action (None falls back to the request user
                  stored by AuditMiddleware)
            action: Action type (payment, refund, correction, ...)
            model_instance: The model instance that was changed
            changes: Dict of field changes {field_name: {'old': ..., 'new': ...}}
            request: HttpRequest object for IP/user agent (None falls back to the
                     request stored by AuditMiddleware)
            description: Human-readable description
        """
        from .middleware import get_current_request, get_current_user

        if user is None:
            user = get_current_user()
        if request is None:
            request = get_current_request()

        log_entry = cls(
            user=user,
            action=action,
            model_name=model_instance._meta.model_name,
            object_id=model_instance.pk,
            object_repr=str(model_instance)[:200],
            changes=changes or {},
            description=description
        )

        if request:
            log_entry.ip_address = cls.get_client_ip(request)
            log_entry.user_agent = request.META.get('HTTP_USER_AGENT', '')[:255]

        log_entry.save()
        return log_entry

    @staticmethod
    def get_client_ip(request):
        """Get client IP address from request"""
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            ip = x_forwarded_for.split(',')[0]
        else:
            ip = request.META.get('REMOTE_ADDR')
        return ip

    @staticmethod
    def format_field_value(value):
        """Format field value for display in logs"""
        if value is None:
            return 'None'
        elif isinstance(value, bool):
            return 'Yes' if value else 'No'
        elif isinstance(value, Decimal):
            return f"{value:.2f}"
        elif hasattr(value, 'strftime'):
            return value.strftime('%Y-%m-%d %H:%M:%S')
        else:
            return str(value)

    @staticmethod
    def build_changes(old_values, new_values, labels=None):
        """
        Build a change set from two {field: value} dicts.

        Returns:
            Dict of changes: {field_name: {'old': old_value, 'new': new_value, 'label': field_label}}
        """
        labels = labels or {}
        changes = {}
        for field_name, new_value in new_values.items():
            old_value = old_values.get(field_name)
            if old_value != new_value:
                changes[field_name] = {
                    'old': AuditLog.format_field_value(old_value),
                    'new': AuditLog.format_field_value(new_value),
                    'label': labels.get(field_name, field_name.replace('_', ' ').title()),
                }
        return changes
