# appointments/models.py - Appointments, payment ledger, refunds and corrections
from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import F, Sum
from django.utils import timezone

from core.utils import get_clinic_today, quantize_money


# Amounts within half a cent are considered equal
AMOUNT_TOLERANCE = Decimal('0.005')


class Appointment(models.Model):
    """
    A scheduled session (or a multi-session package) for a client.

    Payment state lives on the appointment itself and is only changed by
    appointments.payment_engine; every change bumps ``version`` so
    concurrent writers can detect each other.
    """
    TITLE_CHOICES = [
        ('nutrition', 'Nutrition'),
        ('mental', 'Mental'),
        ('both', 'Both'),
    ]

    STATUS_SCHEDULED = 'scheduled'
    STATUS_DONE = 'done'
    STATUS_MISSED = 'missed'
    STATUS_POSTPONED = 'postponed'

    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_DONE, 'Done'),
        (STATUS_MISSED, 'Missed'),
        (STATUS_POSTPONED, 'Postponed'),
    ]

    PAYMENT_UNPAID = 'unpaid'
    PAYMENT_PARTIAL = 'partial'
    PAYMENT_PAID = 'paid'

    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_UNPAID, 'Unpaid'),
        (PAYMENT_PARTIAL, 'Partially Paid'),
        (PAYMENT_PAID, 'Paid'),
    ]

    MIN_DURATION = timedelta(minutes=15)

    # Core appointment data
    clinic = models.ForeignKey('core.Clinic', on_delete=models.PROTECT, null=True, blank=True,
                               related_name='appointments')
    client = models.ForeignKey('clients.Client', on_delete=models.PROTECT, related_name='appointments')
    client_name = models.CharField(max_length=200, blank=True,
                                   help_text="Denormalized client name at booking time")
    title = models.CharField(max_length=20, choices=TITLE_CHOICES, default='nutrition')
    start = models.DateTimeField()
    end = models.DateTimeField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_SCHEDULED)
    notes = models.TextField(blank=True)

    # Billing
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=0,
                                 validators=[MinValueValidator(Decimal('0'))],
                                 help_text="Total price for this appointment or package")
    payment_status = models.CharField(max_length=10, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_UNPAID)
    amount_paid = models.DecimalField(max_digits=10, decimal_places=2, default=0,
                                      help_text="Total amount collected so far")
    is_package = models.BooleanField(default=False)
    package_sessions = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    sessions_paid = models.PositiveIntegerField(default=0)
    last_payment_update = models.DateTimeField(null=True, blank=True)
    version = models.PositiveIntegerField(default=0, editable=False)

    # Audit
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-start']
        indexes = [
            models.Index(fields=['start'], name='appt_start_idx'),
            models.Index(fields=['client'], name='appt_client_idx'),
            models.Index(fields=['clinic', 'start'], name='appt_clinic_start_idx'),
            models.Index(fields=['payment_status'], name='appt_payment_status_idx'),
        ]

    def __str__(self):
        local_start = timezone.localtime(self.start) if self.start else None
        when = local_start.strftime('%Y-%m-%d %I:%M %p') if local_start else 'unscheduled'
        return f"{self.client_name or 'Client'} - {self.get_title_display()} - {when}"

    def save(self, *args, **kwargs):
        if not self.client_name and self.client_id:
            self.client_name = self.client.full_name
        super().save(*args, **kwargs)

    def clean(self):
        if self.start and self.end:
            if self.end <= self.start:
                raise ValidationError({'end': 'End time must be after start time.'})
            if self.end - self.start < self.MIN_DURATION:
                raise ValidationError({'end': 'Appointment must be at least 15 minutes.'})

        if self.is_package:
            if not self.package_sessions or self.package_sessions < 1:
                raise ValidationError({'package_sessions': 'A package needs at least one session.'})
            if self.sessions_paid > self.package_sessions:
                raise ValidationError({'sessions_paid': 'Sessions paid cannot exceed package sessions.'})

        if self.amount_paid is not None and self.amount is not None:
            if self.amount_paid < 0:
                raise ValidationError({'amount_paid': 'Amount paid cannot be negative.'})
            if self.amount_paid > self.amount:
                raise ValidationError({'amount_paid': 'Amount paid cannot exceed total amount.'})

    @property
    def remaining_amount(self):
        """Amount still owed"""
        return max(self.amount - self.amount_paid, Decimal('0'))

    @property
    def session_price(self):
        """Price of a single session (the whole amount for non-packages)"""
        if self.is_package and self.package_sessions:
            return self.amount / self.package_sessions
        return self.amount

    @property
    def package_progress(self):
        """Percentage of package sessions paid; always 100 for single sessions"""
        if not self.is_package:
            return 100
        total_sessions = self.package_sessions or 1
        return min(self.sessions_paid / total_sessions * 100, 100)

    @property
    def is_fully_paid(self):
        return self.derive_payment_status() == self.PAYMENT_PAID

    @property
    def duration(self):
        return self.end - self.start

    def derive_payment_status(self, amount_paid=None, sessions_paid=None):
        """
        Payment status implied by the counters.

        Packages are paid when every session is paid; single sessions when the
        collected amount covers the price.
        """
        amount_paid = self.amount_paid if amount_paid is None else amount_paid
        sessions_paid = self.sessions_paid if sessions_paid is None else sessions_paid

        if self.is_package:
            if sessions_paid >= self.package_sessions:
                return self.PAYMENT_PAID
            if sessions_paid > 0 or amount_paid > 0:
                return self.PAYMENT_PARTIAL
            return self.PAYMENT_UNPAID

        if amount_paid <= 0:
            return self.PAYMENT_UNPAID
        if amount_paid >= self.amount - AMOUNT_TOLERANCE:
            return self.PAYMENT_PAID
        return self.PAYMENT_PARTIAL

    def payment_snapshot(self):
        """Payment state for API responses"""
        return {
            'appointment_id': self.pk,
            'amount': str(quantize_money(self.amount)),
            'amount_paid': str(quantize_money(self.amount_paid)),
            'remaining_amount': str(quantize_money(self.remaining_amount)),
            'payment_status': self.payment_status,
            'is_package': self.is_package,
            'sessions_paid': self.sessions_paid,
            'package_sessions': self.package_sessions,
            'package_progress': round(self.package_progress, 2),
            'last_payment_update': self.last_payment_update.isoformat() if self.last_payment_update else None,
            'version': self.version,
        }

    @classmethod
    def get_conflicting_appointments(cls, client, start, end, exclude_appointment_id=None):
        """Appointments of the same client that overlap [start, end)"""
        conflicts = cls.objects.filter(client=client, start__lt=end, end__gt=start)
        if exclude_appointment_id:
            conflicts = conflicts.exclude(pk=exclude_appointment_id)
        return conflicts.order_by('start')


class ReceiptSequence(models.Model):
    """Last receipt number issued on each clinic-local day"""
    date = models.DateField(unique=True)
    last_number = models.PositiveIntegerField(default=0)

    def __str__(self):
        return f"{self.date}: {self.last_number}"

    @staticmethod
    def highest_issued(day):
        """Highest sequence among receipts already stored for ``day``"""
        prefix = f"RCP-{day.strftime('%Y%m%d')}-"
        numbers = Payment.objects.filter(
            receipt_number__startswith=prefix
        ).values_list('receipt_number', flat=True)
        suffixes = [number[len(prefix):] for number in numbers]
        return max((int(suffix) for suffix in suffixes if suffix.isdigit()), default=0)

    @classmethod
    def next_number(cls, day):
        """
        Reserve the next receipt number for ``day``.

        The UPDATE locks the day's row until the surrounding transaction
        ends, so concurrent inserts take distinct numbers.
        """
        with transaction.atomic():
            cls.objects.get_or_create(date=day, defaults={'last_number': lambda: cls.highest_issued(day)})
            cls.objects.filter(date=day).update(last_number=F('last_number') + 1)
            return cls.objects.filter(date=day).values_list('last_number', flat=True).get()


class Payment(models.Model):
    """
    One ledger entry: money collected for an appointment.

    Entries are append-only. Corrections go through
    payment_engine.correct_payment, which is the only caller allowed to
    save an existing row; refunds are recorded as separate Refund rows.
    """
    METHOD_CASH = 'cash'
    METHOD_CARD = 'card'
    METHOD_BANK_TRANSFER = 'bank_transfer'
    METHOD_OTHER = 'other'

    PAYMENT_METHOD_CHOICES = [
        (METHOD_CASH, 'Cash'),
        (METHOD_CARD, 'Card'),
        (METHOD_BANK_TRANSFER, 'Bank Transfer'),
        (METHOD_OTHER, 'Other'),
    ]

    appointment = models.ForeignKey(Appointment, on_delete=models.PROTECT, related_name='payments')
    client = models.ForeignKey('clients.Client', on_delete=models.PROTECT, related_name='payments')
    client_name = models.CharField(max_length=200, blank=True)
    clinic = models.ForeignKey('core.Clinic', on_delete=models.PROTECT, null=True, blank=True,
                               related_name='payments')

    amount = models.DecimalField(max_digits=10, decimal_places=2,
                                 validators=[MinValueValidator(Decimal('0.01'))])
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default=METHOD_CASH)
    payment_status = models.CharField(max_length=10, choices=Appointment.PAYMENT_STATUS_CHOICES,
                                      default=Appointment.PAYMENT_PAID,
                                      help_text="Appointment payment status after this transaction")
    session_date = models.DateTimeField(help_text="Start of the session this payment applies to")

    # Package snapshot after this transaction
    is_package = models.BooleanField(default=False)
    package_sessions = models.PositiveIntegerField(default=1)
    sessions_paid = models.PositiveIntegerField(default=0)
    is_prepayment = models.BooleanField(default=False, help_text="Whole package paid in one transaction")

    receipt_number = models.CharField(max_length=50, blank=True, unique=True)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.ForeignKey(
        'users.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='collected_payments',
        help_text="Staff member who collected this payment"
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['appointment'], name='payment_appointment_idx'),
            models.Index(fields=['client'], name='payment_client_idx'),
            models.Index(fields=['clinic', 'session_date'], name='payment_clinic_session_idx'),
            models.Index(fields=['session_date'], name='payment_session_date_idx'),
        ]

    def __str__(self):
        return f"{self.receipt_number or 'Payment'} - {self.client_name} - {self.amount}"

    def save(self, *args, **kwargs):
        if not self._state.adding and not getattr(self, '_allow_correction', False):
            raise ValidationError('Payment records are immutable. Record a refund or a correction instead.')

        if not self.receipt_number:
            self.receipt_number = self.next_receipt_number()

        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Payment records cannot be deleted.')

    @staticmethod
    def next_receipt_number():
        today = get_clinic_today()
        return f"RCP-{today.strftime('%Y%m%d')}-{ReceiptSequence.next_number(today):04d}"

    @property
    def refunded_amount(self):
        return self.refunds.aggregate(total=Sum('amount'))['total'] or Decimal('0')

    @property
    def refundable_balance(self):
        return max(self.amount - self.refunded_amount, Decimal('0'))

    def as_dict(self):
        return {
            'id': self.pk,
            'receipt_number': self.receipt_number,
            'appointment_id': self.appointment_id,
            'client_id': self.client_id,
            'client_name': self.client_name,
            'clinic_id': self.clinic_id,
            'amount': str(quantize_money(self.amount)),
            'payment_method': self.payment_method,
            'payment_status': self.payment_status,
            'session_date': self.session_date.isoformat() if self.session_date else None,
            'is_package': self.is_package,
            'package_sessions': self.package_sessions,
            'sessions_paid': self.sessions_paid,
            'is_prepayment': self.is_prepayment,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Refund(models.Model):
    """Money returned to a client against an earlier payment"""
    STATUS_COMPLETED = 'completed'

    STATUS_CHOICES = [
        (STATUS_COMPLETED, 'Completed'),
    ]

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name='refunds')
    amount = models.DecimalField(max_digits=10, decimal_places=2,
                                 validators=[MinValueValidator(Decimal('0.01'))])
    reason = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_COMPLETED)
    reversed_appointment = models.BooleanField(
        default=False,
        help_text="Whether the appointment payment state was reversed by this refund"
    )
    refunded_at = models.DateTimeField(auto_now_add=True)
    created_by = models.ForeignKey(
        'users.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='processed_refunds'
    )

    class Meta:
        ordering = ['-refunded_at']
        indexes = [
            models.Index(fields=['payment'], name='refund_payment_idx'),
            models.Index(fields=['refunded_at'], name='refund_date_idx'),
        ]

    def __str__(self):
        return f"Refund {self.amount} of {self.payment.receipt_number}"


class PaymentCorrection(models.Model):
    """Audit record of a privileged edit to a ledger entry"""
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name='corrections')
    previous_amount = models.DecimalField(max_digits=10, decimal_places=2)
    new_amount = models.DecimalField(max_digits=10, decimal_places=2)
    previous_status = models.CharField(max_length=10, choices=Appointment.PAYMENT_STATUS_CHOICES)
    new_status = models.CharField(max_length=10, choices=Appointment.PAYMENT_STATUS_CHOICES)
    reason = models.TextField()
    corrected_at = models.DateTimeField(auto_now_add=True)
    corrected_by = models.ForeignKey(
        'users.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payment_corrections'
    )

    class Meta:
        ordering = ['-corrected_at']

    def __str__(self):
        return f"Correction of {self.payment.receipt_number}: {self.previous_amount} -> {self.new_amount}"
