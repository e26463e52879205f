# reports/models.py
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models

from core.utils import quantize_money

# Revenue figures are queried from appointments.Payment; only the daily
# closure workflow keeps its own records here.


class ExpectedRevenueSnapshot(models.Model):
    """
    Expected revenue for one day, computed from paid appointments.

    A day may be recomputed any number of times; closing the day uses the
    most recent snapshot.
    """
    date = models.DateField()
    clinic = models.ForeignKey('core.Clinic', on_delete=models.PROTECT, null=True, blank=True,
                               related_name='expected_revenue_snapshots')
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    appointment_count = models.PositiveIntegerField(default=0)
    computed_at = models.DateTimeField(auto_now_add=True)
    computed_by = models.ForeignKey('users.User', on_delete=models.SET_NULL, null=True, blank=True,
                                    related_name='expected_revenue_snapshots')

    class Meta:
        ordering = ['-computed_at', '-pk']
        indexes = [
            models.Index(fields=['date', 'clinic'], name='expected_rev_date_clinic_idx'),
        ]

    def __str__(self):
        return f"Expected {self.amount} for {self.date}"


class DailyClosure(models.Model):
    """End-of-day record comparing expected and confirmed revenue. Immutable once saved."""
    date = models.DateField()
    clinic = models.ForeignKey('core.Clinic', on_delete=models.PROTECT, null=True, blank=True,
                               related_name='daily_closures')
    expected_revenue = models.DecimalField(max_digits=10, decimal_places=2)
    confirmed_revenue = models.DecimalField(max_digits=10, decimal_places=2)
    notes = models.TextField(blank=True)
    closed_at = models.DateTimeField(auto_now_add=True)
    closed_by = models.ForeignKey('users.User', on_delete=models.SET_NULL, null=True, blank=True,
                                  related_name='daily_closures')

    class Meta:
        ordering = ['-date', '-closed_at']
        indexes = [
            models.Index(fields=['date', 'clinic'], name='closure_date_clinic_idx'),
        ]

    def __str__(self):
        return f"Closure {self.date}: {self.confirmed_revenue} (expected {self.expected_revenue})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Daily closures cannot be changed once recorded.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Daily closures cannot be deleted.')

    @property
    def difference(self):
        return (self.confirmed_revenue or Decimal('0')) - (self.expected_revenue or Decimal('0'))

    def as_dict(self):
        return {
            'id': self.pk,
            'date': self.date.isoformat(),
            'clinic_id': self.clinic_id,
            'expected_revenue': str(quantize_money(self.expected_revenue)),
            'confirmed_revenue': str(quantize_money(self.confirmed_revenue)),
            'difference': str(quantize_money(self.difference)),
            'notes': self.notes,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'closed_by': self.closed_by.username if self.closed_by else None,
        }
