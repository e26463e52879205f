# appointments/forms.py - Request forms for payment actions
from django import forms
from django.core.exceptions import ValidationError

from .models import Payment


class CollectPaymentForm(forms.Form):
    """Collect money against an appointment"""
    amount = forms.DecimalField(max_digits=10, decimal_places=2)
    payment_method = forms.ChoiceField(choices=Payment.PAYMENT_METHOD_CHOICES)
    is_prepayment = forms.BooleanField(required=False)
    notes = forms.CharField(required=False, max_length=500)


class RefundForm(forms.Form):
    """Give back part or all of a payment"""
    amount = forms.DecimalField(max_digits=10, decimal_places=2)
    reason = forms.CharField(required=False, max_length=1000)

    def clean_reason(self):
        # Blank reasons are reported by the engine as missing_reason
        return (self.cleaned_data.get('reason') or '').strip()


class CorrectionForm(forms.Form):
    """Privileged edit of a ledger entry"""
    reason = forms.CharField(required=False, max_length=1000)
    amount = forms.DecimalField(max_digits=10, decimal_places=2, required=False)
    sessions_paid = forms.IntegerField(required=False, min_value=0)
    confirm_downgrade = forms.BooleanField(required=False)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('amount') is None and cleaned_data.get('sessions_paid') is None:
            raise ValidationError('Provide a corrected amount or a sessions paid count.')
        return cleaned_data
