# appointments/payment_views.py - JSON endpoints for collecting, refunding and correcting payments
import logging

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from core.exceptions import BillingError
from core.utils import get_request_data, resolve_clinic
from . import ledger, payment_engine
from .forms import CollectPaymentForm, CorrectionForm, RefundForm

logger = logging.getLogger(__name__)


def _permission_denied():
    return JsonResponse({'error': 'permission_denied', 'message': 'Permission denied'}, status=403)


def _has_module(user, module):
    return hasattr(user, 'has_permission') and user.has_permission(module)


def _error_response(error):
    return JsonResponse(error.as_dict(), status=error.status_code)


def _form_error_response(form):
    return JsonResponse({
        'error': 'invalid_request',
        'message': 'Please correct the errors below.',
        'fields': form.errors.get_json_data(),
    }, status=400)


def _load_form(request, form_class):
    """Bound form from a JSON or form-encoded body, or None when the body is not parseable"""
    try:
        return form_class(get_request_data(request))
    except ValueError:
        return None


def _invalid_body():
    return JsonResponse({'error': 'invalid_request', 'message': 'Invalid data format'}, status=400)


@login_required
@require_POST
def collect_payment(request, pk):
    """Collect money against an appointment"""
    if not _has_module(request.user, 'billing'):
        return _permission_denied()

    form = _load_form(request, CollectPaymentForm)
    if form is None:
        return _invalid_body()
    if not form.is_valid():
        return _form_error_response(form)

    try:
        clinic = resolve_clinic(form.data.get('clinic'))
        result = payment_engine.collect_payment(
            pk,
            form.cleaned_data['amount'],
            form.cleaned_data['payment_method'],
            form.cleaned_data['is_prepayment'],
            clinic=clinic,
            user=request.user,
            notes=form.cleaned_data['notes'],
        )
    except BillingError as e:
        return _error_response(e)

    return JsonResponse({'success': True, **result})


@login_required
@require_POST
def refund_payment(request, payment_pk):
    """Record a refund against a ledger entry"""
    if not _has_module(request.user, 'billing'):
        return _permission_denied()

    form = _load_form(request, RefundForm)
    if form is None:
        return _invalid_body()
    if not form.is_valid():
        return _form_error_response(form)

    try:
        clinic = resolve_clinic(form.data.get('clinic'))
        result = payment_engine.refund_payment(
            payment_pk,
            form.cleaned_data['amount'],
            form.cleaned_data['reason'],
            clinic=clinic,
            user=request.user,
        )
    except BillingError as e:
        return _error_response(e)

    return JsonResponse({'success': True, **result})


@login_required
@require_POST
def correct_payment(request, payment_pk):
    """Privileged correction of a ledger entry"""
    if not _has_module(request.user, 'billing_corrections'):
        return _permission_denied()

    form = _load_form(request, CorrectionForm)
    if form is None:
        return _invalid_body()
    if not form.is_valid():
        return _form_error_response(form)

    try:
        clinic = resolve_clinic(form.data.get('clinic'))
        result = payment_engine.correct_payment(
            payment_pk,
            reason=form.cleaned_data['reason'],
            amount=form.cleaned_data['amount'],
            sessions_paid=form.cleaned_data['sessions_paid'],
            confirm_downgrade=form.cleaned_data['confirm_downgrade'],
            clinic=clinic,
            user=request.user,
        )
    except BillingError as e:
        return _error_response(e)

    return JsonResponse({'success': True, **result})


@login_required
@require_GET
def appointment_payments(request, pk):
    """Ledger entries for one appointment, oldest first"""
    if not _has_module(request.user, 'billing'):
        return _permission_denied()

    try:
        clinic = resolve_clinic(request.GET.get('clinic'))
    except BillingError as e:
        return _error_response(e)

    payments = [payment.as_dict() for payment in ledger.payments_for_appointment(pk, clinic)]
    return JsonResponse({'appointment_id': pk, 'payments': payments})
