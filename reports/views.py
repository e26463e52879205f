# reports/views.py - Revenue summary and daily closure endpoints (JSON)
from datetime import timedelta

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from appointments.ledger import payments_in_range
from core.exceptions import BillingError
from core.utils import get_clinic_today, get_request_data, parse_date, quantize_money, resolve_clinic
from . import closures, revenue

DEFAULT_RANGE_DAYS = 30


def _permission_denied():
    return JsonResponse({'error': 'permission_denied', 'message': 'You do not have permission to access reports.'},
                        status=403)


def _has_reports_permission(user):
    return hasattr(user, 'has_permission') and user.has_permission('reports')


def _bad_request(message):
    return JsonResponse({'error': 'invalid_request', 'message': message}, status=400)


def _get_date_range(start_value, end_value):
    """
    Start and end dates from YYYY-MM-DD strings; defaults to the last 30 days.
    Swapped ranges are put back in order.
    """
    today = get_clinic_today()
    start_date = parse_date(start_value) or today - timedelta(days=DEFAULT_RANGE_DAYS)
    end_date = parse_date(end_value) or today
    if start_date > end_date:
        start_date, end_date = end_date, start_date
    return start_date, end_date


@login_required
@require_GET
def revenue_summary(request):
    """Revenue totals for the ledger entries of a date range"""
    if not _has_reports_permission(request.user):
        return _permission_denied()

    try:
        start_date, end_date = _get_date_range(request.GET.get('start'), request.GET.get('end'))
    except ValueError:
        return _bad_request('Invalid date format. Please use YYYY-MM-DD.')

    try:
        clinic = resolve_clinic(request.GET.get('clinic'))
    except BillingError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)

    payments = payments_in_range(start_date, end_date, clinic=clinic)
    sharing = revenue.get_revenue_sharing()
    summary = revenue.get_revenue_summary(payments, sharing)

    return JsonResponse({
        'start': start_date.isoformat(),
        'end': end_date.isoformat(),
        'clinic_id': clinic.pk if clinic else None,
        'revenue_sharing': {key: str(value) for key, value in sharing.items()},
        'pending_payments': revenue.pending_payments_count(clinic),
        **revenue.serialize_summary(summary),
    })


@login_required
@require_POST
def compute_expected(request):
    """Calculate and store the expected revenue of a day"""
    if not _has_reports_permission(request.user):
        return _permission_denied()

    try:
        data = get_request_data(request)
        day = parse_date(data.get('date')) or get_clinic_today()
    except ValueError:
        return _bad_request('Invalid request. Send a date as YYYY-MM-DD.')

    try:
        clinic = resolve_clinic(data.get('clinic'))
        snapshot = closures.compute_expected_revenue(day, clinic=clinic, user=request.user)
        already_closed = closures.is_day_closed(day, clinic)
    except BillingError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)

    return JsonResponse({
        'date': day.isoformat(),
        'clinic_id': snapshot.clinic_id,
        'expected_revenue': str(quantize_money(snapshot.amount)),
        'appointment_count': snapshot.appointment_count,
        'already_closed': already_closed,
    })


@login_required
@require_POST
def close_day(request):
    """Record the confirmed revenue of a day"""
    if not _has_reports_permission(request.user):
        return _permission_denied()

    try:
        data = get_request_data(request)
        day = parse_date(data.get('date')) or get_clinic_today()
    except ValueError:
        return _bad_request('Invalid request. Send a date as YYYY-MM-DD.')

    if data.get('confirmed_revenue') in (None, ''):
        return _bad_request('Confirmed revenue is required.')

    try:
        clinic = resolve_clinic(data.get('clinic'))
        closure = closures.close_day(
            day,
            data.get('confirmed_revenue'),
            notes=data.get('notes', ''),
            clinic=clinic,
            user=request.user,
        )
    except BillingError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)

    return JsonResponse({'success': True, 'closure': closure.as_dict()}, status=201)


@login_required
@require_GET
def closure_history(request):
    """Daily closures newest first"""
    if not _has_reports_permission(request.user):
        return _permission_denied()

    try:
        start_date = parse_date(request.GET.get('start'))
        end_date = parse_date(request.GET.get('end'))
        limit = int(request.GET['limit']) if request.GET.get('limit') else None
    except ValueError:
        return _bad_request('Invalid filters. Dates use YYYY-MM-DD and limit must be a number.')

    try:
        clinic = resolve_clinic(request.GET.get('clinic'))
    except BillingError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)

    history = closures.get_daily_closures(start_date, end_date, limit, clinic)
    return JsonResponse({'closures': [closure.as_dict() for closure in history]})
