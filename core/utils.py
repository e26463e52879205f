"""
Timezone, money and request helpers shared across the application.
"""
import json
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone

CENT = Decimal('0.01')


def get_clinic_today():
    """
    Get today's date in the clinic timezone.

    Returns:
        date: Today's date in the clinic timezone
    """
    return timezone.localtime(timezone.now()).date()


def get_day_bounds(day):
    """
    Aware datetimes for the start of ``day`` and the start of the next day
    in the clinic timezone. Use as ``start <= value < end``.
    """
    start = timezone.make_aware(datetime.combine(day, time.min))
    end = timezone.make_aware(datetime.combine(day + timedelta(days=1), time.min))
    return start, end


def to_decimal(value):
    """Coerce ints, floats and numeric strings to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value):
    """Round a Decimal to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def get_request_data(request):
    """
    Request payload as a dict: the JSON body when the client sent JSON,
    otherwise the form-encoded POST data. Raises ValueError on malformed JSON.
    """
    if request.content_type == 'application/json':
        if not request.body:
            return {}
        data = json.loads(request.body)
        if not isinstance(data, dict):
            raise ValueError('Expected a JSON object')
        return data
    return request.POST.dict()


def parse_date(value):
    """YYYY-MM-DD string to date; None for blank input. Raises ValueError otherwise."""
    if not value:
        return None
    if isinstance(value, date):
        return value
    return datetime.strptime(value, '%Y-%m-%d').date()


def resolve_clinic(clinic_id):
    """Clinic for an optional id from a request; None means every clinic"""
    from .exceptions import NotFound
    from .models import Clinic

    if clinic_id in (None, ''):
        return None
    try:
        return Clinic.objects.get(pk=clinic_id)
    except (Clinic.DoesNotExist, ValueError, TypeError):
        raise NotFound(f'Clinic {clinic_id} does not exist.', clinic_id=clinic_id)
