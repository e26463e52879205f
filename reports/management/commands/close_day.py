# reports/management/commands/close_day.py
from datetime import datetime

from django.core.management.base import BaseCommand, CommandError

from core.exceptions import BillingError
from core.utils import get_clinic_today, resolve_clinic
from reports import closures


class Command(BaseCommand):
    help = 'Calculate the expected revenue of a day and record its closure with the confirmed amount'

    def add_arguments(self, parser):
        parser.add_argument(
            'confirmed',
            type=str,
            help='Revenue actually counted for the day'
        )
        parser.add_argument(
            '--date',
            type=str,
            help='Day to close (format: YYYY-MM-DD). Default: today'
        )
        parser.add_argument(
            '--clinic',
            type=int,
            help='Clinic id. Default: all clinics'
        )
        parser.add_argument(
            '--notes',
            type=str,
            default='',
            help='Notes stored with the closure'
        )

    def handle(self, *args, **options):
        if options['date']:
            try:
                day = datetime.strptime(options['date'], '%Y-%m-%d').date()
            except ValueError:
                raise CommandError(f"Invalid date format: {options['date']}. Use YYYY-MM-DD")
        else:
            day = get_clinic_today()

        try:
            clinic = resolve_clinic(options['clinic'])
            snapshot = closures.compute_expected_revenue(day, clinic=clinic)
            self.stdout.write(
                f'Expected revenue for {day}: {snapshot.amount:.2f} '
                f'({snapshot.appointment_count} paid appointment(s))'
            )

            if closures.is_day_closed(day, clinic):
                self.stdout.write(self.style.WARNING(f'⚠ {day} already has a closure on record'))

            closure = closures.close_day(day, options['confirmed'], notes=options['notes'], clinic=clinic)
        except BillingError as e:
            raise CommandError(e.message)

        style = self.style.SUCCESS if closure.difference == 0 else self.style.WARNING
        self.stdout.write(style(
            f'✓ Closed {day}: confirmed {closure.confirmed_revenue:.2f}, '
            f'difference {closure.difference:.2f}'
        ))
