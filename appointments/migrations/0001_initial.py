# appointments/migrations/0001_initial.py
import django.core.validators
import django.db.models.deletion
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


PAYMENT_STATUS_CHOICES = [('unpaid', 'Unpaid'), ('partial', 'Partially Paid'), ('paid', 'Paid')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('core', '0001_initial'),
        ('clients', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Appointment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('client_name', models.CharField(blank=True, help_text='Denormalized client name at booking time', max_length=200)),
                ('title', models.CharField(choices=[('nutrition', 'Nutrition'), ('mental', 'Mental'), ('both', 'Both')], default='nutrition', max_length=20)),
                ('start', models.DateTimeField()),
                ('end', models.DateTimeField()),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('done', 'Done'), ('missed', 'Missed'), ('postponed', 'Postponed')], default='scheduled', max_length=20)),
                ('notes', models.TextField(blank=True)),
                ('amount', models.DecimalField(decimal_places=2, default=0, help_text='Total price for this appointment or package', max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('payment_status', models.CharField(choices=PAYMENT_STATUS_CHOICES, default='unpaid', max_length=10)),
                ('amount_paid', models.DecimalField(decimal_places=2, default=0, help_text='Total amount collected so far', max_digits=10)),
                ('is_package', models.BooleanField(default=False)),
                ('package_sessions', models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)])),
                ('sessions_paid', models.PositiveIntegerField(default=0)),
                ('last_payment_update', models.DateTimeField(blank=True, null=True)),
                ('version', models.PositiveIntegerField(default=0, editable=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('client', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='clients.client')),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='core.clinic')),
            ],
            options={
                'ordering': ['-start'],
                'indexes': [
                    models.Index(fields=['start'], name='appt_start_idx'),
                    models.Index(fields=['client'], name='appt_client_idx'),
                    models.Index(fields=['clinic', 'start'], name='appt_clinic_start_idx'),
                    models.Index(fields=['payment_status'], name='appt_payment_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('client_name', models.CharField(blank=True, max_length=200)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))])),
                ('payment_method', models.CharField(choices=[('cash', 'Cash'), ('card', 'Card'), ('bank_transfer', 'Bank Transfer'), ('other', 'Other')], default='cash', max_length=20)),
                ('payment_status', models.CharField(choices=PAYMENT_STATUS_CHOICES, default='paid', help_text='Appointment payment status after this transaction', max_length=10)),
                ('session_date', models.DateTimeField(help_text='Start of the session this payment applies to')),
                ('is_package', models.BooleanField(default=False)),
                ('package_sessions', models.PositiveIntegerField(default=1)),
                ('sessions_paid', models.PositiveIntegerField(default=0)),
                ('is_prepayment', models.BooleanField(default=False, help_text='Whole package paid in one transaction')),
                ('receipt_number', models.CharField(blank=True, max_length=50, unique=True)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('appointment', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='appointments.appointment')),
                ('client', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='clients.client')),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='core.clinic')),
                ('created_by', models.ForeignKey(blank=True, help_text='Staff member who collected this payment', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='collected_payments', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['appointment'], name='payment_appointment_idx'),
                    models.Index(fields=['client'], name='payment_client_idx'),
                    models.Index(fields=['clinic', 'session_date'], name='payment_clinic_session_idx'),
                    models.Index(fields=['session_date'], name='payment_session_date_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Refund',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))])),
                ('reason', models.TextField()),
                ('status', models.CharField(choices=[('completed', 'Completed')], default='completed', max_length=20)),
                ('reversed_appointment', models.BooleanField(default=False, help_text='Whether the appointment payment state was reversed by this refund')),
                ('refunded_at', models.DateTimeField(auto_now_add=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='processed_refunds', to=settings.AUTH_USER_MODEL)),
                ('payment', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='refunds', to='appointments.payment')),
            ],
            options={
                'ordering': ['-refunded_at'],
                'indexes': [
                    models.Index(fields=['payment'], name='refund_payment_idx'),
                    models.Index(fields=['refunded_at'], name='refund_date_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PaymentCorrection',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('previous_amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('new_amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('previous_status', models.CharField(choices=PAYMENT_STATUS_CHOICES, max_length=10)),
                ('new_status', models.CharField(choices=PAYMENT_STATUS_CHOICES, max_length=10)),
                ('reason', models.TextField()),
                ('corrected_at', models.DateTimeField(auto_now_add=True)),
                ('corrected_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payment_corrections', to=settings.AUTH_USER_MODEL)),
                ('payment', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='corrections', to='appointments.payment')),
            ],
            options={
                'ordering': ['-corrected_at'],
            },
        ),
    ]
