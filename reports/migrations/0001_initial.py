# reports/migrations/0001_initial.py
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('core', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='ExpectedRevenueSnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('date', models.DateField()),
                ('amount', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('appointment_count', models.PositiveIntegerField(default=0)),
                ('computed_at', models.DateTimeField(auto_now_add=True)),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='expected_revenue_snapshots', to='core.clinic')),
                ('computed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='expected_revenue_snapshots', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-computed_at', '-pk'],
                'indexes': [
                    models.Index(fields=['date', 'clinic'], name='expected_rev_date_clinic_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DailyClosure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('date', models.DateField()),
                ('expected_revenue', models.DecimalField(decimal_places=2, max_digits=10)),
                ('confirmed_revenue', models.DecimalField(decimal_places=2, max_digits=10)),
                ('notes', models.TextField(blank=True)),
                ('closed_at', models.DateTimeField(auto_now_add=True)),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='daily_closures', to='core.clinic')),
                ('closed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='daily_closures', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-date', '-closed_at'],
                'indexes': [
                    models.Index(fields=['date', 'clinic'], name='closure_date_clinic_idx'),
                ],
            },
        ),
    ]
