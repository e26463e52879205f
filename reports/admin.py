# reports/admin.py
from django.contrib import admin
from django.utils.html import format_html

from .models import DailyClosure, ExpectedRevenueSnapshot


@admin.register(DailyClosure)
class DailyClosureAdmin(admin.ModelAdmin):
    list_display = ['date', 'clinic', 'expected_revenue', 'confirmed_revenue', 'difference_display',
                    'closed_by', 'closed_at']
    list_filter = ['clinic', 'date']
    search_fields = ['notes']
    date_hierarchy = 'date'

    def difference_display(self, obj):
        difference = obj.difference
        if difference == 0:
            return format_html('<span style="color: green;">{}</span>', f"{difference:,.2f}")
        return format_html('<span style="color: red;">{}</span>', f"{difference:,.2f}")
    difference_display.short_description = 'Difference'

    # Closures are recorded through the close-day workflow only
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ExpectedRevenueSnapshot)
class ExpectedRevenueSnapshotAdmin(admin.ModelAdmin):
    list_display = ['date', 'clinic', 'amount', 'appointment_count', 'computed_by', 'computed_at']
    list_filter = ['clinic', 'date']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
