# appointments/admin.py
from django.contrib import admin
from django.utils.html import format_html

from .models import Appointment, Payment, PaymentCorrection, Refund


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ['receipt_number', 'amount', 'payment_method', 'payment_status', 'sessions_paid', 'created_at']
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ['client_name', 'start', 'title', 'status', 'amount', 'amount_paid',
                    'payment_status_display', 'package_display', 'clinic']
    list_filter = ['status', 'payment_status', 'title', 'is_package', 'clinic', 'start']
    search_fields = ['client_name', 'client__first_name', 'client__last_name', 'notes']
    date_hierarchy = 'start'
    inlines = [PaymentInline]

    # Payment state is owned by the payment engine
    readonly_fields = ['payment_status', 'amount_paid', 'sessions_paid', 'last_payment_update',
                       'version', 'created_at', 'updated_at']

    fieldsets = (
        ('Appointment Details', {
            'fields': ('client', 'client_name', 'clinic', 'title', 'start', 'end', 'status', 'notes')
        }),
        ('Billing', {
            'fields': ('amount', 'is_package', 'package_sessions')
        }),
        ('Payment State', {
            'fields': ('payment_status', 'amount_paid', 'sessions_paid', 'last_payment_update', 'version')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ['collapse']
        }),
    )

    def payment_status_display(self, obj):
        colors = {
            Appointment.PAYMENT_PAID: 'green',
            Appointment.PAYMENT_PARTIAL: 'orange',
            Appointment.PAYMENT_UNPAID: 'red',
        }
        return format_html('<span style="color: {};">{}</span>',
                           colors.get(obj.payment_status, 'black'), obj.get_payment_status_display())
    payment_status_display.short_description = 'Payment'

    def package_display(self, obj):
        if not obj.is_package:
            return '-'
        return f"{obj.sessions_paid}/{obj.package_sessions}"
    package_display.short_description = 'Sessions'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('client', 'clinic')


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    fields = ['amount', 'reason', 'reversed_appointment', 'refunded_at', 'created_by']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """Read-only view of the ledger; refunds and corrections go through the payment engine"""
    list_display = ['receipt_number', 'client_name', 'appointment', 'amount', 'payment_method',
                    'payment_status', 'is_prepayment', 'session_date', 'created_by']
    list_filter = ['payment_method', 'payment_status', 'is_package', 'is_prepayment', 'clinic', 'session_date']
    search_fields = ['receipt_number', 'client_name', 'client__first_name', 'client__last_name']
    date_hierarchy = 'session_date'
    inlines = [RefundInline]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('appointment', 'client', 'created_by')


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ['payment', 'amount', 'status', 'reversed_appointment', 'refunded_at', 'created_by']
    list_filter = ['status', 'reversed_appointment', 'refunded_at']
    search_fields = ['payment__receipt_number', 'reason']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentCorrection)
class PaymentCorrectionAdmin(admin.ModelAdmin):
    list_display = ['payment', 'previous_amount', 'new_amount', 'previous_status', 'new_status',
                    'corrected_at', 'corrected_by']
    list_filter = ['new_status', 'corrected_at']
    search_fields = ['payment__receipt_number', 'reason']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


# Custom admin site configuration
admin.site.site_header = "Clinic Scheduler Administration"
admin.site.site_title = "Clinic Scheduler Admin"
