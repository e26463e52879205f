# appointments/urls.py
from django.urls import path
from . import payment_views

app_name = 'appointments'

urlpatterns = [
    # Payment URLs
    path('<int:pk>/collect-payment/', payment_views.collect_payment, name='collect_payment'),
    path('<int:pk>/payments/', payment_views.appointment_payments, name='appointment_payments'),
    path('payments/<int:payment_pk>/refund/', payment_views.refund_payment, name='refund_payment'),
    path('payments/<int:payment_pk>/correct/', payment_views.correct_payment, name='correct_payment'),
]
