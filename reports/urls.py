# reports/urls.py
from django.urls import path
from . import views

app_name = 'reports'

urlpatterns = [
    path('revenue/', views.revenue_summary, name='revenue_summary'),
    path('closures/', views.closure_history, name='closure_history'),
    path('closures/expected/', views.compute_expected, name='compute_expected'),
    path('closures/close/', views.close_day, name='close_day'),
]
