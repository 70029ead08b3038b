from django.urls import path
from . import views

urlpatterns = [
    path('mpesa/webhook/', views.mpesa_webhook, name='mpesa_webhook'),
    path('mpesa/initiate/', views.mpesa_initiate, name='mpesa_initiate'),
    path('<int:order_id>/status/', views.payment_status, name='payment_status'),
]
