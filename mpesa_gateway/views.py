from django.http import JsonResponse

def index(request):
    return JsonResponse({
        "message": "M-Pesa Payments API",
        "endpoints": {
            "admin": "/admin/",
            "mpesa_initiate": "/payments/mpesa/initiate/",
            "mpesa_webhook": "/payments/mpesa/webhook/?action=<reconcile|confirm|validate|reversal_result|reversal_timeout>",
            "payment_status": "/payments/<order_id>/status/",
        }
    })
