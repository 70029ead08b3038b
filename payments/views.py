import json
import logging

from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .apps import get_gateway
from .models import Order

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'HTTP_X_MPESA_SIGNATURE'

WEBHOOK_ACTIONS = {
    'reconcile': 'handle_reconciliation',
    'confirm': 'handle_c2b_confirmation',
    'validate': 'handle_c2b_validation',
    'reversal_result': 'handle_reversal_result',
    'reversal_timeout': 'handle_reversal_timeout',
}


def _read_json(request):
    if request.content_type == 'application/json' or request.body[:1] in (b'{', b'['):
        return json.loads(request.body.decode('utf-8'))
    return request.POST.dict()


@csrf_exempt
@require_POST
def mpesa_webhook(request):
    gateway = get_gateway()
    handler_name = WEBHOOK_ACTIONS.get(request.GET.get('action', ''))
    if handler_name is None:
        return JsonResponse({'error': 'Invalid action'}, status=400)

    try:
        payload = json.loads(request.body.decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        logger.warning("Webhook %s received a non-JSON body", request.GET.get('action'))
        return JsonResponse({'ResultCode': 1, 'ResultDesc': 'Invalid JSON'}, status=400)

    if gateway.config.require_signature:
        signature = request.META.get(SIGNATURE_HEADER, '')
        if not gateway.client.validate_callback(payload, signature):
            logger.warning("Rejected webhook %s with invalid signature", request.GET.get('action'))
            return JsonResponse({'ResultCode': 1, 'ResultDesc': 'Invalid signature'}, status=401)

    ack = getattr(gateway.processor, handler_name)(payload)
    return JsonResponse(ack.as_dict(), status=ack.http_status)


@csrf_exempt
@require_POST
def mpesa_initiate(request):
    try:
        data = _read_json(request)
    except (UnicodeDecodeError, ValueError):
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    if not isinstance(data, dict):
        return JsonResponse({'error': 'Invalid JSON'}, status=400)

    order_id = data.get('order_id')
    phone = data.get('phone') or ''
    if not order_id:
        return JsonResponse({'error': 'order_id and phone are required'}, status=400)

    order = Order.objects.filter(pk=order_id).first() if str(order_id).isdigit() else None
    if order is None:
        return JsonResponse({'error': 'Invalid order.'}, status=404)
    if order.is_paid:
        return JsonResponse({'error': 'Order is already paid.'}, status=409)

    result = get_gateway().checkout.initiate(order, str(phone))
    body = {
        'accepted': result.accepted,
        'message': result.message,
        'order_id': order.pk,
    }
    if result.payment is not None:
        body.update({
            'merchant_request_id': result.payment.merchant_request_id,
            'checkout_request_id': result.payment.checkout_request_id,
        })
    return JsonResponse(body, status=200 if result.accepted else 402)


@require_GET
def payment_status(request, order_id):
    order = get_object_or_404(Order, pk=order_id)
    payment = order.mpesa_payments.order_by('-created_at').first()
    return JsonResponse({
        'order_id': order.pk,
        'status': order.status,
        'total': str(order.total),
        'currency': order.currency,
        'transaction_id': order.transaction_id,
        'paid': order.is_paid,
        'payment': None if payment is None else {
            'merchant_request_id': payment.merchant_request_id,
            'checkout_request_id': payment.checkout_request_id,
            'status': payment.status,
            'amount': str(payment.amount),
            'result_code': payment.result_code,
            'result_desc': payment.result_desc,
        },
    })
