from django.contrib import admin
from .models import Order, OrderNote, PendingPayment


class OrderNoteInline(admin.TabularInline):
    model = OrderNote
    extra = 0
    readonly_fields = ('note', 'created_at')


class PendingPaymentInline(admin.TabularInline):
    model = PendingPayment
    extra = 0
    fields = ('merchant_request_id', 'phone_number', 'amount', 'status', 'transaction_id', 'result_code')
    readonly_fields = fields


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('id', 'total', 'currency', 'status', 'transaction_id', 'paid_at', 'created_at')
    list_filter = ('status', 'currency')
    search_fields = ('id', 'transaction_id', 'billing_phone')
    inlines = [PendingPaymentInline, OrderNoteInline]


@admin.register(PendingPayment)
class PendingPaymentAdmin(admin.ModelAdmin):
    list_display = ('merchant_request_id', 'order', 'phone_number', 'amount', 'status', 'transaction_id', 'created_at')
    search_fields = ('merchant_request_id', 'checkout_request_id', 'transaction_id', 'phone_number')
    list_filter = ('status',)
