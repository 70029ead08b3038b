import threading

from django.apps import AppConfig, apps


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "M-Pesa Payments"

    def ready(self):
        from django.core.signals import setting_changed

        self._gateway = None
        self._gateway_lock = threading.Lock()
        setting_changed.connect(self._reset_on_setting_change, dispatch_uid="payments_gateway_reset")

    @property
    def gateway(self):
        # Built on first use so URL reversing happens after the URLconf is importable
        if self._gateway is None:
            from .container import build_gateway

            with self._gateway_lock:
                if self._gateway is None:
                    self._gateway = build_gateway()
        return self._gateway

    def reset_gateway(self):
        self._gateway = None

    def _reset_on_setting_change(self, setting, **kwargs):
        if setting.startswith("MPESA_") or setting == "ROOT_URLCONF":
            self.reset_gateway()


def get_gateway():
    return apps.get_app_config("payments").gateway
