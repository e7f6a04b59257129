"""PSP Adapter Dispatcher - Routes a payment method to its gateway adapter."""
from typing import Dict, Optional

from pydantic import SecretStr

from ..config import settings
from ..exceptions import UnsupportedMethod
from .adapter import GatewayAdapter, PSPProvider
from .momo_adapter import MoMoAdapter
from .vnpay_adapter import VNPayAdapter
from .zalopay_adapter import ZaloPayAdapter


def _secret(value: Optional[SecretStr]) -> Optional[str]:
    return value.get_secret_value() if value is not None else None


class PSPDispatcher:
    """
    Dispatcher that selects and initializes the correct gateway adapter.
    Loads credentials from settings. Adapters are built even when credentials
    are missing; outbound calls then raise AdapterConfigError.
    """

    _adapters: Dict[str, GatewayAdapter] = {}

    @classmethod
    def get_adapter(cls, method: str) -> GatewayAdapter:
        """
        Get the gateway adapter for a payment method.

        Raises:
            UnsupportedMethod: offline methods (cash, card, bank_transfer) or unknown names
        """
        method = (method or "").lower()

        if method in cls._adapters:
            return cls._adapters[method]

        timeout = settings.PROVIDER_TIMEOUT_SECONDS

        if method == PSPProvider.VNPAY:
            adapter = VNPayAdapter(
                tmn_code=settings.VNPAY_TMN_CODE,
                hash_secret=_secret(settings.VNPAY_HASH_SECRET),
                payment_url=settings.VNPAY_PAYMENT_URL,
                api_url=settings.VNPAY_API_URL,
                return_url=settings.VNPAY_RETURN_URL or settings.return_url("vnpay"),
                timeout=timeout,
            )

        elif method == PSPProvider.MOMO:
            adapter = MoMoAdapter(
                partner_code=settings.MOMO_PARTNER_CODE,
                access_key=settings.MOMO_ACCESS_KEY,
                secret_key=_secret(settings.MOMO_SECRET_KEY),
                endpoint=settings.MOMO_ENDPOINT,
                redirect_url=settings.MOMO_REDIRECT_URL or settings.return_url("momo"),
                ipn_url=settings.MOMO_IPN_URL or settings.callback_url("momo"),
                timeout=timeout,
            )

        elif method == PSPProvider.ZALOPAY:
            adapter = ZaloPayAdapter(
                app_id=settings.ZALOPAY_APP_ID,
                key1=_secret(settings.ZALOPAY_KEY1),
                key2=_secret(settings.ZALOPAY_KEY2),
                endpoint=settings.ZALOPAY_ENDPOINT,
                callback_url=settings.ZALOPAY_CALLBACK_URL or settings.callback_url("zalopay"),
                redirect_url=settings.ZALOPAY_REDIRECT_URL or settings.return_url("zalopay"),
                timeout=timeout,
            )

        else:
            raise UnsupportedMethod(f"No gateway adapter for payment method '{method}'", method=method)

        cls._adapters[method] = adapter
        return adapter

    @classmethod
    def register_adapter(cls, method: str, adapter: GatewayAdapter):
        """Install a prebuilt adapter (tests use this to inject mock transports)."""
        cls._adapters[method.lower()] = adapter

    @classmethod
    def clear_cache(cls):
        """Clear cached adapters (useful for testing)."""
        cls._adapters = {}

    @classmethod
    def status(cls) -> Dict[str, bool]:
        """Configured flag per gateway, for the operator status endpoint."""
        return {p.value: cls.get_adapter(p.value).is_configured for p in PSPProvider}


def get_adapter(method: str) -> GatewayAdapter:
    return PSPDispatcher.get_adapter(method)
