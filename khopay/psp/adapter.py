"""
Gateway Adapter Base Class and Interface.
Provides a uniform interface over the Vietnamese payment gateways (VNPay, MoMo, ZaloPay).
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl

import httpx

from ..exceptions import ProviderError, ProviderUnavailable, UnsupportedMethod
from ..logging_config import get_logger
from ..timeutil import utcnow

logger = get_logger(__name__)

RawPayload = Union[bytes, str, Mapping[str, Any]]


class PSPProvider(str, Enum):
    """Supported payment gateways."""
    VNPAY = "vnpay"
    MOMO = "momo"
    ZALOPAY = "zalopay"


class OutcomeResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class Disposition(str, Enum):
    """What happened to an inbound callback; drives the provider acknowledgment."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_INTENT = "unknown_intent"
    INVALID_SIGNATURE = "invalid_signature"
    AMOUNT_MISMATCH = "amount_mismatch"
    NO_CHANGE = "no_change"


@dataclass
class RedirectTarget:
    provider_ref: str
    url: Optional[str] = None
    qr_payload: Optional[str] = None
    deeplink: Optional[str] = None


@dataclass
class PaymentOutcome:
    """Normalized result of a provider callback or status query."""
    provider: str
    result: OutcomeResult
    signature_valid: bool
    amount_confirmed: Optional[int] = None
    provider_ref: Optional[str] = None
    intent_id: Optional[str] = None
    provider_txn_id: Optional[str] = None
    reason: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.result == OutcomeResult.SUCCESS


class RefundStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class RefundOutcome:
    """Provider answer to a refund request."""
    provider: str
    status: RefundStatus
    refund_ref: str
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    """
    Base adapter for payment gateways.
    All provider implementations must inherit from this class.
    """

    provider: PSPProvider
    supports_refund = False

    def __init__(self, timeout: float = 15.0, client: Optional[httpx.Client] = None):
        """
        Args:
            timeout: Bound on every outbound provider call, in seconds
            client: Optional preconfigured httpx client (tests inject a mock transport)
        """
        self.timeout = timeout
        self._client = client

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when every credential needed for outbound calls is present."""

    @abstractmethod
    def build_redirect(
        self,
        intent,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> RedirectTarget:
        """
        Build the signed redirect/QR target for an intent.

        Raises:
            AdapterConfigError: credentials missing
            ProviderUnavailable: provider unreachable (no retry is attempted)
            ProviderError: provider rejected the request
        """

    @abstractmethod
    def parse_callback(self, payload: RawPayload) -> PaymentOutcome:
        """
        Parse and verify an inbound callback. Never raises: malformed
        payloads come back as an UNKNOWN outcome with an invalid signature.
        """

    @abstractmethod
    def verify_status(self, provider_ref: str, issued_at: Optional[datetime] = None) -> PaymentOutcome:
        """Signed status query for a provider reference."""

    @abstractmethod
    def acknowledge(self, disposition: Disposition) -> Dict[str, Any]:
        """Provider-required acknowledgment body for a received callback."""

    def refund(self, intent, amount: int, reason: Optional[str] = None,
               refund_ref: Optional[str] = None) -> RefundOutcome:
        """
        Signed refund request against a settled intent. Sent once; a timeout
        surfaces as ProviderUnavailable and the refund stays pending.

        Raises:
            UnsupportedMethod: the provider has no refund API wired up
        """
        raise UnsupportedMethod(f"{self.provider.value} refunds are not supported", method=self.provider.value)

    def provider_ref_for(self, intent) -> str:
        """Merchant reference the provider knows this intent by."""
        return intent.id

    def parse_return(self, params: Mapping[str, Any]) -> PaymentOutcome:
        """Verify the browser return URL parameters (display only, never applied)."""
        return self.parse_callback(params)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _post(self, url: str, json_body: Optional[Dict[str, Any]] = None,
              form: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            if self._client is not None:
                r = self._client.post(url, json=json_body, data=form, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    r = client.post(url, json=json_body, data=form)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("provider_http_error", provider=self.provider.value, status_code=status)
            if status >= 500:
                raise ProviderUnavailable(f"{self.provider.value} returned HTTP {status}") from e
            raise ProviderError(f"{self.provider.value} returned HTTP {status}") from e
        except httpx.HTTPError as e:
            logger.warning("provider_unreachable", provider=self.provider.value, error=str(e))
            raise ProviderUnavailable(f"{self.provider.value} is unreachable") from e
        except ValueError as e:
            raise ProviderError(f"{self.provider.value} returned a malformed response") from e

    def _unknown(self, reason: str, raw: Optional[Dict[str, Any]] = None, **fields) -> PaymentOutcome:
        return PaymentOutcome(
            provider=self.provider.value,
            result=OutcomeResult.UNKNOWN,
            signature_valid=False,
            reason=reason,
            raw=raw or {},
            **fields,
        )

    @staticmethod
    def _as_query_params(payload: RawPayload) -> Optional[Dict[str, str]]:
        if isinstance(payload, Mapping):
            return {str(k): "" if v is None else str(v) for k, v in payload.items()}
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else str(payload)
            return dict(parse_qsl(text.lstrip("?"), keep_blank_values=True))
        except (UnicodeDecodeError, ValueError):
            return None

    @staticmethod
    def _as_json(payload: RawPayload) -> Optional[Dict[str, Any]]:
        if isinstance(payload, Mapping):
            return dict(payload)
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return None

    def __repr__(self):
        return f"<{self.__class__.__name__}(provider={getattr(self, 'provider', 'unknown')})>"
