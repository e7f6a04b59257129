"""MoMo PSP Adapter Implementation."""
import hashlib
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from ..exceptions import AdapterConfigError, ProviderError
from ..logging_config import get_logger
from .adapter import (
    Disposition, GatewayAdapter, OutcomeResult, PaymentOutcome, PSPProvider, RawPayload,
    RedirectTarget,
)
from .signature import SignatureScheme, sign, verify

logger = get_logger(__name__)

# Sorted "key=value" pairs, no encoding
MOMO_SCHEME = SignatureScheme(digest=hashlib.sha256, delimiter="&", pairs=True)

REQUEST_TYPE = "captureWallet"

CALLBACK_FIELDS = (
    "amount", "extraData", "message", "orderId", "orderInfo", "orderType", "partnerCode",
    "payType", "requestId", "responseTime", "resultCode", "transId",
)

SUCCESS_CODES = frozenset({0, 9000})
# 1000: awaiting user confirmation, 7000/7002: being processed, 42: order not found (query)
PENDING_CODES = frozenset({1000, 7000, 7002, 42})


def classify_result_code(code: Optional[int]) -> OutcomeResult:
    if code is None:
        return OutcomeResult.UNKNOWN
    if code in SUCCESS_CODES:
        return OutcomeResult.SUCCESS
    if code in PENDING_CODES:
        return OutcomeResult.UNKNOWN
    return OutcomeResult.FAILURE


class MoMoAdapter(GatewayAdapter):
    """MoMo wallet adapter (create order, IPN, query)."""

    provider = PSPProvider.MOMO

    def __init__(
        self,
        partner_code: Optional[str],
        access_key: Optional[str],
        secret_key: Optional[str],
        endpoint: str,
        redirect_url: Optional[str] = None,
        ipn_url: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.partner_code = partner_code
        self.access_key = access_key
        self._secret_key = secret_key
        self.endpoint = endpoint.rstrip("/")
        self.redirect_url = redirect_url
        self.ipn_url = ipn_url

    @property
    def is_configured(self) -> bool:
        return bool(self.partner_code and self.access_key and self._secret_key)

    def _require_credentials(self):
        if not self.is_configured:
            raise AdapterConfigError("MoMo credentials are not configured", provider=self.provider.value)

    def build_redirect(self, intent, return_url=None, client_ip=None, locale=None) -> RedirectTarget:
        self._require_credentials()
        redirect_url = return_url or self.redirect_url
        if not redirect_url or not self.ipn_url:
            raise AdapterConfigError("MoMo redirect/IPN URLs are not configured", provider=self.provider.value)

        provider_ref = self.provider_ref_for(intent)
        signed = {
            "accessKey": self.access_key,
            "amount": str(int(intent.amount)),
            "extraData": "",
            "ipnUrl": self.ipn_url,
            "orderId": provider_ref,
            "orderInfo": f"Thanh toan don hang {intent.order_id}",
            "partnerCode": self.partner_code,
            "redirectUrl": redirect_url,
            "requestId": uuid.uuid4().hex,
            "requestType": REQUEST_TYPE,
        }
        body = {k: v for k, v in signed.items() if k != "accessKey"}
        body["amount"] = int(intent.amount)
        body["lang"] = "en" if locale == "en" else "vi"
        body["signature"] = sign(signed, self._secret_key, MOMO_SCHEME)

        data = self._post(f"{self.endpoint}/v2/gateway/api/create", json_body=body)
        result_code = self._to_int(data.get("resultCode"))
        if result_code != 0:
            logger.warning("momo_create_rejected", intent_id=intent.id, result_code=result_code)
            raise ProviderError(
                data.get("message") or "MoMo rejected the payment request",
                provider=self.provider.value,
                result_code=result_code,
            )

        logger.info("momo_order_created", intent_id=intent.id, order_id=intent.order_id)
        return RedirectTarget(
            provider_ref=provider_ref,
            url=data.get("payUrl"),
            qr_payload=data.get("qrCodeUrl"),
            deeplink=data.get("deeplink"),
        )

    def parse_callback(self, payload: RawPayload) -> PaymentOutcome:
        data = self._as_json(payload)
        if not data or not data.get("orderId"):
            return self._unknown("malformed MoMo callback", raw=data)

        signed = {field: data.get(field, "") for field in CALLBACK_FIELDS}
        signed["accessKey"] = self.access_key or ""
        signature_valid = verify(signed, data.get("signature"), self._secret_key or "", MOMO_SCHEME)

        result_code = self._to_int(data.get("resultCode"))
        trans_id = data.get("transId")
        return PaymentOutcome(
            provider=self.provider.value,
            result=classify_result_code(result_code),
            signature_valid=signature_valid,
            amount_confirmed=self._to_int(data.get("amount")),
            provider_ref=str(data["orderId"]),
            provider_txn_id=str(trans_id) if trans_id not in (None, "") else None,
            reason=f"result_code={result_code} {data.get('message') or ''}".strip(),
            raw={field: data.get(field) for field in CALLBACK_FIELDS},
        )

    def verify_status(self, provider_ref: str, issued_at: Optional[datetime] = None) -> PaymentOutcome:
        self._require_credentials()
        request_id = uuid.uuid4().hex
        signed = {
            "accessKey": self.access_key,
            "orderId": provider_ref,
            "partnerCode": self.partner_code,
            "requestId": request_id,
        }
        body = {
            "partnerCode": self.partner_code,
            "requestId": request_id,
            "orderId": provider_ref,
            "lang": "vi",
            "signature": sign(signed, self._secret_key, MOMO_SCHEME),
        }

        data = self._post(f"{self.endpoint}/v2/gateway/api/query", json_body=body)
        result_code = self._to_int(data.get("resultCode"))
        trans_id = data.get("transId")
        # Response comes straight from the configured endpoint over TLS
        return PaymentOutcome(
            provider=self.provider.value,
            result=classify_result_code(result_code),
            signature_valid=True,
            amount_confirmed=self._to_int(data.get("amount")),
            provider_ref=provider_ref,
            provider_txn_id=str(trans_id) if trans_id not in (None, "", 0) else None,
            reason=f"result_code={result_code} {data.get('message') or ''}".strip(),
            raw={k: data.get(k) for k in ("orderId", "requestId", "amount", "transId", "resultCode", "message")},
        )

    def acknowledge(self, disposition: Disposition) -> Dict[str, Any]:
        if disposition == Disposition.INVALID_SIGNATURE:
            return {"resultCode": 1, "message": "Invalid signature"}
        if disposition == Disposition.UNKNOWN_INTENT:
            return {"resultCode": 1, "message": "Payment not found"}
        return {"resultCode": 0, "message": "Success"}
