"""VNPay PSP Adapter Implementation."""
import hashlib
import uuid
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote_plus

import httpx

from ..exceptions import AdapterConfigError, ProviderError
from ..logging_config import get_logger
from ..timeutil import utcnow, vn_timestamp
from .adapter import (
    Disposition, GatewayAdapter, OutcomeResult, PaymentOutcome, PSPProvider, RawPayload,
    RedirectTarget, RefundOutcome, RefundStatus,
)
from .signature import SignatureScheme, canonicalize, sign, verify

logger = get_logger(__name__)

VNP_VERSION = "2.1.0"

# Payment URL and IPN: sorted keys, url-encoded values
PAYMENT_SCHEME = SignatureScheme(digest=hashlib.sha512, delimiter="&", pairs=True, quote=quote_plus)

QUERY_REQUEST_SCHEME = SignatureScheme.ordered(
    (
        "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
        "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
    ),
    digest=hashlib.sha512,
)

QUERY_RESPONSE_SCHEME = SignatureScheme.ordered(
    (
        "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode",
        "vnp_TxnRef", "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo",
        "vnp_TransactionType", "vnp_TransactionStatus", "vnp_OrderInfo", "vnp_PromotionCode",
        "vnp_PromotionAmount",
    ),
    digest=hashlib.sha512,
)

REFUND_REQUEST_SCHEME = SignatureScheme.ordered(
    (
        "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TransactionType",
        "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo", "vnp_TransactionDate", "vnp_CreateBy",
        "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
    ),
    digest=hashlib.sha512,
)

REFUND_RESPONSE_SCHEME = SignatureScheme.ordered(
    (
        "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode",
        "vnp_TxnRef", "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo",
        "vnp_TransactionType", "vnp_TransactionStatus", "vnp_OrderInfo",
    ),
    digest=hashlib.sha512,
)

# vnp_TransactionType for refunds
REFUND_FULL = "02"
REFUND_PARTIAL = "03"

# refund accepted, or a refund for this transaction is already being processed
REFUND_OK = "00"
REFUND_IN_PROGRESS = "94"

HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# querydr response codes
QUERY_OK = "00"
QUERY_TXN_NOT_FOUND = "91"

# vnp_TransactionStatus values
TXN_SUCCESS = "00"
TXN_PENDING = "01"
TXN_FAILED = "02"

ACKNOWLEDGMENTS = {
    Disposition.APPLIED: ("00", "Confirm Success"),
    Disposition.NO_CHANGE: ("00", "Confirm Success"),
    Disposition.DUPLICATE: ("02", "Order already confirmed"),
    Disposition.UNKNOWN_INTENT: ("01", "Order not found"),
    Disposition.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    Disposition.INVALID_SIGNATURE: ("97", "Invalid signature"),
}


class VNPayAdapter(GatewayAdapter):
    """VNPay payment gateway adapter (redirect URL signed locally, IPN, querydr)."""

    provider = PSPProvider.VNPAY
    supports_refund = True

    def __init__(
        self,
        tmn_code: Optional[str],
        hash_secret: Optional[str],
        payment_url: str,
        api_url: str,
        return_url: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.tmn_code = tmn_code
        self._hash_secret = hash_secret
        self.payment_url = payment_url
        self.api_url = api_url
        self.return_url = return_url

    @property
    def is_configured(self) -> bool:
        return bool(self.tmn_code and self._hash_secret)

    def _require_credentials(self):
        if not self.is_configured:
            raise AdapterConfigError("VNPay credentials are not configured", provider=self.provider.value)

    def build_redirect(self, intent, return_url=None, client_ip=None, locale=None) -> RedirectTarget:
        self._require_credentials()
        return_url = return_url or self.return_url
        if not return_url:
            raise AdapterConfigError("VNPay return URL is not configured", provider=self.provider.value)

        provider_ref = self.provider_ref_for(intent)
        params = {
            "vnp_Version": VNP_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(int(intent.amount) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": provider_ref,
            "vnp_OrderInfo": f"Thanh toan don hang {intent.order_id}",
            "vnp_OrderType": "other",
            "vnp_Locale": locale or "vn",
            "vnp_ReturnUrl": return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": vn_timestamp(intent.created_at),
            "vnp_ExpireDate": vn_timestamp(intent.expires_at),
        }

        secure_hash = sign(params, self._hash_secret, PAYMENT_SCHEME)
        url = f"{self.payment_url}?{canonicalize(params, PAYMENT_SCHEME)}&vnp_SecureHash={secure_hash}"

        logger.info("vnpay_redirect_built", intent_id=intent.id, order_id=intent.order_id)
        return RedirectTarget(url=url, provider_ref=provider_ref)

    def parse_callback(self, payload: RawPayload) -> PaymentOutcome:
        params = self._as_query_params(payload)
        if not params or not params.get("vnp_TxnRef"):
            return self._unknown("malformed VNPay callback", raw=params)

        signed = {
            k: v for k, v in params.items()
            if k.startswith("vnp_") and k not in HASH_FIELDS
        }
        signature_valid = verify(signed, params.get("vnp_SecureHash"), self._hash_secret or "", PAYMENT_SCHEME)

        response_code = params.get("vnp_ResponseCode")
        txn_status = params.get("vnp_TransactionStatus")
        if response_code == "00" and txn_status == TXN_SUCCESS:
            result = OutcomeResult.SUCCESS
        elif response_code == "00" and txn_status in (None, "", TXN_PENDING):
            result = OutcomeResult.UNKNOWN
        else:
            result = OutcomeResult.FAILURE

        raw_amount = self._to_int(params.get("vnp_Amount"))
        return PaymentOutcome(
            provider=self.provider.value,
            result=result,
            signature_valid=signature_valid,
            amount_confirmed=raw_amount // 100 if raw_amount is not None else None,
            provider_ref=params["vnp_TxnRef"],
            provider_txn_id=params.get("vnp_TransactionNo") or None,
            reason=f"response_code={response_code} transaction_status={txn_status}",
            raw=signed,
        )

    def verify_status(self, provider_ref: str, issued_at: Optional[datetime] = None) -> PaymentOutcome:
        self._require_credentials()
        now = utcnow()
        params = {
            "vnp_RequestId": uuid.uuid4().hex,
            "vnp_Version": VNP_VERSION,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TxnRef": provider_ref,
            "vnp_OrderInfo": f"Truy van giao dich {provider_ref}",
            "vnp_TransactionDate": vn_timestamp(issued_at or now),
            "vnp_CreateDate": vn_timestamp(now),
            "vnp_IpAddr": "127.0.0.1",
        }
        params["vnp_SecureHash"] = sign(params, self._hash_secret, QUERY_REQUEST_SCHEME)

        data = self._post(self.api_url, json_body=params)
        return self._outcome_from_query(provider_ref, data)

    def _outcome_from_query(self, provider_ref: str, data: Mapping[str, Any]) -> PaymentOutcome:
        data = {k: "" if v is None else str(v) for k, v in data.items()}
        response_code = data.get("vnp_ResponseCode")
        txn_status = data.get("vnp_TransactionStatus")

        if response_code == QUERY_TXN_NOT_FOUND:
            # the customer never reached VNPay; nothing to apply yet
            return PaymentOutcome(
                provider=self.provider.value,
                result=OutcomeResult.UNKNOWN,
                signature_valid=True,
                provider_ref=provider_ref,
                reason="transaction not found",
                raw=data,
            )

        signature_valid = verify(data, data.get("vnp_SecureHash"), self._hash_secret, QUERY_RESPONSE_SCHEME)

        if response_code != QUERY_OK:
            result = OutcomeResult.UNKNOWN
        elif txn_status == TXN_SUCCESS:
            result = OutcomeResult.SUCCESS
        elif txn_status == TXN_FAILED:
            result = OutcomeResult.FAILURE
        else:
            result = OutcomeResult.UNKNOWN

        raw_amount = self._to_int(data.get("vnp_Amount"))
        return PaymentOutcome(
            provider=self.provider.value,
            result=result,
            signature_valid=signature_valid,
            amount_confirmed=raw_amount // 100 if raw_amount is not None else None,
            provider_ref=data.get("vnp_TxnRef") or provider_ref,
            provider_txn_id=data.get("vnp_TransactionNo") or None,
            reason=f"response_code={response_code} transaction_status={txn_status}",
            raw={k: v for k, v in data.items() if k not in HASH_FIELDS},
        )

    def refund(self, intent, amount, reason=None, refund_ref=None) -> RefundOutcome:
        self._require_credentials()
        if not intent.provider_txn_id:
            raise ProviderError("VNPay refunds need the settled transaction number", intent_id=intent.id)

        now = utcnow()
        refund_ref = refund_ref or uuid.uuid4().hex
        params = {
            "vnp_RequestId": refund_ref,
            "vnp_Version": VNP_VERSION,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TransactionType": REFUND_FULL if int(amount) == int(intent.amount) else REFUND_PARTIAL,
            "vnp_TxnRef": intent.provider_ref or self.provider_ref_for(intent),
            "vnp_Amount": str(int(amount) * 100),
            "vnp_TransactionNo": intent.provider_txn_id,
            "vnp_TransactionDate": vn_timestamp(intent.created_at),
            "vnp_CreateBy": "khoaugment-pay",
            "vnp_CreateDate": vn_timestamp(now),
            "vnp_IpAddr": "127.0.0.1",
            "vnp_OrderInfo": reason or f"Hoan tien don hang {intent.order_id}",
        }
        params["vnp_SecureHash"] = sign(params, self._hash_secret, REFUND_REQUEST_SCHEME)

        data = self._post(self.api_url, json_body=params)
        data = {k: "" if v is None else str(v) for k, v in data.items()}
        response_code = data.get("vnp_ResponseCode")

        if not verify(data, data.get("vnp_SecureHash"), self._hash_secret, REFUND_RESPONSE_SCHEME):
            # an unsigned answer proves nothing either way
            status = RefundStatus.PENDING
            response_code = f"{response_code} (unsigned)"
        elif response_code == REFUND_OK:
            status = RefundStatus.SUCCEEDED
        elif response_code == REFUND_IN_PROGRESS:
            status = RefundStatus.PENDING
        else:
            status = RefundStatus.FAILED

        logger.info("vnpay_refund_requested", intent_id=intent.id, refund_ref=refund_ref,
                    status=status.value, response_code=response_code)
        return RefundOutcome(
            provider=self.provider.value,
            status=status,
            refund_ref=refund_ref,
            provider_refund_id=data.get("vnp_TransactionNo") or None,
            reason=f"response_code={response_code} message={data.get('vnp_Message')}",
            raw={k: v for k, v in data.items() if k not in HASH_FIELDS},
        )

    def acknowledge(self, disposition: Disposition) -> Dict[str, Any]:
        code, message = ACKNOWLEDGMENTS.get(disposition, ("99", "Unknown error"))
        return {"RspCode": code, "Message": message}
