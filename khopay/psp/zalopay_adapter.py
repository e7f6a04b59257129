"""ZaloPay PSP Adapter Implementation."""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from ..exceptions import AdapterConfigError, ProviderError
from ..logging_config import get_logger
from ..timeutil import as_utc, utcnow, vn_timestamp
from .adapter import (
    Disposition, GatewayAdapter, OutcomeResult, PaymentOutcome, PSPProvider, RawPayload,
    RedirectTarget, RefundOutcome, RefundStatus,
)
from .signature import SignatureScheme, sign, verify

logger = get_logger(__name__)

# mac(key1)
CREATE_SCHEME = SignatureScheme.ordered(
    ("app_id", "app_trans_id", "app_user", "amount", "app_time", "embed_data", "item")
)
QUERY_SCHEME = SignatureScheme.ordered(("app_id", "app_trans_id", "key1"))
REFUND_SCHEME = SignatureScheme.ordered(("app_id", "zp_trans_id", "amount", "description", "timestamp"))

# mac(key2)
CALLBACK_SCHEME = SignatureScheme.ordered(("data",))
REDIRECT_SCHEME = SignatureScheme.ordered(
    ("appid", "apptransid", "pmcid", "bankcode", "amount", "discountamount", "status")
)

APP_USER = "khoaugment_pos"
MIN_EXPIRE_SECONDS = 300

QUERY_RESULTS = {
    1: OutcomeResult.SUCCESS,
    2: OutcomeResult.FAILURE,
    3: OutcomeResult.UNKNOWN,
}

REFUND_RESULTS = {
    1: RefundStatus.SUCCEEDED,
    2: RefundStatus.FAILED,
    3: RefundStatus.PENDING,
}


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class ZaloPayAdapter(GatewayAdapter):
    """ZaloPay adapter (create order, callback, redirect checksum, query)."""

    provider = PSPProvider.ZALOPAY
    supports_refund = True

    def __init__(
        self,
        app_id: Optional[str],
        key1: Optional[str],
        key2: Optional[str],
        endpoint: str,
        callback_url: Optional[str] = None,
        redirect_url: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.app_id = app_id
        self._key1 = key1
        self._key2 = key2
        self.endpoint = endpoint.rstrip("/")
        self.callback_url = callback_url
        self.redirect_url = redirect_url

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self._key1 and self._key2)

    def _require_credentials(self):
        if not self.is_configured:
            raise AdapterConfigError("ZaloPay credentials are not configured", provider=self.provider.value)

    def provider_ref_for(self, intent) -> str:
        """ZaloPay requires a yymmdd (GMT+7) prefix on the merchant transaction id."""
        return f"{vn_timestamp(intent.created_at, '%y%m%d')}_{intent.id}"

    def build_redirect(self, intent, return_url=None, client_ip=None, locale=None) -> RedirectTarget:
        self._require_credentials()
        if not self.callback_url:
            raise AdapterConfigError("ZaloPay callback URL is not configured", provider=self.provider.value)

        app_trans_id = self.provider_ref_for(intent)
        redirect_url = return_url or self.redirect_url
        embed_data = {"redirecturl": redirect_url} if redirect_url else {}
        item = [{
            "itemid": intent.order_id,
            "itemname": f"Don hang {intent.order_id}",
            "itemprice": int(intent.amount),
            "itemquantity": 1,
        }]
        expire_seconds = int((as_utc(intent.expires_at) - utcnow()).total_seconds())

        order = {
            "app_id": self.app_id,
            "app_trans_id": app_trans_id,
            "app_user": APP_USER,
            "app_time": str(int(utcnow().timestamp() * 1000)),
            "amount": str(int(intent.amount)),
            "item": _compact_json(item),
            "embed_data": _compact_json(embed_data),
            "description": f"KhoAugment - Thanh toan don hang #{intent.order_id}",
            "bank_code": "",
            "callback_url": self.callback_url,
            "expire_duration_seconds": str(max(expire_seconds, MIN_EXPIRE_SECONDS)),
        }
        order["mac"] = sign(order, self._key1, CREATE_SCHEME)

        data = self._post(f"{self.endpoint}/v2/create", form=order)
        return_code = self._to_int(data.get("return_code"))
        if return_code != 1:
            logger.warning(
                "zalopay_create_rejected",
                intent_id=intent.id,
                return_code=return_code,
                sub_return_code=data.get("sub_return_code"),
            )
            raise ProviderError(
                data.get("return_message") or "ZaloPay rejected the payment request",
                provider=self.provider.value,
                return_code=return_code,
            )

        logger.info("zalopay_order_created", intent_id=intent.id, order_id=intent.order_id)
        return RedirectTarget(
            provider_ref=app_trans_id,
            url=data.get("order_url"),
            qr_payload=data.get("qr_code"),
        )

    def parse_callback(self, payload: RawPayload) -> PaymentOutcome:
        envelope = self._as_json(payload)
        if not envelope or not isinstance(envelope.get("data"), str):
            return self._unknown("malformed ZaloPay callback", raw=envelope)

        signature_valid = verify(
            {"data": envelope["data"]}, envelope.get("mac"), self._key2 or "", CALLBACK_SCHEME
        )
        try:
            data = json.loads(envelope["data"])
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("app_trans_id"):
            return self._unknown("malformed ZaloPay callback data", raw={"data": envelope["data"]})

        zp_trans_id = data.get("zp_trans_id")
        # ZaloPay only calls back for successfully paid orders
        return PaymentOutcome(
            provider=self.provider.value,
            result=OutcomeResult.SUCCESS,
            signature_valid=signature_valid,
            amount_confirmed=self._to_int(data.get("amount")),
            provider_ref=str(data["app_trans_id"]),
            provider_txn_id=str(zp_trans_id) if zp_trans_id not in (None, "") else None,
            reason=f"callback type={envelope.get('type')}",
            raw=data,
        )

    def parse_return(self, params: Mapping[str, Any]) -> PaymentOutcome:
        params = self._as_query_params(params)
        if not params or not params.get("apptransid"):
            return self._unknown("malformed ZaloPay redirect", raw=params)

        signature_valid = verify(params, params.get("checksum"), self._key2 or "", REDIRECT_SCHEME)
        status = params.get("status")
        return PaymentOutcome(
            provider=self.provider.value,
            result=OutcomeResult.SUCCESS if status == "1" else OutcomeResult.FAILURE,
            signature_valid=signature_valid,
            amount_confirmed=self._to_int(params.get("amount")),
            provider_ref=params["apptransid"],
            reason=f"status={status}",
            raw={k: v for k, v in params.items() if k != "checksum"},
        )

    def verify_status(self, provider_ref: str, issued_at: Optional[datetime] = None) -> PaymentOutcome:
        self._require_credentials()
        query = {"app_id": self.app_id, "app_trans_id": provider_ref}
        query["mac"] = sign({**query, "key1": self._key1}, self._key1, QUERY_SCHEME)

        data = self._post(f"{self.endpoint}/v2/query", form=query)
        return_code = self._to_int(data.get("return_code"))
        zp_trans_id = data.get("zp_trans_id")
        return PaymentOutcome(
            provider=self.provider.value,
            result=QUERY_RESULTS.get(return_code, OutcomeResult.UNKNOWN),
            signature_valid=True,
            amount_confirmed=self._to_int(data.get("amount")),
            provider_ref=provider_ref,
            provider_txn_id=str(zp_trans_id) if zp_trans_id not in (None, "", 0) else None,
            reason=f"return_code={return_code} {data.get('return_message') or ''}".strip(),
            raw={k: data.get(k) for k in ("return_code", "sub_return_code", "amount", "zp_trans_id")},
        )

    def refund(self, intent, amount, reason=None, refund_ref=None) -> RefundOutcome:
        self._require_credentials()
        if not intent.provider_txn_id:
            raise ProviderError("ZaloPay refunds need the settled zp_trans_id", intent_id=intent.id)

        now = utcnow()
        # yymmdd_appid_<unique>, dated in Vietnam time
        m_refund_id = f"{vn_timestamp(now, '%y%m%d')}_{self.app_id}_{refund_ref or uuid.uuid4().hex}"
        request = {
            "app_id": self.app_id,
            "m_refund_id": m_refund_id,
            "zp_trans_id": intent.provider_txn_id,
            "amount": str(int(amount)),
            "timestamp": str(int(now.timestamp() * 1000)),
            "description": reason or f"Hoan tien don hang {intent.order_id}",
        }
        request["mac"] = sign(request, self._key1, REFUND_SCHEME)

        data = self._post(f"{self.endpoint}/v2/refund", form=request)
        return_code = self._to_int(data.get("return_code"))
        status = REFUND_RESULTS.get(return_code, RefundStatus.FAILED)
        refund_id = data.get("refund_id")

        logger.info("zalopay_refund_requested", intent_id=intent.id, m_refund_id=m_refund_id,
                    status=status.value, return_code=return_code)
        return RefundOutcome(
            provider=self.provider.value,
            status=status,
            refund_ref=m_refund_id,
            provider_refund_id=str(refund_id) if refund_id not in (None, "", 0) else None,
            reason=f"return_code={return_code} {data.get('return_message') or ''}".strip(),
            raw={k: data.get(k) for k in ("return_code", "sub_return_code", "refund_id")},
        )

    def acknowledge(self, disposition: Disposition) -> Dict[str, Any]:
        if disposition == Disposition.INVALID_SIGNATURE:
            return {"return_code": -1, "return_message": "mac not equal"}
        if disposition == Disposition.DUPLICATE:
            return {"return_code": 2, "return_message": "already processed"}
        return {"return_code": 1, "return_message": "success"}
