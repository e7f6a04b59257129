"""Shared fixtures for the payment test suites."""
import hashlib
import hmac
import json
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import urlencode

import httpx

from khopay import models  # noqa: F401
from khopay.db import Base, SessionLocal, engine
from khopay.models import Order
from khopay.psp.dispatcher import PSPDispatcher
from khopay.psp.momo_adapter import CALLBACK_FIELDS, MOMO_SCHEME
from khopay.psp.signature import sign
from khopay.psp.vnpay_adapter import (
    PAYMENT_SCHEME, QUERY_RESPONSE_SCHEME, REFUND_RESPONSE_SCHEME, VNPayAdapter,
)
from khopay.services.orchestrator import PaymentOrchestrator

VNPAY_TMN_CODE = "KHOTEST1"
VNPAY_SECRET = "vnpay-test-secret"
MOMO_PARTNER_CODE = "MOMOKHO01"
MOMO_ACCESS_KEY = "momo-access"
MOMO_SECRET = "momo-secret"
ZALOPAY_APP_ID = "2553"
ZALOPAY_KEY1 = "zalopay-key1"
ZALOPAY_KEY2 = "zalopay-key2"

VNPAY_PAY_URL = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
VNPAY_API_URL = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"


def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def fake_intent(**overrides):
    created = datetime(2026, 10, 19, 3, 0, 0, tzinfo=timezone.utc)
    values = {
        "id": "a" * 32,
        "order_id": "ORD-1",
        "amount": 150000,
        "created_at": created,
        "expires_at": created + timedelta(minutes=15),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def vnpay_ipn_query(txn_ref, amount, response_code="00", transaction_status="00",
                    transaction_no="14226112", secret=VNPAY_SECRET) -> str:
    params = {
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": "Thanh toan don hang ORD-1",
        "vnp_PayDate": "20261019101500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": VNPAY_TMN_CODE,
        "vnp_TransactionNo": transaction_no,
        "vnp_TransactionStatus": transaction_status,
        "vnp_TxnRef": txn_ref,
    }
    params["vnp_SecureHash"] = sign(params, secret, PAYMENT_SCHEME)
    return urlencode(params)


def vnpay_querydr_response(txn_ref, amount, response_code="00", transaction_status="00",
                           secret=VNPAY_SECRET) -> dict:
    response = {
        "vnp_ResponseId": "resp-1",
        "vnp_Command": "querydr",
        "vnp_ResponseCode": response_code,
        "vnp_Message": "QueryDR Success",
        "vnp_TmnCode": VNPAY_TMN_CODE,
        "vnp_TxnRef": txn_ref,
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20261019101500",
        "vnp_TransactionNo": "14226112",
        "vnp_TransactionType": "01",
        "vnp_TransactionStatus": transaction_status,
        "vnp_OrderInfo": "Thanh toan don hang ORD-1",
        "vnp_PromotionCode": "",
        "vnp_PromotionAmount": "",
    }
    response["vnp_SecureHash"] = sign(response, secret, QUERY_RESPONSE_SCHEME)
    return response


def vnpay_refund_response(txn_ref, amount, response_code="00", transaction_type="02",
                          secret=VNPAY_SECRET) -> dict:
    response = {
        "vnp_ResponseId": "resp-2",
        "vnp_Command": "refund",
        "vnp_ResponseCode": response_code,
        "vnp_Message": "Refund success",
        "vnp_TmnCode": VNPAY_TMN_CODE,
        "vnp_TxnRef": txn_ref,
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20261019113000",
        "vnp_TransactionNo": "14226999",
        "vnp_TransactionType": transaction_type,
        "vnp_TransactionStatus": "05",
        "vnp_OrderInfo": "Hoan tien don hang ORD-1",
    }
    response["vnp_SecureHash"] = sign(response, secret, REFUND_RESPONSE_SCHEME)
    return response


def vnpay_adapter_with(handler) -> VNPayAdapter:
    """VNPay adapter with the test credentials whose querydr calls go to handler."""
    return VNPayAdapter(
        tmn_code=VNPAY_TMN_CODE,
        hash_secret=VNPAY_SECRET,
        payment_url=VNPAY_PAY_URL,
        api_url=VNPAY_API_URL,
        return_url="http://testserver/v1/payments/return/vnpay",
        client=mock_client(handler),
    )


def momo_ipn_body(order_id, amount, result_code=0, trans_id=4088878653, secret=MOMO_SECRET) -> bytes:
    data = {
        "partnerCode": MOMO_PARTNER_CODE,
        "orderId": order_id,
        "requestId": "c1a5e3f0b4d84c0e9d1f2a3b4c5d6e7f",
        "amount": amount,
        "orderInfo": "Thanh toan don hang ORD-1",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": result_code,
        "message": "Successful.",
        "payType": "qr",
        "responseTime": 1760842500000,
        "extraData": "",
    }
    signed = {field: data[field] for field in CALLBACK_FIELDS}
    signed["accessKey"] = MOMO_ACCESS_KEY
    data["signature"] = sign(signed, secret, MOMO_SCHEME)
    return json.dumps(data).encode("utf-8")


def zalopay_callback_body(app_trans_id, amount, zp_trans_id=251019000001234, key2=ZALOPAY_KEY2) -> bytes:
    data = json.dumps({
        "app_id": int(ZALOPAY_APP_ID),
        "app_trans_id": app_trans_id,
        "app_time": 1760842500000,
        "app_user": "khoaugment_pos",
        "amount": amount,
        "embed_data": "{}",
        "item": "[]",
        "zp_trans_id": zp_trans_id,
        "server_time": 1760842560000,
        "channel": 38,
        "merchant_user_id": "zp-user",
        "user_fee_amount": 0,
        "discount_amount": 0,
    })
    mac = hmac.new(key2.encode(), data.encode(), hashlib.sha256).hexdigest()
    return json.dumps({"data": data, "mac": mac, "type": 1}).encode("utf-8")


class PaymentTestCase(unittest.TestCase):
    """Fresh database, cleared adapter cache and one orchestrator per test."""

    def setUp(self):
        reset_database()
        PSPDispatcher.clear_cache()
        self.db = SessionLocal()
        self.orchestrator = PaymentOrchestrator()

    def tearDown(self):
        self.db.close()
        PSPDispatcher.clear_cache()

    def add_order(self, order_id="ORD-1", total=150000) -> Order:
        order = Order(id=order_id, total=total, payment_status="pending")
        self.db.add(order)
        self.db.commit()
        return order

    def redirected_intent(self, order_id="ORD-1", amount=150000, method="vnpay"):
        intent = self.orchestrator.create_intent(self.db, order_id, amount, method)
        intent, _ = self.orchestrator.initiate(self.db, intent.id)
        return intent
