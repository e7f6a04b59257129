import hashlib
import hmac
import json
import unittest
from urllib.parse import parse_qs, urlparse

import httpx

from khopay.exceptions import AdapterConfigError, ProviderError, ProviderUnavailable, UnsupportedMethod
from khopay.psp.adapter import Disposition, OutcomeResult, RefundStatus
from khopay.psp.dispatcher import PSPDispatcher
from khopay.psp.momo_adapter import MOMO_SCHEME, MoMoAdapter
from khopay.psp.signature import sign, verify
from khopay.psp.vnpay_adapter import PAYMENT_SCHEME, QUERY_REQUEST_SCHEME, REFUND_REQUEST_SCHEME, VNPayAdapter
from khopay.psp.zalopay_adapter import REDIRECT_SCHEME, ZaloPayAdapter

from support import (
    MOMO_ACCESS_KEY, MOMO_PARTNER_CODE, MOMO_SECRET, VNPAY_API_URL, VNPAY_PAY_URL, VNPAY_SECRET,
    VNPAY_TMN_CODE, ZALOPAY_APP_ID, ZALOPAY_KEY1, ZALOPAY_KEY2, fake_intent, mock_client,
    momo_ipn_body, vnpay_ipn_query, vnpay_querydr_response, vnpay_refund_response, zalopay_callback_body,
)


def vnpay_adapter(client=None, **overrides):
    kwargs = dict(
        tmn_code=VNPAY_TMN_CODE,
        hash_secret=VNPAY_SECRET,
        payment_url=VNPAY_PAY_URL,
        api_url=VNPAY_API_URL,
        return_url="http://testserver/v1/payments/return/vnpay",
        client=client,
    )
    kwargs.update(overrides)
    return VNPayAdapter(**kwargs)


def momo_adapter(client=None):
    return MoMoAdapter(
        partner_code=MOMO_PARTNER_CODE,
        access_key=MOMO_ACCESS_KEY,
        secret_key=MOMO_SECRET,
        endpoint="https://test-payment.momo.vn",
        redirect_url="http://testserver/v1/payments/return/momo",
        ipn_url="http://testserver/v1/webhooks/momo",
        client=client,
    )


def zalopay_adapter(client=None):
    return ZaloPayAdapter(
        app_id=ZALOPAY_APP_ID,
        key1=ZALOPAY_KEY1,
        key2=ZALOPAY_KEY2,
        endpoint="https://sb-openapi.zalopay.vn",
        callback_url="http://testserver/v1/webhooks/zalopay",
        redirect_url="http://testserver/v1/payments/return/zalopay",
        client=client,
    )


class TestVNPayAdapter(unittest.TestCase):
    def test_build_redirect_signs_payment_url(self):
        target = vnpay_adapter().build_redirect(fake_intent(), client_ip="10.0.0.5")

        self.assertTrue(target.url.startswith(VNPAY_PAY_URL + "?"))
        self.assertEqual(target.provider_ref, "a" * 32)

        params = {k: v[0] for k, v in parse_qs(urlparse(target.url).query).items()}
        secure_hash = params.pop("vnp_SecureHash")
        self.assertTrue(verify(params, secure_hash, VNPAY_SECRET, PAYMENT_SCHEME))
        self.assertEqual(params["vnp_Amount"], "15000000")
        self.assertEqual(params["vnp_TxnRef"], "a" * 32)
        self.assertEqual(params["vnp_IpAddr"], "10.0.0.5")
        # 03:00 UTC is 10:00 in Vietnam
        self.assertEqual(params["vnp_CreateDate"], "20261019100000")
        self.assertEqual(params["vnp_ExpireDate"], "20261019101500")

    def test_build_redirect_without_credentials(self):
        with self.assertRaises(AdapterConfigError):
            vnpay_adapter(hash_secret=None).build_redirect(fake_intent())

    def test_redirect_fields_parse_back_to_the_intent(self):
        adapter = vnpay_adapter()
        intent = fake_intent()
        target = adapter.build_redirect(intent)

        outcome = adapter.parse_callback(urlparse(target.url).query)

        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.amount_confirmed, intent.amount)
        self.assertEqual(outcome.provider_ref, intent.id)

    def test_parse_callback_success(self):
        outcome = vnpay_adapter().parse_callback(vnpay_ipn_query("a" * 32, 150000).encode())

        self.assertEqual(outcome.result, OutcomeResult.SUCCESS)
        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.amount_confirmed, 150000)
        self.assertEqual(outcome.provider_ref, "a" * 32)
        self.assertEqual(outcome.provider_txn_id, "14226112")
        self.assertNotIn("vnp_SecureHash", outcome.raw)

    def test_parse_callback_tampered_amount(self):
        query = vnpay_ipn_query("a" * 32, 150000).replace("vnp_Amount=15000000", "vnp_Amount=100000")
        outcome = vnpay_adapter().parse_callback(query)

        self.assertFalse(outcome.signature_valid)
        self.assertEqual(outcome.amount_confirmed, 1000)

    def test_parse_callback_cancelled_by_customer(self):
        query = vnpay_ipn_query("a" * 32, 150000, response_code="24", transaction_status="02")
        outcome = vnpay_adapter().parse_callback(query)

        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.result, OutcomeResult.FAILURE)

    def test_parse_callback_malformed(self):
        adapter = vnpay_adapter()
        for payload in (b"\xff\xfe\x00", "not a query", b"", {"vnp_Amount": "100"}):
            outcome = adapter.parse_callback(payload)
            self.assertEqual(outcome.result, OutcomeResult.UNKNOWN)
            self.assertFalse(outcome.signature_valid)

    def test_verify_status_querydr(self):
        seen = {}

        def handler(request: httpx.Request):
            body = json.loads(request.content)
            seen.update(body)
            return httpx.Response(200, json=vnpay_querydr_response(body["vnp_TxnRef"], 150000))

        outcome = vnpay_adapter(client=mock_client(handler)).verify_status("a" * 32)

        self.assertEqual(seen["vnp_Command"], "querydr")
        request_hash = seen.pop("vnp_SecureHash")
        self.assertTrue(verify(seen, request_hash, VNPAY_SECRET, QUERY_REQUEST_SCHEME))
        self.assertEqual(outcome.result, OutcomeResult.SUCCESS)
        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.amount_confirmed, 150000)

    def test_verify_status_transaction_not_found(self):
        def handler(request):
            return httpx.Response(200, json={"vnp_ResponseCode": "91", "vnp_Message": "Not found"})

        outcome = vnpay_adapter(client=mock_client(handler)).verify_status("a" * 32)
        self.assertEqual(outcome.result, OutcomeResult.UNKNOWN)

    def test_verify_status_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with self.assertRaises(ProviderUnavailable):
            vnpay_adapter(client=mock_client(handler)).verify_status("a" * 32)

    def test_acknowledgments(self):
        adapter = vnpay_adapter()
        self.assertEqual(adapter.acknowledge(Disposition.APPLIED), {"RspCode": "00", "Message": "Confirm Success"})
        self.assertEqual(adapter.acknowledge(Disposition.DUPLICATE)["RspCode"], "02")
        self.assertEqual(adapter.acknowledge(Disposition.UNKNOWN_INTENT)["RspCode"], "01")
        self.assertEqual(adapter.acknowledge(Disposition.AMOUNT_MISMATCH)["RspCode"], "04")
        self.assertEqual(adapter.acknowledge(Disposition.INVALID_SIGNATURE)["RspCode"], "97")

    def test_refund_signs_request_once(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(json.loads(request.content))
            return httpx.Response(200, json=vnpay_refund_response("a" * 32, 50000, transaction_type="03"))

        intent = fake_intent(provider_ref="a" * 32, provider_txn_id="14226112")
        outcome = vnpay_adapter(client=mock_client(handler)).refund(
            intent, 50000, reason="tra lai hang", refund_ref="r" * 32)

        self.assertEqual(len(calls), 1)
        sent = calls[0]
        secure_hash = sent.pop("vnp_SecureHash")
        self.assertTrue(verify(sent, secure_hash, VNPAY_SECRET, REFUND_REQUEST_SCHEME))
        self.assertEqual(sent["vnp_Command"], "refund")
        self.assertEqual(sent["vnp_TransactionType"], "03")
        self.assertEqual(sent["vnp_Amount"], "5000000")
        self.assertEqual(sent["vnp_TransactionNo"], "14226112")
        self.assertEqual(sent["vnp_TransactionDate"], "20261019100000")
        self.assertEqual(sent["vnp_RequestId"], "r" * 32)
        self.assertEqual(outcome.status, RefundStatus.SUCCEEDED)
        self.assertEqual(outcome.provider_refund_id, "14226999")

    def test_refund_answers(self):
        intent = fake_intent(provider_ref="a" * 32, provider_txn_id="14226112")
        answers = (
            (vnpay_refund_response("a" * 32, 150000), RefundStatus.SUCCEEDED),
            (vnpay_refund_response("a" * 32, 150000, response_code="94"), RefundStatus.PENDING),
            (vnpay_refund_response("a" * 32, 150000, response_code="95"), RefundStatus.FAILED),
            (vnpay_refund_response("a" * 32, 150000, secret="forged"), RefundStatus.PENDING),
        )
        for body, expected in answers:
            adapter = vnpay_adapter(client=mock_client(lambda request, body=body: httpx.Response(200, json=body)))
            self.assertEqual(adapter.refund(intent, 150000).status, expected)

    def test_refund_timeout_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        intent = fake_intent(provider_ref="a" * 32, provider_txn_id="14226112")
        with self.assertRaises(ProviderUnavailable):
            vnpay_adapter(client=mock_client(handler)).refund(intent, 150000)
        self.assertEqual(len(calls), 1)

    def test_refund_needs_settled_transaction(self):
        with self.assertRaises(ProviderError):
            vnpay_adapter().refund(fake_intent(provider_ref="a" * 32, provider_txn_id=None), 150000)


class TestMoMoAdapter(unittest.TestCase):
    def test_build_redirect_creates_order(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "resultCode": 0,
                "message": "Successful.",
                "payUrl": "https://test-payment.momo.vn/pay/abc",
                "qrCodeUrl": "momo://qr/abc",
                "deeplink": "momo://app?action=pay",
            })

        target = momo_adapter(client=mock_client(handler)).build_redirect(fake_intent())

        self.assertEqual(seen["url"], "https://test-payment.momo.vn/v2/gateway/api/create")
        body = seen["body"]
        self.assertEqual(body["orderId"], "a" * 32)
        self.assertEqual(body["amount"], 150000)
        self.assertEqual(body["requestType"], "captureWallet")
        signed = {k: body[k] for k in ("amount", "extraData", "ipnUrl", "orderId", "orderInfo",
                                       "partnerCode", "redirectUrl", "requestId", "requestType")}
        signed["accessKey"] = MOMO_ACCESS_KEY
        self.assertEqual(body["signature"], sign(signed, MOMO_SECRET, MOMO_SCHEME))
        self.assertEqual(target.url, "https://test-payment.momo.vn/pay/abc")
        self.assertEqual(target.qr_payload, "momo://qr/abc")
        self.assertEqual(target.provider_ref, "a" * 32)

    def test_build_redirect_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"resultCode": 22, "message": "Invalid amount"})

        with self.assertRaises(ProviderError):
            momo_adapter(client=mock_client(handler)).build_redirect(fake_intent())

    def test_build_redirect_provider_down(self):
        def handler(request):
            return httpx.Response(503, json={})

        with self.assertRaises(ProviderUnavailable):
            momo_adapter(client=mock_client(handler)).build_redirect(fake_intent())

    def test_parse_callback_result_codes(self):
        adapter = momo_adapter()
        cases = {0: OutcomeResult.SUCCESS, 9000: OutcomeResult.SUCCESS, 7000: OutcomeResult.UNKNOWN,
                 1006: OutcomeResult.FAILURE}
        for code, expected in cases.items():
            outcome = adapter.parse_callback(momo_ipn_body("a" * 32, 150000, result_code=code))
            self.assertTrue(outcome.signature_valid)
            self.assertEqual(outcome.result, expected, code)
            self.assertEqual(outcome.amount_confirmed, 150000)

    def test_parse_callback_bad_signature(self):
        outcome = momo_adapter().parse_callback(momo_ipn_body("a" * 32, 150000, secret="forged"))
        self.assertFalse(outcome.signature_valid)

    def test_parse_callback_not_json(self):
        outcome = momo_adapter().parse_callback(b"<xml/>")
        self.assertEqual(outcome.result, OutcomeResult.UNKNOWN)
        self.assertFalse(outcome.signature_valid)

    def test_verify_status(self):
        def handler(request: httpx.Request):
            body = json.loads(request.content)
            signed = {"accessKey": MOMO_ACCESS_KEY, "orderId": body["orderId"],
                      "partnerCode": body["partnerCode"], "requestId": body["requestId"]}
            assert body["signature"] == sign(signed, MOMO_SECRET, MOMO_SCHEME)
            return httpx.Response(200, json={"orderId": body["orderId"], "resultCode": 0,
                                             "amount": 150000, "transId": 4088878653})

        outcome = momo_adapter(client=mock_client(handler)).verify_status("a" * 32)
        self.assertEqual(outcome.result, OutcomeResult.SUCCESS)
        self.assertEqual(outcome.provider_txn_id, "4088878653")

    def test_refund_is_not_supported(self):
        adapter = momo_adapter()
        self.assertFalse(adapter.supports_refund)
        with self.assertRaises(UnsupportedMethod):
            adapter.refund(fake_intent(provider_txn_id="4088878653"), 150000)


class TestZaloPayAdapter(unittest.TestCase):
    def test_build_redirect_creates_order(self):
        seen = {}

        def handler(request: httpx.Request):
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={
                "return_code": 1,
                "return_message": "Giao dịch thành công",
                "order_url": "https://qcgateway.zalopay.vn/openinapp?order=abc",
                "qr_code": "00020101021226520010vn.zalopay",
            })

        target = zalopay_adapter(client=mock_client(handler)).build_redirect(fake_intent())

        self.assertEqual(seen["app_trans_id"], "261019_" + "a" * 32)
        message = "|".join(seen[k] for k in ("app_id", "app_trans_id", "app_user", "amount",
                                             "app_time", "embed_data", "item"))
        expected_mac = hmac.new(ZALOPAY_KEY1.encode(), message.encode(), hashlib.sha256).hexdigest()
        self.assertEqual(seen["mac"], expected_mac)
        self.assertEqual(target.provider_ref, "261019_" + "a" * 32)
        self.assertEqual(target.qr_payload, "00020101021226520010vn.zalopay")

    def test_parse_callback(self):
        outcome = zalopay_adapter().parse_callback(zalopay_callback_body("261019_" + "a" * 32, 150000))
        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.result, OutcomeResult.SUCCESS)
        self.assertEqual(outcome.provider_ref, "261019_" + "a" * 32)
        self.assertEqual(outcome.amount_confirmed, 150000)

    def test_parse_callback_wrong_key(self):
        body = zalopay_callback_body("261019_" + "a" * 32, 150000, key2="not-the-key")
        self.assertFalse(zalopay_adapter().parse_callback(body).signature_valid)

    def test_parse_callback_malformed(self):
        adapter = zalopay_adapter()
        for payload in (b"{}", b"[1,2]", b'{"data": "not json", "mac": "00"}', b"garbage"):
            outcome = adapter.parse_callback(payload)
            self.assertEqual(outcome.result, OutcomeResult.UNKNOWN)
            self.assertFalse(outcome.signature_valid)

    def test_parse_return_checksum(self):
        params = {"appid": ZALOPAY_APP_ID, "apptransid": "261019_" + "a" * 32, "pmcid": "38",
                  "bankcode": "", "amount": "150000", "discountamount": "0", "status": "1"}
        params["checksum"] = sign(params, ZALOPAY_KEY2, REDIRECT_SCHEME)

        outcome = zalopay_adapter().parse_return(params)
        self.assertTrue(outcome.signature_valid)
        self.assertEqual(outcome.result, OutcomeResult.SUCCESS)

    def test_verify_status_results(self):
        for return_code, expected in ((1, OutcomeResult.SUCCESS), (2, OutcomeResult.FAILURE),
                                      (3, OutcomeResult.UNKNOWN)):
            def handler(request, return_code=return_code):
                form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
                message = f"{form['app_id']}|{form['app_trans_id']}|{ZALOPAY_KEY1}"
                assert form["mac"] == hmac.new(ZALOPAY_KEY1.encode(), message.encode(), hashlib.sha256).hexdigest()
                return httpx.Response(200, json={"return_code": return_code, "amount": 150000,
                                                 "zp_trans_id": 251019000001234})

            outcome = zalopay_adapter(client=mock_client(handler)).verify_status("261019_" + "a" * 32)
            self.assertEqual(outcome.result, expected)

    def test_refund_signs_request(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={"return_code": 3, "return_message": "processing",
                                             "refund_id": 1234567})

        intent = fake_intent(provider_ref="261019_" + "a" * 32, provider_txn_id="251019000001234")
        outcome = zalopay_adapter(client=mock_client(handler)).refund(
            intent, 150000, reason="khach tra hang", refund_ref="r" * 32)

        self.assertEqual(seen["url"], "https://sb-openapi.zalopay.vn/v2/refund")
        message = "|".join(seen[k] for k in ("app_id", "zp_trans_id", "amount", "description", "timestamp"))
        expected_mac = hmac.new(ZALOPAY_KEY1.encode(), message.encode(), hashlib.sha256).hexdigest()
        self.assertEqual(seen["mac"], expected_mac)
        self.assertEqual(seen["zp_trans_id"], "251019000001234")
        self.assertEqual(seen["description"], "khach tra hang")
        self.assertRegex(seen["m_refund_id"], r"^\d{6}_2553_r{32}$")
        self.assertEqual(outcome.refund_ref, seen["m_refund_id"])
        self.assertEqual(outcome.status, RefundStatus.PENDING)
        self.assertEqual(outcome.provider_refund_id, "1234567")

    def test_refund_results(self):
        intent = fake_intent(provider_txn_id="251019000001234")
        for return_code, expected in ((1, RefundStatus.SUCCEEDED), (2, RefundStatus.FAILED),
                                      (-13, RefundStatus.FAILED)):
            adapter = zalopay_adapter(client=mock_client(
                lambda request, code=return_code: httpx.Response(200, json={"return_code": code})))
            self.assertEqual(adapter.refund(intent, 150000).status, expected)

    def test_acknowledgments(self):
        adapter = zalopay_adapter()
        self.assertEqual(adapter.acknowledge(Disposition.APPLIED), {"return_code": 1, "return_message": "success"})
        self.assertEqual(adapter.acknowledge(Disposition.INVALID_SIGNATURE)["return_code"], -1)


class TestDispatcher(unittest.TestCase):
    def setUp(self):
        PSPDispatcher.clear_cache()

    def tearDown(self):
        PSPDispatcher.clear_cache()

    def test_adapters_are_cached(self):
        adapter = PSPDispatcher.get_adapter("VNPAY")
        self.assertIsInstance(adapter, VNPayAdapter)
        self.assertIs(adapter, PSPDispatcher.get_adapter("vnpay"))

    def test_offline_methods_have_no_adapter(self):
        for method in ("cash", "card", "bank_transfer", "paypal"):
            with self.assertRaises(UnsupportedMethod):
                PSPDispatcher.get_adapter(method)

    def test_status_reports_configured_gateways(self):
        self.assertEqual(PSPDispatcher.status(), {"vnpay": True, "momo": True, "zalopay": True})


if __name__ == "__main__":
    unittest.main()
