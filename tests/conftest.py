import os
import tempfile

# Settings and the engine are built at import time, so the test environment
# has to be in place before any khopay module is imported.
_DB_DIR = tempfile.mkdtemp(prefix="khopay-tests-")

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'khopay_test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["FRONTEND_URL"] = "http://frontend.test"

os.environ["VNPAY_TMN_CODE"] = "KHOTEST1"
os.environ["VNPAY_HASH_SECRET"] = "vnpay-test-secret"
os.environ["VNPAY_PAYMENT_URL"] = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
os.environ["VNPAY_API_URL"] = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"

os.environ["MOMO_PARTNER_CODE"] = "MOMOKHO01"
os.environ["MOMO_ACCESS_KEY"] = "momo-access"
os.environ["MOMO_SECRET_KEY"] = "momo-secret"
os.environ["MOMO_ENDPOINT"] = "https://test-payment.momo.vn"

os.environ["ZALOPAY_APP_ID"] = "2553"
os.environ["ZALOPAY_KEY1"] = "zalopay-key1"
os.environ["ZALOPAY_KEY2"] = "zalopay-key2"
os.environ["ZALOPAY_ENDPOINT"] = "https://sb-openapi.zalopay.vn"
