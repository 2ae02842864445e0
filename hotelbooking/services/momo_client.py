import hashlib
import hmac
import logging
import time
from dataclasses import dataclass

import requests

from hotelbooking.core.config import settings
from hotelbooking.core.errors import ExternalGatewayError, ValidationError

logger = logging.getLogger(__name__)

RESULT_MESSAGES = {
    0: "Transaction successful",
    9000: "Transaction authorised, awaiting capture",
    8000: "Transaction is being processed",
    7000: "Transaction awaiting payment",
    1000: "Transaction initiated, awaiting user confirmation",
    11: "Access denied",
    12: "API version not supported",
    13: "Merchant authentication failed",
    20: "Invalid amount",
    21: "Invalid payment amount",
    40: "Duplicate requestId",
    41: "Duplicate orderId",
    42: "Invalid or unknown orderId",
    43: "Request rejected due to a conflicting transaction",
    1001: "Insufficient funds",
    1002: "Rejected by the issuer",
    1003: "Transaction cancelled",
    1004: "Amount exceeds the user's payment limit",
    1005: "Payment URL or QR code expired",
    1006: "User declined the payment",
    1007: "User account is suspended",
    1026: "Restricted by promotion rules",
    1080: "Refund rejected: original payment not found",
    1081: "Refund rejected: original payment already refunded",
    10: "System under maintenance",
    99: "Unknown error",
}

# Fields of the IPN / redirect signature, MoMo v2 order
CALLBACK_FIELDS = ("accessKey", "amount", "extraData", "message", "orderId", "orderInfo", "orderType",
                   "partnerCode", "payType", "requestId", "responseTime", "resultCode", "transId")

MAX_RETRIES = 2

# Still waiting on the customer or the wallet
PENDING_RESULT_CODES = (1000, 7000, 8000, 9000)


def result_message(code) -> str:
    try:
        return RESULT_MESSAGES.get(int(code), f"Unknown result code {code}")
    except (TypeError, ValueError):
        return f"Unknown result code {code}"


@dataclass
class MomoConfig:
    partner_code: str
    access_key: str
    secret_key: str
    endpoint: str
    query_endpoint: str
    return_url: str
    ipn_url: str
    request_type: str = "captureWallet"
    lang: str = "vi"
    min_amount: int = 1_000
    max_amount: int = 50_000_000
    sandbox: bool = False
    timeout: int = 30


class MomoError(ExternalGatewayError):
    pass


def _hmac_sha256(secret: str, msg: str) -> str:
    return hmac.new(secret.encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest()


class MomoClient:
    gateway = "momo"

    def __init__(self, cfg: MomoConfig):
        self.cfg = cfg

    def _create_signature(self, p: dict) -> str:
        raw = (
            f"accessKey={self.cfg.access_key}"
            f"&amount={p['amount']}"
            f"&extraData={p.get('extraData') or ''}"
            f"&ipnUrl={p['ipnUrl']}"
            f"&orderId={p['orderId']}"
            f"&orderInfo={p['orderInfo']}"
            f"&partnerCode={self.cfg.partner_code}"
            f"&redirectUrl={p['redirectUrl']}"
            f"&requestId={p['requestId']}"
            f"&requestType={p['requestType']}"
        )
        return _hmac_sha256(self.cfg.secret_key, raw)

    def callback_signature(self, payload: dict) -> str:
        values = dict(payload)
        values["accessKey"] = self.cfg.access_key
        raw = "&".join(f"{k}={'' if values.get(k) is None else values.get(k)}" for k in CALLBACK_FIELDS)
        return _hmac_sha256(self.cfg.secret_key, raw)

    def verify_callback_signature(self, payload: dict) -> bool:
        received = str(payload.get("signature") or "")
        if not received:
            return False
        return hmac.compare_digest(self.callback_signature(payload), received)

    @staticmethod
    def normalize(payload: dict) -> dict:
        try:
            amount = float(payload.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0.0
        try:
            code = int(payload.get("resultCode"))
        except (TypeError, ValueError):
            code = -1
        return {
            "order_id": str(payload.get("orderId") or ""),
            "amount": amount,
            "succeeded": code == 0,
            "gateway_txn_id": str(payload["transId"]) if payload.get("transId") not in (None, "") else None,
            "response_code": str(code),
            "message": result_message(code),
        }

    def _post(self, body: dict, url: str | None = None) -> dict:
        last_error = None
        for attempt in range(MAX_RETRIES + 1):
            try:
                r = requests.post(url or self.cfg.endpoint, json=body, timeout=self.cfg.timeout)
            except requests.Timeout as e:
                last_error = MomoError("MoMo did not respond in time, please retry or use another method", timeout=True)
                last_error.__cause__ = e
            except requests.RequestException as e:
                last_error = MomoError("Could not reach MoMo")
                last_error.__cause__ = e
            else:
                if r.status_code >= 500:
                    last_error = MomoError(f"MoMo HTTP {r.status_code}")
                else:
                    try:
                        return r.json() if r.text else {}
                    except ValueError as e:
                        raise MomoError("MoMo returned an unreadable response") from e
            if attempt < MAX_RETRIES:
                logger.warning("MoMo request attempt %s failed (%s), retrying", attempt + 1, last_error)
                time.sleep(min(2 ** attempt, 4))
        raise last_error

    def create_payment_request(self, *, order_id: str, amount: float, order_info: str, return_url: str | None = None,
                               ipn_url: str | None = None, extra_data: str = "") -> dict:
        amount = int(round(float(amount)))
        if amount < self.cfg.min_amount or amount > self.cfg.max_amount:
            raise ValidationError(
                f"MoMo amount must be between {self.cfg.min_amount:,} and {self.cfg.max_amount:,} VND",
                min_amount=self.cfg.min_amount, max_amount=self.cfg.max_amount,
            )
        if self.cfg.sandbox:
            mock = f"{settings.API_PUBLIC_URL.rstrip('/')}/api/v1/payments/momo/sandbox?orderId={order_id}&amount={amount}"
            return {"payment_url": mock, "qr_url": None, "deeplink": None, "request_id": order_id, "sandbox": True}

        body = {
            "partnerCode": self.cfg.partner_code,
            "accessKey": self.cfg.access_key,
            "requestId": order_id,
            "amount": amount,
            "orderId": order_id,
            "orderInfo": order_info,
            "redirectUrl": return_url or self.cfg.return_url,
            "ipnUrl": ipn_url or self.cfg.ipn_url,
            "extraData": extra_data or "",
            "requestType": self.cfg.request_type,
            "lang": self.cfg.lang,
        }
        body["signature"] = self._create_signature(body)
        data = self._post(body)
        code = data.get("resultCode")
        if code != 0:
            msg = data.get("message") or result_message(code)
            logger.error("MoMo create %s rejected: resultCode=%s %s", order_id, code, msg)
            raise MomoError(f"MoMo rejected the payment request: {msg}", result_code=code)
        return {
            "payment_url": data.get("payUrl"),
            "qr_url": data.get("qrCodeUrl"),
            "deeplink": data.get("deeplink"),
            "request_id": order_id,
        }

    def query_transaction(self, *, order_id: str, request_id: str | None = None) -> dict:
        """Ask MoMo for the outcome of an order whose redirect and IPN were both lost."""
        if self.cfg.sandbox:
            raise MomoError("MoMo sandbox has no transaction query")
        request_id = request_id or order_id
        raw = (
            f"accessKey={self.cfg.access_key}"
            f"&orderId={order_id}"
            f"&partnerCode={self.cfg.partner_code}"
            f"&requestId={request_id}"
        )
        body = {
            "partnerCode": self.cfg.partner_code,
            "requestId": request_id,
            "orderId": order_id,
            "signature": _hmac_sha256(self.cfg.secret_key, raw),
            "lang": self.cfg.lang,
        }
        data = self._post(body, url=self.cfg.query_endpoint)
        if str(data.get("orderId") or order_id) != order_id:
            raise MomoError(f"MoMo answered a query for {order_id} with order {data.get('orderId')}")
        norm = self.normalize({**data, "orderId": order_id})
        norm["pending"] = norm["response_code"] in {str(c) for c in PENDING_RESULT_CODES}
        return norm


def momo_client() -> MomoClient:
    if not settings.MOMO_SANDBOX and not (settings.MOMO_PARTNER_CODE and settings.MOMO_ACCESS_KEY and settings.MOMO_SECRET_KEY):
        raise MomoError("MoMo is not configured")
    return MomoClient(MomoConfig(
        partner_code=settings.MOMO_PARTNER_CODE,
        access_key=settings.MOMO_ACCESS_KEY,
        secret_key=settings.MOMO_SECRET_KEY,
        endpoint=settings.MOMO_API_ENDPOINT,
        query_endpoint=settings.MOMO_QUERY_ENDPOINT,
        return_url=settings.MOMO_RETURN_URL,
        ipn_url=settings.MOMO_IPN_URL,
        request_type=settings.MOMO_REQUEST_TYPE,
        lang=settings.MOMO_LANG,
        min_amount=settings.MOMO_MIN_AMOUNT,
        max_amount=settings.MOMO_MAX_AMOUNT,
        sandbox=settings.MOMO_SANDBOX,
    ))
