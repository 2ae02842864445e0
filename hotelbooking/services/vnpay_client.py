import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import requests

from hotelbooking.core.config import settings
from hotelbooking.core.errors import ExternalGatewayError

logger = logging.getLogger(__name__)

VNP_TZ = ZoneInfo("Asia/Ho_Chi_Minh")

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Money deducted; transaction flagged as suspicious",
    "09": "Card/account not registered for internet banking",
    "10": "Card/account authentication failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card/account is locked",
    "13": "Wrong OTP",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Issuing bank under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Unknown error",
}


# querydr: vnp_TransactionStatus 01 means the customer has not finished paying
QUERY_PENDING_STATUSES = ("01",)

# Signed fields of a querydr response, in VNPay order
QUERY_RESPONSE_FIELDS = (
    "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode", "vnp_TxnRef",
    "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo", "vnp_TransactionType",
    "vnp_TransactionStatus", "vnp_OrderInfo", "vnp_PromotionCode", "vnp_PromotionAmount",
)


def response_message(code: str | None) -> str:
    return RESPONSE_MESSAGES.get(code or "", f"Unknown response code {code}")


@dataclass
class VnpayConfig:
    tmn_code: str
    hash_secret: str
    pay_url: str
    api_url: str
    return_url: str
    version: str = "2.1.0"
    locale: str = "vn"
    curr_code: str = "VND"
    expire_minutes: int = 15
    timeout: int = 30


class VnpayError(ExternalGatewayError):
    pass


def _hmac_sha512(secret: str, msg: str) -> str:
    return hmac.new(secret.encode("utf-8"), msg.encode("utf-8"), hashlib.sha512).hexdigest()


def _sign_data(params: dict) -> str:
    # Alphabetical, empty values dropped, form-encoded (spaces as '+')
    items = sorted((k, str(v)) for k, v in params.items()
                   if v not in (None, "") and k not in ("vnp_SecureHash", "vnp_SecureHashType"))
    return urlencode(items)


def _fmt(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(VNP_TZ).strftime("%Y%m%d%H%M%S")


class VnpayClient:
    gateway = "vnpay"

    def __init__(self, cfg: VnpayConfig):
        self.cfg = cfg

    def sign(self, params: dict) -> str:
        return _hmac_sha512(self.cfg.hash_secret, _sign_data(params))

    def create_payment_request(self, *, order_id: str, amount: float, order_info: str, ip_addr: str = "127.0.0.1",
                               return_url: str | None = None, bank_code: str | None = None,
                               now: datetime | None = None) -> dict:
        now = now or datetime.now(VNP_TZ)
        params = {
            "vnp_Version": self.cfg.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_Locale": self.cfg.locale,
            "vnp_CurrCode": self.cfg.curr_code,
            "vnp_TxnRef": order_id,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            # VNPay amounts are in 1/100 VND
            "vnp_Amount": int(round(float(amount) * 100)),
            "vnp_ReturnUrl": return_url or self.cfg.return_url,
            "vnp_IpAddr": ip_addr,
            "vnp_CreateDate": _fmt(now),
            "vnp_ExpireDate": _fmt(now + timedelta(minutes=self.cfg.expire_minutes)),
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code
        query = _sign_data(params)
        signature = _hmac_sha512(self.cfg.hash_secret, query)
        return {"payment_url": f"{self.cfg.pay_url}?{query}&vnp_SecureHash={signature}"}

    def verify_callback_signature(self, payload: dict) -> bool:
        received = str(payload.get("vnp_SecureHash") or "")
        if not received:
            return False
        return hmac.compare_digest(self.sign(payload).lower(), received.lower())

    @staticmethod
    def normalize(payload: dict) -> dict:
        try:
            amount = int(payload.get("vnp_Amount") or 0) / 100
        except (TypeError, ValueError):
            amount = 0.0
        code = str(payload.get("vnp_ResponseCode") or "")
        status = str(payload.get("vnp_TransactionStatus") or code)
        return {
            "order_id": str(payload.get("vnp_TxnRef") or ""),
            "amount": amount,
            "succeeded": code == "00" and status == "00",
            "gateway_txn_id": payload.get("vnp_TransactionNo") or None,
            "response_code": code,
            "message": response_message(code),
        }

    def _api_post(self, data: dict, what: str) -> dict:
        try:
            r = requests.post(self.cfg.api_url, json=data, timeout=self.cfg.timeout)
        except requests.Timeout as e:
            raise VnpayError(f"VNPay {what} timed out", timeout=True) from e
        except requests.RequestException as e:
            raise VnpayError(f"VNPay {what} request failed") from e
        try:
            body = r.json() if r.text else {}
        except ValueError:
            body = {"raw": r.text}
        if r.status_code >= 400:
            logger.error("VNPay %s HTTP %s: %s", what, r.status_code, body)
            raise VnpayError(f"VNPay {what} HTTP {r.status_code}")
        return body

    def query_transaction(self, *, txn_ref: str, transaction_date: datetime, ip_addr: str = "127.0.0.1") -> dict:
        """querydr: ask VNPay what happened to a payment whose callbacks never arrived."""
        data = {
            "vnp_RequestId": secrets.token_hex(8),
            "vnp_Version": self.cfg.version,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_TxnRef": txn_ref,
            "vnp_TransactionDate": _fmt(transaction_date),
            "vnp_CreateDate": _fmt(datetime.now(VNP_TZ)),
            "vnp_IpAddr": ip_addr,
            "vnp_OrderInfo": f"Query transaction {txn_ref}",
        }
        fields = ["vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
                  "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo"]
        data["vnp_SecureHash"] = _hmac_sha512(self.cfg.hash_secret, "|".join(str(data[f]) for f in fields))
        body = self._api_post(data, "query")
        expected = _hmac_sha512(self.cfg.hash_secret, "|".join(str(body.get(f) or "") for f in QUERY_RESPONSE_FIELDS))
        if not hmac.compare_digest(expected.lower(), str(body.get("vnp_SecureHash") or "").lower()):
            logger.error("VNPay query response for %s failed signature check", txn_ref)
            raise VnpayError("VNPay query response signature is invalid")
        code = str(body.get("vnp_ResponseCode") or "")
        if code != "00":
            raise VnpayError(f"VNPay query of {txn_ref} failed: response {code} {body.get('vnp_Message') or ''}".strip(),
                             response_code=code)
        return self.normalize_query(body)

    @staticmethod
    def normalize_query(body: dict) -> dict:
        status = str(body.get("vnp_TransactionStatus") or "")
        norm = VnpayClient.normalize({**body, "vnp_ResponseCode": status, "vnp_TransactionStatus": status})
        norm["pending"] = status in QUERY_PENDING_STATUSES
        return norm

    def refund(self, *, txn_ref: str, amount: float, transaction_date: datetime, order_info: str,
               create_by: str, transaction_no: str = "0", full: bool = True, ip_addr: str = "127.0.0.1") -> dict:
        request_id = secrets.token_hex(8)
        data = {
            "vnp_RequestId": request_id,
            "vnp_Version": self.cfg.version,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_TransactionType": "02" if full else "03",
            "vnp_TxnRef": txn_ref,
            "vnp_Amount": int(round(float(amount) * 100)),
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionDate": _fmt(transaction_date),
            "vnp_CreateBy": create_by,
            "vnp_CreateDate": _fmt(datetime.now(VNP_TZ)),
            "vnp_IpAddr": ip_addr,
            "vnp_OrderInfo": order_info,
        }
        # The refund API signs a '|'-joined field list in this fixed order
        fields = ["vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TransactionType",
                  "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo", "vnp_TransactionDate", "vnp_CreateBy",
                  "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo"]
        data["vnp_SecureHash"] = _hmac_sha512(self.cfg.hash_secret, "|".join(str(data[f]) for f in fields))
        body = self._api_post(data, "refund")
        body.setdefault("vnp_RequestId", request_id)
        return body


def vnpay_client() -> VnpayClient:
    if not (settings.VNP_TMN_CODE and settings.VNP_HASH_SECRET):
        raise VnpayError("VNPay is not configured")
    return VnpayClient(VnpayConfig(
        tmn_code=settings.VNP_TMN_CODE,
        hash_secret=settings.VNP_HASH_SECRET,
        pay_url=settings.VNP_URL,
        api_url=settings.VNP_API_URL,
        return_url=settings.VNP_RETURN_URL,
        version=settings.VNP_VERSION,
        locale=settings.VNP_LOCALE,
        curr_code=settings.VNP_CURR_CODE,
        expire_minutes=settings.VNP_EXPIRE_MINUTES,
    ))
