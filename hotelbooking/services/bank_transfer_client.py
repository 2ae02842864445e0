import hashlib
import hmac
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

from hotelbooking.core.config import settings
from hotelbooking.core.errors import ExternalGatewayError


@dataclass
class BankTransferConfig:
    secret: str
    public_url: str  # base of this API, e.g. http://localhost:8000


class BankTransferClient:
    """Mock bank: a test page whose buttons hit our own signed return URL."""

    gateway = "bank_transfer"

    def __init__(self, cfg: BankTransferConfig):
        self.cfg = cfg

    @property
    def _base(self) -> str:
        return f"{self.cfg.public_url.rstrip('/')}/api/v1/payments/bank_transfer"

    def sign(self, params: dict) -> str:
        raw = "&".join(f"{k}={params[k]}" for k in sorted(params) if k != "signature" and params[k] not in (None, ""))
        return hmac.new(self.cfg.secret.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()

    def create_payment_request(self, *, order_id: str, amount: float, order_info: str = "") -> dict:
        q = urlencode({"orderId": order_id, "amount": int(round(float(amount))), "orderInfo": order_info})
        return {"payment_url": f"{self._base}/test-page?{q}"}

    def return_params(self, order_id: str, amount: float, success: bool) -> dict:
        params = {
            "orderId": order_id,
            "amount": str(int(round(float(amount)))),
            "responseCode": "00" if success else "99",
            "transactionStatus": "00" if success else "02",
            "transactionNo": f"BT{secrets.token_hex(6).upper()}",
        }
        params["signature"] = self.sign(params)
        return params

    def return_url(self, order_id: str, amount: float, success: bool) -> str:
        return f"{self._base}/return?{urlencode(self.return_params(order_id, amount, success))}"

    def verify_callback_signature(self, payload: dict) -> bool:
        received = str(payload.get("signature") or "")
        if not received:
            return False
        fields = {k: str(v) for k, v in payload.items() if k != "signature"}
        return hmac.compare_digest(self.sign(fields), received)

    @staticmethod
    def normalize(payload: dict) -> dict:
        try:
            amount = float(payload.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0.0
        code = str(payload.get("responseCode") or "")
        status = str(payload.get("transactionStatus") or "")
        return {
            "order_id": str(payload.get("orderId") or ""),
            "amount": amount,
            "succeeded": code == "00" and status == "00",
            "gateway_txn_id": payload.get("transactionNo") or None,
            "response_code": code,
            "message": "Transfer received" if code == "00" and status == "00" else "Transfer failed or cancelled",
        }


def bank_transfer_client() -> BankTransferClient:
    if not settings.BANK_TRANSFER_SECRET:
        raise ExternalGatewayError("Bank transfer is not configured")
    return BankTransferClient(BankTransferConfig(secret=settings.BANK_TRANSFER_SECRET, public_url=settings.API_PUBLIC_URL))
