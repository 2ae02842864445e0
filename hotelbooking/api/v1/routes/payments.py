import html
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from hotelbooking.db.session import get_db
from hotelbooking.api.deps import get_current_user, is_staff
from hotelbooking.core.config import settings
from hotelbooking.core.errors import BookingError, Forbidden, NotFound
from hotelbooking.models.user import User
from hotelbooking.schemas.payments import PaymentCreateRequest, PaymentCreateOut, PaymentAttemptOut
from hotelbooking.services import payment_ledger
from hotelbooking.services import reconciliation_service as recon
from hotelbooking.services.bank_transfer_client import bank_transfer_client
from hotelbooking.services.momo_client import momo_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


async def _callback_payload(request: Request) -> dict:
    """Query string merged with a JSON or form body. Read here so the handlers can run in the threadpool."""
    payload = dict(request.query_params)
    if request.method == "POST":
        ctype = request.headers.get("content-type", "")
        if "application/json" in ctype:
            body = await request.json()
            if isinstance(body, dict):
                payload.update(body)
        else:
            form = await request.form()
            payload.update({k: v for k, v in form.items() if isinstance(v, str)})
    return payload


def _return_response(result: dict):
    """Send the browser to the front end when PAYMENT_RESULT_URL is set, else answer JSON."""
    if settings.PAYMENT_RESULT_URL:
        q = {"orderId": result.get("order_id") or "", "success": "true" if result.get("succeeded") else "false"}
        if result.get("booking_code"):
            q["bookingCode"] = result["booking_code"]
        if result.get("error"):
            q["error"] = result["error"]
        return RedirectResponse(url=f"{settings.PAYMENT_RESULT_URL}?{urlencode(q)}", status_code=302)
    if not result.get("trusted", True):
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid_signature",
                                                      "detail": "Callback signature could not be verified"})
    return {"ok": True, **result}


@router.post("/payments/{gateway}/create-url", response_model=PaymentCreateOut)
def create_payment_url(gateway: str, body: PaymentCreateRequest, request: Request,
                       db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    ip = request.client.host if request.client else "127.0.0.1"
    return recon.start_payment(db, me, gateway, body.model_dump(), ip_addr=ip)


@router.api_route("/payments/{gateway}/return", methods=["GET", "POST"])
def payment_return(gateway: str, payload: dict = Depends(_callback_payload), db: Session = Depends(get_db)):
    try:
        result = recon.handle_return(db, gateway, payload)
    except BookingError as e:
        if not settings.PAYMENT_RESULT_URL:
            raise
        db.rollback()
        logger.warning("%s return for %s failed: %s", gateway, payload.get("orderId") or payload.get("vnp_TxnRef"), e.message)
        result = {"order_id": payload.get("orderId") or payload.get("vnp_TxnRef"), "succeeded": False, "error": e.code}
    return _return_response(result)


@router.api_route("/payments/vnpay/ipn", methods=["GET", "POST"])
def vnpay_ipn(payload: dict = Depends(_callback_payload), db: Session = Depends(get_db)):
    return recon.handle_vnpay_ipn(db, payload)


@router.post("/payments/momo/ipn")
def momo_ipn(payload: dict = Depends(_callback_payload), db: Session = Depends(get_db)):
    return recon.handle_momo_ipn(db, payload)


@router.get("/payments/bank_transfer/test-page", response_class=HTMLResponse)
def bank_transfer_test_page(orderId: str, amount: float, orderInfo: str = ""):
    """Mock bank: two buttons that hit our signed return URL."""
    client = bank_transfer_client()
    ok_url = html.escape(client.return_url(orderId, amount, success=True))
    fail_url = html.escape(client.return_url(orderId, amount, success=False))
    return f"""<!doctype html>
<html><head><meta charset="utf-8"><title>Mock bank transfer</title></head>
<body style="font-family:sans-serif;max-width:480px;margin:40px auto">
<h2>Mock bank transfer</h2>
<p>Order: <b>{html.escape(orderId)}</b></p>
<p>Amount: <b>{int(round(amount)):,} VND</b></p>
<p>{html.escape(orderInfo)}</p>
<p><a href="{ok_url}">Simulate successful transfer</a></p>
<p><a href="{fail_url}">Simulate failed transfer</a></p>
</body></html>"""


@router.get("/payments/momo/sandbox", response_class=HTMLResponse)
def momo_sandbox_page(orderId: str, amount: float):
    """Stand-in for the MoMo checkout when MOMO_SANDBOX is on."""
    if not settings.MOMO_SANDBOX:
        raise NotFound("MoMo sandbox is disabled")
    client = momo_client()
    links = []
    for label, code in (("Simulate successful payment", 0), ("Simulate cancelled payment", 1006)):
        params = {
            "partnerCode": client.cfg.partner_code, "orderId": orderId, "requestId": orderId,
            "amount": str(int(round(amount))), "orderInfo": f"Sandbox payment {orderId}", "orderType": "momo_wallet",
            "transId": "0" if code else f"SBX{orderId[-8:]}", "resultCode": str(code), "message": "sandbox",
            "payType": "qr", "responseTime": "0", "extraData": "",
        }
        params["signature"] = client.callback_signature(params)
        url = f"{settings.API_PUBLIC_URL.rstrip('/')}/api/v1/payments/momo/return?{urlencode(params)}"
        links.append(f'<p><a href="{html.escape(url)}">{label}</a></p>')
    return ("<!doctype html><html><head><meta charset=\"utf-8\"><title>MoMo sandbox</title></head>"
            f"<body style=\"font-family:sans-serif\"><h2>MoMo sandbox</h2><p>{html.escape(orderId)}</p>"
            + "".join(links) + "</body></html>")


@router.get("/payments/{order_id}", response_model=PaymentAttemptOut)
def get_payment(order_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    a = payment_ledger.get_attempt(db, order_id)
    extra = payment_ledger.extra_data_of(a) or {}
    if not is_staff(me) and extra.get("user_id") != me.id:
        raise Forbidden("You do not have access to this payment")
    return PaymentAttemptOut(
        order_id=a.order_id,
        booking_ref=a.booking_ref,
        booking_id=a.booking_id,
        gateway=a.gateway,
        amount=float(a.amount),
        status=a.status,
        gateway_txn_id=a.gateway_txn_id,
        created_at=a.created_at.isoformat() if a.created_at else None,
        settled_at=a.settled_at.isoformat() if a.settled_at else None,
    )
