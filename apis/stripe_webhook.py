import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status

from core.db import get_db
from core.events import log_event, E
from core.log import get_logger
from core.stripe_service import construct_webhook_event, field, webhook_secret
from core.subscription_service import apply_subscription_event

logger = get_logger(__name__)

router = APIRouter(prefix="/stripe", tags=["Stripe"])


@router.post("/webhook", summary="Stripe 订阅事件回调")
async def stripe_webhook(request: Request, session=Depends(get_db)):
    # 未配置签名密钥时无法确认事件来自 Stripe，一律拒收，不改动任何套餐
    if not webhook_secret():
        log_event(logger, E.STRIPE_WEBHOOK_REJECT, level="warning", reason="webhook_secret_missing")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook is not configured")

    payload = await request.body()
    try:
        event = construct_webhook_event(payload, request.headers.get("stripe-signature"))
    except (ValueError, stripe.SignatureVerificationError) as e:
        log_event(logger, E.STRIPE_WEBHOOK_REJECT, level="warning", reason="invalid_payload", error=e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed")

    log_event(logger, E.STRIPE_WEBHOOK_RECEIVE, type=field(event, "type", ""))
    result = apply_subscription_event(session, event)
    return {"received": True, **result}
