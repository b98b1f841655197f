import os
from typing import Any, List, Optional

import stripe

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)


def _secret_key() -> str:
    return str(cfg.get("stripe.secret_key", os.getenv("STRIPE_SECRET_KEY", "")) or "").strip()


def webhook_secret() -> str:
    return str(cfg.get("stripe.webhook_secret", os.getenv("STRIPE_WEBHOOK_SECRET", "")) or "").strip()


def product_id() -> str:
    return str(cfg.get("stripe.product_id", os.getenv("STRIPE_PRODUCT_ID", "")) or "").strip()


def stripe_enabled() -> bool:
    return bool(_secret_key())


def _stripe():
    api_key = _secret_key()
    if not api_key:
        raise RuntimeError("Stripe API key not configured (STRIPE_SECRET_KEY)")
    stripe.api_key = api_key
    try:
        stripe.max_network_retries = max(0, int(cfg.get("stripe.max_network_retries", 2) or 0))
    except Exception:
        stripe.max_network_retries = 2
    return stripe


def field(obj: Any, key: str, default: Any = None) -> Any:
    """按 key 读取 Stripe 对象或普通 dict 的字段。"""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError, AttributeError):
        return default
    return default if value is None else value


def object_id(value: Any) -> str:
    """Stripe 字段可能是 id 字符串，也可能是展开后的对象。"""
    if isinstance(value, str):
        return value
    return str(field(value, "id", "") or "")


def create_customer(email: str, uid: str) -> str:
    client = _stripe()
    customer = client.Customer.create(email=email, metadata={"uid": uid})
    customer_id = object_id(customer)
    log_event(logger, E.STRIPE_CUSTOMER_CREATE, uid=uid, customer_id=customer_id)
    return customer_id


def list_customer_subscriptions(customer_id: str) -> List[Any]:
    client = _stripe()
    result = client.Subscription.list(customer=customer_id, status="all", limit=10)
    return list(field(result, "data", []) or [])


def construct_webhook_event(payload: bytes, signature: Optional[str]) -> Any:
    """校验 Stripe 签名并解析事件，签名不合法时抛出 stripe.SignatureVerificationError。"""
    return stripe.Webhook.construct_event(payload, signature, webhook_secret())
