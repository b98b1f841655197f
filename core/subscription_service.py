"""
订阅状态同步

以 Stripe 为订阅状态的权威来源，把用户当前有效订阅映射为套餐等级并写回本地。
同步是尽力而为的：Stripe 通信或本地写入失败只记日志，回退为本地已知的套餐。
"""

from typing import Any, Callable, Dict, List, Optional

from core.events import log_event, E
from core.log import get_logger
from core.plan_service import (
    PLAN_BASIC,
    PLAN_ENTERPRISE,
    PLAN_PRO,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_TRIALING,
    UNLIMITED,
    get_monthly_token_limit,
    get_user_plan,
    find_user_plan_by_customer,
    update_user_plan,
)
from core.models.user_plan import UserPlan
from core.stripe_service import (
    create_customer,
    field,
    list_customer_subscriptions,
    object_id,
    product_id,
    stripe_enabled,
)
from core.usage_service import get_tokens_used_last_30_days

logger = get_logger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIALING)

EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


# ─── 价格 → 套餐推断 ──────────────────────────────────────────────────────────
def _tier_from_amount(price: Any) -> Optional[str]:
    amount = field(price, "unit_amount")
    if not amount:
        return None
    major = int(amount) / 100
    if major >= 299:
        return PLAN_ENTERPRISE
    if major >= 90:
        return PLAN_PRO
    if major >= 25:
        return PLAN_BASIC
    return None


def _tier_from_price_id(price: Any) -> Optional[str]:
    text = str(field(price, "id", "") or "").lower()
    if not text:
        return None
    if "enterprise" in text:
        return PLAN_ENTERPRISE
    if "pro" in text or "100" in text:
        return PLAN_PRO
    if "basic" in text or "29" in text or "39" in text:
        return PLAN_BASIC
    return None


def _tier_from_nickname(price: Any) -> Optional[str]:
    text = str(field(price, "nickname", "") or "").lower()
    if not text:
        return None
    if "enterprise" in text:
        return PLAN_ENTERPRISE
    if "pro" in text:
        return PLAN_PRO
    if "basic" in text:
        return PLAN_BASIC
    return None


# 依次执行，命中的规则覆盖前一条的结果，最后命中的生效
PRICE_TIER_RULES: List[Callable[[Any], Optional[str]]] = [
    _tier_from_amount,
    _tier_from_price_id,
    _tier_from_nickname,
]


def infer_plan_from_price(price: Any) -> str:
    tier = PLAN_BASIC
    for rule in PRICE_TIER_RULES:
        matched = rule(price)
        if matched:
            tier = matched
    return tier


# ─── Stripe 订阅解析 ──────────────────────────────────────────────────────────
def find_active_subscription(subscriptions: List[Any]) -> Optional[Any]:
    for sub in subscriptions or []:
        if str(field(sub, "status", "")) in ACTIVE_SUBSCRIPTION_STATUSES:
            return sub
    return None


def find_product_item(subscription: Any, product: str) -> Optional[Any]:
    if not product:
        return None
    items = field(field(subscription, "items"), "data", []) or []
    for item in items:
        if object_id(field(field(item, "price"), "product")) == product:
            return item
    return None


def build_status_report(
    monthly_limit: int,
    used: int,
    plan: str,
    subscription_status: Optional[str] = None,
    subscription_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    synced_from_stripe: bool = False,
) -> Dict:
    return {
        "monthly_limit": monthly_limit,
        "tokens_used_last_30_days": used,
        "plan": plan,
        "remaining": UNLIMITED if monthly_limit == UNLIMITED else max(0, monthly_limit - used),
        "subscription_status": subscription_status,
        "stripe_subscription_id": subscription_id,
        "stripe_customer_id": customer_id,
        "synced_from_stripe": synced_from_stripe,
    }


def _safe_update_plan(session, uid: str, plan: str, **linkage) -> bool:
    try:
        update_user_plan(session, uid, plan, **linkage)
        return True
    except Exception as e:
        log_event(logger, E.STRIPE_SYNC_FAIL, level="error", uid=uid, step="update_plan", error=e)
        return False


def get_or_create_customer(session, uid: str, email: str, user_plan: UserPlan) -> str:
    if user_plan.stripe_customer_id:
        return user_plan.stripe_customer_id
    customer_id = create_customer(email, uid)
    _safe_update_plan(
        session,
        uid,
        user_plan.plan,
        customer_id=customer_id,
        subscription_id=user_plan.stripe_subscription_id,
        status=user_plan.subscription_status,
    )
    return customer_id


def _sync_from_stripe(session, uid: str, email: str, user_plan: UserPlan, used: int) -> Optional[Dict]:
    customer_id = get_or_create_customer(session, uid, email, user_plan)
    subscriptions = list_customer_subscriptions(customer_id)
    logger.info("Found %s subscriptions for uid=%s", len(subscriptions), uid)

    active = find_active_subscription(subscriptions)
    if active is None:
        return None
    item = find_product_item(active, product_id())
    if item is None:
        return None

    plan = infer_plan_from_price(field(item, "price"))
    subscription_id = object_id(active)
    status = str(field(active, "status", ""))
    _safe_update_plan(
        session,
        uid,
        plan,
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
    )
    monthly_limit = get_monthly_token_limit(session, uid)
    log_event(logger, E.STRIPE_SYNC_COMPLETE, uid=uid, plan=plan, status=status, limit=monthly_limit)
    return build_status_report(
        monthly_limit,
        used,
        plan,
        subscription_status=status,
        subscription_id=subscription_id,
        customer_id=customer_id,
        synced_from_stripe=True,
    )


def sync_subscription_status(session, uid: str, email: Optional[str]) -> Dict:
    """
    同步 Stripe 订阅并返回当前配额状态。

    没有匹配的有效订阅、未配置 Stripe 或同步失败时，按本地套餐记录返回。
    """
    user_plan = get_user_plan(session, uid)
    used = get_tokens_used_last_30_days(session, uid)

    if email and stripe_enabled():
        log_event(logger, E.STRIPE_SYNC_START, uid=uid)
        try:
            report = _sync_from_stripe(session, uid, email, user_plan, used)
            if report is not None:
                return report
        except Exception as e:
            log_event(logger, E.STRIPE_SYNC_FAIL, level="error", uid=uid, error=e)
    else:
        log_event(logger, E.STRIPE_SYNC_SKIP, uid=uid, has_email=bool(email), stripe=stripe_enabled())

    user_plan = get_user_plan(session, uid)
    return build_status_report(
        get_monthly_token_limit(session, uid),
        used,
        user_plan.plan,
        subscription_status=user_plan.subscription_status,
        subscription_id=user_plan.stripe_subscription_id,
        customer_id=user_plan.stripe_customer_id,
    )


# ─── Webhook ──────────────────────────────────────────────────────────────────
def apply_subscription_event(session, event: Any) -> Dict:
    """
    处理 Stripe 订阅事件，按 customer id 找到本地用户并更新套餐。

    本地写入失败会向上抛出，让 Stripe 重新投递事件。
    """
    event_type = str(field(event, "type", "") or "")
    if event_type not in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED, EVENT_SUBSCRIPTION_DELETED):
        log_event(logger, E.STRIPE_WEBHOOK_IGNORE, type=event_type, reason="unhandled_type")
        return {"action": "ignored", "reason": "unhandled_type"}

    subscription = field(field(event, "data"), "object")
    customer_id = object_id(field(subscription, "customer"))
    subscription_id = object_id(subscription)
    record = find_user_plan_by_customer(session, customer_id)
    if record is None:
        log_event(logger, E.STRIPE_WEBHOOK_IGNORE, type=event_type, customer_id=customer_id, reason="unknown_customer")
        return {"action": "ignored", "reason": "unknown_customer"}

    if event_type == EVENT_SUBSCRIPTION_DELETED:
        if record.stripe_subscription_id and record.stripe_subscription_id != subscription_id:
            log_event(logger, E.STRIPE_WEBHOOK_IGNORE, type=event_type, uid=record.uid, reason="stale_subscription")
            return {"action": "ignored", "reason": "stale_subscription"}
        update_user_plan(
            session,
            record.uid,
            record.plan,
            subscription_id=subscription_id,
            status=SUBSCRIPTION_CANCELED,
        )
        log_event(logger, E.STRIPE_WEBHOOK_APPLY, type=event_type, uid=record.uid, status=SUBSCRIPTION_CANCELED)
        return {"action": "canceled", "uid": record.uid}

    item = find_product_item(subscription, product_id())
    if item is None:
        log_event(logger, E.STRIPE_WEBHOOK_IGNORE, type=event_type, uid=record.uid, reason="product_mismatch")
        return {"action": "ignored", "reason": "product_mismatch"}

    plan = infer_plan_from_price(field(item, "price"))
    status = str(field(subscription, "status", "") or "")
    update_user_plan(
        session,
        record.uid,
        plan,
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
    )
    log_event(logger, E.STRIPE_WEBHOOK_APPLY, type=event_type, uid=record.uid, plan=plan, status=status)
    return {"action": "updated", "uid": record.uid, "plan": plan, "status": status}
