from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.events import log_event, E
from core.log import get_logger
from core.models.user_plan import UserPlan

logger = get_logger(__name__)


PLAN_FREE = "FREE"
PLAN_BASIC = "BASIC"
PLAN_PRO = "PRO"
PLAN_ENTERPRISE = "ENTERPRISE"

DEFAULT_PLAN_TIER = PLAN_FREE

UNLIMITED = -1

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELED = "canceled"
SUBSCRIPTION_TRIALING = "trialing"

PLAN_DEFINITIONS: Dict[str, Dict] = {
    PLAN_FREE: {
        "tier": PLAN_FREE,
        "name": "Free",
        "monthly_token_limit": 10000,
        "image_generation_cost": 1000,
    },
    PLAN_BASIC: {
        "tier": PLAN_BASIC,
        "name": "Basic",
        "monthly_token_limit": 500000,
        "image_generation_cost": 1000,
    },
    PLAN_PRO: {
        "tier": PLAN_PRO,
        "name": "Pro",
        "monthly_token_limit": 3000000,
        "image_generation_cost": 1000,
    },
    PLAN_ENTERPRISE: {
        "tier": PLAN_ENTERPRISE,
        "name": "Enterprise",
        "monthly_token_limit": UNLIMITED,
        "image_generation_cost": 1000,
    },
}


def normalize_plan_tier(tier: str) -> str:
    value = str(tier or "").strip().upper()
    return value if value in PLAN_DEFINITIONS else DEFAULT_PLAN_TIER


def get_plan_definition(tier: str) -> Dict:
    return PLAN_DEFINITIONS[normalize_plan_tier(tier)]


def get_plan_catalog() -> List[Dict]:
    return [dict(PLAN_DEFINITIONS[key]) for key in [PLAN_FREE, PLAN_BASIC, PLAN_PRO, PLAN_ENTERPRISE]]


def _default_user_plan(uid: str) -> UserPlan:
    now = datetime.now()
    return UserPlan(uid=uid, plan=DEFAULT_PLAN_TIER, created_at=now, updated_at=now)


def get_user_plan(session, uid: str) -> UserPlan:
    """
    读取用户套餐，不存在时创建并持久化一条 FREE 记录。

    并发首次访问时，插入冲突的一方回滚后重新读取已存在的记录，
    保证每个用户至多一条记录。存储异常时返回一条未持久化的 FREE 记录。
    """
    try:
        record = session.get(UserPlan, uid)
        if record is not None:
            if not record.plan:
                record.plan = DEFAULT_PLAN_TIER
            return record
        record = _default_user_plan(uid)
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = session.get(UserPlan, uid)
            if existing is None:
                raise
            return existing
        log_event(logger, E.PLAN_CREATE, uid=uid, plan=record.plan)
        return record
    except SQLAlchemyError as e:
        session.rollback()
        log_event(logger, E.PLAN_READ_FAIL, level="error", uid=uid, error=e)
        return _default_user_plan(uid)


def find_user_plan_by_customer(session, customer_id: str) -> Optional[UserPlan]:
    value = str(customer_id or "").strip()
    if not value:
        return None
    matches = session.query(UserPlan).filter(UserPlan.stripe_customer_id == value).limit(2).all()
    if len(matches) > 1:
        # 建表早于唯一约束的库可能残留重复关联，无法确定归属时不做处理
        log_event(logger, E.PLAN_CUSTOMER_AMBIGUOUS, level="error", customer_id=value)
        return None
    return matches[0] if matches else None


def update_user_plan(
    session,
    uid: str,
    plan: str,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    status: Optional[str] = None,
) -> UserPlan:
    """
    合并写入：plan 总是写入，支付关联字段仅在提供时覆盖。

    存储异常直接向上抛出，由调用方决定是否吞掉。
    """
    now = datetime.now()
    record = session.get(UserPlan, uid)
    if record is None:
        record = UserPlan(uid=uid, created_at=now)
        session.add(record)
    record.plan = normalize_plan_tier(plan)
    if customer_id:
        record.stripe_customer_id = customer_id
    if subscription_id:
        record.stripe_subscription_id = subscription_id
    status_text = str(status or "").strip().lower()
    if status_text:
        record.subscription_status = status_text[:20]
    record.updated_at = now
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    log_event(
        logger,
        E.PLAN_UPDATE,
        uid=uid,
        plan=record.plan,
        customer_id=record.stripe_customer_id or "",
        subscription_id=record.stripe_subscription_id or "",
        status=record.subscription_status or "",
    )
    return record


def resolve_monthly_token_limit(user_plan: UserPlan) -> int:
    """
    套餐对应的月度 token 上限，-1 表示不限量。

    已关联订阅但订阅状态不是 active 时，无论 plan 为何都按 FREE 计算。
    """
    plan = get_plan_definition(getattr(user_plan, "plan", DEFAULT_PLAN_TIER))
    subscription_id = getattr(user_plan, "stripe_subscription_id", None)
    status = getattr(user_plan, "subscription_status", None)
    if subscription_id and status != SUBSCRIPTION_ACTIVE:
        if plan["tier"] != PLAN_FREE:
            log_event(
                logger,
                E.PLAN_FALLBACK_FREE,
                uid=getattr(user_plan, "uid", ""),
                plan=plan["tier"],
                status=status or "",
            )
        return PLAN_DEFINITIONS[PLAN_FREE]["monthly_token_limit"]
    return int(plan["monthly_token_limit"])


def get_monthly_token_limit(session, uid: str) -> int:
    return resolve_monthly_token_limit(get_user_plan(session, uid))
