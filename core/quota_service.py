import math
from typing import Dict, List, Optional

from core.events import log_event, E
from core.log import get_logger
from core.plan_service import PLAN_FREE, UNLIMITED, get_monthly_token_limit, get_plan_definition
from core.usage_service import get_tokens_used_last_30_days

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 3


def can_use_tokens(session, uid: str, estimated_tokens: int) -> Dict:
    """
    调用前的配额预检，返回 {"allowed", "remaining", "reason"}。

    不限量套餐直接放行且不查询用量。remaining 只用于展示，下限为 0；
    是否放行按未截断的 limit - used 判断，已超额的用户即使 remaining 为 0 也会被拒绝。
    """
    estimated = int(estimated_tokens or 0)
    limit = get_monthly_token_limit(session, uid)
    if limit == UNLIMITED:
        log_event(logger, E.QUOTA_UNLIMITED, uid=uid, estimated=estimated)
        return {"allowed": True, "remaining": UNLIMITED, "reason": None}

    used = get_tokens_used_last_30_days(session, uid)
    balance = limit - used
    allowed = balance >= estimated
    result = {
        "allowed": allowed,
        "remaining": max(0, balance),
        "reason": None if allowed else f"Token limit exceeded. Used {used}/{limit} tokens.",
    }
    if allowed:
        log_event(logger, E.QUOTA_CHECK, uid=uid, estimated=estimated, used=used, limit=limit)
    else:
        log_event(logger, E.QUOTA_EXCEED, level="warning", uid=uid, estimated=estimated, used=used, limit=limit)
    return result


def _content_length(message: Dict) -> int:
    content = (message or {}).get("content")
    if not content:
        return 0
    if isinstance(content, str):
        return len(content)
    return len(str(content))


def estimate_token_count(messages: List[Dict], model: str) -> int:
    """粗略估算：约 4 个字符 1 个 token，按模型名微调，每条消息另加固定开销。"""
    total_chars = sum(_content_length(m) for m in messages or [])
    estimated = math.ceil(total_chars / CHARS_PER_TOKEN)

    model_name = str(model or "")
    if "gpt-4" in model_name:
        estimated = math.ceil(estimated * 1.2)
    elif "gpt-3.5" in model_name:
        estimated = math.ceil(estimated * 0.9)

    return estimated + len(messages or []) * MESSAGE_OVERHEAD_TOKENS


def image_generation_cost(plan: Optional[str] = None) -> int:
    return int(get_plan_definition(plan or PLAN_FREE)["image_generation_cost"])
