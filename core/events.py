"""
core/events.py — 结构化事件日志

提供统一的事件类型常量（E 类）和 log_event() 格式化方法。
配额、用量、订阅同步等关键操作均通过此模块记录，确保日志可 grep / 统计。

格式：event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.USAGE_RECORD, uid="u1", tokens=120, date="2026-01-01")
    # 输出：event=usage.record | uid=u1 | tokens=120 | date=2026-01-01
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 认证 Auth ──────────────────────────────────────────────────────────────
    AUTH_TOKEN_MISSING = "auth.token.missing"
    AUTH_TOKEN_INVALID = "auth.token.invalid"

    # ── 套餐 Plan ──────────────────────────────────────────────────────────────
    PLAN_CREATE = "plan.create"
    PLAN_UPDATE = "plan.update"
    PLAN_READ_FAIL = "plan.read.fail"
    PLAN_FALLBACK_FREE = "plan.fallback_free"
    PLAN_CUSTOMER_AMBIGUOUS = "plan.customer.ambiguous"

    # ── 配额 Quota ─────────────────────────────────────────────────────────────
    QUOTA_CHECK = "quota.check"
    QUOTA_EXCEED = "quota.exceed"
    QUOTA_UNLIMITED = "quota.unlimited"

    # ── 用量 Usage ─────────────────────────────────────────────────────────────
    USAGE_READ_FAIL = "usage.read.fail"
    USAGE_RECORD = "usage.record"
    USAGE_RECORD_FAIL = "usage.record.fail"
    USAGE_CLEANUP = "usage.cleanup"
    USAGE_CLEANUP_FAIL = "usage.cleanup.fail"
    USAGE_SWEEP_START = "usage.sweep.start"
    USAGE_SWEEP_COMPLETE = "usage.sweep.complete"

    # ── AI 调用 Provider ───────────────────────────────────────────────────────
    AI_CHAT_COMPLETE = "ai.chat.complete"
    AI_CHAT_FAIL = "ai.chat.fail"
    AI_IMAGE_COMPLETE = "ai.image.complete"
    AI_IMAGE_FAIL = "ai.image.fail"
    AI_PROVIDER_RETRY = "ai.provider.retry"

    # ── 订阅 Stripe ────────────────────────────────────────────────────────────
    STRIPE_CUSTOMER_CREATE = "stripe.customer.create"
    STRIPE_SYNC_START = "stripe.sync.start"
    STRIPE_SYNC_COMPLETE = "stripe.sync.complete"
    STRIPE_SYNC_SKIP = "stripe.sync.skip"
    STRIPE_SYNC_FAIL = "stripe.sync.fail"
    STRIPE_WEBHOOK_RECEIVE = "stripe.webhook.receive"
    STRIPE_WEBHOOK_APPLY = "stripe.webhook.apply"
    STRIPE_WEBHOOK_IGNORE = "stripe.webhook.ignore"
    STRIPE_WEBHOOK_REJECT = "stripe.webhook.reject"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.USAGE_RECORD_FAIL, level="error", uid="u1", error="db locked")
        # → event=usage.record.fail | uid=u1 | error=db locked
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
