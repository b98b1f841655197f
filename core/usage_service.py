"""
每日 token 用量台账

按 (uid, UTC 日期) 记一行，累加写入使用数据库的原子自增，
统计窗口为最近 30 天（含下界当天）。台账是尽力而为的：
读失败按 0 用量处理，写失败和清理失败只记日志，不影响主流程。
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.dialects import mysql, postgresql, sqlite

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger
from core.models.token_usage import TokenUsage

logger = get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30
CAS_MAX_ATTEMPTS = 5


def _window_days() -> int:
    try:
        value = int(cfg.get("usage.window_days", DEFAULT_WINDOW_DAYS) or DEFAULT_WINDOW_DAYS)
    except Exception:
        value = DEFAULT_WINDOW_DAYS
    return max(1, value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_date_key(date: Optional[datetime] = None) -> str:
    target = date or _utc_now()
    if target.tzinfo is not None:
        target = target.astimezone(timezone.utc)
    return target.strftime("%Y-%m-%d")


def window_start_key(now: Optional[datetime] = None) -> str:
    """统计窗口下界（含），早于该日期的记录视为过期。"""
    target = now or _utc_now()
    return format_date_key(target - timedelta(days=_window_days()))


def _usage_id(uid: str, date_key: str) -> str:
    return f"{uid}:{date_key}"


def get_tokens_used_last_30_days(session, uid: str, now: Optional[datetime] = None) -> int:
    try:
        total = session.query(func.coalesce(func.sum(TokenUsage.tokens), 0)).filter(
            TokenUsage.uid == uid,
            TokenUsage.usage_date >= window_start_key(now),
        ).scalar()
        return int(total or 0)
    except Exception as e:
        session.rollback()
        log_event(logger, E.USAGE_READ_FAIL, level="warning", uid=uid, error=e)
        return 0


def _upsert_statement(dialect: str, values: dict, tokens: int):
    if dialect == "sqlite":
        stmt = sqlite.insert(TokenUsage).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[TokenUsage.id],
            set_={"tokens": TokenUsage.tokens + tokens, "updated_at": values["updated_at"]},
        )
    if dialect == "postgresql":
        stmt = postgresql.insert(TokenUsage).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[TokenUsage.id],
            set_={"tokens": TokenUsage.tokens + tokens, "updated_at": values["updated_at"]},
        )
    if dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(TokenUsage).values(**values)
        return stmt.on_duplicate_key_update(
            tokens=TokenUsage.tokens + tokens,
            updated_at=values["updated_at"],
        )
    return None


def _increment_with_cas(session, values: dict, tokens: int) -> None:
    """没有 upsert 的数据库：按旧值做条件更新，冲突则重试。"""
    for _ in range(CAS_MAX_ATTEMPTS):
        current = session.query(TokenUsage.tokens).filter(TokenUsage.id == values["id"]).scalar()
        if current is None:
            session.add(TokenUsage(**values))
            try:
                session.commit()
                return
            except Exception:
                session.rollback()
                continue
        result = session.execute(
            update(TokenUsage)
            .where(TokenUsage.id == values["id"], TokenUsage.tokens == current)
            .values(tokens=current + tokens, updated_at=values["updated_at"])
        )
        if result.rowcount == 1:
            session.commit()
            return
        session.rollback()
    raise RuntimeError(f"token usage increment conflict: {values['id']}")


def _increment_usage(session, uid: str, tokens: int, date_key: str) -> None:
    now = datetime.now()
    values = {
        "id": _usage_id(uid, date_key),
        "uid": uid,
        "usage_date": date_key,
        "tokens": tokens,
        "created_at": now,
        "updated_at": now,
    }
    stmt = _upsert_statement(session.get_bind().dialect.name, values, tokens)
    if stmt is None:
        _increment_with_cas(session, values, tokens)
        return
    session.execute(stmt)
    session.commit()


def record_token_usage(session, uid: str, tokens: int, date: Optional[datetime] = None) -> None:
    """累加当天用量，随后清理窗口外的旧记录。失败只记日志。"""
    amount = max(0, int(tokens or 0))
    date_key = format_date_key(date)
    try:
        _increment_usage(session, uid, amount, date_key)
        log_event(logger, E.USAGE_RECORD, uid=uid, tokens=amount, date=date_key)
    except Exception as e:
        session.rollback()
        log_event(logger, E.USAGE_RECORD_FAIL, level="error", uid=uid, tokens=amount, date=date_key, error=e)
        return
    cleanup_old_usage(session, uid)


def cleanup_old_usage(session, uid: str, now: Optional[datetime] = None) -> int:
    cutoff = window_start_key(now)
    try:
        deleted = session.query(TokenUsage).filter(
            TokenUsage.uid == uid,
            TokenUsage.usage_date < cutoff,
        ).delete(synchronize_session=False)
        session.commit()
        if deleted:
            log_event(logger, E.USAGE_CLEANUP, uid=uid, cutoff=cutoff, deleted=deleted)
        return int(deleted or 0)
    except Exception as e:
        session.rollback()
        log_event(logger, E.USAGE_CLEANUP_FAIL, level="warning", uid=uid, cutoff=cutoff, error=e)
        return 0


def sweep_expired_usage(session, now: Optional[datetime] = None, limit: int = 5000) -> dict:
    """后台任务：清理所有用户窗口外的记录，每次最多 limit 行。"""
    cutoff = window_start_key(now)
    batch = max(1, min(int(limit or 5000), 50000))
    ids = [
        row[0]
        for row in session.query(TokenUsage.id)
        .filter(TokenUsage.usage_date < cutoff)
        .limit(batch)
        .all()
    ]
    if not ids:
        return {"total": 0, "cutoff": cutoff}
    session.query(TokenUsage).filter(TokenUsage.id.in_(ids)).delete(synchronize_session=False)
    session.commit()
    return {"total": len(ids), "cutoff": cutoff}
