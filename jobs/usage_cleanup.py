import time
from threading import Thread
from typing import Optional

from core.config import cfg
from core.db import DB
from core.usage_service import sweep_expired_usage
from core.log import get_logger, trace_ctx
from core.events import log_event, E

logger = get_logger(__name__)


def cleanup_interval_seconds() -> int:
    try:
        return int(cfg.get("usage.cleanup_interval_seconds", 0) or 0)
    except Exception:
        return 0


def run_usage_sweep_once() -> dict:
    session = DB.get_session()
    try:
        result = sweep_expired_usage(session=session, limit=5000)
        log_event(logger, E.USAGE_SWEEP_COMPLETE, total=result.get("total", 0), cutoff=result.get("cutoff", ""))
        return result
    finally:
        session.close()


def _worker_loop(interval: int):
    while True:
        with trace_ctx("usage-sweep"):
            try:
                log_event(logger, E.USAGE_SWEEP_START, interval=interval)
                run_usage_sweep_once()
            except Exception:
                logger.exception("过期用量清理异常")
        time.sleep(interval)


def start_usage_cleanup_worker() -> Optional[Thread]:
    interval = cleanup_interval_seconds()
    if interval <= 0:
        return None
    t = Thread(target=_worker_loop, args=(max(300, interval),), daemon=True)
    t.start()
    return t
