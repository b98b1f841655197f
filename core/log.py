"""
core/log.py — 日志配置

根日志器统一挂 colorlog 控制台输出，可选滚动文件；每条记录带上当前上下文的 trace_id。
HTTP 请求由 web.py 中间件设置 trace_id，后台清理任务使用 trace_ctx()。

    from core.log import get_logger
    logger = get_logger(__name__)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, List, Optional

import colorlog

from core.config import cfg

_trace_id: ContextVar[str] = ContextVar("trace_id", default="-")

TRACE_ID_MAX_LEN = 16

LINE_FORMAT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# stripe / urllib3 在 INFO 级别会打印每次请求，SQLAlchemy engine 会打印 SQL
DEFAULT_QUIET_LOGGERS = ["stripe", "urllib3", "sqlalchemy.engine"]

_HANDLER_FLAG = "_quota_handler"


def _short_id(value: Optional[str] = None) -> str:
    text = str(value or "").strip()[:TRACE_ID_MAX_LEN]
    return text or uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """为当前上下文设置 trace_id，未传入时随机生成，返回实际使用的值。"""
    value = _short_id(tid)
    _trace_id.set(value)
    return value


def get_trace_id() -> str:
    return _trace_id.get()


@contextmanager
def trace_ctx(tid: Optional[str] = None) -> Iterator[str]:
    token = _trace_id.set(_short_id(tid))
    try:
        yield _trace_id.get()
    finally:
        _trace_id.reset(token)


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id.get()
        return True


def _resolve_level(value) -> int:
    level = logging.getLevelName(str(value or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _quiet_loggers() -> List[str]:
    value = cfg.get("log.quiet", DEFAULT_QUIET_LOGGERS)
    if isinstance(value, str):
        value = [x.strip() for x in value.split(",") if x.strip()]
    return list(value or [])


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(stream=sys.stdout)
    handler.setFormatter(
        colorlog.ColoredFormatter("%(log_color)s" + LINE_FORMAT, datefmt=DATE_FORMAT, log_colors=LEVEL_COLORS)
    )
    handler.setLevel(level)
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path if path.endswith(".log") else f"{path}.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT))
    handler.setLevel(level)
    return handler


def setup_logging(force: bool = False) -> None:
    """
    配置根日志器。重复调用不会重复挂 handler（uvicorn --reload 会多次导入本模块），
    force=True 时先移除已挂的 handler 再按当前配置重建。
    """
    root = logging.getLogger()
    ours = [h for h in root.handlers if getattr(h, _HANDLER_FLAG, False)]
    if ours and not force:
        return
    for handler in ours:
        root.removeHandler(handler)
        handler.close()

    level = _resolve_level(cfg.get("log.level", "INFO"))
    root.setLevel(level)

    handlers = [_console_handler(level)]
    log_file = str(cfg.get("log.file", "") or "").strip()
    if log_file:
        handlers.append(_file_handler(log_file, level))

    trace_filter = _TraceIdFilter()
    for handler in handlers:
        handler.addFilter(trace_filter)
        setattr(handler, _HANDLER_FLAG, True)
        root.addHandler(handler)

    for name in _quiet_loggers():
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


setup_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
