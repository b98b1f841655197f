import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E
from core.models import Base

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/quota.db"


class Db:
    def __init__(self, url: str = ""):
        self.url = str(url or cfg.get("db", os.getenv("DATABASE_URL", DEFAULT_DB_URL)))
        self.engine = None
        self.Session = None

    def _ensure_engine(self):
        if self.engine is not None:
            return self.engine
        url = make_url(self.url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            # FastAPI 同步路由运行在线程池中
            connect_args = {"check_same_thread": False, "timeout": 30}
            if url.database and url.database != ":memory:":
                folder = os.path.dirname(url.database)
                if folder:
                    os.makedirs(folder, exist_ok=True)
        self.engine = create_engine(self.url, pool_pre_ping=True, connect_args=connect_args)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self.engine

    def configure(self, url: str):
        """切换数据库地址，旧 engine 的连接池随之释放，下次使用时按新地址重建。"""
        if self.engine is not None:
            self.engine.dispose()
        self.url = str(url)
        self.engine = None
        self.Session = None

    def create_tables(self):
        engine = self._ensure_engine()
        Base.metadata.create_all(engine)
        log_event(logger, E.SYSTEM_DB_INIT, dialect=engine.dialect.name)

    def get_session(self) -> Session:
        self._ensure_engine()
        return self.Session()


DB = Db()


def get_db() -> Generator[Session, None, None]:
    """FastAPI 依赖：每个请求一个 session，结束时关闭。"""
    session = DB.get_session()
    try:
        yield session
    finally:
        session.close()
