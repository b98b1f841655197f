from .base import Base, Column, String, Integer, DateTime, UniqueConstraint


class TokenUsage(Base):
    __tablename__ = "token_usages"
    __table_args__ = (UniqueConstraint("uid", "usage_date", name="uq_token_usage_uid_date"),)

    id = Column(String(160), primary_key=True)  # {uid}:{usage_date}
    uid = Column(String(128), index=True, nullable=False)
    usage_date = Column(String(10), index=True, nullable=False)  # YYYY-MM-DD (UTC)
    tokens = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
