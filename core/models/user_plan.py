from .base import Base, Column, String, DateTime


class UserPlan(Base):
    __tablename__ = "user_plans"

    uid = Column(String(128), primary_key=True)
    plan = Column(String(20), nullable=False, default="FREE")  # FREE/BASIC/PRO/ENTERPRISE
    stripe_customer_id = Column(String(64), nullable=True, unique=True)
    stripe_subscription_id = Column(String(64), nullable=True)
    subscription_status = Column(String(20), nullable=True)  # active/canceled/past_due/trialing
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
