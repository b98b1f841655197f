from fastapi import APIRouter, Depends, HTTPException, status

from core.auth import get_current_user
from core.db import get_db
from core.log import get_logger
from core.plan_service import get_plan_catalog
from core.subscription_service import sync_subscription_status
from .base import error_response, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/tokens", tags=["配额"])


@router.get("/status", summary="获取配额状态（同步 Stripe 订阅）")
def token_status(current_user: dict = Depends(get_current_user), session=Depends(get_db)):
    try:
        report = sync_subscription_status(session, current_user["uid"], current_user.get("email"))
    except Exception as e:
        logger.exception("token status failed uid=%s", current_user.get("uid"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response(code=50003, message="Failed to fetch token status", data={"details": str(e)}),
        )
    return success_response(report)


@router.get("/plans", summary="获取套餐目录")
def token_plans(current_user: dict = Depends(get_current_user)):
    return success_response(get_plan_catalog())
