from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.ai_service import ProviderError, ProviderRateLimitError, generate_image
from core.auth import get_current_user
from core.db import get_db
from core.log import get_logger
from core.quota_service import can_use_tokens, image_generation_cost
from core.usage_service import record_token_usage
from .base import RATE_LIMITED_DETAIL, provider_error_detail, quota_exceeded_detail, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/image", tags=["图片生成"])


class ImageRequest(BaseModel):
    prompt: Optional[str] = Field(default=None, max_length=4000)


@router.post("", summary="生成图片（按固定 token 计费）")
def create_image(payload: ImageRequest, current_user: dict = Depends(get_current_user), session=Depends(get_db)):
    if not payload.prompt:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="prompt is required")

    uid = current_user["uid"]
    cost = image_generation_cost()
    decision = can_use_tokens(session, uid, cost)
    if not decision["allowed"]:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=quota_exceeded_detail(decision))

    try:
        url = generate_image(payload.prompt)
    except ProviderRateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMITED_DETAIL)
    except ProviderError as e:
        logger.error("image provider error uid=%s: %s", uid, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=provider_error_detail(50002, "Image provider error", e),
        )

    if not url:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Image provider did not return URL")

    record_token_usage(session, uid, cost)
    return success_response({"url": url})
