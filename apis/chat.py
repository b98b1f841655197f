from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.ai_service import (
    ProviderError,
    ProviderRateLimitError,
    completion_total_tokens,
    create_chat_completion,
)
from core.auth import get_current_user
from core.db import get_db
from core.log import get_logger
from core.quota_service import can_use_tokens, estimate_token_count
from core.usage_service import record_token_usage
from .base import RATE_LIMITED_DETAIL, provider_error_detail, quota_exceeded_detail, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["对话"])


class ChatMessageItem(BaseModel):
    role: str = Field(default="user", max_length=32)
    content: Optional[str] = Field(default="")


class ChatRequest(BaseModel):
    model: Optional[str] = Field(default=None, max_length=120)
    messages: Optional[List[ChatMessageItem]] = None


@router.post("", summary="对话补全（按 token 计费）")
def chat_completion(payload: ChatRequest, current_user: dict = Depends(get_current_user), session=Depends(get_db)):
    if not payload.model or payload.messages is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="model and messages are required")

    uid = current_user["uid"]
    messages = [m.model_dump() for m in payload.messages]
    estimated = estimate_token_count(messages, payload.model)
    decision = can_use_tokens(session, uid, estimated)
    if not decision["allowed"]:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=quota_exceeded_detail(decision))

    try:
        completion = create_chat_completion(payload.model, messages)
    except ProviderRateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMITED_DETAIL)
    except ProviderError as e:
        logger.error("chat provider error uid=%s model=%s: %s", uid, payload.model, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=provider_error_detail(50001, "Chat provider error", e),
        )

    # 上游未返回用量时按估算值记账
    actual = completion_total_tokens(completion) or estimated
    record_token_usage(session, uid, actual)
    return success_response(completion)
