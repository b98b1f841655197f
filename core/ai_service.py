import json
import os
import time
from typing import Dict, List

import requests

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class ProviderError(Exception):
    """上游模型服务调用失败。"""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimitError(ProviderError):
    """上游限流（HTTP 429），调用方可退避后重试。"""


def _runtime() -> Dict:
    base_url = str(cfg.get("ai.base_url", DEFAULT_BASE_URL) or DEFAULT_BASE_URL).strip()
    api_key = str(cfg.get("ai.api_key", os.getenv("OPENAI_API_KEY", "")) or "").strip()
    try:
        timeout = int(cfg.get("ai.timeout_seconds", 120) or 120)
    except Exception:
        timeout = 120
    try:
        max_retries = int(cfg.get("ai.max_retries", 2) or 0)
    except Exception:
        max_retries = 2
    return {
        "base_url": base_url.rstrip("/"),
        "api_key": api_key,
        "timeout": max(5, timeout),
        "max_retries": max(0, max_retries),
    }


def _is_mock(runtime: Dict) -> bool:
    return runtime["base_url"].lower().startswith("mock://") or runtime["api_key"].lower() in ["mock", "mock-key", "test-mock"]


def _post(runtime: Dict, path: str, payload: Dict) -> Dict:
    if not runtime["api_key"]:
        raise ProviderError("AI provider api key is not configured")

    url = f"{runtime['base_url']}{path}"
    headers = {
        "Authorization": f"Bearer {runtime['api_key']}",
        "Content-Type": "application/json; charset=utf-8",
    }
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    attempts = runtime["max_retries"] + 1
    resp = None
    for attempt in range(1, attempts + 1):
        try:
            resp = requests.post(url, data=body, headers=headers, timeout=(5, runtime["timeout"]))
            break
        except (requests.ConnectionError, requests.Timeout) as e:
            if attempt >= attempts:
                raise ProviderError(f"AI provider unreachable: {e}")
            log_event(logger, E.AI_PROVIDER_RETRY, level="warning", path=path, attempt=attempt, error=e)
            time.sleep(min(2 ** (attempt - 1), 8))
        except requests.RequestException as e:
            raise ProviderError(f"AI provider request failed: {e}")

    status_code = int(resp.status_code or 0)
    if status_code == 429:
        raise ProviderRateLimitError("AI provider rate limit reached", status_code=status_code)
    if status_code >= 400:
        raise ProviderError(f"AI provider HTTP {status_code}: {str(resp.text or '')[:300]}", status_code=status_code)
    try:
        return resp.json()
    except ValueError:
        raise ProviderError("AI provider returned non-JSON response", status_code=status_code)


def _mock_completion(model: str, messages: List[Dict]) -> Dict:
    last = ""
    for message in reversed(messages or []):
        if message.get("role") == "user":
            last = str(message.get("content") or "")
            break
    content = f"[mock] {last[:200]}"
    prompt_tokens = sum(len(str(m.get("content") or "")) for m in messages or []) // 4 + 1
    completion_tokens = len(content) // 4 + 1
    return {
        "id": f"chatcmpl-mock-{int(time.time())}",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def create_chat_completion(model: str, messages: List[Dict]) -> Dict:
    runtime = _runtime()
    if _is_mock(runtime):
        return _mock_completion(model, messages)

    payload = {
        "model": model,
        "messages": [{"role": m.get("role"), "content": m.get("content")} for m in messages],
    }
    try:
        data = _post(runtime, "/chat/completions", payload)
    except ProviderError as e:
        log_event(logger, E.AI_CHAT_FAIL, level="error", model=model, status=e.status_code, error=e)
        raise
    log_event(logger, E.AI_CHAT_COMPLETE, model=model, total_tokens=completion_total_tokens(data))
    return data


def completion_total_tokens(completion: Dict) -> int:
    usage = (completion or {}).get("usage") or {}
    try:
        return int(usage.get("total_tokens") or 0)
    except (TypeError, ValueError):
        return 0


def generate_image(prompt: str) -> str:
    """生成一张图片，返回图片 URL；上游未返回 URL 时返回空字符串。"""
    runtime = _runtime()
    if _is_mock(runtime):
        return f"mock://images/{abs(hash(prompt)) % 100000}.png"

    payload = {
        "model": str(cfg.get("ai.image_model", "dall-e-3") or "dall-e-3"),
        "prompt": prompt,
        "n": 1,
        "size": str(cfg.get("ai.image_size", "1024x1024") or "1024x1024"),
    }
    try:
        data = _post(runtime, "/images/generations", payload)
    except ProviderError as e:
        log_event(logger, E.AI_IMAGE_FAIL, level="error", status=e.status_code, error=e)
        raise
    items = data.get("data") or []
    url = str((items[0] or {}).get("url") or "") if items else ""
    log_event(logger, E.AI_IMAGE_COMPLETE, has_url=bool(url))
    return url
