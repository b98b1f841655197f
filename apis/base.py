from typing import Any, Dict


def success_response(data: Any = None, message: str = "success") -> Dict:
    return {
        "code": 0,
        "message": message,
        "data": data,
    }


def error_response(code: int, message: str, data: Any = None) -> Dict:
    return {
        "code": code,
        "message": message,
        "data": data,
    }


def quota_exceeded_detail(decision: Dict) -> Dict:
    return error_response(
        code=42901,
        message=decision.get("reason") or "Token limit exceeded",
        data={"error": "Token limit exceeded", "remaining": decision.get("remaining")},
    )


def provider_error_detail(code: int, message: str, error: Exception) -> Dict:
    return error_response(code=code, message=message, data={"details": str(error)})


RATE_LIMITED_DETAIL = error_response(
    code=42902,
    message="Rate limit exceeded",
    data={"details": "Provider rate limit reached. Please try again later."},
)
