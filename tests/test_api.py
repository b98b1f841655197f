import hashlib
import hmac
import json
import os
import tempfile
import time
import unittest
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import jwt
from fastapi.testclient import TestClient

from core.ai_service import ProviderError, ProviderRateLimitError
from core.config import cfg, set_config
from core.db import DB
from core.models.token_usage import TokenUsage
from core.models.user_plan import UserPlan
from core.plan_service import get_monthly_token_limit, update_user_plan
from core.usage_service import format_date_key, get_tokens_used_last_30_days
from web import app


_tmp_dir = None
_saved_db_url = None


def setUpModule():
    # 每个测试模块使用独立的临时 sqlite 库，不触碰配置里的数据库
    global _tmp_dir, _saved_db_url
    _saved_db_url = DB.url
    _tmp_dir = tempfile.TemporaryDirectory()
    DB.configure(f"sqlite:///{os.path.join(_tmp_dir.name, 'quota.db')}")
    DB.create_tables()


def tearDownModule():
    DB.configure(_saved_db_url)
    _tmp_dir.cleanup()


SECRET = "test-secret-for-api"
OVERRIDES = {
    "auth.secret": SECRET,
    "auth.audience": "",
    "ai.base_url": "mock://local",
    "stripe.secret_key": "",
    "stripe.webhook_secret": "",
    "stripe.product_id": "prod_test_quota",
}


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.saved = {key: cfg.get(key) for key in OVERRIDES}
        for key, value in OVERRIDES.items():
            set_config(key, value)
        DB.create_tables()
        self.session = DB.get_session()
        self.uid = f"u_{uuid.uuid4().hex[:10]}"
        self.client = TestClient(app)

    def tearDown(self):
        for key, value in self.saved.items():
            set_config(key, value)
        try:
            self.session.query(TokenUsage).filter(TokenUsage.uid == self.uid).delete()
            self.session.query(UserPlan).filter(UserPlan.uid == self.uid).delete()
            self.session.commit()
        except Exception:
            self.session.rollback()
        self.session.close()

    def _headers(self, email="user@example.com"):
        token = jwt.encode(
            {"sub": self.uid, "email": email, "exp": int(time.time()) + 600},
            SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    def _used(self):
        self.session.expire_all()
        return get_tokens_used_last_30_days(self.session, self.uid)

    def _seed_usage(self, tokens):
        key = format_date_key(datetime.now(timezone.utc))
        self.session.add(TokenUsage(id=f"{self.uid}:{key}", uid=self.uid, usage_date=key, tokens=tokens))
        self.session.commit()

    # ─── 鉴权 ───
    def test_missing_token_is_rejected(self):
        resp = self.client.post("/api/v1/chat", json={"model": "gpt-4", "messages": []})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["detail"], "Missing Authorization header")

    def test_invalid_token_is_rejected(self):
        resp = self.client.get("/api/v1/tokens/status", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["detail"], "Invalid token")

    def test_token_signed_with_other_secret_is_rejected(self):
        token = jwt.encode({"sub": self.uid}, "another-secret", algorithm="HS256")
        resp = self.client.get("/api/v1/tokens/plans", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(resp.status_code, 401)

    # ─── 对话 ───
    def test_chat_requires_model_and_messages(self):
        resp = self.client.post("/api/v1/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "model and messages are required")

    def test_chat_success_records_reported_usage(self):
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "hello world"}]}
        resp = self.client.post("/api/v1/chat", json=body, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["code"], 0)
        self.assertEqual(data["data"]["object"], "chat.completion")
        self.assertTrue(resp.headers.get("X-Request-Id"))
        self.assertEqual(self._used(), data["data"]["usage"]["total_tokens"])

    def test_chat_falls_back_to_estimate_without_usage(self):
        completion = {"id": "c1", "choices": [{"message": {"role": "assistant", "content": "ok"}}]}
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "x" * 40}]}
        with patch("apis.chat.create_chat_completion", return_value=completion):
            resp = self.client.post("/api/v1/chat", json=body, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        # ceil(40/4)=10, ceil(10*1.2)=12, 加 1 条消息开销 3
        self.assertEqual(self._used(), 15)

    def test_chat_over_quota_returns_429_without_calling_provider(self):
        self._seed_usage(10000)
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]}
        with patch("apis.chat.create_chat_completion") as provider:
            resp = self.client.post("/api/v1/chat", json=body, headers=self._headers())
        provider.assert_not_called()
        self.assertEqual(resp.status_code, 429)
        detail = resp.json()["detail"]
        self.assertEqual(detail["code"], 42901)
        self.assertEqual(detail["data"]["remaining"], 0)
        self.assertIn("10000/10000", detail["message"])
        self.assertEqual(self._used(), 10000)

    def test_chat_provider_rate_limit_returns_429(self):
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]}
        with patch("apis.chat.create_chat_completion", side_effect=ProviderRateLimitError("slow down", status_code=429)):
            resp = self.client.post("/api/v1/chat", json=body, headers=self._headers())
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()["detail"]["code"], 42902)
        self.assertEqual(self._used(), 0)

    def test_chat_provider_error_returns_500(self):
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]}
        with patch("apis.chat.create_chat_completion", side_effect=ProviderError("boom", status_code=502)):
            resp = self.client.post("/api/v1/chat", json=body, headers=self._headers())
        self.assertEqual(resp.status_code, 500)
        detail = resp.json()["detail"]
        self.assertEqual(detail["code"], 50001)
        self.assertEqual(detail["data"]["details"], "boom")
        self.assertEqual(self._used(), 0)

    def test_malformed_body_returns_400(self):
        resp = self.client.post("/api/v1/chat", json={"model": "gpt-4", "messages": "oops"}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["code"], 40001)

    # ─── 图片 ───
    def test_image_success_records_fixed_cost(self):
        resp = self.client.post("/api/v1/image", json={"prompt": "a red fox"}, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["data"]["url"].startswith("mock://images/"))
        self.assertEqual(self._used(), 1000)

    def test_image_requires_prompt(self):
        resp = self.client.post("/api/v1/image", json={}, headers=self._headers())
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "prompt is required")

    def test_image_without_url_returns_500_and_records_nothing(self):
        with patch("apis.image.generate_image", return_value=""):
            resp = self.client.post("/api/v1/image", json={"prompt": "a red fox"}, headers=self._headers())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["detail"], "Image provider did not return URL")
        self.assertEqual(self._used(), 0)

    def test_image_over_quota_returns_429(self):
        self._seed_usage(9500)
        with patch("apis.image.generate_image") as provider:
            resp = self.client.post("/api/v1/image", json={"prompt": "a red fox"}, headers=self._headers())
        provider.assert_not_called()
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()["detail"]["data"]["remaining"], 500)

    # ─── 配额状态 ───
    def test_status_without_stripe_reports_local_plan(self):
        self._seed_usage(1200)
        with patch("core.subscription_service.stripe_enabled", return_value=False):
            resp = self.client.get("/api/v1/tokens/status", headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["plan"], "FREE")
        self.assertEqual(data["monthly_limit"], 10000)
        self.assertEqual(data["tokens_used_last_30_days"], 1200)
        self.assertEqual(data["remaining"], 8800)
        self.assertFalse(data["synced_from_stripe"])

    def test_plans_catalog(self):
        resp = self.client.get("/api/v1/tokens/plans", headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        tiers = [p["tier"] for p in resp.json()["data"]]
        self.assertEqual(tiers, ["FREE", "BASIC", "PRO", "ENTERPRISE"])

    # ─── Webhook ───
    def _subscription_event(self, customer_id):
        return {
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_api",
                    "status": "active",
                    "customer": customer_id,
                    "items": {"data": [{"price": {"id": "price_a", "unit_amount": 2900, "product": "prod_test_quota"}}]},
                }
            },
        }

    def _signed_headers(self, payload: str, secret: str):
        timestamp = int(time.time())
        digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
        return {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={digest}"}

    def test_webhook_without_secret_leaves_plan_unchanged(self):
        customer = f"cus_{uuid.uuid4().hex[:10]}"
        update_user_plan(self.session, self.uid, "FREE", customer_id=customer)
        event = self._subscription_event(customer)
        event["data"]["object"]["items"]["data"][0]["price"]["nickname"] = "enterprise"
        resp = self.client.post(
            "/api/v1/stripe/webhook",
            content=json.dumps(event),
            headers={"Content-Type": "application/json"},
        )
        self.assertEqual(resp.status_code, 503)
        self.session.expire_all()
        record = self.session.get(UserPlan, self.uid)
        self.assertEqual(record.plan, "FREE")
        self.assertIsNone(record.stripe_subscription_id)
        self.assertEqual(get_monthly_token_limit(self.session, self.uid), 10000)

    def test_signed_webhook_updates_plan(self):
        set_config("stripe.webhook_secret", "whsec_test")
        customer = f"cus_{uuid.uuid4().hex[:10]}"
        update_user_plan(self.session, self.uid, "FREE", customer_id=customer)
        payload = json.dumps(self._subscription_event(customer))
        resp = self.client.post("/api/v1/stripe/webhook", content=payload, headers=self._signed_headers(payload, "whsec_test"))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["received"])
        self.assertEqual(body["plan"], "BASIC")
        self.session.expire_all()
        self.assertEqual(self.session.get(UserPlan, self.uid).plan, "BASIC")

    def test_webhook_signed_with_other_secret_is_rejected(self):
        set_config("stripe.webhook_secret", "whsec_test")
        customer = f"cus_{uuid.uuid4().hex[:10]}"
        update_user_plan(self.session, self.uid, "FREE", customer_id=customer)
        payload = json.dumps(self._subscription_event(customer))
        resp = self.client.post("/api/v1/stripe/webhook", content=payload, headers=self._signed_headers(payload, "whsec_other"))
        self.assertEqual(resp.status_code, 400)
        self.session.expire_all()
        self.assertEqual(self.session.get(UserPlan, self.uid).plan, "FREE")

    def test_webhook_with_bad_signature_is_rejected(self):
        set_config("stripe.webhook_secret", "whsec_test")
        resp = self.client.post(
            "/api/v1/stripe/webhook",
            content=json.dumps(self._subscription_event("cus_none")),
            headers={"Content-Type": "application/json", "Stripe-Signature": "t=1,v1=bad"},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Webhook processing failed")

    def test_webhook_with_invalid_json_is_rejected(self):
        set_config("stripe.webhook_secret", "whsec_test")
        payload = "{not json"
        resp = self.client.post("/api/v1/stripe/webhook", content=payload, headers=self._signed_headers(payload, "whsec_test"))
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    unittest.main()
