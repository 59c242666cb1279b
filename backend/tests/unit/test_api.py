"""
Unit tests for the HTTP layer in main.py

Runs the FastAPI app against real in-memory stores and mocked adapters.
"""

import unittest

import httpx
from fastapi.testclient import TestClient

from database import DEFAULT_HISTORY_PAGE, HISTORY_LIMIT
from main import create_app, is_rate_limit_error
from services.push_sender import ExpoPushClient
from tests.fixtures.mock_helpers import (
    VALID_TOKEN,
    create_mock_generator,
    create_test_context,
)


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.context = create_test_context()
        self.client = TestClient(create_app(context=self.context, start_scheduler=False))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)


class TestMeta(ApiTestCase):
    def test_root_and_health(self):
        self.assertEqual(self.client.get("/").json()["status"], "ok")
        self.assertEqual(self.client.get("/health").json()["status"], "healthy")

    def test_topics(self):
        topics = self.client.get("/digest/topics").json()["topics"]
        self.assertIn("Technology", topics)

    def test_status(self):
        status = self.client.get("/digest/status").json()
        self.assertFalse(status["scheduler_running"])
        self.assertEqual(status["provider"], "mock")
        self.assertEqual(status["persistence_failures"], 0)
        self.assertNotIn("generator_reachable", status)
        self.context.generator.check_connection.assert_not_called()

    def test_status_with_connection_check(self):
        self.context.generator.check_connection.return_value = True
        status = self.client.get("/digest/status", params={"check": "true"}).json()
        self.assertTrue(status["generator_reachable"])


class TestSettings(ApiTestCase):
    def test_requires_recipient_id(self):
        response = self.client.get("/digest/settings")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"success": False, "error": "recipientId is required"})

    def test_unknown_recipient_gets_defaults(self):
        response = self.client.get("/digest/settings", params={"recipientId": "new"})
        self.assertEqual(response.json()["settings"], {
            "enabled": False, "time": "07:00", "topic": "Technology", "customPrompt": "",
        })
        self.assertIsNone(self.context.recipients.get("new"))

    def test_save_and_read_back(self):
        response = self.client.post("/digest/settings", json={
            "recipientId": "r1",
            "enabled": True,
            "time": "06:30",
            "topic": "Business",
            "customPrompt": "Focus on Asia",
            "timezone": "Asia/Jakarta",
        })
        self.assertEqual(response.status_code, 200)
        saved = response.json()["settings"]
        self.assertEqual(saved["time"], "06:30")
        self.assertIsNotNone(saved["updatedAt"])

        settings = self.client.get("/digest/settings", params={"recipientId": "r1"}).json()["settings"]
        self.assertEqual(settings["topic"], "Business")
        self.assertEqual(settings["customPrompt"], "Focus on Asia")
        self.assertEqual(settings["timezone"], "Asia/Jakarta")

    def test_partial_update_keeps_other_fields(self):
        self.client.post("/digest/settings", json={"recipientId": "r1", "topic": "Health"})
        self.client.post("/digest/settings", json={"recipientId": "r1", "enabled": True})
        settings = self.context.recipients.get("r1")
        self.assertEqual(settings.topic, "Health")
        self.assertTrue(settings.enabled)

    def test_legacy_device_id(self):
        self.client.post("/digest/settings", json={"deviceId": "d1", "enabled": True})
        response = self.client.get("/digest/settings", params={"deviceId": "d1"})
        self.assertTrue(response.json()["settings"]["enabled"])

    def test_invalid_time_is_rejected(self):
        response = self.client.post("/digest/settings", json={"recipientId": "r1", "time": "25:00"})
        self.assertEqual(response.status_code, 422)
        self.assertIsNone(self.context.recipients.get("r1"))

    def test_register_push(self):
        response = self.client.post("/digest/register-push", json={"recipientId": "r1", "pushToken": VALID_TOKEN})
        self.assertEqual(response.json(), {"success": True, "message": "Push token registered"})
        self.assertEqual(self.context.recipients.get("r1").push_token, VALID_TOKEN)

    def test_register_push_requires_both_fields(self):
        response = self.client.post("/digest/register-push", json={"recipientId": "r1"})
        self.assertEqual(response.status_code, 400)


class TestHistory(ApiTestCase):
    def test_list_and_detail(self):
        first = self.context.history.append("r1", "first", "Technology")
        second = self.context.history.append("r1", "second", "Technology")

        history = self.client.get("/digest/history", params={"recipientId": "r1"}).json()["history"]
        self.assertEqual([d["id"] for d in history], [second.id, first.id])

        limited = self.client.get("/digest/history", params={"recipientId": "r1", "limit": 1}).json()["history"]
        self.assertEqual(len(limited), 1)

        detail = self.client.get(f"/digest/history/{first.id}", params={"recipientId": "r1"}).json()
        self.assertEqual(detail["digest"]["content"], "first")
        self.assertIn("createdAt", detail["digest"])

    def test_oversized_limit_is_capped(self):
        for i in range(HISTORY_LIMIT + 5):
            self.context.history.append("r1", f"digest {i}", "Technology")

        response = self.client.get("/digest/history", params={"recipientId": "r1", "limit": 100})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["history"]), HISTORY_LIMIT)

    def test_non_positive_limit_uses_default_page(self):
        for i in range(DEFAULT_HISTORY_PAGE + 5):
            self.context.history.append("r1", f"digest {i}", "Technology")

        response = self.client.get("/digest/history", params={"recipientId": "r1", "limit": 0})

        self.assertEqual(len(response.json()["history"]), DEFAULT_HISTORY_PAGE)

    def test_unknown_digest_is_404(self):
        response = self.client.get("/digest/history/nope", params={"recipientId": "r1"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "Digest not found")

    def test_history_requires_recipient_id(self):
        self.assertEqual(self.client.get("/digest/history").status_code, 400)
        self.assertEqual(self.client.get("/digest/history/abc").status_code, 400)


class TestManualTrigger(ApiTestCase):
    def test_success(self):
        response = self.client.post("/test-digest", json={
            "recipientId": "r9", "topic": "Gaming", "pushToken": VALID_TOKEN,
        })
        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(body["success"])
        self.assertTrue(body["delivered"])
        self.assertEqual(body["content"], body["digest"]["content"])
        self.assertEqual(len(self.context.history.list("r9")), 1)

    def test_unreadable_gateway_response_still_returns_digest(self):
        http_client = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>gateway</html>")
        ))
        self.context.pipeline.dispatcher = ExpoPushClient(http_client=http_client)

        response = self.client.post("/test-digest", json={"topic": "Gaming", "pushToken": VALID_TOKEN})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["success"])
        self.assertFalse(response.json()["delivered"])

    def test_default_recipient(self):
        self.client.post("/test-digest", json={"topic": "Gaming"})
        self.assertEqual(len(self.context.history.list("test-device")), 1)

    def test_topic_required(self):
        response = self.client.post("/test-digest", json={"recipientId": "r1"})
        self.assertEqual(response.status_code, 400)

    def test_generation_failure_is_500(self):
        self.context.pipeline.generator = create_mock_generator(error="No content generated")
        response = self.client.post("/test-digest", json={"topic": "Gaming"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"success": False, "error": "No content generated"})

    def test_rate_limit_is_429(self):
        self.context.pipeline.generator = create_mock_generator(error="Error code: 429 - rate_limit_error")
        response = self.client.post("/test-digest", json={"topic": "Gaming"})
        self.assertEqual(response.status_code, 429)


class TestChat(ApiTestCase):
    def test_reply_with_history(self):
        response = self.client.post("/chat", json={
            "message": "What should I cook tonight?",
            "history": [
                {"text": "Hi", "isUser": True},
                {"text": "Hello! 👋", "isUser": False},
                {"text": "   ", "isUser": True},
            ],
        })

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(body["success"])
        self.assertEqual(body["response"], "Hi! How can I help?")
        self.assertIn("timestamp", body)

        prompt = self.context.generator.complete.call_args.args[0]
        self.assertIn("User: Hi\n", prompt)
        self.assertIn("Digest AI: Hello! 👋\n", prompt)
        self.assertTrue(prompt.endswith("User: What should I cook tonight?\nDigest AI:"))

    def test_message_required(self):
        response = self.client.post("/chat", json={"history": []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"success": False, "error": "Message is required"})

    def test_rate_limit_is_429(self):
        self.context.chat.generator = create_mock_generator(error="Error code: 429 - rate_limit_error")
        response = self.client.post("/chat", json={"message": "hello"})
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["details"], "Rate limit exceeded")

    def test_provider_failure_is_500(self):
        self.context.chat.generator = create_mock_generator(error="model unavailable")
        response = self.client.post("/chat", json={"message": "hello"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["details"], "model unavailable")

    def test_root_lists_chat_feature(self):
        self.assertIn("chat", self.client.get("/").json()["features"])


class TestRateLimitDetection(unittest.TestCase):
    def test_markers(self):
        self.assertTrue(is_rate_limit_error("RESOURCE_EXHAUSTED: quota"))
        self.assertTrue(is_rate_limit_error("Rate limit reached"))
        self.assertFalse(is_rate_limit_error("No content generated"))
        self.assertFalse(is_rate_limit_error(None))


if __name__ == "__main__":
    unittest.main()
