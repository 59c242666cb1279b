"""Unit tests for services/chat_service.py."""

import unittest

from errors import GenerationFailed
from models import ChatMessage
from services.chat_service import ASSISTANT_NAME, SYSTEM_PROMPT, ChatService, build_chat_prompt
from tests.fixtures.mock_helpers import create_mock_generator


class TestBuildChatPrompt(unittest.TestCase):
    def test_without_history(self):
        prompt = build_chat_prompt("Hello")
        self.assertTrue(prompt.startswith(SYSTEM_PROMPT))
        self.assertTrue(prompt.endswith(f"User: Hello\n{ASSISTANT_NAME}:"))

    def test_history_turns_in_order_skipping_blank(self):
        history = [
            ChatMessage.model_validate({"text": "Hi", "isUser": True}),
            ChatMessage.model_validate({"text": "", "isUser": False}),
            ChatMessage.model_validate({"text": None, "isUser": True}),
            ChatMessage.model_validate({"text": "Hello there", "isUser": False}),
        ]
        prompt = build_chat_prompt("Recipe ideas?", history)
        turns = prompt[len(SYSTEM_PROMPT):].strip().split("\n")
        self.assertEqual(turns, [
            "User: Hi",
            f"{ASSISTANT_NAME}: Hello there",
            "User: Recipe ideas?",
            f"{ASSISTANT_NAME}:",
        ])


class TestChatService(unittest.TestCase):
    def test_reply(self):
        generator = create_mock_generator()
        self.assertEqual(ChatService(generator).reply("Hello"), "Hi! How can I help?")
        generator.complete.assert_called_once_with(build_chat_prompt("Hello"))
        generator.generate.assert_not_called()

    def test_empty_reply_is_failure(self):
        generator = create_mock_generator()
        generator.complete.return_value = ""
        with self.assertRaisesRegex(GenerationFailed, "No content generated"):
            ChatService(generator).reply("Hello")

    def test_provider_errors_propagate(self):
        with self.assertRaisesRegex(GenerationFailed, "quota"):
            ChatService(create_mock_generator(error="quota exceeded")).reply("Hello")


if __name__ == "__main__":
    unittest.main()
