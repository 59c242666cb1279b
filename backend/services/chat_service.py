"""Conversational assistant on top of the configured text generator."""

import logging

from errors import GenerationFailed
from models import ChatMessage

logger = logging.getLogger(__name__)

ASSISTANT_NAME = "Digest AI"

SYSTEM_PROMPT = f"""You are {ASSISTANT_NAME}, a friendly, smart and helpful AI assistant.

Traits:
- Friendly and relaxed when talking
- Gives informative answers that are easy to understand
- Likes to use emoji to keep the conversation lively
- Helps with all kinds of topics: programming, travel, recipes, fitness, languages and more
- Always tries to give practical solutions

If asked who you are, answer that you are {ASSISTANT_NAME}."""


def build_chat_prompt(message: str, history: list[ChatMessage] | None = None) -> str:
    """System prompt, then the non-empty history turns, then the new message."""
    lines = [SYSTEM_PROMPT, ""]
    for turn in history or []:
        if turn.text and turn.text.strip():
            speaker = "User" if turn.is_user else ASSISTANT_NAME
            lines.append(f"{speaker}: {turn.text}")
    lines.append(f"User: {message}")
    lines.append(f"{ASSISTANT_NAME}:")
    return "\n".join(lines)


class ChatService:
    def __init__(self, generator):
        self.generator = generator

    def reply(self, message: str, history: list[ChatMessage] | None = None) -> str:
        """
        Answer one chat message given the earlier turns.

        Raises:
            GenerationFailed: the provider raised or returned no text
        """
        logger.info("Received chat message: %s", message[:50])
        text = self.generator.complete(build_chat_prompt(message, history))
        if not text:
            raise GenerationFailed("No content generated")
        logger.info("Chat response: %s", text[:50])
        return text
