"""Expo push delivery client."""

import logging
import re
from typing import Any

import httpx

from config import EXPO_ACCESS_TOKEN, REQUEST_TIMEOUT_SECONDS
from errors import DeliveryFailed, InvalidToken
from logging_setup import short_id

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
PUSH_CHUNK_SIZE = 100
ANDROID_CHANNEL_ID = "digest-notifications"
PREVIEW_LIMIT = 100

_UUID_TOKEN = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Any) -> bool:
    """Same check the Expo server SDKs apply before sending."""
    if not isinstance(token, str):
        return False
    if token.startswith(("ExponentPushToken[", "ExpoPushToken[")) and token.endswith("]"):
        return True
    return bool(_UUID_TOKEN.match(token))


def chunk_messages(messages: list[dict], size: int = PUSH_CHUNK_SIZE) -> list[list[dict]]:
    return [messages[i:i + size] for i in range(0, len(messages), size)]


def truncate_preview(preview: str, limit: int = PREVIEW_LIMIT) -> str:
    return preview[:limit] + "..." if len(preview) > limit else preview


class ExpoPushClient:
    """
    Expo push client.

    Args:
        access_token: Optional Expo access token sent as a bearer token.
        timeout_seconds: Request timeout.
        http_client: Prebuilt httpx client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        access_token: str | None = EXPO_ACCESS_TOKEN,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ):
        self.headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"
        self.client = http_client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        self.client.close()

    def send_chunk(self, messages: list[dict]) -> list[dict]:
        """Submit one chunk and return its tickets, in message order."""
        response = self.client.post(EXPO_PUSH_URL, json=messages, headers=self.headers)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise DeliveryFailed(f"Unreadable Expo response: {response.text[:200]}") from e
        tickets = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(tickets, dict):
            # Single-message requests may come back as a bare ticket
            tickets = [tickets]
        if not isinstance(tickets, list):
            errors = payload.get("errors") if isinstance(payload, dict) else None
            raise DeliveryFailed(f"Unexpected Expo response: {errors or payload}")
        return tickets

    def send(self, token: str, title: str, body: str, data: dict | None = None) -> str:
        """
        Send one push notification and return the Expo ticket id.

        Raises:
            InvalidToken: token is not an Expo push token; nothing is sent
            DeliveryFailed: request failed or the ticket status is not ok
        """
        if not is_expo_push_token(token):
            logger.error("Invalid Expo push token: %s", short_id(token, 30))
            raise InvalidToken("Invalid push token")

        message = {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
            "priority": "high",
            "channelId": ANDROID_CHANNEL_ID,
        }

        logger.info("Sending push notification to: %s", short_id(token, 30))
        tickets = []
        for chunk in chunk_messages([message]):
            try:
                tickets.extend(self.send_chunk(chunk))
            except httpx.HTTPError as e:
                logger.error("Error sending notification chunk: %s", e)
                raise DeliveryFailed(f"Push request failed: {e}") from e

        if not tickets:
            raise DeliveryFailed("No push ticket returned")

        ticket = tickets[0]
        if not isinstance(ticket, dict):
            raise DeliveryFailed(f"Unexpected Expo ticket: {ticket}")
        if ticket.get("status") == "ok":
            ticket_id = str(ticket.get("id") or "")
            logger.info("Push notification sent. Ticket ID: %s", ticket_id)
            return ticket_id

        error = ticket.get("message") or "Unknown error"
        logger.error("Push notification failed: %s", error)
        raise DeliveryFailed(error)

    def send_digest_notification(self, token: str, topic: str, digest_id: str, preview: str) -> str:
        """Send the digest-ready notification the client deep-links from."""
        return self.send(
            token,
            f"Daily Digest: {topic}",
            truncate_preview(preview),
            {"type": "digest", "digestId": digest_id, "topic": topic},
        )
