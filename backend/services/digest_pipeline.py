"""Generate -> store -> notify, for one recipient."""

import logging
from dataclasses import dataclass
from typing import Any

from database import HistoryStore
from errors import DispatchError, GenerationFailed
from logging_setup import short_id
from models import DigestRecord, RecipientPreferences

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW = "Fresh news picked for you!"


@dataclass
class DigestOutcome:
    recipient_id: str
    success: bool
    digest: DigestRecord | None = None
    ticket_id: str | None = None
    error: str | None = None
    delivery_error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.ticket_id is not None


@dataclass
class ManualDigestResult:
    success: bool
    digest: DigestRecord | None = None
    content: str | None = None
    error: str | None = None
    delivered: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "digest": self.digest.model_dump(mode="json", by_alias=True),
            "content": self.content,
            "delivered": self.delivered,
        }


def extract_preview(content: str, fallback: str = DEFAULT_PREVIEW) -> str:
    """First non-empty line of the digest."""
    for line in content.split("\n"):
        if line.strip():
            return line.strip()
    return fallback


class DigestPipeline:
    def __init__(self, generator, history: HistoryStore, dispatcher):
        self.generator = generator
        self.history = history
        self.dispatcher = dispatcher

    def run(
        self,
        recipient_id: str,
        topic: str,
        custom_prompt: str = "",
        push_token: str | None = None,
    ) -> DigestOutcome:
        """
        Generate a digest, append it to history and notify the recipient.

        Generation failures stop the run before anything is stored. Delivery
        failures are recorded on the outcome; the stored digest is kept.
        """
        try:
            result = self.generator.generate(topic, custom_prompt)
        except GenerationFailed as e:
            logger.error("Failed to generate digest for %s: %s", short_id(recipient_id), e)
            return DigestOutcome(recipient_id, success=False, error=str(e))

        digest = self.history.append(recipient_id, result.content, topic, result.sources)
        outcome = DigestOutcome(recipient_id, success=True, digest=digest)

        if not push_token:
            logger.info("No push token for %s, digest stored only", short_id(recipient_id))
            return outcome

        try:
            outcome.ticket_id = self.dispatcher.send_digest_notification(
                push_token, topic, digest.id, extract_preview(result.content)
            )
        except DispatchError as e:
            logger.error("Digest %s stored but not delivered to %s: %s", digest.id, short_id(recipient_id), e)
            outcome.delivery_error = str(e)
        return outcome

    def process_digest(self, recipient_id: str, preferences: RecipientPreferences) -> DigestOutcome:
        """Scheduler path: use the recipient's saved topic, prompt and token."""
        logger.info("Processing digest for recipient: %s", short_id(recipient_id))
        outcome = self.run(
            recipient_id,
            preferences.topic,
            preferences.custom_prompt,
            preferences.push_token,
        )
        if outcome.success:
            logger.info("Digest processed for recipient: %s", short_id(recipient_id))
        return outcome

    def trigger_manual_digest(
        self,
        recipient_id: str,
        topic: str,
        custom_prompt: str = "",
        push_token: str | None = None,
    ) -> ManualDigestResult:
        """On-demand digest; does not require saved preferences."""
        logger.info("Manual digest trigger for topic: %s", topic)
        outcome = self.run(recipient_id, topic, custom_prompt, push_token)
        if not outcome.success:
            return ManualDigestResult(success=False, error=outcome.error)
        return ManualDigestResult(
            success=True,
            digest=outcome.digest,
            content=outcome.digest.content,
            delivered=outcome.delivered,
        )
