"""
Topic digest generation with live web grounding.

The Anthropic provider uses the server-side web search tool and reads sources
from search results and citations. The OpenAI provider uses the Responses API
web search tool and reads url_citation annotations.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import anthropic
import openai

from config import (
    ANTHROPIC_API_KEY,
    ANTHROPIC_MODEL,
    DIGEST_LANGUAGE,
    DIGEST_PROVIDER,
    OPENAI_API_KEY,
    OPENAI_MODEL,
    REQUEST_TIMEOUT_SECONDS,
)
from errors import GenerationFailed
from models import DigestSource

logger = logging.getLogger(__name__)

# Available topics and the context each one adds to the prompt
TOPICS = {
    "Technology": "latest technology news, AI, startups, gadgets",
    "Business": "business news, economy, stock markets, finance",
    "Sports": "sports news, football, badminton, MotoGP",
    "Entertainment": "entertainment news, film, music, celebrities",
    "Politics": "political news, government, public policy",
    "Health": "health news, healthy living tips, medical research",
    "Gaming": "gaming news, esports, mobile and console games",
}

MAX_SOURCES = 10
URL_PATTERN = re.compile(r"https?://[^\s)]+")


@dataclass(frozen=True)
class GenerationResult:
    content: str
    sources: list[DigestSource] = field(default_factory=list)


def get_topic_context(topic: str) -> str:
    return TOPICS.get(topic, topic)


def build_prompt(topic: str, custom_prompt: str = "", language: str = DIGEST_LANGUAGE) -> str:
    """Build the digest prompt for a topic, optionally led by the user's own prompt."""
    topic_context = get_topic_context(topic)

    if custom_prompt and custom_prompt.strip():
        return f"""{custom_prompt.strip()}

Focus on: {topic_context}

Include news sources where available. Write in {language}."""

    return f"""Give a summary of today's most recent news about {topic_context}.

Response format:
DAILY DIGEST: {topic.upper()}

Give the 3-5 most important stories, each with:
- The headline
- A short summary (2-3 sentences)
- The date and the source/link of the story

At the end, list the news sources you used.

Write in {language} that is easy to understand.
Add a relevant emoji to each story."""


def dedupe_sources(sources: list[DigestSource], limit: int = MAX_SOURCES) -> list[DigestSource]:
    """Drop repeated URLs (first occurrence wins) and cap the list."""
    seen = set()
    unique = []
    for source in sources:
        if not source.url or source.url in seen:
            continue
        seen.add(source.url)
        unique.append(source)
    return unique[:limit]


def sources_from_text(content: str) -> list[DigestSource]:
    """Fallback: pick URL-like substrings out of the generated text."""
    urls = URL_PATTERN.findall(content or "")
    return [DigestSource(title=f"Source {i}", url=url) for i, url in enumerate(urls, 1)]


class DigestGenerator:
    """Shared prompt/extract flow. Providers implement _request and _grounding_sources."""

    provider = ""

    def __init__(self, language: str = DIGEST_LANGUAGE):
        self.language = language

    def generate(self, topic: str, custom_prompt: str = "") -> GenerationResult:
        """
        Generate a digest for a topic.

        Raises:
            GenerationFailed: the provider raised or returned no text
        """
        prompt = build_prompt(topic, custom_prompt, self.language)
        logger.info("Generating digest for topic: %s (%s)", topic, self.provider)

        response = self._request(prompt)
        content = (self._extract_text(response) or "").strip()
        if not content:
            logger.error("No content generated for topic %s", topic)
            raise GenerationFailed("No content generated")

        sources = self.extract_sources(response, content)
        logger.info("Digest generated for topic %s with %d source(s)", topic, len(sources))
        return GenerationResult(content=content, sources=sources)

    def extract_sources(self, response: Any, content: str) -> list[DigestSource]:
        """Sources from grounding metadata, else URLs in the text. Never raises."""
        sources: list[DigestSource] = []
        try:
            sources = self._grounding_sources(response)
            if not sources:
                sources = sources_from_text(content)
        except Exception as e:
            logger.warning("Could not extract sources: %s", e)
        return dedupe_sources(sources)

    def _request(self, prompt: str) -> Any:
        raise NotImplementedError

    def _extract_text(self, response: Any) -> str | None:
        raise NotImplementedError

    def _grounding_sources(self, response: Any) -> list[DigestSource]:
        raise NotImplementedError

    def complete(self, prompt: str) -> str:
        """Plain text completion without web search (chat, connection checks)."""
        raise NotImplementedError

    def check_connection(self) -> bool:
        try:
            return bool(self.complete("Hello, can you answer?"))
        except GenerationFailed as e:
            logger.warning("%s connection test failed: %s", self.provider, e)
            return False


class AnthropicDigestGenerator(DigestGenerator):
    provider = "anthropic"

    def __init__(
        self,
        client: anthropic.Anthropic | None = None,
        model: str = ANTHROPIC_MODEL,
        max_tokens: int = 2048,
        max_searches: int = 5,
        language: str = DIGEST_LANGUAGE,
    ):
        super().__init__(language)
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.max_searches = max_searches

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            if not ANTHROPIC_API_KEY:
                raise GenerationFailed("ANTHROPIC_API_KEY not configured")
            self._client = anthropic.Anthropic(
                api_key=ANTHROPIC_API_KEY,
                timeout=REQUEST_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._client

    def _request(self, prompt: str) -> Any:
        try:
            return self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                tools=[{
                    "type": "web_search_20250305",
                    "name": "web_search",
                    "max_uses": self.max_searches,
                }],
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.error("Anthropic request failed: %s", e)
            raise GenerationFailed(str(e)) from e

    def _extract_text(self, response: Any) -> str | None:
        # Web search answers arrive as several text blocks around tool blocks
        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    def _grounding_sources(self, response: Any) -> list[DigestSource]:
        cited = []
        searched = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                for citation in getattr(block, "citations", None) or []:
                    url = getattr(citation, "url", None)
                    if url:
                        cited.append(DigestSource(title=getattr(citation, "title", None) or url, url=url))
            elif block_type == "web_search_tool_result":
                results = getattr(block, "content", None)
                # An error result is an object, not a list
                if isinstance(results, list):
                    for result in results:
                        url = getattr(result, "url", None)
                        if url:
                            searched.append(DigestSource(title=getattr(result, "title", None) or url, url=url))
            elif block_type == "server_tool_use":
                logger.debug("Search query used: %s", getattr(block, "input", None))
        return cited + searched

    def complete(self, prompt: str) -> str:
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.error("Anthropic request failed: %s", e)
            raise GenerationFailed(str(e)) from e
        return self._extract_text(message).strip()


class OpenAIDigestGenerator(DigestGenerator):
    provider = "openai"

    def __init__(
        self,
        client: openai.OpenAI | None = None,
        model: str = OPENAI_MODEL,
        language: str = DIGEST_LANGUAGE,
    ):
        super().__init__(language)
        self._client = client
        self.model = model

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            if not OPENAI_API_KEY:
                raise GenerationFailed("OPENAI_API_KEY not configured")
            self._client = openai.OpenAI(
                api_key=OPENAI_API_KEY,
                timeout=REQUEST_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._client

    def _request(self, prompt: str) -> Any:
        try:
            return self.client.responses.create(
                model=self.model,
                tools=[{"type": "web_search"}],
                input=prompt,
            )
        except openai.OpenAIError as e:
            logger.error("OpenAI request failed: %s", e)
            raise GenerationFailed(str(e)) from e

    def _extract_text(self, response: Any) -> str | None:
        return response.output_text

    def _grounding_sources(self, response: Any) -> list[DigestSource]:
        sources = []
        for item in response.output or []:
            if getattr(item, "type", None) != "message":
                continue
            for part in getattr(item, "content", None) or []:
                for annotation in getattr(part, "annotations", None) or []:
                    if getattr(annotation, "type", None) == "url_citation" and annotation.url:
                        sources.append(DigestSource(title=annotation.title or annotation.url, url=annotation.url))
        return sources

    def complete(self, prompt: str) -> str:
        try:
            response = self.client.responses.create(model=self.model, input=prompt)
        except openai.OpenAIError as e:
            logger.error("OpenAI request failed: %s", e)
            raise GenerationFailed(str(e)) from e
        return (response.output_text or "").strip()


def get_generator(provider: str = DIGEST_PROVIDER) -> DigestGenerator:
    if provider == "openai":
        return OpenAIDigestGenerator()
    return AnthropicDigestGenerator()
