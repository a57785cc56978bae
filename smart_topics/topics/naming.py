"""
Topic naming - title, keywords and a short report for a cluster.

Naming is an optional enrichment: ``name_topic_safely`` never raises and
returns a NamingOutcome so the rebuild can fall back to a placeholder and
record a warning.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from loguru import logger

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import Document, first_present

MAX_KEYWORDS = 6
SNIPPET_CHARS = 800
UNTITLED = "Untitled topic"

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """You are the topic editor of a personal knowledge base. Use only the note snippets you are given; never invent facts.

Reply with JSON only (no extra text) with the fields:
- title: topic title (at most 16 words)
- keywords: array of at most 6 short keywords
- report_markdown: a structured Markdown report with the sections Overview, Key points, Timeline hints, Open questions.

Citation rule: when a statement comes from a specific note, end the sentence with the marker [note:<id>]."""


@dataclass
class TopicNaming:
    title: str
    keywords: list[str] = field(default_factory=list)
    report_markdown: str = ""


@dataclass
class NamingOutcome:
    """Result of a naming attempt; ``error`` is set when a placeholder was used."""

    naming: TopicNaming
    error: TopicEngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class NamingProvider(Protocol):
    model_name: str

    async def name_topic(self, documents: list[Document]) -> TopicNaming:
        ...


def placeholder_naming(index: int) -> TopicNaming:
    """Generic name used when no naming provider is available or it fails."""
    return TopicNaming(title=f"Topic {index + 1}")


def format_notes_prompt(documents: list[Document], limit: int = 8) -> str:
    """Render representative notes for the naming prompt."""
    blocks = []
    for i, doc in enumerate(documents[:limit]):
        snippet = first_present(doc.excerpt, doc.content_text) or ""
        blocks.append(
            f"[#{i + 1}] [note:{doc.id}] title={json.dumps(doc.title or '', ensure_ascii=False)}\n"
            f"{snippet[:SNIPPET_CHARS]}"
        )
    notes_text = "\n\n---\n\n".join(blocks)
    return f"Write a topic title, keywords and topic report from these note snippets:\n\n{notes_text}"


def parse_naming_content(content: str) -> TopicNaming:
    """
    Parse the model's JSON reply.

    Falls back to the first ``{...}`` block when the model wraps the JSON in
    prose or code fences.
    """
    try:
        parsed: Any = json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_BLOCK_RE.search(content)
        if not match:
            raise ValueError("Failed to parse naming JSON")
        parsed = json.loads(match.group(0))

    obj = parsed if isinstance(parsed, dict) else {}
    title = obj.get("title")
    title = title.strip() if isinstance(title, str) and title.strip() else UNTITLED
    raw_keywords = obj.get("keywords")
    keywords = (
        [str(k).strip() for k in raw_keywords if str(k).strip()][:MAX_KEYWORDS]
        if isinstance(raw_keywords, list)
        else []
    )
    report = obj.get("report_markdown")
    report = report.strip() if isinstance(report, str) else ""
    return TopicNaming(title=title, keywords=keywords, report_markdown=report)


class OpenAICompatibleNamingProvider:
    """Chat-completions client that names topics from representative notes."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        timeout_seconds: float = 90.0,
        sample_size: int = 8,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.model_name = model_name
        self.sample_size = sample_size
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def name_topic(self, documents: list[Document]) -> TopicNaming:
        """
        Ask the model for a title, keywords and report.

        Raises:
            TopicEngineError: NAMING on transport, HTTP or parse failures.
        """
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model_name,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": format_notes_prompt(documents, self.sample_size)},
                    ],
                    "temperature": 0.3,
                    "response_format": {"type": "json_object"},
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TopicEngineError(
                ErrorKind.NAMING,
                f"Naming API failed ({e.response.status_code})",
                details={"raw": e.response.text[:500], "model": self.model_name},
            ) from e
        except httpx.RequestError as e:
            raise TopicEngineError(
                ErrorKind.NAMING,
                "Naming request failed",
                details={"raw": str(e), "model": self.model_name},
            ) from e

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TopicEngineError(
                ErrorKind.NAMING,
                "Naming API returned an unexpected payload",
                details={"raw": response.text[:500]},
            ) from e

        if not isinstance(content, str) or not content.strip():
            raise TopicEngineError(ErrorKind.NAMING, "Naming API returned empty content")

        try:
            return parse_naming_content(content)
        except ValueError as e:
            raise TopicEngineError(
                ErrorKind.NAMING,
                "Failed to parse naming JSON",
                details={"raw": content[:500]},
            ) from e


async def name_topic_safely(
    provider: NamingProvider | None,
    documents: list[Document],
    index: int,
) -> NamingOutcome:
    """Name a cluster, substituting a placeholder on any provider failure."""
    if provider is None:
        return NamingOutcome(placeholder_naming(index))
    try:
        return NamingOutcome(await provider.name_topic(documents))
    except TopicEngineError as e:
        logger.warning(f"Topic naming failed for cluster {index}: {e.message}")
        return NamingOutcome(placeholder_naming(index), error=e)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Topic naming failed for cluster {index}: {e}")
        return NamingOutcome(
            placeholder_naming(index),
            error=TopicEngineError(ErrorKind.NAMING, "Topic naming failed", details={"raw": str(e)}),
        )


def build_naming_provider(settings: Any) -> NamingProvider | None:
    """Create the configured naming provider, or None for placeholder names."""
    if not settings.has_naming_configured():
        logger.info("No naming provider configured; topics get placeholder titles")
        return None
    return OpenAICompatibleNamingProvider(
        base_url=settings.naming_base_url,
        api_key=settings.naming_api_key,
        model_name=settings.naming_model,
        timeout_seconds=settings.naming_timeout_seconds,
        sample_size=settings.naming_sample_size,
    )
