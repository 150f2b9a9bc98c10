"""
LunarScry - AI Score Gate

Boundary between the moderation core and the external content-analysis
service. The core only depends on the ContentScorer contract:

    score(request) -> confidence in 0-100

so any model or vendor (or a deterministic stub in tests) can be plugged
in. AIScoreGate checks that the payload matches the registered
fingerprint, asks the scorer, and hands the score to the orchestrator as
the authorised scorer identity.
"""

import base64
import binascii
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from anthropic import Anthropic

from content_registry import ContentRecord, compute_fingerprint
from moderation_exceptions import InvalidContentError, ScorerError

logger = logging.getLogger(__name__)

DEFAULT_GATE_ID = "ai-score-gate"
DEFAULT_SCORER_MODEL = "claude-3-5-sonnet-20241022"


@dataclass
class ScoringRequest:
    """What a scorer sees: the raw payload is never stored by the core."""
    content_id: str
    category: str
    payload: str | bytes
    media_type: str = "image/png"


class ContentScorer(ABC):
    """Pluggable source of AI confidence scores."""

    @abstractmethod
    def score(self, request: ScoringRequest) -> int:
        """
        Score a content item.

        Returns:
            Confidence (0-100) that the content violates policy
        """


class StaticScorer(ContentScorer):
    """
    Deterministic scorer.

    Returns a fixed score, optionally overridden per fingerprint; used in
    tests and local development.
    """

    def __init__(self, default_score: int = 0, overrides: dict[str, int] | None = None):
        self.default_score = default_score
        self.overrides = dict(overrides or {})
        self.calls: list[str] = []

    def set_score(self, payload: str | bytes, score: int) -> None:
        self.overrides[compute_fingerprint(payload)] = score

    def score(self, request: ScoringRequest) -> int:
        self.calls.append(request.content_id)
        return self.overrides.get(compute_fingerprint(request.payload), self.default_score)


class ClaudeContentScorer(ContentScorer):
    """Scores content with the Anthropic messages API."""

    def __init__(self, api_key: str | None = None, model: str | None = None, client: Any = None):
        """
        Initialize the scorer.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY)
            model: Model name (defaults to MODERATION_SCORER_MODEL)
            client: Pre-built client, mainly for tests
        """
        if client is None:
            self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not self.api_key:
                raise ValueError("ANTHROPIC_API_KEY is required for AI content scoring")
            client = Anthropic(api_key=self.api_key)
        self.client = client
        self.model = model or os.getenv("MODERATION_SCORER_MODEL", DEFAULT_SCORER_MODEL)

    def score(self, request: ScoringRequest) -> int:
        content = self._build_content(request)
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=256,
                messages=[{"role": "user", "content": content}],
            )
        except Exception as e:
            raise ScorerError("Content scoring request failed", request.content_id, cause=e) from e

        if not message.content or not hasattr(message.content[0], "text"):
            raise ScorerError("Empty response from content scorer", request.content_id)

        try:
            result = json.loads(self._extract_json_from_response(message.content[0].text))
            confidence = int(result["confidence"])
        except (ValueError, KeyError, TypeError) as e:
            raise ScorerError("Unparseable scorer response", request.content_id, cause=e) from e

        if not 0 <= confidence <= 100:
            raise ScorerError(f"Scorer confidence out of range: {confidence}", request.content_id)

        logger.info("Scored %s: confidence=%d", request.content_id, confidence)
        return confidence

    def _build_content(self, request: ScoringRequest) -> list[dict[str, Any]]:
        """
        Build the message content blocks.

        Image payloads arrive as raw bytes or, over the API, as base64 text,
        which is passed through as-is.

        Raises:
            InvalidContentError: Image text payload is not valid base64
        """
        instructions = f"""You are the content-analysis service of a community moderation protocol.

Assess how likely the following {request.category} content violates common
community guidelines (harassment, hate, violence, sexual content involving
minors, spam, scams, malware links).

Respond in JSON format:
{{
    "confidence": 0-100,
    "categories": ["violations detected"],
    "reasoning": "one sentence"
}}"""
        if request.category == "image":
            if isinstance(request.payload, bytes):
                data = base64.b64encode(request.payload).decode("ascii")
            else:
                data = request.payload.strip()
                try:
                    base64.b64decode(data, validate=True)
                except binascii.Error as e:
                    raise InvalidContentError(
                        "Image payload must be base64 encoded",
                        {"content_id": request.content_id},
                    ) from e
            return [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": request.media_type,
                        "data": data,
                    },
                },
                {"type": "text", "text": instructions},
            ]

        text = request.payload.decode("utf-8", errors="replace") if isinstance(request.payload, bytes) else request.payload
        label = "LINK" if request.category == "link" else "CONTENT"
        return [{"type": "text", "text": f"{instructions}\n\n{label}:\n{text}"}]

    @staticmethod
    def _extract_json_from_response(response_text: str) -> str:
        """Extract JSON from a response that may contain markdown code blocks."""
        if not response_text or not response_text.strip():
            raise ValueError("Empty response text received")

        if "```json" in response_text:
            json_start = response_text.find("```json") + 7
            json_end = response_text.find("```", json_start)
            if json_end == -1:
                raise ValueError("Malformed response: unclosed JSON code block")
            return response_text[json_start:json_end].strip()
        elif "```" in response_text:
            json_start = response_text.find("```") + 3
            json_end = response_text.find("```", json_start)
            if json_end == -1:
                raise ValueError("Malformed response: unclosed code block")
            return response_text[json_start:json_end].strip()

        return response_text.strip()


class AIScoreGate:
    """
    The only collaborator allowed to call apply_score.

    Args:
        orchestrator: ModerationOrchestrator receiving the scores
        scorer: ContentScorer implementation
        gate_id: Identity registered in config.authorized_scorers
    """

    def __init__(self, orchestrator, scorer: ContentScorer, gate_id: str = DEFAULT_GATE_ID):
        self.orchestrator = orchestrator
        self.scorer = scorer
        self.gate_id = gate_id

    def evaluate(self, content_id: str, payload: str | bytes, media_type: str = "image/png") -> ContentRecord:
        """
        Score a pending content item and apply the score.

        Raises:
            InvalidContentError: Payload does not match the registered fingerprint
            ScorerError: The scorer failed
            (plus any error raised by apply_score)
        """
        record = self.orchestrator.get_content(content_id)
        if compute_fingerprint(payload) != record.fingerprint:
            raise InvalidContentError(
                "Payload does not match the registered fingerprint",
                {"content_id": content_id},
            )

        confidence = self.scorer.score(ScoringRequest(
            content_id=content_id,
            category=record.category,
            payload=payload,
            media_type=media_type,
        ))
        return self.orchestrator.apply_score(
            content_id, confidence, caller=self.gate_id, category=record.category
        )
