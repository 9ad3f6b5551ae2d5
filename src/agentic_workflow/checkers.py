"""Advisory side-checks run over a node's output.

A negative verdict never fails a node; the executor logs it and records it
as an advisory on the node outcome.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from .llm import StructuredResponder, build_structured_responder
from .models import CheckVerdict
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_BANNED_TERMS: tuple[str, ...] = ("bad-word-1", "bad-word-2")
DEFAULT_PLATFORM_LIMITS: Mapping[str, int] = {"x": 280}

_PASS_CONFIDENCE = 0.95
_ISSUE_PENALTY = 0.15
_FLOOR_CONFIDENCE = 0.3
_REVIEW_CONFIDENCE = 0.92
_FEEDBACK_PENALTY = 0.1
_REVIEW_FLOOR = 0.5


class Checker(Protocol):
    name: str

    def execute(self, artifact: Any) -> CheckVerdict: ...


def _serialize(artifact: Any) -> str:
    if isinstance(artifact, BaseModel):
        artifact = artifact.model_dump(mode="json")
    return json.dumps(artifact, default=str, ensure_ascii=False)


class QualityChecker:
    """Content heuristics: length, leftover markers, banned terms, platform limits."""

    name = "quality"

    def __init__(
        self,
        *,
        min_length: int = 100,
        banned_terms: Iterable[str] = DEFAULT_BANNED_TERMS,
        platform_limits: Mapping[str, int] | None = None,
    ) -> None:
        self.min_length = min_length
        self.banned_terms = tuple(term.lower() for term in banned_terms)
        self.platform_limits = dict(DEFAULT_PLATFORM_LIMITS if platform_limits is None else platform_limits)

    def execute(self, artifact: Any) -> CheckVerdict:
        text = _serialize(artifact)
        issues: list[str] = []
        recommendations: list[str] = []

        if len(text) < self.min_length:
            recommendations.append("Content seems very short, consider adding more detail")
        if "TODO" in text or "FIXME" in text:
            issues.append("Content contains TODO/FIXME markers")
        lowered = text.lower()
        if any(term in lowered for term in self.banned_terms):
            issues.append("Content may contain inappropriate language")
        if isinstance(artifact, Mapping):
            platform = artifact.get("platform")
            limit = self.platform_limits.get(platform) if isinstance(platform, str) else None
            if limit is not None and len(text) > limit:
                issues.append(f"Content too long for {platform} - max {limit} characters")

        passed = not issues
        confidence = _PASS_CONFIDENCE if passed else max(_FLOOR_CONFIDENCE, _PASS_CONFIDENCE - len(issues) * _ISSUE_PENALTY)
        return CheckVerdict(passed=passed, issues=issues, recommendations=recommendations, confidence=confidence)


class ConsistencyChecker:
    """Structural review of an artifact, optionally against brand values.

    Only a non-object artifact is rejected outright; missing confidence or
    provenance and weak brand alignment are reported as issues.
    """

    name = "consistency"

    def __init__(self, *, brand_values: Iterable[str] = ()) -> None:
        self.brand_values = tuple(value for value in brand_values if value)

    def execute(self, artifact: Any) -> CheckVerdict:
        if isinstance(artifact, BaseModel):
            artifact = artifact.model_dump(mode="json")
        issues: list[str] = []
        recommendations: list[str] = []
        approved = True

        if not isinstance(artifact, Mapping):
            issues.append("Artifact should be a structured object")
            approved = False
            fields: Mapping[str, Any] = {}
        else:
            fields = artifact

        if not fields.get("confidence_score") and not fields.get("confidence"):
            issues.append("Missing confidence score")
            recommendations.append("Add confidence score to output")
        if not fields.get("provenance"):
            issues.append("Missing provenance information")
            recommendations.append("Add provenance/source information")
        if self.brand_values:
            lowered = _serialize(artifact).lower()
            if not any(value.lower() in lowered for value in self.brand_values):
                issues.append("Content may not fully align with brand values")

        confidence = (
            _REVIEW_CONFIDENCE
            if approved and not issues
            else max(_REVIEW_FLOOR, _REVIEW_CONFIDENCE - len(issues) * _FEEDBACK_PENALTY)
        )
        return CheckVerdict(passed=approved, issues=issues, recommendations=recommendations, confidence=confidence)


class ReviewResponse(BaseModel):
    """Strict structured-output schema for the LLM reviewer (all fields required)."""

    passed: bool
    issues: list[str]
    recommendations: list[str]
    confidence: float


_REVIEW_PROMPT = """You are reviewing one artifact produced by a step of an automated content workflow.
Check it for internal consistency, completeness and obvious quality problems.
Set passed=false only for problems that would embarrass the brand if published.
Report confidence between 0 and 1.

Artifact (JSON):
{artifact}
"""


class LLMReviewChecker:
    """Consistency review delegated to a chat model via structured output."""

    name = "llm_review"

    def __init__(
        self,
        *,
        model_name: str = "gpt-4o-mini",
        responder: StructuredResponder[ReviewResponse] | None = None,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.repo_root = repo_root
        self._responder = responder

    def _get_responder(self) -> StructuredResponder[ReviewResponse]:
        if self._responder is None:
            self._responder = build_structured_responder(self.model_name, ReviewResponse, env_dir=self.repo_root)
        return self._responder

    def execute(self, artifact: Any) -> CheckVerdict:
        response = self._get_responder().ask(_REVIEW_PROMPT.format(artifact=_serialize(artifact)))
        return CheckVerdict(
            passed=response.passed,
            issues=list(response.issues),
            recommendations=list(response.recommendations),
            confidence=min(1.0, max(0.0, response.confidence)),
        )


@dataclass(frozen=True)
class CheckerSet:
    quality: Checker | None = None
    consistency: Checker | None = None


def build_checkers(settings: RuntimeSettings, *, repo_root: Path | None = None) -> CheckerSet:
    """Default checkers; the consistency check uses the LLM reviewer when enabled."""
    consistency: Checker
    if settings.review_use_llm:
        logger.info("Using LLM reviewer %s for consistency checks", settings.review_model)
        consistency = LLMReviewChecker(model_name=settings.review_model, repo_root=repo_root)
    else:
        consistency = ConsistencyChecker()
    return CheckerSet(quality=QualityChecker(), consistency=consistency)
