from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import RetryPolicy


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Orchestrator knobs, read from `WORKFLOW_*` environment variables."""

    state_store_root: str = "state_store"
    graph_path: str = "workflows/brand_workflow.yaml"
    recursion_limit: int = 1_000
    default_max_attempts: int = 0
    default_backoff_ms: int = 1_000
    lease_timeout_seconds: int = 300
    review_model: str = "gpt-4o-mini"
    review_use_llm: bool = False

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("WORKFLOW_STATE_STORE_ROOT", "state_store"),
            graph_path=os.getenv("WORKFLOW_GRAPH_PATH", "workflows/brand_workflow.yaml"),
            recursion_limit=_env_int("WORKFLOW_RECURSION_LIMIT", default=1_000, minimum=10),
            default_max_attempts=_env_int("WORKFLOW_DEFAULT_MAX_ATTEMPTS", default=0, minimum=0, maximum=100),
            default_backoff_ms=_env_int("WORKFLOW_DEFAULT_BACKOFF_MS", default=1_000, minimum=0, maximum=3_600_000),
            lease_timeout_seconds=_env_int("WORKFLOW_LEASE_TIMEOUT_SECONDS", default=300, minimum=1, maximum=86_400),
            review_model=os.getenv("WORKFLOW_REVIEW_MODEL", "gpt-4o-mini"),
            review_use_llm=_env_bool("WORKFLOW_REVIEW_USE_LLM", default=False),
        ).normalized()

    @property
    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.default_max_attempts, base_backoff_ms=self.default_backoff_ms)

    def normalized(self) -> "RuntimeSettings":
        """Return a stripped copy, or raise ValueError naming the offending variable."""
        if not self.state_store_root.strip():
            raise ValueError("WORKFLOW_STATE_STORE_ROOT must be non-empty")
        if not self.graph_path.strip():
            raise ValueError("WORKFLOW_GRAPH_PATH must be non-empty")
        review_model = self.review_model.strip()
        if not review_model:
            raise ValueError("WORKFLOW_REVIEW_MODEL must be non-empty")
        if self.recursion_limit > 100_000:
            raise ValueError(f"WORKFLOW_RECURSION_LIMIT must be <= 100000, got {self.recursion_limit}")
        if self.default_max_attempts < 0 or self.default_backoff_ms < 0:
            raise ValueError("default retry policy values must be >= 0")
        return RuntimeSettings(
            state_store_root=self.state_store_root.strip(),
            graph_path=self.graph_path.strip(),
            recursion_limit=self.recursion_limit,
            default_max_attempts=self.default_max_attempts,
            default_backoff_ms=self.default_backoff_ms,
            lease_timeout_seconds=self.lease_timeout_seconds,
            review_model=review_model,
            review_use_llm=self.review_use_llm,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def graph_file(self, repo_root: Path) -> Path:
        path = Path(self.graph_path)
        return path if path.is_absolute() else repo_root / path


def _env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read *name* as an int in ``[minimum, maximum]``; unset means *default*."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got {parsed}")
    return parsed


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
