from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .errors import (
    DecisionNotFoundError,
    RunInProgressError,
    StateAlreadyExistsError,
    StateNotFoundError,
)
from .models import DecisionRecord, ExecutionState

logger = logging.getLogger(__name__)

StateMutator = Callable[[ExecutionState], ExecutionState | None]
DecisionMutator = Callable[[DecisionRecord], DecisionRecord | None]

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_LEASE_POLL_SECONDS = 0.05


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    swapped out by ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, fsync, then ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_record_text(path: Path, label: str) -> str:
    """Return the raw text of a stored record.

    Raises FileNotFoundError when absent and ValueError when blank or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"no {label} at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} file {path} is not valid UTF-8") from exc
    if text.isspace() or not text:
        raise ValueError(f"{label} file {path} is blank")
    return text


# ---------------------------------------------------------------------------
# WorkflowStateStore
# ---------------------------------------------------------------------------

class WorkflowStateStore:
    """Filesystem store for execution states, decisions and run leases.

    Layout under ``root``::

        projects/<project>/execution_state.json
        projects/<project>/events.jsonl
        projects/<project>/run.lease
        projects/<project>/decisions/<decision>.json

    Every read-modify-write happens under an ``fcntl`` lock on the record's
    sidecar, and every write is an atomic replace, so updates to one project
    are linearized even across processes sharing the directory.
    """

    def __init__(self, root: Path, *, lease_timeout_seconds: float = 300.0) -> None:
        self.root = root
        self.projects_dir = root / "projects"
        self.lease_timeout_seconds = lease_timeout_seconds
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        for directory in (self.root, self.projects_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def project_dir(self, project_id: str) -> Path:
        return project_scoped_root(self.root, project_id)

    def state_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "execution_state.json"

    def events_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "events.jsonl"

    def lease_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "run.lease"

    def decisions_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "decisions"

    def decision_path(self, project_id: str, decision_id: str) -> Path:
        return self.decisions_dir(project_id) / f"{sanitize_project_id(decision_id)}.json"

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def _read_state(self, project_id: str) -> ExecutionState | None:
        path = self.state_path(project_id)
        if not path.is_file():
            return None
        text = _read_record_text(path, "execution state")
        try:
            return ExecutionState.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"execution state at {path} failed validation: {exc}") from exc

    def create(self, project_id: str, *, metadata: dict[str, Any] | None = None) -> str:
        """Create a fresh ``running`` state for *project_id*.

        A terminal (completed/failed) record is replaced.

        Returns:
            The new state id.

        Raises:
            StateAlreadyExistsError: If a running or paused state exists.
        """
        path = self.state_path(project_id)
        with _locked_file(path):
            existing = self._read_state(project_id)
            if existing is not None and existing.status.is_active:
                raise StateAlreadyExistsError(project_id)
            state = ExecutionState(project_id=project_id, metadata=dict(metadata or {}))
            _atomic_write_text(path, state.model_dump_json(indent=2))
        logger.info("Created execution state %s for project %s", state.state_id, project_id)
        return state.state_id

    def get(self, project_id: str) -> ExecutionState | None:
        """Return the stored state, or ``None`` when the project has none.

        Raises:
            ValueError: If the stored record is corrupt or fails validation.
        """
        path = self.state_path(project_id)
        if not path.is_file():
            return None
        with _locked_file(path):
            return self._read_state(project_id)

    def require(self, project_id: str) -> ExecutionState:
        state = self.get(project_id)
        if state is None:
            raise StateNotFoundError(project_id)
        return state

    def mutate(self, project_id: str, fn: StateMutator) -> ExecutionState:
        """Apply *fn* to the stored state under one exclusive lock.

        The result is revalidated and ``updated_at`` refreshed before the
        atomic write; if *fn* raises, nothing is written.

        Args:
            project_id: Project whose state is edited.
            fn: Receives a private copy and may edit it in place (returning
                ``None``) or return a replacement. It must not call back into
                this store for the same project.

        Returns:
            The state as written.

        Raises:
            StateNotFoundError: If no state exists.
            ValueError: If the mutated state breaks an invariant.
        """
        path = self.state_path(project_id)
        with _locked_file(path):
            current = self._read_state(project_id)
            if current is None:
                raise StateNotFoundError(project_id)
            working = current.model_copy(deep=True)
            result = fn(working)
            candidate = result if result is not None else working
            payload = candidate.model_dump()
            payload["updated_at"] = datetime.now(UTC)
            try:
                updated = ExecutionState.model_validate(payload)
            except ValidationError as exc:
                raise ValueError(f"execution state for {project_id} failed validation: {exc}") from exc
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def update(self, project_id: str, **fields: Any) -> ExecutionState:
        """Merge *fields* into the stored state.

        Raises:
            StateNotFoundError: If no state exists.
            ValueError: On unknown fields or a resulting invariant violation.
        """
        unknown = sorted(set(fields) - set(ExecutionState.model_fields))
        if unknown:
            raise ValueError(f"unknown execution state fields: {unknown}")
        return self.mutate(project_id, lambda state: state.model_copy(update=fields))

    def delete(self, project_id: str) -> None:
        """Remove the state record and the project's decisions. The event log is kept."""
        path = self.state_path(project_id)
        with _locked_file(path):
            path.unlink(missing_ok=True)
            removed = self._clear_decisions(project_id)
        logger.info("Deleted execution state for project %s (%d decisions)", project_id, removed)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _read_decision(self, project_id: str, decision_id: str) -> DecisionRecord:
        path = self.decision_path(project_id, decision_id)
        try:
            text = _read_record_text(path, f"decision {decision_id}")
        except FileNotFoundError as exc:
            raise DecisionNotFoundError(decision_id) from exc
        try:
            return DecisionRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"decision {decision_id} at {path} failed validation: {exc}") from exc

    def write_decision(self, record: DecisionRecord) -> Path:
        """Persist a new decision record under its project.

        Args:
            record: The decision to store. Its ``project_id`` picks the
                directory, so the same id may exist once per project.

        Returns:
            Path of the written record.

        Raises:
            ValueError: If the project already has a decision with this id.
        """
        path = self.decision_path(record.project_id, record.id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"decision {record.id} already exists at {path}")
            _atomic_write_text(path, record.model_dump_json(indent=2))
        return path

    def read_decision(self, project_id: str, decision_id: str) -> DecisionRecord:
        """Read one decision of *project_id*.

        Raises:
            DecisionNotFoundError: If the project has no such decision.
            ValueError: If the record is corrupt.
        """
        path = self.decision_path(project_id, decision_id)
        with _locked_file(path):
            return self._read_decision(project_id, decision_id)

    def mutate_decision(self, project_id: str, decision_id: str, fn: DecisionMutator) -> DecisionRecord:
        """Read-modify-write one decision under its lock (see ``mutate``)."""
        path = self.decision_path(project_id, decision_id)
        with _locked_file(path):
            current = self._read_decision(project_id, decision_id)
            working = current.model_copy(deep=True)
            result = fn(working)
            candidate = result if result is not None else working
            try:
                updated = DecisionRecord.model_validate(candidate.model_dump())
            except ValidationError as exc:
                raise ValueError(f"decision {decision_id} failed validation: {exc}") from exc
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def list_decisions(self, project_id: str) -> list[DecisionRecord]:
        """Decisions of *project_id*, oldest first."""
        directory = self.decisions_dir(project_id)
        if not directory.is_dir():
            return []
        records = [self.read_decision(project_id, path.stem) for path in sorted(directory.glob("*.json"))]
        return sorted(records, key=lambda record: record.created_at)

    def _clear_decisions(self, project_id: str) -> int:
        directory = self.decisions_dir(project_id)
        if not directory.is_dir():
            return 0
        removed = 0
        for path in sorted(directory.glob("*.json")):
            with _locked_file(path):
                path.unlink(missing_ok=True)
            removed += 1
        return removed

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def append_event_line(self, project_id: str, line: str) -> None:
        path = self.events_path(project_id)
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line.rstrip("\n") + "\n")

    def read_event_lines(self, project_id: str) -> list[str]:
        path = self.events_path(project_id)
        if not path.is_file():
            return []
        with _locked_file(path):
            return [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Run lease
    # ------------------------------------------------------------------

    @contextmanager
    def run_lease(self, project_id: str, *, blocking: bool = True) -> Iterator[None]:
        """Hold the project's run lease: one run loop per project at a time.

        Non-blocking acquisition fails immediately when the lease is held;
        blocking acquisition waits up to ``lease_timeout_seconds``.

        Raises:
            RunInProgressError: If the lease could not be acquired.
        """
        path = self.lease_path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lease_timeout_seconds
        with path.open("a+", encoding="utf-8") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if not blocking or time.monotonic() >= deadline:
                        raise RunInProgressError(project_id) from exc
                    time.sleep(_LEASE_POLL_SECONDS)
            logger.debug("Acquired run lease for project %s", project_id)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                logger.debug("Released run lease for project %s", project_id)


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------

def sanitize_project_id(project_id: str) -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Returns:
        A filesystem-safe version of the id, truncated to 128 chars.

    Raises:
        ValueError: If the id is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value.strip("."):
        raise ValueError("project_id contains no filesystem-safe characters")
    return value[:128]


def project_scoped_root(root: Path, project_id: str) -> Path:
    """Return ``root / "projects" / sanitize_project_id(project_id)``."""
    return root / "projects" / sanitize_project_id(project_id)
