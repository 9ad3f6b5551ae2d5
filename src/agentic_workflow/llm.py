"""Chat-model plumbing for the LLM-backed reviewer."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)
BindingMethod = Literal["function_calling", "json_mode", "json_schema"]

REQUEST_TIMEOUT_SECONDS = 60
CLIENT_MAX_RETRIES = 2


class ChatRunnable(Protocol):
    def invoke(self, input: Any) -> Any: ...


@dataclass(slots=True)
class StructuredResponder(Generic[ResponseT]):
    """A schema-bound chat runnable whose every answer is validated.

    Checkers depend on this wrapper only, so a stub runnable can stand in
    for the model in tests.
    """

    schema: type[ResponseT]
    runnable: ChatRunnable

    def ask(self, prompt: str) -> ResponseT:
        """Raises RuntimeError when the answer does not fit ``schema``."""
        return coerce_structured_response(self.runnable.invoke(prompt), self.schema)


def resolve_api_key(env_dir: Path | None = None) -> str:
    """Return OPENAI_API_KEY, reading ``<env_dir>/.env`` (default: cwd) first if it exists."""
    dotenv_file = (env_dir or Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
    if api_key:
        return api_key
    raise RuntimeError("OPENAI_API_KEY is required for LLM-backed review")


def build_chat_model(
    model: str,
    *,
    temperature: float = 0.0,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
    max_retries: int = CLIENT_MAX_RETRIES,
    env_dir: Path | None = None,
) -> ChatOpenAI:
    if not model.strip():
        raise ValueError("model name must not be blank")
    resolve_api_key(env_dir)
    logger.debug("Building ChatOpenAI client for %s", model)
    return ChatOpenAI(model=model, temperature=temperature, timeout=timeout, max_retries=max_retries)


def _unwrap(output: Any, schema_name: str) -> Any:
    # with_structured_output(include_raw=True) answers {"raw", "parsed", "parsing_error"}.
    if not (isinstance(output, dict) and {"parsed", "parsing_error"} <= output.keys()):
        return output
    if output["parsing_error"] is not None:
        raise RuntimeError(f"{schema_name} response could not be parsed: {output['parsing_error']!r}")
    if output["parsed"] is None:
        raise RuntimeError(f"{schema_name} response was empty")
    return output["parsed"]


def coerce_structured_response(output: Any, schema: type[ResponseT]) -> ResponseT:
    """Turn whatever the runnable returned into a validated ``schema`` instance.

    Raises:
        RuntimeError: If the output is empty, unparsed, of an unexpected type
            or fails validation.
    """
    payload = _unwrap(output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"{schema.__name__} response has unexpected type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__} response failed validation: {exc}") from exc


def build_structured_responder(
    model: str,
    schema: type[ResponseT],
    *,
    method: BindingMethod = "function_calling",
    strict: bool = True,
    temperature: float = 0.0,
    env_dir: Path | None = None,
) -> StructuredResponder[ResponseT]:
    if method == "json_mode" and strict:
        raise ValueError("json_mode does not support strict schema binding")
    chat = build_chat_model(model, temperature=temperature, env_dir=env_dir)
    bound = chat.with_structured_output(schema, method=method, strict=None if method == "json_mode" else strict)
    return StructuredResponder(schema=schema, runnable=bound)
