"""Structured-output requests validated against pydantic models."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

LOGGER = logging.getLogger(__name__)

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "decode_json_output",
    "strict_json_schema",
]

ModelT = TypeVar("ModelT", bound=BaseModel)

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


class LLMClientError(RuntimeError):
    """Base class for classifier model failures."""


class LLMTransportError(LLMClientError):
    """The request never produced a response body."""


class LLMResponseFormatError(LLMClientError):
    """The response body held no decodable JSON."""


class LLMRetryError(LLMClientError):
    """Every attempt failed; ``__cause__`` holds the last error."""


def strict_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema for ``model`` with every object closed and fully required.

    Strict structured output rejects schemas with optional or undeclared keys.
    """
    schema = model.model_json_schema()
    pending: List[Any] = [schema]
    while pending:
        node = pending.pop()
        if isinstance(node, list):
            pending.extend(node)
            continue
        if not isinstance(node, dict):
            continue
        if node.get("type") == "object":
            node["additionalProperties"] = False
            properties = node.get("properties")
            if isinstance(properties, dict):
                node["required"] = list(properties)
        pending.extend(node.values())
    return schema


def decode_json_output(text: str) -> Any:
    """Decode model output that may be fenced, wrapped in prose or sloppy."""
    body = text.strip()
    if not body:
        raise LLMResponseFormatError("Model returned an empty response.")
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        pass

    lines = body.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        body = "\n".join(lines)

    starts = [index for index in (body.find("{"), body.find("[")) if index >= 0]
    if starts:
        start = min(starts)
        end = body.rfind("}" if body[start] == "{" else "]")
        if end > start:
            candidate = _TRAILING_COMMA_RE.sub(r"\1", body[start : end + 1])
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
    raise LLMResponseFormatError(f"Model returned invalid JSON: {text.strip()[:200]}")


@dataclass(slots=True)
class LLMRequest(Generic[ModelT]):
    prompt: str
    response_model: Type[ModelT]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Responses API body requesting output that matches ``response_model``."""
        turns = [("system", self.system_prompt), ("user", self.prompt)]
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": [
                {"role": role, "content": [{"type": "input_text", "text": text}]}
                for role, text in turns
                if text
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": self.response_model.__name__,
                    "schema": strict_json_schema(self.response_model),
                    "strict": True,
                }
            },
        }
        if self.metadata:
            payload["metadata"] = {key: str(value)[:512] for key, value in self.metadata.items()}
        return payload


class LLMClient:
    """Retries a transport call until its output validates.

    Subclasses implement :meth:`_raw_invoke`, returning the model's output
    text for a request payload.
    """

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self.model = model
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def invoke(self, request: LLMRequest[ModelT]) -> ModelT:
        payload = request.to_payload(self.model)
        attempts = max(1, request.max_attempts or self.max_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1 and self.retry_delay:
                time.sleep(self.retry_delay)
            try:
                text = self._raw_invoke(payload)
                return request.response_model.model_validate(decode_json_output(text))
            except (LLMTransportError, LLMResponseFormatError, ValidationError) as error:
                last_error = error
                LOGGER.warning(
                    "Model %s attempt %d/%d failed: %s",
                    payload["model"],
                    attempt,
                    attempts,
                    str(error).splitlines()[0] if str(error) else type(error).__name__,
                )
        raise LLMRetryError(
            f"No schema-valid {request.response_model.__name__} from {payload['model']} "
            f"after {attempts} attempt(s)"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError
