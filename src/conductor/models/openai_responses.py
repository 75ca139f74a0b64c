"""OpenAI Responses API client for classifier calls."""

from __future__ import annotations

import http.client
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

LOGGER = logging.getLogger(__name__)

__all__ = ["DEFAULT_MODEL", "ResponsesClient", "output_texts"]

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/responses"

Transport = Callable[[Dict[str, Any]], str]


def output_texts(envelope: Any) -> Iterator[str]:
    """Yield the non-empty output texts of a response envelope, in order."""
    if not isinstance(envelope, dict):
        return
    shortcut = envelope.get("output_text")
    if isinstance(shortcut, str) and shortcut.strip():
        yield shortcut
    outputs = envelope.get("output")
    nested = envelope.get("response")
    if outputs is None and isinstance(nested, dict):
        outputs = nested.get("output")
    if isinstance(outputs, dict):
        outputs = [outputs]
    for item in outputs or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("json"), (dict, list)):
                yield json.dumps(part["json"])
            elif isinstance(part.get("text"), str) and part["text"].strip():
                yield part["text"]
        if isinstance(item.get("text"), str) and item["text"].strip():
            yield item["text"]


class ResponsesClient(LLMClient):
    """Posts to the Responses API, or to ``transport`` when one is given."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        env: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(model, max_attempts=max_attempts, retry_delay=retry_delay)
        self.api_key = api_key or (os.environ if env is None else env).get("OPENAI_API_KEY")
        if transport is None and not self.api_key:
            raise ValueError("OPENAI_API_KEY is required to call the Responses API")
        self.base_url = base_url
        self.timeout = timeout
        self.transport: Transport = transport or self._post

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            body = self.transport(payload)
        except (OSError, http.client.HTTPException) as error:
            raise LLMTransportError(f"Responses API request failed: {error}") from error
        if not body:
            raise LLMResponseFormatError("Responses API returned an empty body.")
        try:
            envelope = json.loads(body)
        except json.JSONDecodeError:
            # Plain text bodies are handed to the JSON decoder as-is.
            return body
        return next(output_texts(envelope), body)

    def _post(self, payload: Dict[str, Any]) -> str:
        LOGGER.debug("POST %s (model=%s)", self.base_url, payload.get("model"))
        request = urllib.request.Request(
            self.base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as error:
            detail = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {detail[:500]}") from error
        except urllib.error.URLError as error:
            raise LLMTransportError(f"Responses API unreachable: {error.reason}") from error
        except http.client.HTTPException as error:
            raise LLMTransportError(f"Responses API returned a broken response: {error!r}") from error
