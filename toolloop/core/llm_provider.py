from __future__ import annotations

import json
from typing import Any, Dict, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
import time

from .models import Message, StepDecision


class ModelTransportError(Exception):
    pass


class ModelClient:
    """Chat-completion client: the conversation so far in, assistant text out."""

    def complete(
        self,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class MockModelClient(ModelClient):
    def __init__(self, answer: str = "Mock response") -> None:
        self.answer = answer

    def complete(
        self,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        return json.dumps(StepDecision.final(self.answer).to_wire(), ensure_ascii=False)


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_BACKOFF_S = 8.0


class OpenAIChatModelClient(ModelClient):
    """Blocking client for OpenAI-compatible ``/chat/completions`` endpoints (OpenAI, OpenRouter)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries

    def complete(
        self,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
        }
        if temperature is not None and _model_supports_temperature(self.model):
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        retries_left = self.max_retries
        backoff_s = 1.0
        while True:
            try:
                data = self._post(payload)
            except HTTPError as exc:
                detail = exc.read().decode("utf-8") if exc.fp else str(exc)
                # Some models reject temperature; drop it once without spending a retry.
                if "temperature" in payload and _is_unsupported_temperature_error(detail):
                    payload.pop("temperature")
                    continue
                if exc.code not in RETRYABLE_STATUS_CODES or retries_left <= 0:
                    raise ModelTransportError(
                        f"chat completion API error ({exc.code}): {detail}"
                    ) from exc
            except (URLError, TimeoutError) as exc:
                if retries_left <= 0:
                    raise ModelTransportError(f"chat completion connection error: {exc}") from exc
            else:
                text = _extract_message_content(data)
                if not text:
                    raise ModelTransportError("chat completion returned empty content")
                return text
            retries_left -= 1
            time.sleep(backoff_s)
            backoff_s = min(backoff_s * 2, MAX_BACKOFF_S)

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        request = Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        with urlopen(request, timeout=self.timeout_s) as response:
            raw = response.read().decode("utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ModelTransportError(f"chat completion returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ModelTransportError("chat completion returned a non-object body")
        return data


def resolve_model_client(
    provider_name: str,
    *,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout_s: Optional[float] = None,
    max_retries: Optional[int] = None,
) -> ModelClient:
    name = (provider_name or "mock").lower()
    if name in {"openai", "openrouter"}:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=" + name)
        if not model:
            raise ValueError("OPENAI_MODEL is required when LLM_PROVIDER=" + name)
        default_base = (
            "https://openrouter.ai/api/v1" if name == "openrouter" else "https://api.openai.com/v1"
        )
        return OpenAIChatModelClient(
            api_key=api_key,
            model=model,
            base_url=base_url or default_base,
            timeout_s=timeout_s or 60.0,
            max_retries=max_retries or 0,
        )
    return MockModelClient()


def _extract_message_content(response: Dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, list):
        # Some gateways return content parts instead of a plain string.
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return (content or "").strip()


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    return not normalized.startswith("gpt-5")


def _is_unsupported_temperature_error(detail: str) -> bool:
    lowered = (detail or "").lower()
    return "unsupported parameter" in lowered and "temperature" in lowered
