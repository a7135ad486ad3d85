from __future__ import annotations

from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)

STRUCTURE_SYSTEM_PROMPT = """You are a document structure specialist. Rewrite the given text as structured Markdown.

Conversion rules:
- Tables become Markdown tables (| header | ... |).
- Headings become ## / ### at the appropriate level.
- Repeated page numbers, headers and footers are removed.
- Broken multi-column layouts are put back into reading order.
- Bullet points become Markdown lists (- or 1.).
- Numeric data is arranged as tables where possible.

Strict requirements:
- Do not drop any information.
- Do not summarize; keep the full text.
- Do not translate; keep the original language.
- Do not add comments or annotations.
- Do not wrap the output in a Markdown code block."""


class LLMClientError(RuntimeError):
    pass


class LLMClient(Protocol):
    def structure_markdown(self, text: str) -> str: ...


class OllamaChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._timeout_seconds = timeout_seconds

    def structure_markdown(self, text: str) -> str:
        for model, used_fallback in self._model_candidates():
            try:
                content = self._chat_completion(model=model, text=text)
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback or len(self._model_candidates()) == 1:
                    raise LLMClientError(str(exc)) from exc
                logger.warning("llm_model_failed", model=model, error=str(exc))
                continue

            if used_fallback:
                logger.info("llm_fallback_used", model=model)
            return content

        raise LLMClientError("No model candidates configured")

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._fallback_model and self._fallback_model != self._default_model:
            candidates.append((self._fallback_model, True))
        return candidates

    def _chat_completion(self, *, model: str, text: str) -> str:
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": STRUCTURE_SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                "temperature": 0.1,
            },
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()
