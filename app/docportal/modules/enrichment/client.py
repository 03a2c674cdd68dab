from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol

from app.docportal.errors import EnrichmentError

# Prompt input is capped; longer documents are summarized from their opening.
MAX_PROMPT_CHARS = 8000


class EnrichmentClient(Protocol):
    def summarize(self, text: str) -> str: ...

    def translate(self, text: str, language: str) -> str: ...


@dataclass(frozen=True)
class GeminiClient:
    api_key: str
    model: str = "gemini-1.5-flash-latest"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: int = 60

    def _generate(self, prompt: str, *, max_output_tokens: int = 1024) -> str:
        url = (
            f"{self.base_url.rstrip('/')}/models/{urllib.parse.quote(self.model)}:generateContent"
            f"?key={urllib.parse.quote(self.api_key)}"
        )
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": max_output_tokens,
            },
        }
        req = urllib.request.Request(url, data=json.dumps(body).encode("utf-8"), method="POST")
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except OSError:
                detail = ""
            raise EnrichmentError(f"HTTP {e.code} from Gemini: {detail[:300]}") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError) as e:
            raise EnrichmentError(f"Gemini request failed or timed out: {e}") from e

        try:
            data: dict[str, Any] = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise EnrichmentError("Invalid JSON from Gemini") from e
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise EnrichmentError("Gemini response had no candidate text")
        return (text or "").strip()

    def summarize(self, text: str) -> str:
        return self._generate(
            "Please provide a comprehensive summary of the following document. "
            "Focus on key points, important information, and actionable items. "
            "Make it concise but informative:\n\n" + text[:MAX_PROMPT_CHARS]
        )

    def translate(self, text: str, language: str) -> str:
        return self._generate(
            f"Translate the following text into {language}. "
            "Return only the translation:\n\n" + text[:MAX_PROMPT_CHARS]
        )


def client_from_config(config: dict) -> EnrichmentClient | None:
    api_key = (config.get("GEMINI_API_KEY") or "").strip()
    if not api_key:
        return None
    return GeminiClient(
        api_key=api_key,
        model=(config.get("GEMINI_MODEL") or "gemini-1.5-flash-latest").strip(),
        timeout_seconds=int(config.get("ENRICHMENT_TIMEOUT_SECONDS") or 60),
    )
