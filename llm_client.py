"""Text-generation transport for the fallback resolver.

Three interchangeable backends, chosen with INFERENCE_BACKEND:

  ollama     local Ollama server, /api/generate (default)
  openai     any OpenAI-compatible chat endpoint (OpenAI, vLLM, Ollama's /v1)
  anthropic  Anthropic Messages API

Every call is a single attempt. Expected failures (transport errors, timeouts,
missing credentials, odd response shapes) come back as a failed InferenceResult
instead of an exception.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import anthropic
import requests
from openai import OpenAI, OpenAIError

INFERENCE_BACKEND = os.getenv("INFERENCE_BACKEND", "ollama")
INFERENCE_TEMPERATURE = float(os.getenv("INFERENCE_TEMPERATURE", "0.1"))
INFERENCE_TIMEOUT_SECONDS = float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "120"))
MAX_OUTPUT_TOKENS = int(os.getenv("INFERENCE_MAX_TOKENS", "1000"))

OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "glm4:9b")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-opus-4-6")

BACKENDS: frozenset[str] = frozenset({"ollama", "openai", "anthropic"})

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InferenceResult:
    ok: bool
    text: str = ""
    error: str | None = None


def generate(prompt: str, backend: str | None = None) -> InferenceResult:
    """Send one prompt to the configured backend and return its raw text."""
    backend = (backend or INFERENCE_BACKEND).strip().lower()
    if backend not in BACKENDS:
        return InferenceResult(ok=False, error=f"unknown inference backend: {backend}")

    LOGGER.debug("Calling inference backend=%s", backend)
    try:
        if backend == "ollama":
            text = _call_ollama(prompt)
        elif backend == "openai":
            text = _call_openai(prompt)
        else:
            text = _call_anthropic(prompt)
    except (requests.RequestException, OpenAIError, anthropic.AnthropicError, RuntimeError) as exc:
        LOGGER.warning("Inference call failed on backend=%s: %s", backend, exc)
        return InferenceResult(ok=False, error=str(exc))

    if not text.strip():
        return InferenceResult(ok=False, error=f"{backend} returned an empty response")
    return InferenceResult(ok=True, text=text)


def _call_ollama(prompt: str) -> str:
    response = requests.post(
        f"{OLLAMA_URL.rstrip('/')}/api/generate",
        json={
            "model": OLLAMA_MODEL,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": INFERENCE_TEMPERATURE, "num_predict": MAX_OUTPUT_TOKENS},
        },
        timeout=INFERENCE_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    try:
        body = response.json()
    except ValueError as exc:
        raise RuntimeError(f"Ollama returned non-JSON body: {exc}") from exc

    text = body.get("response") if isinstance(body, dict) else None
    if not isinstance(text, str):
        raise RuntimeError(f"Unexpected Ollama response shape: {body}")
    return text


def _call_openai(prompt: str) -> str:
    # Local OpenAI-compatible servers accept any key.
    api_key = os.getenv("OPENAI_API_KEY") or ("local" if os.getenv("OPENAI_BASE_URL") else None)
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is required")

    client = OpenAI(
        api_key=api_key,
        base_url=os.getenv("OPENAI_BASE_URL") or None,
        timeout=INFERENCE_TIMEOUT_SECONDS,
        max_retries=0,
    )
    response = client.chat.completions.create(
        model=OPENAI_MODEL,
        temperature=INFERENCE_TEMPERATURE,
        max_tokens=MAX_OUTPUT_TOKENS,
        messages=[{"role": "user", "content": prompt}],
    )
    try:
        return response.choices[0].message.content or ""
    except (AttributeError, IndexError) as exc:
        raise RuntimeError("Unexpected OpenAI response shape") from exc


def _call_anthropic(prompt: str) -> str:
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")

    client = anthropic.Anthropic(api_key=api_key, timeout=INFERENCE_TIMEOUT_SECONDS, max_retries=0)
    response = client.messages.create(
        model=CLAUDE_MODEL,
        max_tokens=MAX_OUTPUT_TOKENS,
        temperature=INFERENCE_TEMPERATURE,
        messages=[{"role": "user", "content": prompt}],
    )
    parts = [block.text for block in response.content if getattr(block, "type", None) == "text"]
    if not parts:
        raise RuntimeError("Anthropic response contained no text blocks")
    return "".join(parts)
