"""
Corrective Action Tracker
LLM Gateway.

Provider-agnostic LLM router used by the similarity detector and the
proposal suggester:
    - Gemini provider (google-genai) for real calls
    - Local stub provider for development and tests
    - One attempt per call; retry with exponential backoff is opt-in
    - Explicit configuration check: a missing credential is a
      ConfigurationError, never a silent fallback

Usage:
    from capa.ai.gateway import LLMGateway
    gw = LLMGateway(provider="gemini", api_key=os.environ["GEMINI_API_KEY"])
    result = gw.chat([{"role": "user", "content": "..."}], purpose="similarity")
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod

from capa.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    requires_credential = True

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...

    def is_configured(self) -> bool:
        return True


# ── Gemini Provider ───────────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Models:
        - gemini-2.5-flash  (default; similarity ranking + suggestions)
        - gemini-2.5-pro    (longer reasoning)

    Environment:
        GEMINI_API_KEY: obtain at https://aistudio.google.com/apikey
    """

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        # Separate system instruction from conversation messages
        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                # Gemini uses "user" and "model" roles
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(
                        role=role,
                        parts=[types.Part(text=m["content"])],
                    )
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.3),
            max_output_tokens=kwargs.get("max_tokens", 4096),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(
            model=model,
            contents=contents,
            config=config,
        )

        usage = response.usage_metadata
        prompt_tokens = getattr(usage, "prompt_token_count", 0) or 0
        completion_tokens = getattr(usage, "candidates_token_count", 0) or 0

        return {
            "content": response.text or "",
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic responses for dev/testing.
    No API key required.
    """

    requires_credential = False

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        content = self._generate_stub_response(user_msg)

        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    @staticmethod
    def _generate_stub_response(user_msg: str) -> str:
        if "similarActions" in user_msg:
            return json.dumps({"similarActions": []})
        return (
            "1. Review the current protocol with the department team. Responsible: Quality unit\n"
            "2. Train the staff involved on the revised procedure within 2 weeks\n"
            "3. Monitor compliance with monthly audits for 3 months"
        )


# ── Gateway ───────────────────────────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Features:
        - Provider selection from configuration ("gemini" | "local")
        - One attempt per call unless the caller asks for retries
        - ``require_configured()`` for a user-visible credential error

    Usage:
        gw = LLMGateway(provider="local")
        result = gw.chat(
            messages=[{"role": "user", "content": "Compare these actions..."}],
            purpose="similarity",
        )
    """

    PROVIDERS = {
        "gemini": GeminiProvider,
        "local": LocalStubProvider,
    }

    DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "gemini-2.5-flash")

    def __init__(
        self,
        provider: str = "gemini",
        *,
        api_key: str | None = None,
        default_model: str | None = None,
        max_retries: int = 1,
        backoff_base: float = 1.0,
        provider_instance: LLMProvider | None = None,
    ):
        if provider_instance is None and provider not in self.PROVIDERS:
            raise ConfigurationError(
                f"Unknown LLM provider '{provider}'. Must be one of: {sorted(self.PROVIDERS)}"
            )
        self.provider_name = provider
        if provider_instance is not None:
            self._provider = provider_instance
        elif provider == "gemini":
            self._provider = GeminiProvider(api_key=api_key)
        else:
            self._provider = LocalStubProvider()
        if default_model:
            self.default_model = default_model
        elif provider == "local":
            self.default_model = "local-stub"
        else:
            self.default_model = self.DEFAULT_CHAT_MODEL
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base

    @classmethod
    def from_config(cls, config) -> "LLMGateway":
        """Build from a Flask config mapping."""
        return cls(
            provider=config.get("LLM_PROVIDER", "gemini"),
            api_key=config.get("GEMINI_API_KEY") or None,
            default_model=config.get("LLM_DEFAULT_CHAT_MODEL"),
        )

    def is_configured(self) -> bool:
        return not self._provider.requires_credential or self._provider.is_configured()

    def require_configured(self) -> None:
        """Raise ConfigurationError when the provider lacks its credential."""
        if not self.is_configured():
            raise ConfigurationError(
                f"LLM provider '{self.provider_name}' is not configured. "
                "Set GEMINI_API_KEY or use LLM_PROVIDER=local."
            )

    def chat(self, messages: list, model: str | None = None, *, purpose: str = "",
             max_retries: int | None = None, **kwargs) -> dict:
        """
        Send a chat completion request.

        A failed call is retried only when the gateway or the call asks for
        more than one attempt; user-facing collaborators re-run on request.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, provider, latency_ms}

        Raises:
            ConfigurationError: provider credential missing (never retried).
            RuntimeError: all attempts failed.
        """
        self.require_configured()
        model = model or self.default_model
        attempts = max_retries or self.max_retries

        last_error = None
        for attempt in range(1, attempts + 1):
            start_time = time.time()
            try:
                result = self._provider.chat(messages, model, **kwargs)
                latency_ms = int((time.time() - start_time) * 1000)
                result["provider"] = self.provider_name
                result["latency_ms"] = latency_ms
                logger.info(
                    "LLM call ok purpose=%s model=%s tokens=%d latency=%dms",
                    purpose, model, result["prompt_tokens"] + result["completion_tokens"], latency_ms,
                )
                return result
            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed (%s): %s", attempt, attempts, purpose, e)
                if attempt < attempts:
                    time.sleep(min(self.backoff_base * 2 ** (attempt - 1), 4))

        raise RuntimeError(f"LLM call failed after {attempts} attempt(s): {last_error}")
