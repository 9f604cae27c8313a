from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from loguru import logger

from .config import Settings, settings
from .errors import ConfigurationError, ParseError

JSON_ONLY_INSTRUCTION = "IMPORTANT: Return ONLY valid JSON matching the schema."


class ProviderClient:
    """One upstream LLM provider.

    ``generate`` returns the raw text the provider produced or raises. Error
    classification happens in :mod:`promptcoach.errors`, not here.
    """

    name: str = "base"

    def generate(
        self,
        model: str,
        content: str,
        *,
        schema: Optional[dict] = None,
        temperature: float = 0.7,
        system_instruction: Optional[str] = None,
    ) -> str:
        raise NotImplementedError


MockOutcome = Union[str, dict, list, BaseException]


class MockProviderClient(ProviderClient):
    """Scripted provider used by tests and local experiments.

    ``script`` maps a model id to the outcomes returned for successive calls
    to that model. An outcome is raw text, a JSON-able value, or an exception
    to raise. Models without a script get a canned payload built from the
    requested schema.
    """

    name = "mock"

    def __init__(self, script: Optional[dict[str, Iterable[MockOutcome]]] = None, name: str = "mock") -> None:
        self.name = name
        self.script: dict[str, deque[MockOutcome]] = {
            model: deque(outcomes) for model, outcomes in (script or {}).items()
        }
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        model: str,
        content: str,
        *,
        schema: Optional[dict] = None,
        temperature: float = 0.7,
        system_instruction: Optional[str] = None,
    ) -> str:
        self.calls.append(
            {
                "model": model,
                "content": content,
                "schema": schema,
                "temperature": temperature,
                "system_instruction": system_instruction,
            }
        )
        queue = self.script.get(model)
        if queue:
            outcome = queue.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, str):
                return outcome
            return json.dumps(outcome)
        return json.dumps(_canned_payload(schema))


def _canned_payload(schema: Optional[dict]) -> Any:
    if not schema:
        return {}
    kind = str(schema.get("type", "")).upper()
    if kind == "ARRAY":
        return [f"Use Sample Tag {i}" for i in range(1, 4)]
    if kind != "OBJECT":
        return ""
    payload: dict[str, Any] = {}
    for idx, (key, prop) in enumerate((schema.get("properties") or {}).items(), start=1):
        prop_type = str(prop.get("type", "")).upper()
        if prop_type == "ARRAY":
            payload[key] = [f"Use Mock {key} {idx}"]
        elif prop_type == "NUMBER":
            payload[key] = 50
        elif prop_type == "OBJECT":
            payload[key] = _canned_payload(prop)
        else:
            payload[key] = f"Mock {key}"
    return payload


class GeminiClient(ProviderClient):
    name = "gemini"

    def __init__(self, api_key: Optional[str] = None) -> None:
        api_key = api_key or settings.gemini_api_key
        if not api_key:
            raise ConfigurationError("GEMINI_API_SECRET is required for GeminiClient")
        from google import genai

        self.client = genai.Client(api_key=api_key)

    def generate(
        self,
        model: str,
        content: str,
        *,
        schema: Optional[dict] = None,
        temperature: float = 0.7,
        system_instruction: Optional[str] = None,
    ) -> str:
        from google.genai import types

        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=temperature,
            response_mime_type="application/json" if schema else None,
            response_schema=schema,
        )
        response = self.client.models.generate_content(model=model, contents=content, config=config)
        text = (response.text or "").strip()
        if not text:
            raise ParseError("No response text received from Gemini")
        return text


class OpenAIClient(ProviderClient):
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: Optional[float] = None) -> None:
        api_key = api_key or settings.openai_api_key
        if not api_key:
            raise ConfigurationError("OPEN_AI_SECRET is required for OpenAIClient")
        from openai import OpenAI
        import httpx
        import certifi

        self.timeout_seconds = timeout_seconds or settings.openai_timeout_seconds
        timeout = httpx.Timeout(self.timeout_seconds, connect=10.0)
        # Tier advancement is the only retry policy; the SDK must not retry on its own.
        self.client = OpenAI(
            api_key=api_key,
            max_retries=0,
            http_client=httpx.Client(
                timeout=timeout,
                http2=False,
                trust_env=False,
                verify=certifi.where(),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            ),
        )

    def generate(
        self,
        model: str,
        content: str,
        *,
        schema: Optional[dict] = None,
        temperature: float = 0.7,
        system_instruction: Optional[str] = None,
    ) -> str:
        system = system_instruction or "You are a strict JSON generator."
        params: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": _with_schema(system, schema)},
                {"role": "user", "content": content},
            ],
            "temperature": temperature,
        }
        if schema:
            params["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(**params)
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise ParseError("OpenAI returned empty content")
        return text


def _with_schema(system_instruction: str, schema: Optional[dict]) -> str:
    if not schema:
        return system_instruction
    return (
        f"{system_instruction}\n\n{JSON_ONLY_INSTRUCTION}\n"
        f"JSON schema:\n{json.dumps(schema, ensure_ascii=True)}"
    )


@dataclass
class ProviderSet:
    """The configured providers. ``None`` means the credential is absent."""

    gemini: Optional[ProviderClient] = None
    openai: Optional[ProviderClient] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_lite_model: str = "gemini-2.5-flash-lite"
    openai_model: str = "gpt-4o-mini"

    @property
    def configured(self) -> bool:
        return self.gemini is not None or self.openai is not None


def build_providers(config: Optional[Settings] = None) -> ProviderSet:
    config = config or settings
    gemini: Optional[ProviderClient] = None
    openai_client: Optional[ProviderClient] = None
    if config.gemini_api_key:
        gemini = GeminiClient(config.gemini_api_key)
    else:
        logger.warning("GEMINI_API_SECRET not set; Gemini tiers are disabled")
    if config.openai_api_key:
        openai_client = OpenAIClient(config.openai_api_key, config.openai_timeout_seconds)
    return ProviderSet(
        gemini=gemini,
        openai=openai_client,
        gemini_model=config.gemini_model,
        gemini_lite_model=config.gemini_lite_model,
        openai_model=config.openai_model,
    )
