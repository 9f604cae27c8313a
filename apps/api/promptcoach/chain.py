from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from loguru import logger

from .errors import ConfigurationError, ErrorKind, classify, is_transient, message_kind
from .llm import ProviderClient, ProviderSet


@dataclass(frozen=True)
class Tier:
    label: str
    provider: ProviderClient
    model: str

    @property
    def provider_used(self) -> str:
        return f"{self.label}:{self.provider.name}"


@dataclass(frozen=True)
class GenerationRequest:
    content: str
    system_instruction: Optional[str] = None
    schema: Optional[dict] = None
    temperature: float = 0.7
    exclusions: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Success:
    provider_used: str
    payload: Any

    @property
    def is_primary(self) -> bool:
        return self.provider_used.startswith("primary:")


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    error: BaseException


GenerationOutcome = Union[Success, Failure]


def _identity(text: str) -> Any:
    return text


def should_try_lighter(error: BaseException, kind: ErrorKind) -> bool:
    return is_transient(kind) or (message_kind(error) in {ErrorKind.rate_limited, ErrorKind.overloaded})


class FallbackChain:
    """Fixed-priority provider fallback.

    primary -> lighter (only for rate-limit/overload failures) -> secondary.
    Each tier runs at most once, in order, with no backoff. A failed chain
    reports the primary tier's error.
    """

    def __init__(
        self,
        primary: Tier,
        lighter: Optional[Tier] = None,
        secondary: Optional[Tier] = None,
        decode: Callable[[str], Any] = _identity,
    ) -> None:
        self.primary = primary
        self.lighter = lighter
        self.secondary = secondary
        self.decode = decode

    @property
    def tiers(self) -> list[Tier]:
        return [tier for tier in (self.primary, self.lighter, self.secondary) if tier is not None]

    def _attempt(self, tier: Tier, request: GenerationRequest) -> Any:
        text = tier.provider.generate(
            tier.model,
            request.content,
            schema=request.schema,
            temperature=request.temperature,
            system_instruction=request.system_instruction,
        )
        return self.decode(text)

    def run(self, request: GenerationRequest) -> GenerationOutcome:
        try:
            logger.debug(f"Attempting {self.primary.provider.name}:{self.primary.model}")
            return Success(self.primary.provider_used, self._attempt(self.primary, request))
        except Exception as exc:  # noqa: BLE001
            first_error = exc
            first_kind = classify(exc)
        logger.warning(f"{self.primary.provider_used} ({self.primary.model}) failed [{first_kind.value}]: {first_error}")

        if self.lighter is not None and should_try_lighter(first_error, first_kind):
            try:
                logger.warning(f"Retrying with {self.lighter.model}")
                return Success(self.lighter.provider_used, self._attempt(self.lighter, request))
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"{self.lighter.provider_used} ({self.lighter.model}) failed [{classify(exc).value}]: {exc}")

        if self.secondary is not None:
            try:
                logger.warning(f"Switching to {self.secondary.provider.name}")
                return Success(self.secondary.provider_used, self._attempt(self.secondary, request))
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{self.secondary.provider_used} fallback failed [{classify(exc).value}]: {exc}")

        return Failure(first_kind, first_error)


def build_chain(providers: ProviderSet, decode: Callable[[str], Any] = _identity) -> FallbackChain:
    """Arrange the configured providers into tiers.

    Gemini is primary with its lite model as the lighter tier and OpenAI as
    the secondary provider. Without Gemini, OpenAI becomes the only tier.
    """
    if providers.gemini is not None:
        secondary = None
        if providers.openai is not None:
            secondary = Tier("secondary", providers.openai, providers.openai_model)
        return FallbackChain(
            primary=Tier("primary", providers.gemini, providers.gemini_model),
            lighter=Tier("lighter", providers.gemini, providers.gemini_lite_model),
            secondary=secondary,
            decode=decode,
        )
    if providers.openai is not None:
        return FallbackChain(primary=Tier("primary", providers.openai, providers.openai_model), decode=decode)
    raise ConfigurationError("No LLM provider credentials configured")
