from __future__ import annotations

from typing import Any, Optional, Sequence

from loguru import logger

from .cache import ResultCache, build_cache_key
from .chain import Failure, FallbackChain, GenerationRequest, Success, build_chain
from .config import settings
from .errors import ConfigurationError, ExhaustedError, InvalidRequestError, ParseError
from .llm import ProviderSet
from .schemas import AnalyzeResponse, ImprovedPrompt, SmartTag, TagGenerateRequest, TagGenerateResponse
from .validation import (
    FLAT_TAGS,
    SMART_TAG_GROUPS,
    SMART_TAG_OBJECTS,
    GroupedShape,
    OutputShape,
    ResponseValidator,
    StructuredShape,
    ValidatedBatch,
    decode_json,
    fill_to_quota,
)

FALLBACK_TAGS = [
    "Explain Step By Step",
    "Give Real World Examples",
    "Use Simple Language",
    "Format As Bullet Points",
    "Include Practice Questions",
    "Add Simple Analogy",
    "Make Short Notes",
    "Highlight Key Terms",
]

NOT_CONFIGURED_MESSAGE = "Gemini API not configured"

TAG_CATEGORIES = """Categories:
1. Persona Style: Voice/tone (e.g., "Act As Friendly Teacher", "Be Strict Exam Coach")
2. Add Context: Curriculum/level (e.g., "Follow CBSE Style", "Use Class 10 Level")
3. Task Instruction: Core action (e.g., "Generate Practice Questions", "Explain Key Concepts")
4. Format Constraints: Output structure (e.g., "Give Bullet Points", "Make Short Notes")
5. Reasoning Help: Cognitive scaffolding (e.g., "Explain Step By Step", "Add Simple Analogy")"""

SMART_TAG_CATEGORIES = """Categories (use these exact names in "category"):
- Role: Who the AI should act as (e.g., "Act As Biology Tutor")
- Context: Class level or background (e.g., "Use Class 8 Level")
- Output: Shape of the answer (e.g., "Give Labeled Diagram Steps")
- Tone: Voice of the answer (e.g., "Keep It Very Simple")
- Thinking: Reasoning to show (e.g., "Explain Step By Step")
Give each tag a brief description of what it adds."""


def _tags_system_instruction(
    shape: OutputShape,
    count: int,
    exclusions: Sequence[str],
    min_words: int,
    max_words: int,
) -> str:
    lines = [
        'You are an expert educational prompt engineer. Your task is to generate "Smart Tags" - short, '
        "action-oriented suggestions that help a user refine their prompt.",
        "",
    ]
    if isinstance(shape, GroupedShape):
        lines.extend([TAG_CATEGORIES, ""])
    elif isinstance(shape, StructuredShape):
        lines.extend([SMART_TAG_CATEGORIES, ""])
    lines.extend(
        [
            "Constraints:",
            f"1. Each tag must be exactly {min_words} to {max_words} words long.",
            "2. Each tag must start with a strong action verb (e.g., Include, Add, Use, Explain, Provide, Avoid, Make, Give).",
            "3. Tags must be safe for students and appropriate for a school setting.",
            f"4. Do NOT duplicate any of these existing tags: {', '.join(exclusions)}.",
            "5. Do NOT use any punctuation in the tags (no periods, commas, etc.).",
            f"6. Generate exactly {count} tags IN TOTAL. Pick the most relevant categories for the user's intent.",
        ]
    )
    return "\n".join(lines)


def _tags_user_prompt(request: TagGenerateRequest, count: int) -> str:
    prompt = (
        f'Generate {count} smart tags for a prompt about "{request.topic}".\n'
        f"Persona: {request.persona}\n"
        f"Intent: {request.intent}\n"
        f"Stage: {request.stage} (1 = Initial suggestions, 2 = Follow-up suggestions)"
    )
    if str(request.stage).strip() == "2" and request.selected_tags:
        prompt += (
            f"\nThe user has already selected: {', '.join(request.selected_tags)}. "
            "Provide additional, complementary tags that go well with these."
        )
    return prompt


def _static_response(count: int, exclusions: Sequence[str], message: str) -> TagGenerateResponse:
    tags = fill_to_quota([], count, FALLBACK_TAGS, exclusions)
    if len(tags) < count:
        # Every entry is excluded or used; repeat excluded ones rather than answer empty.
        tags = fill_to_quota(tags, count, FALLBACK_TAGS)
    return TagGenerateResponse(success=True, tags=tags, fallback=True, message=message)


def _run_chain(chain: FallbackChain, request: GenerationRequest) -> Success:
    outcome = chain.run(request)
    if isinstance(outcome, Failure):
        raise ExhaustedError(outcome.kind, outcome.error)
    return outcome


def generate_tags(
    request: TagGenerateRequest,
    providers: ProviderSet,
    cache: ResultCache,
    shape: OutputShape = SMART_TAG_GROUPS,
    validator: Optional[ResponseValidator] = None,
) -> TagGenerateResponse:
    """Produce a tag batch: cache, provider chain, validation, quota fill.

    Every failure past input parsing resolves to the static list with
    ``fallback=True``; nothing here raises to the caller.
    """
    validator = validator or ResponseValidator(settings.tag_min_words, settings.tag_max_words)
    count = request.count
    exclusions = request.exclusions
    key = build_cache_key(
        topic=request.topic,
        intent=request.intent,
        persona=request.persona,
        stage=request.stage,
        required_count=count,
        shape=shape.name,
        exclusions=exclusions,
    )

    cached = cache.get(key)
    if cached is not None:
        logger.info(f"Serving tags from cache ({shape.name}, topic={request.topic!r})")
        return TagGenerateResponse.model_validate(cached)

    try:
        chain = build_chain(providers, decode=decode_json)
    except ConfigurationError as exc:
        logger.warning(f"{exc}; returning static tags")
        return _static_response(count, exclusions, NOT_CONFIGURED_MESSAGE)

    generation_request = GenerationRequest(
        content=_tags_user_prompt(request, count),
        system_instruction=_tags_system_instruction(
            shape, count, exclusions, validator.min_words, validator.max_words
        ),
        schema=shape.schema(),
        temperature=settings.tags_temperature,
        exclusions=frozenset(exclusions),
    )

    try:
        outcome = _run_chain(chain, generation_request)
    except ExhaustedError as exc:
        logger.error(f"Tag generation exhausted all providers [{exc.kind.value}]: {exc}")
        return _static_response(count, exclusions, str(exc))

    try:
        batch = validator.validate(shape, outcome.payload, exclusions)
    except ParseError as exc:
        logger.error(f"Tag validation failed after {outcome.provider_used}: {exc}")
        return _static_response(count, exclusions, str(exc))

    logger.debug(f"Validated tags from {outcome.provider_used}: {batch.tags}")
    tags = fill_to_quota(batch.tags, count, FALLBACK_TAGS, exclusions)
    categorized = isinstance(shape, (GroupedShape, StructuredShape)) and batch.categorized
    response = TagGenerateResponse(
        success=True,
        tags=tags,
        groups=batch.groups if categorized else None,
        items=_smart_tags(shape, batch, tags, outcome.payload) if categorized else None,
        fallback=not outcome.is_primary,
    )
    cache.set(key, response.model_dump())
    return response


def _smart_tags(shape: OutputShape, batch: ValidatedBatch, tags: list[str], payload: Any) -> Optional[list[SmartTag]]:
    if not isinstance(shape, StructuredShape):
        return None
    notes = shape.descriptions(payload)
    return [
        SmartTag(category=category, value=tag, description=notes.get(tag))
        for category, group in batch.groups.items()
        for tag in group
        if tag in tags
    ]


def generate_flat_tags(request: TagGenerateRequest, providers: ProviderSet, cache: ResultCache) -> TagGenerateResponse:
    return generate_tags(request, providers, cache, shape=FLAT_TAGS)


def generate_structured_tags(request: TagGenerateRequest, providers: ProviderSet, cache: ResultCache) -> TagGenerateResponse:
    """Tags as ``{category, value, description}`` objects across Role, Context, Output, Tone and Thinking."""
    return generate_tags(request, providers, cache, shape=SMART_TAG_OBJECTS)


ANALYSIS_SYSTEM_INSTRUCTION = (
    "You are an expert prompt engineering coach for high school and college students. Your goal is to "
    "analyze a student's prompt and help them improve it for better results from AI models. Evaluate the "
    "provided prompt on a scale of 0 to 100 based on its clarity, context, specificity, and inclusion of key "
    "elements like role, format, and tone. A score of 0 is a very poor, vague prompt, while 100 is a perfect, "
    "highly-detailed prompt. Provide constructive feedback and generate an improved version of the prompt, "
    "breaking it down into its core components (role, context, task, etc.). Your response must be a single, "
    "valid JSON object."
)

ANALYSIS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "score": {"type": "NUMBER", "description": "A score from 0-100 evaluating the prompt's quality."},
        "feedback": {
            "type": "STRING",
            "description": "Constructive feedback explaining the score and suggesting areas for improvement.",
        },
        "improvedPrompt": {
            "type": "OBJECT",
            "description": "A structured, improved version of the student's prompt.",
            "properties": {
                "role": {"type": "STRING"},
                "context": {"type": "STRING"},
                "task": {"type": "STRING"},
                "exemplars": {"type": "ARRAY", "items": {"type": "STRING"}},
                "persona": {"type": "STRING"},
                "format": {"type": "STRING"},
                "tone": {"type": "STRING"},
            },
            "required": ["task"],
        },
    },
    "required": ["score", "feedback", "improvedPrompt"],
}


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def coerce_analysis(payload: Any, student_prompt: str) -> AnalyzeResponse:
    if not isinstance(payload, dict):
        raise ParseError("Analysis response is not a JSON object")
    try:
        score = float(payload.get("score"))
    except (TypeError, ValueError) as exc:
        raise ParseError("Analysis response has no numeric score") from exc
    improved = payload.get("improvedPrompt")
    if not isinstance(improved, dict):
        improved = {}
    exemplars = improved.get("exemplars")
    if isinstance(exemplars, list):
        exemplars = [str(item) for item in exemplars if str(item).strip()]
    else:
        exemplars = None
    return AnalyzeResponse(
        score=min(max(score, 0.0), 100.0),
        feedback=str(payload.get("feedback") or ""),
        improved_prompt=ImprovedPrompt(
            role=_text_or_none(improved.get("role")),
            context=_text_or_none(improved.get("context")),
            task=_text_or_none(improved.get("task")) or student_prompt,
            format=_text_or_none(improved.get("format")),
            tone=_text_or_none(improved.get("tone")),
            persona=_text_or_none(improved.get("persona")),
            exemplars=exemplars,
        ),
    )


def analyze_prompt(student_prompt: Any, providers: ProviderSet) -> AnalyzeResponse:
    """Score a student's prompt and propose a structured rewrite.

    Unlike tag generation there is no static answer, so configuration and
    exhausted-chain errors propagate for the HTTP layer to map.
    """
    if not isinstance(student_prompt, str) or not student_prompt.strip():
        raise InvalidRequestError("studentPrompt is required and must be a non-empty string")

    # Shape problems count as a tier failure, so coercion runs inside the chain.
    chain = build_chain(providers, decode=lambda text: coerce_analysis(decode_json(text), student_prompt))
    outcome = _run_chain(
        chain,
        GenerationRequest(
            content=f'Please analyze this student\'s prompt: "{student_prompt}"',
            system_instruction=ANALYSIS_SYSTEM_INSTRUCTION,
            schema=ANALYSIS_SCHEMA,
            temperature=settings.analyze_temperature,
        ),
    )
    logger.info(f"Prompt analyzed by {outcome.provider_used}, score={outcome.payload.score}")
    return outcome.payload


INTENT_PREFIXES = {
    "learn": "I want to learn about",
    "test": "I am preparing for a test on",
    "revise": "I want to revise",
    "doubt": "I have a doubt regarding",
}


def compose_prompt(topic: str, intent: str, selected_tags: Sequence[str]) -> str:
    if not topic or not intent or selected_tags is None:
        raise InvalidRequestError("topic, selectedTags, and intent are required")
    prefix = INTENT_PREFIXES.get(intent, "I want to understand")
    body = "\n".join(selected_tags)
    return f'{prefix} "{topic}".\n\n{body}\n\nPlease help me accordingly.'
