from __future__ import annotations

import httpx
import pytest

from promptcoach.cache import ResultCache
from promptcoach.errors import ConfigurationError, ErrorKind, ExhaustedError, InvalidRequestError
from promptcoach.generation import (
    FALLBACK_TAGS,
    NOT_CONFIGURED_MESSAGE,
    analyze_prompt,
    compose_prompt,
    generate_flat_tags,
    generate_structured_tags,
    generate_tags,
)
from promptcoach.llm import MockProviderClient, ProviderSet
from promptcoach.schemas import SmartTagRequest, TagGenerateRequest


class StatusError(Exception):
    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


GROUPS = {
    "personaStyle": ["Act As Friendly Teacher"],
    "addContext": ["Use Class 10 Level"],
    "taskInstruction": ["Explain Key Concepts Clearly"],
    "formatConstraints": ["Give Bullet Points"],
    "reasoningHelp": ["Add Simple Analogy"],
}


def _request(**overrides) -> TagGenerateRequest:
    data = {"topic": "Photosynthesis", "intent": "learn", "persona": "Student", "stage": 2}
    data.update(overrides)
    return TagGenerateRequest.model_validate(data)


def _providers(gemini: MockProviderClient | None = None, openai: MockProviderClient | None = None) -> ProviderSet:
    return ProviderSet(
        gemini=gemini,
        openai=openai,
        gemini_model="flash",
        gemini_lite_model="flash-lite",
        openai_model="gpt",
    )


def test_required_count_defaults_by_stage() -> None:
    assert _request(stage=1).count == 3
    assert _request(stage="1").count == 3
    assert _request(stage=2).count == 5
    assert _request(stage=1, requiredCount=4).count == 4


def test_no_credentials_returns_static_slice() -> None:
    response = generate_tags(_request(stage=1), _providers(), ResultCache())
    assert response.success is True
    assert response.fallback is True
    assert response.tags == FALLBACK_TAGS[:3]
    assert response.message == NOT_CONFIGURED_MESSAGE


def test_static_slice_skips_excluded_tags() -> None:
    request = _request(stage=1, selectedTags=[FALLBACK_TAGS[0]], visibleTags=[FALLBACK_TAGS[2]])
    response = generate_tags(request, _providers(), ResultCache())
    assert response.tags == [FALLBACK_TAGS[1], FALLBACK_TAGS[3], FALLBACK_TAGS[4]]


def test_static_slice_is_never_empty_when_every_fallback_is_excluded() -> None:
    response = generate_tags(_request(stage=1, selectedTags=FALLBACK_TAGS), _providers(), ResultCache())
    assert response.success is True
    assert response.fallback is True
    assert response.tags == FALLBACK_TAGS[:3]


def test_static_slice_prefers_unexcluded_entries_before_repeating() -> None:
    response = generate_tags(_request(stage=1, selectedTags=FALLBACK_TAGS[1:]), _providers(), ResultCache())
    assert response.tags == [FALLBACK_TAGS[0], FALLBACK_TAGS[1], FALLBACK_TAGS[2]]


def test_primary_success_returns_groups_without_fallback() -> None:
    gemini = MockProviderClient({"flash": [GROUPS]}, name="gemini")
    response = generate_tags(_request(), _providers(gemini), ResultCache())
    assert response.fallback is False
    assert response.tags == [
        "Act As Friendly Teacher",
        "Use Class 10 Level",
        "Explain Key Concepts Clearly",
        "Give Bullet Points",
        "Add Simple Analogy",
    ]
    assert response.groups["formatConstraints"] == ["Give Bullet Points"]
    assert gemini.calls[0]["temperature"] == 0.7
    assert set(gemini.calls[0]["schema"]["properties"]) == set(GROUPS)


def test_cache_hit_is_identical_and_skips_providers() -> None:
    gemini = MockProviderClient({"flash": [GROUPS]}, name="gemini")
    cache = ResultCache()
    first = generate_tags(_request(), _providers(gemini), cache)
    second = generate_tags(_request(), _providers(gemini), cache)
    assert first.model_dump_json() == second.model_dump_json()
    assert len(gemini.calls) == 1


def test_expired_cache_entry_is_regenerated_and_overwritten() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl_seconds=600, clock=clock)
    refreshed = {**GROUPS, "personaStyle": ["Be Strict Exam Coach"]}
    gemini = MockProviderClient({"flash": [GROUPS, refreshed]}, name="gemini")
    generate_tags(_request(), _providers(gemini), cache)
    clock.now += 601
    response = generate_tags(_request(), _providers(gemini), cache)
    assert len(gemini.calls) == 2
    assert response.tags[0] == "Be Strict Exam Coach"
    assert generate_tags(_request(), _providers(gemini), cache).tags[0] == "Be Strict Exam Coach"
    assert len(gemini.calls) == 2


def test_selected_tag_never_reappears() -> None:
    gemini = MockProviderClient({"flash": [GROUPS]}, name="gemini")
    request = _request(selectedTags=["Act As Friendly Teacher"])
    response = generate_tags(request, _providers(gemini), ResultCache())
    assert "Act As Friendly Teacher" not in response.tags
    assert "Act As Friendly Teacher" not in response.groups["personaStyle"]
    assert len(response.tags) == 5


def test_short_batch_is_padded_to_required_count() -> None:
    gemini = MockProviderClient(
        {"flash": [{**{k: [] for k in GROUPS}, "taskInstruction": ["Explain Key Concepts", "Use Plant Diagram"]}]},
        name="gemini",
    )
    response = generate_tags(_request(), _providers(gemini), ResultCache())
    assert response.tags[:2] == ["Explain Key Concepts", "Use Plant Diagram"]
    assert response.tags[2:] == FALLBACK_TAGS[:3]
    assert response.fallback is False


def test_lighter_model_success_is_flagged_as_fallback() -> None:
    gemini = MockProviderClient({"flash": [StatusError(429, "quota")], "flash-lite": [GROUPS]}, name="gemini")
    response = generate_tags(_request(), _providers(gemini), ResultCache())
    assert response.fallback is True
    assert [c["model"] for c in gemini.calls] == ["flash", "flash-lite"]


def test_photosynthesis_scenario() -> None:
    gemini = MockProviderClient({"flash": [httpx.ReadTimeout("timed out")]}, name="gemini")
    openai = MockProviderClient(
        {"gpt": [["Explain Key Steps Clearly", "Use Plant Diagram", "Avoid Jargon"]]},
        name="openai",
    )
    request = TagGenerateRequest.model_validate(
        {
            "topic": "Photosynthesis",
            "intent": "learn",
            "persona": "Student",
            "requiredCount": 3,
            "selectedTags": [],
            "visibleTags": [],
        }
    )
    response = generate_tags(request, _providers(gemini, openai), ResultCache())
    assert response.success is True
    assert response.fallback is True
    assert len(response.tags) == 3
    assert response.tags[0] == "Explain Key Steps Clearly"
    assert "Avoid Jargon" not in response.tags
    assert [c["model"] for c in gemini.calls] == ["flash"]


def test_total_failure_degrades_to_static_with_primary_message() -> None:
    gemini = MockProviderClient(
        {"flash": [StatusError(401, "API key not valid")]},
        name="gemini",
    )
    openai = MockProviderClient({"gpt": [StatusError(500, "openai down")]}, name="openai")
    cache = ResultCache()
    response = generate_tags(_request(stage=1), _providers(gemini, openai), cache)
    assert response.fallback is True
    assert response.tags == FALLBACK_TAGS[:3]
    assert response.message == "API key not valid"
    assert len(cache) == 0


def test_validation_failure_degrades_to_static() -> None:
    gemini = MockProviderClient({"flash": [{k: ["Too Short"] for k in GROUPS}]}, name="gemini")
    cache = ResultCache()
    response = generate_tags(_request(stage=1), _providers(gemini), cache)
    assert response.fallback is True
    assert response.tags == FALLBACK_TAGS[:3]
    assert len(cache) == 0


def test_flat_shape_has_no_groups() -> None:
    gemini = MockProviderClient({"flash": [{"tags": ["Use Plant Diagram", "Label Each Stage"]}]}, name="gemini")
    response = generate_flat_tags(_request(stage=1), _providers(gemini), ResultCache())
    assert response.groups is None
    assert response.tags[:2] == ["Use Plant Diagram", "Label Each Stage"]
    assert list(gemini.calls[0]["schema"]["properties"]) == ["tags"]


def test_structured_tags_keep_categories_and_descriptions() -> None:
    payload = {
        "tags": [
            {"category": "Role", "value": "Act As Biology Tutor", "description": "Sets the voice"},
            {"category": "Output", "value": "Give Labeled Diagram Steps"},
            {"category": "Thinking", "value": "Explain Step By Step"},
        ]
    }
    gemini = MockProviderClient({"flash": [payload]}, name="gemini")
    request = SmartTagRequest.model_validate({"topic": "Photosynthesis", "intent": "learn", "requiredCount": 2})
    response = generate_structured_tags(request, _providers(gemini), ResultCache())
    assert request.persona == "Student"
    assert response.tags == ["Act As Biology Tutor", "Give Labeled Diagram Steps"]
    assert response.groups["Thinking"] == ["Explain Step By Step"]
    assert [(i.category, i.value, i.description) for i in response.items] == [
        ("Role", "Act As Biology Tutor", "Sets the voice"),
        ("Output", "Give Labeled Diagram Steps", None),
    ]
    assert gemini.calls[0]["schema"]["properties"]["tags"]["items"]["required"] == ["category", "value"]


def test_structured_tags_without_credentials_are_static() -> None:
    request = SmartTagRequest.model_validate({"topic": "Photosynthesis", "intent": "learn"})
    response = generate_structured_tags(request, _providers(), ResultCache())
    assert response.tags == FALLBACK_TAGS[:5]
    assert response.items is None
    assert response.fallback is True


def test_invalid_request_fields() -> None:
    with pytest.raises(ValueError):
        TagGenerateRequest.model_validate({"topic": " ", "intent": "learn", "persona": "Student"})


ANALYSIS = {
    "score": 140,
    "feedback": "Add more context.",
    "improvedPrompt": {"role": "Biology tutor", "task": "", "exemplars": ["Show one diagram"]},
}


def test_analyze_fills_absent_fields() -> None:
    gemini = MockProviderClient({"flash": [ANALYSIS]}, name="gemini")
    result = analyze_prompt("explain photosynthesis", _providers(gemini))
    data = result.model_dump(by_alias=True)
    assert data["score"] == 100
    assert data["improvedPrompt"] == {
        "role": "Biology tutor",
        "context": None,
        "task": "explain photosynthesis",
        "format": None,
        "tone": None,
        "persona": None,
        "exemplars": ["Show one diagram"],
    }
    assert gemini.calls[0]["temperature"] == 0.3


def test_analyze_bad_shape_falls_through_to_secondary() -> None:
    gemini = MockProviderClient({"flash": [{"feedback": "no score"}]}, name="gemini")
    openai = MockProviderClient({"gpt": [{"score": 62, "feedback": "ok", "improvedPrompt": {"task": "t"}}]}, name="openai")
    result = analyze_prompt("explain photosynthesis", _providers(gemini, openai))
    assert result.score == 62
    assert result.improved_prompt.task == "t"


def test_analyze_errors() -> None:
    with pytest.raises(InvalidRequestError):
        analyze_prompt("   ", _providers())
    with pytest.raises(ConfigurationError):
        analyze_prompt("explain photosynthesis", _providers())
    gemini = MockProviderClient({"flash": [StatusError(429, "quota")], "flash-lite": [StatusError(429, "quota")]}, name="gemini")
    with pytest.raises(ExhaustedError) as excinfo:
        analyze_prompt("explain photosynthesis", _providers(gemini))
    assert excinfo.value.kind == ErrorKind.rate_limited


def test_compose_prompt() -> None:
    prompt = compose_prompt("Photosynthesis", "test", ["Use Simple Language", "Give Bullet Points"])
    assert prompt == (
        'I am preparing for a test on "Photosynthesis".\n\n'
        "Use Simple Language\nGive Bullet Points\n\n"
        "Please help me accordingly."
    )
    assert compose_prompt("Cells", "explore", []).startswith('I want to understand "Cells".')
