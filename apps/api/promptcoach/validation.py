from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Union

from .errors import ParseError

_NON_WORD = re.compile(r"[^\w\s]")

UNCATEGORIZED = "tags"


def _extract_json_block(text: str) -> str | None:
    fence = re.search(r"```json\s*(\{.*?\}|\[.*?\])\s*```", text, re.DOTALL | re.IGNORECASE)
    if fence:
        return fence.group(1)
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        return match.group(0)
    match = re.search(r"\[.*\]", text, re.DOTALL)
    if match:
        return match.group(0)
    return None


def _clean_json(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text).strip()


def decode_json(text: str) -> Any:
    """Parse provider text into JSON, tolerating fences and trailing commas."""
    if not text or not text.strip():
        raise ParseError("Empty response from provider")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        block = _extract_json_block(text)
        if not block:
            raise ParseError("Provider response is not JSON")
        try:
            return json.loads(_clean_json(block))
        except json.JSONDecodeError as exc:
            raise ParseError(f"Failed to parse provider response as JSON: {exc}") from exc


@dataclass(frozen=True)
class GroupedShape:
    """Object of named string arrays, e.g. ``{"personaStyle": [...], ...}``."""

    groups: tuple[str, ...]
    name: str = "grouped"

    def schema(self) -> dict:
        return {
            "type": "OBJECT",
            "properties": {group: {"type": "ARRAY", "items": {"type": "STRING"}} for group in self.groups},
            "required": list(self.groups),
        }

    def extract(self, payload: Any) -> dict[str, Any]:
        # Providers that ignore the schema sometimes answer with a plain list,
        # bare or under "tags"; keep it as a single uncategorized group.
        if isinstance(payload, list):
            return {UNCATEGORIZED: payload}
        if not isinstance(payload, dict):
            raise ParseError("Expected a JSON object of tag groups")
        if not any(group in payload for group in self.groups) and isinstance(payload.get("tags"), list):
            return {UNCATEGORIZED: payload["tags"]}
        return {group: payload.get(group) for group in self.groups}


@dataclass(frozen=True)
class FlatShape:
    """Array of strings, either bare or under a single key."""

    key: str = "tags"
    name: str = "flat"

    def schema(self) -> dict:
        return {
            "type": "OBJECT",
            "properties": {
                self.key: {
                    "type": "ARRAY",
                    "items": {"type": "STRING"},
                    "description": "A list of short, relevant smart tags (3-4 words each).",
                }
            },
            "required": [self.key],
        }

    def extract(self, payload: Any) -> dict[str, Any]:
        if isinstance(payload, list):
            return {self.key: payload}
        if isinstance(payload, dict):
            return {self.key: payload.get(self.key)}
        raise ParseError("Expected a JSON array of tags")


@dataclass(frozen=True)
class StructuredShape:
    """Array of ``{category, value, description}`` objects under a single key.

    Values are grouped by category in declared order. Category names match
    case-insensitively; objects naming any other category are dropped. Bare
    strings are kept as one uncategorized group.
    """

    categories: tuple[str, ...]
    key: str = "tags"
    name: str = "structured"

    def schema(self) -> dict:
        return {
            "type": "OBJECT",
            "properties": {
                self.key: {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "category": {
                                "type": "STRING",
                                "description": f"One of: {', '.join(self.categories)}",
                            },
                            "value": {"type": "STRING", "description": "The tag text"},
                            "description": {"type": "STRING", "description": "Optional brief description"},
                        },
                        "required": ["category", "value"],
                    },
                }
            },
            "required": [self.key],
        }

    def _items(self, payload: Any) -> list[Any]:
        if isinstance(payload, dict):
            payload = payload.get(self.key)
        if not isinstance(payload, list):
            raise ParseError("Expected a JSON array of tag objects")
        return payload

    def extract(self, payload: Any) -> dict[str, Any]:
        lookup = {category.lower(): category for category in self.categories}
        groups: dict[str, list[Any]] = {category: [] for category in self.categories}
        for item in self._items(payload):
            if isinstance(item, str):
                groups.setdefault(UNCATEGORIZED, []).append(item)
            elif isinstance(item, dict):
                category = lookup.get(str(item.get("category") or "").strip().lower())
                if category:
                    groups[category].append(item.get("value"))
        return groups

    def descriptions(self, payload: Any) -> dict[str, str]:
        """Map each normalized tag value to the first description given for it."""
        found: dict[str, str] = {}
        for item in self._items(payload):
            if not isinstance(item, dict):
                continue
            value, note = item.get("value"), item.get("description")
            if isinstance(value, str) and isinstance(note, str) and note.strip():
                found.setdefault(normalize_tag(value), note.strip())
        return found


OutputShape = Union[GroupedShape, FlatShape, StructuredShape]

SMART_TAG_GROUPS = GroupedShape(
    groups=("personaStyle", "addContext", "taskInstruction", "formatConstraints", "reasoningHelp")
)
FLAT_TAGS = FlatShape()
SMART_TAG_OBJECTS = StructuredShape(categories=("Role", "Context", "Output", "Tone", "Thinking"))


def normalize_tag(text: str) -> str:
    cleaned = _NON_WORD.sub("", text)
    return " ".join(cleaned.split())


def word_count(text: str) -> int:
    return len(text.split())


@dataclass
class ValidatedBatch:
    tags: list[str]
    groups: dict[str, list[str]]

    @property
    def categorized(self) -> bool:
        return UNCATEGORIZED not in self.groups


class ResponseValidator:
    def __init__(self, min_words: int = 3, max_words: int = 4) -> None:
        if min_words < 1 or max_words < min_words:
            raise ValueError("word bounds must satisfy 1 <= min_words <= max_words")
        self.min_words = min_words
        self.max_words = max_words

    def accepts(self, tag: str) -> bool:
        return self.min_words <= word_count(tag) <= self.max_words

    def validate_group(self, items: Any, exclusions: Iterable[str] = ()) -> list[str]:
        if not isinstance(items, list):
            return []
        excluded = normalized_set(exclusions)
        kept: list[str] = []
        for item in items:
            if not isinstance(item, str):
                continue
            tag = normalize_tag(item)
            if not tag or not self.accepts(tag) or tag in excluded or tag in kept:
                continue
            kept.append(tag)
        return kept

    def validate(self, shape: OutputShape, payload: Any, exclusions: Iterable[str] = ()) -> ValidatedBatch:
        """Validate every group, then flatten them in declared order.

        Raises :class:`ParseError` when nothing survives.
        """
        excluded = normalized_set(exclusions)
        groups = {
            name: self.validate_group(items, excluded)
            for name, items in shape.extract(payload).items()
        }
        flattened: list[str] = []
        seen: set[str] = set()
        for tags in groups.values():
            for tag in tags:
                if tag not in seen:
                    seen.add(tag)
                    flattened.append(tag)
        if not flattened:
            raise ParseError("No tags survived validation")
        return ValidatedBatch(tags=flattened, groups=groups)


def normalized_set(values: Iterable[str]) -> set[str]:
    return {normalize_tag(v) for v in values if isinstance(v, str) and normalize_tag(v)}


def fill_to_quota(
    batch: Sequence[str],
    count: int,
    dataset: Sequence[str],
    exclusions: Optional[Iterable[str]] = None,
) -> list[str]:
    """Top ``batch`` up to ``count`` from ``dataset``, or truncate it.

    Dataset entries already in the batch or excluded are skipped. Running out
    of dataset entries leaves the batch short, which is not an error.
    """
    result = list(batch)[:count]
    if len(result) >= count:
        return result
    excluded = normalized_set(exclusions or [])
    present = set(result)
    for candidate in dataset:
        if len(result) >= count:
            break
        if candidate in present or normalize_tag(candidate) in excluded:
            continue
        result.append(candidate)
        present.add(candidate)
    return result
