from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TagGenerateRequest(CamelModel):
    topic: str
    intent: str
    persona: str
    stage: Optional[Union[int, str]] = None
    required_count: Optional[int] = Field(default=None, alias="requiredCount", ge=1, le=20)
    selected_tags: list[str] = Field(default_factory=list, alias="selectedTags")
    visible_tags: list[str] = Field(default_factory=list, alias="visibleTags")

    @field_validator("topic", "intent", "persona")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()

    @field_validator("selected_tags", "visible_tags", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def count(self) -> int:
        if self.required_count is not None:
            return self.required_count
        return 3 if str(self.stage).strip() == "1" else 5

    @property
    def exclusions(self) -> list[str]:
        seen: list[str] = []
        for tag in [*self.selected_tags, *self.visible_tags]:
            if tag not in seen:
                seen.append(tag)
        return seen


class SmartTagRequest(TagGenerateRequest):
    persona: str = "Student"


class SmartTag(BaseModel):
    category: str
    value: str
    description: Optional[str] = None


class TagGenerateResponse(BaseModel):
    success: bool = True
    tags: list[str]
    groups: Optional[dict[str, list[str]]] = None
    items: Optional[list[SmartTag]] = None
    fallback: bool = False
    message: Optional[str] = None


class AnalyzeRequest(CamelModel):
    student_prompt: Any = Field(default=None, alias="studentPrompt")


class ImprovedPrompt(BaseModel):
    role: Optional[str] = None
    context: Optional[str] = None
    task: str
    format: Optional[str] = None
    tone: Optional[str] = None
    persona: Optional[str] = None
    exemplars: Optional[list[str]] = None


class AnalyzeResponse(CamelModel):
    score: float = Field(ge=0, le=100)
    feedback: str
    improved_prompt: ImprovedPrompt = Field(alias="improvedPrompt")


class PromptComposeRequest(CamelModel):
    topic: str
    intent: str
    selected_tags: list[str] = Field(alias="selectedTags")


class PromptComposeResponse(BaseModel):
    success: bool = True
    prompt: str
