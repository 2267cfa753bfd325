"""Contract between the research workflow and the content-generation service.

The workflow only depends on :class:`GenerationService`; concrete adapters
(see ``openai_service``) validate every response against the schemas below
and turn any failure into :class:`GenerationFailure`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Literal, Protocol, TypeVar

from pydantic import BaseModel, Field, field_validator

from .plan_model import ActivePlan, Plan


class GenerationFailure(RuntimeError):
    """Any failure of a call to the generation service."""


T = TypeVar("T")


async def guarded_call(call: Awaitable[T], purpose: str) -> T:
    """Await a service call, reporting any error as a GenerationFailure."""
    try:
        return await call
    except GenerationFailure:
        raise
    except Exception as e:
        raise GenerationFailure(f"{purpose} failed: {e}") from e


class PointSuggestion(BaseModel):
    id: str | None = None
    content: str


class SectionSuggestion(BaseModel):
    id: str | None = None
    title: str
    description: str | None = None
    points: list[PointSuggestion]


class PlanSuggestion(BaseModel):
    """Raw plan as proposed by the generator, before ids and flags are settled."""

    title: str
    objective: str = ""
    sections: list[SectionSuggestion] = Field(min_length=1)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value.strip()


class FlashcardDraft(BaseModel):
    front: str
    back: str


class FlashcardSet(BaseModel):
    cards: list[FlashcardDraft] = Field(default_factory=list)


@dataclass(frozen=True)
class Source:
    title: str
    uri: str


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class ResearchResult:
    """Text half of a research execution."""

    markdown_body: str
    sources: list[Source] = field(default_factory=list)


class GenerationService(Protocol):
    async def generate_plan(
        self,
        query: str,
        previous_plan: Plan | None = None,
        instruction: str | None = None,
    ) -> PlanSuggestion: ...

    async def execute_research(self, active_plan: ActivePlan) -> ResearchResult: ...

    async def generate_cover_image(self, title: str) -> str | None: ...

    async def generate_flashcards(self, section_content: str) -> list[FlashcardDraft]: ...

    async def refine_section(self, section_content: str, instruction: str) -> str: ...

    async def chat_turn(
        self,
        section_content: str,
        history: list[ChatMessage],
        message: str,
    ) -> str: ...
