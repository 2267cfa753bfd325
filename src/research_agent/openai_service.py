"""Generation service backed by the OpenAI API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from .plan_merge import parse_plan_suggestion, plan_context_json
from .plan_model import ActivePlan, Plan
from .prompts import DEFAULT_LANGUAGE, format_prompt
from .service import (
    ChatMessage,
    FlashcardDraft,
    FlashcardSet,
    GenerationFailure,
    PlanSuggestion,
    ResearchResult,
    Source,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5.1-mini-2025-06-30"
RESEARCH_MODEL = "gpt-5.1-2025-11-13"
IMAGE_MODEL = "gpt-image-1"
IMAGE_SIZE = "1536x1024"
FLASHCARD_CONTENT_LIMIT = 3000

MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-5.1-2025-11-13": {"input": 2.50, "output": 10.00},
    "gpt-5.1-mini-2025-06-30": {"input": 0.40, "output": 1.60},
    "gpt-5-nano-2025-08-07": {"input": 0.10, "output": 0.40},
}


@dataclass
class UsageCost:
    """Token usage and cost for LLM calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: "UsageCost") -> "UsageCost":
        return UsageCost(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
        )


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Calculate cost in USD for token usage."""
    pricing = MODEL_PRICING.get(model, {"input": 0.0, "output": 0.0})
    input_cost = (input_tokens / 1_000_000) * pricing["input"]
    output_cost = (output_tokens / 1_000_000) * pricing["output"]
    return input_cost + output_cost


def extract_sources(response: Any) -> list[Source]:
    """Collect url citations from a Responses API result, first occurrence wins."""
    sources: list[Source] = []
    seen: set[str] = set()
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message":
            continue
        for content in getattr(item, "content", None) or []:
            for annotation in getattr(content, "annotations", None) or []:
                if getattr(annotation, "type", None) != "url_citation":
                    continue
                uri = getattr(annotation, "url", None)
                if not uri or uri in seen:
                    continue
                seen.add(uri)
                sources.append(Source(title=getattr(annotation, "title", None) or uri, uri=uri))
    return sources


class OpenAIGenerationService:
    """GenerationService implementation on ``AsyncOpenAI``.

    Structured results (plans, flashcards) use JSON-mode chat completions and
    are validated with pydantic; research runs through the Responses API with
    the web search tool so the report is grounded and cited.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str = DEFAULT_MODEL,
        research_model: str = RESEARCH_MODEL,
        image_model: str = IMAGE_MODEL,
        language: str = DEFAULT_LANGUAGE,
    ):
        self._client = client
        self.model = model
        self.research_model = research_model
        self.image_model = image_model
        self.language = language
        self.usage = UsageCost()

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    def _record_usage(self, model: str, input_tokens: int, output_tokens: int) -> UsageCost:
        usage = UsageCost(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(model, input_tokens, output_tokens),
        )
        self.usage = self.usage + usage
        return usage

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        *,
        json_mode: bool = False,
        allow_empty: bool = False,
        purpose: str,
    ) -> str:
        """Run a chat completion and return its text.

        Raises:
            GenerationFailure: On API errors, no choices, or empty content
                unless allow_empty is set
        """
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug(f"Calling {self.model} for {purpose}")
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise GenerationFailure(f"{purpose} call failed: {e}") from e

        if not response.choices:
            raise GenerationFailure(f"{purpose}: OpenAI returned no choices")

        choice = response.choices[0]
        finish_reason = getattr(choice, "finish_reason", None)
        text = choice.message.content or ""

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        usage = self._record_usage(self.model, input_tokens, output_tokens)
        logger.info(f"{purpose}: {input_tokens} in / {output_tokens} out (${usage.cost_usd:.4f})")

        if not text.strip() and not allow_empty:
            raise GenerationFailure(f"{purpose}: empty content (finish_reason={finish_reason})")
        if finish_reason == "length":
            logger.warning(f"{purpose}: response truncated (finish_reason=length)")
        return text

    async def generate_plan(
        self,
        query: str,
        previous_plan: Plan | None = None,
        instruction: str | None = None,
    ) -> PlanSuggestion:
        if previous_plan is not None and instruction:
            prompt = format_prompt(
                "plan_modification",
                language=self.language,
                query=query,
                instruction=instruction,
                previous_plan=plan_context_json(previous_plan),
            )
        else:
            prompt = format_prompt("plan_request", language=self.language, query=query)

        messages = [
            {"role": "system", "content": format_prompt("plan_system", language=self.language)},
            {"role": "user", "content": prompt},
        ]
        raw = await self._complete(messages, json_mode=True, purpose="plan generation")
        return parse_plan_suggestion(raw)

    async def execute_research(self, active_plan: ActivePlan) -> ResearchResult:
        prompt = format_prompt(
            "research_request",
            language=self.language,
            active_plan=json.dumps(active_plan.to_dict(), ensure_ascii=False, indent=2),
        )
        logger.debug(f"Calling {self.research_model} with web search for research")
        try:
            response = await self.client.responses.create(
                model=self.research_model,
                instructions=format_prompt("research_system", language=self.language),
                input=prompt,
                tools=[{"type": "web_search"}],
            )
        except OpenAIError as e:
            raise GenerationFailure(f"research call failed: {e}") from e

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        cost = self._record_usage(self.research_model, input_tokens, output_tokens)
        logger.info(f"research: {input_tokens} in / {output_tokens} out (${cost.cost_usd:.4f})")

        return ResearchResult(
            markdown_body=getattr(response, "output_text", "") or "",
            sources=extract_sources(response),
        )

    async def generate_cover_image(self, title: str) -> str | None:
        try:
            response = await self.client.images.generate(
                model=self.image_model,
                prompt=format_prompt("cover_image", title=title),
                size=IMAGE_SIZE,
            )
        except OpenAIError as e:
            raise GenerationFailure(f"cover image call failed: {e}") from e

        for image in response.data or []:
            if image.b64_json:
                return f"data:image/png;base64,{image.b64_json}"
        return None

    async def generate_flashcards(self, section_content: str) -> list[FlashcardDraft]:
        prompt = format_prompt(
            "flashcards",
            language=self.language,
            section_content=section_content[:FLASHCARD_CONTENT_LIMIT],
        )
        raw = await self._complete(
            [{"role": "user", "content": prompt}],
            json_mode=True,
            allow_empty=True,
            purpose="flashcards",
        )
        if not raw.strip():
            return []
        try:
            return FlashcardSet.model_validate_json(raw).cards
        except ValidationError as e:
            raise GenerationFailure(f"Flashcards failed validation: {e}") from e

    async def refine_section(self, section_content: str, instruction: str) -> str:
        prompt = format_prompt(
            "refine_section",
            instruction=instruction,
            section_content=section_content,
        )
        return await self._complete([{"role": "user", "content": prompt}], purpose="refine")

    async def chat_turn(
        self,
        section_content: str,
        history: list[ChatMessage],
        message: str,
    ) -> str:
        messages: list[dict[str, Any]] = [
            {
                "role": "system",
                "content": format_prompt(
                    "section_chat",
                    language=self.language,
                    section_content=section_content,
                ),
            }
        ]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append({"role": "user", "content": message})
        return await self._complete(messages, purpose="section chat")
