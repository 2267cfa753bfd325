import asyncio
import itertools

import pytest

from research_agent.plan_model import Plan, Point, Section
from research_agent.service import FlashcardDraft, ResearchResult, Source

SAMPLE_SUGGESTION = {
    "title": "Solid-state battery outlook",
    "objective": "Assess where solid-state batteries stand for electric vehicles.",
    "sections": [
        {
            "id": "market",
            "title": "Market",
            "description": "Size and players",
            "points": [
                {"id": "p1", "content": "Market size forecasts"},
                {"id": "p2", "content": "Key manufacturers"},
            ],
        },
        {
            "title": "Technology",
            "points": [{"content": "Electrolyte chemistries"}],
        },
    ],
}

SAMPLE_REPORT = (
    "Solid-state batteries are approaching pilot production.\n"
    "## Market\n"
    "Forecasts vary widely.\n"
    "## Technology\n"
    "Sulfide electrolytes lead."
)


class FakeGenerationService:
    """Scripted GenerationService for tests.

    Set an attribute to an exception instance to make that call fail, and
    put an asyncio.Event in ``gates`` to hold a call until the event is set.
    """

    def __init__(self):
        self.plan_results: list = []
        self.research_result = ResearchResult(
            markdown_body=SAMPLE_REPORT,
            sources=[Source(title="Battery News", uri="https://example.com/battery")],
        )
        self.image_result = "data:image/png;base64,AAAA"
        self.flashcard_result = [
            FlashcardDraft(front="What leads?", back="Sulfide electrolytes"),
            FlashcardDraft(front="Stage?", back="Pilot production"),
            FlashcardDraft(front="Forecasts?", back="Vary widely"),
        ]
        self.refine_result = "Rewritten content."
        self.chat_result = "Here is an answer."
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, tuple]] = []

    async def _respond(self, name: str, args: tuple, result):
        self.calls.append((name, args))
        if name in self.gates:
            await self.gates[name].wait()
        if isinstance(result, BaseException):
            raise result
        return result

    async def generate_plan(self, query, previous_plan=None, instruction=None):
        result = self.plan_results.pop(0) if self.plan_results else SAMPLE_SUGGESTION
        return await self._respond("generate_plan", (query, previous_plan, instruction), result)

    async def execute_research(self, active_plan):
        return await self._respond("execute_research", (active_plan,), self.research_result)

    async def generate_cover_image(self, title):
        return await self._respond("generate_cover_image", (title,), self.image_result)

    async def generate_flashcards(self, section_content):
        return await self._respond("generate_flashcards", (section_content,), self.flashcard_result)

    async def refine_section(self, section_content, instruction):
        return await self._respond("refine_section", (section_content, instruction), self.refine_result)

    async def chat_turn(self, section_content, history, message):
        return await self._respond("chat_turn", (section_content, list(history), message), self.chat_result)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def fake_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def id_factory():
    """Deterministic id generator: id-1, id-2, ..."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def sample_plan() -> Plan:
    return Plan(
        title="Solid-state battery outlook",
        objective="Assess the outlook.",
        sections=(
            Section(
                id="s1",
                title="Market",
                description="Size and players",
                points=(
                    Point(id="p1", content="Market size forecasts"),
                    Point(id="p2", content="Key manufacturers"),
                ),
            ),
            Section(
                id="s2",
                title="Technology",
                points=(Point(id="p1", content="Electrolyte chemistries"),),
            ),
        ),
    )
