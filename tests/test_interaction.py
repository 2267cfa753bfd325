"""Tests for per-section chat, flashcards and refine."""

import asyncio

import pytest

from research_agent.interaction import (
    CHAT_APOLOGY,
    MAX_FLASHCARDS,
    DeckStatus,
    Flashcard,
    FlashcardDeck,
    SectionInteractionHub,
    SessionClosedError,
)
from research_agent.segmenter import segment_report
from research_agent.service import FlashcardDraft, GenerationFailure

from conftest import SAMPLE_REPORT


@pytest.fixture
def hub(fake_service, id_factory) -> SectionInteractionHub:
    return SectionInteractionHub(segment_report(SAMPLE_REPORT), fake_service, id_factory=id_factory)


class TestSections:
    def test_sections_are_copies(self, fake_service):
        parsed = segment_report(SAMPLE_REPORT)
        hub = SectionInteractionHub(parsed, fake_service)
        parsed[1].content = "changed outside"
        assert hub.get_section("segment-1").content == "Forecasts vary widely."

        view = hub.sections
        view[1].content = "changed view"
        assert hub.get_section("segment-1").content == "Forecasts vary widely."

    def test_unknown_section(self, hub):
        with pytest.raises(KeyError):
            hub.get_section("segment-9")


class TestChat:
    def test_send_message_records_both_turns(self, hub, fake_service):
        hub.start_chat("segment-1")
        reply = asyncio.run(hub.send_message("segment-1", "How big is the market?"))

        assert reply.role == "assistant"
        assert reply.content == "Here is an answer."
        assert [(m.role, m.content) for m in hub.history("segment-1")] == [
            ("user", "How big is the market?"),
            ("assistant", "Here is an answer."),
        ]
        name, (content, history, message) = fake_service.calls[-1]
        assert name == "chat_turn"
        assert content == "Forecasts vary widely."
        assert history == []
        assert message == "How big is the market?"

    def test_prior_history_is_passed(self, hub, fake_service):
        hub.start_chat("segment-1")
        asyncio.run(hub.send_message("segment-1", "first"))
        asyncio.run(hub.send_message("segment-1", "second"))

        _, (_, history, message) = fake_service.calls[-1]
        assert [m.content for m in history] == ["first", "Here is an answer."]
        assert message == "second"

    def test_history_does_not_leak_between_sections(self, hub, fake_service):
        hub.start_chat("segment-1")
        asyncio.run(hub.send_message("segment-1", "about market"))
        hub.start_chat("segment-2")
        asyncio.run(hub.send_message("segment-2", "about tech"))

        _, (content, history, _) = fake_service.calls[-1]
        assert content == "Sulfide electrolytes lead."
        assert history == []
        assert [m.content for m in hub.history("segment-2")] == ["about tech", "Here is an answer."]

    def test_start_chat_resets_history(self, hub):
        hub.start_chat("segment-1")
        asyncio.run(hub.send_message("segment-1", "hello"))
        hub.start_chat("segment-1")
        assert hub.history("segment-1") == []

    def test_failure_appends_apology(self, hub, fake_service):
        fake_service.chat_result = GenerationFailure("boom")
        hub.start_chat("segment-1")
        reply = asyncio.run(hub.send_message("segment-1", "hello"))

        assert reply.content == CHAT_APOLOGY
        assert [(m.role, m.content) for m in hub.history("segment-1")] == [
            ("user", "hello"),
            ("assistant", CHAT_APOLOGY),
        ]

    def test_unexpected_error_appends_apology(self, hub, fake_service):
        fake_service.chat_result = ConnectionError("connection reset")
        hub.start_chat("segment-1")
        reply = asyncio.run(hub.send_message("segment-1", "hi"))

        assert reply.content == CHAT_APOLOGY
        assert [m.role for m in hub.history("segment-1")] == ["user", "assistant"]

    def test_blank_message_ignored(self, hub, fake_service):
        assert asyncio.run(hub.send_message("segment-1", "   ")) is None
        assert fake_service.calls == []

    def test_reply_after_restart_is_discarded(self, hub, fake_service):
        async def scenario():
            gate = asyncio.Event()
            fake_service.gates["chat_turn"] = gate
            hub.start_chat("segment-1")
            task = asyncio.create_task(hub.send_message("segment-1", "slow question"))
            await asyncio.sleep(0)
            hub.start_chat("segment-1")
            gate.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert hub.history("segment-1") == []


class TestFlashcardDeck:
    def _deck(self, count: int) -> FlashcardDeck:
        cards = [Flashcard(id=str(i), front=f"Q{i}", back=f"A{i}") for i in range(count)]
        return FlashcardDeck(section_id="s", status=DeckStatus.READY, cards=cards)

    def test_cursor_clamps_at_bounds(self):
        deck = self._deck(3)
        assert deck.previous() == 0
        assert deck.next() == 1
        assert deck.next() == 2
        assert deck.next() == 2
        assert deck.current.front == "Q2"

    def test_cursor_stays_in_range_for_any_sequence(self):
        deck = self._deck(4)
        for step in "nnpnnnnnppppppnpnnnnp":
            deck.next() if step == "n" else deck.previous()
            assert 0 <= deck.cursor <= deck.count - 1

    def test_flip_and_navigation_reset_flip(self):
        deck = self._deck(2)
        assert deck.flip() is True
        deck.next()
        assert deck.flipped is False

    def test_empty_deck(self):
        deck = self._deck(0)
        assert deck.current is None
        assert deck.next() == 0
        assert deck.previous() == 0
        assert deck.flip() is False


class TestGenerateFlashcards:
    def test_ready_deck(self, hub):
        deck = asyncio.run(hub.generate_flashcards("segment-2"))
        assert deck.status == DeckStatus.READY
        assert deck.section_id == "segment-2"
        assert [c.front for c in deck.cards] == ["What leads?", "Stage?", "Forecasts?"]
        assert [c.id for c in deck.cards] == ["id-1", "id-2", "id-3"]
        assert (deck.cursor, deck.flipped) == (0, False)
        assert hub.deck is deck

    def test_loading_while_in_flight(self, hub, fake_service):
        async def scenario():
            gate = asyncio.Event()
            fake_service.gates["generate_flashcards"] = gate
            task = asyncio.create_task(hub.generate_flashcards("segment-1"))
            await asyncio.sleep(0)
            status = hub.deck.status
            gate.set()
            await task
            return status

        assert asyncio.run(scenario()) == DeckStatus.LOADING
        assert hub.deck.status == DeckStatus.READY

    def test_empty_result_is_ready_not_failed(self, hub, fake_service):
        fake_service.flashcard_result = []
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        assert deck.status == DeckStatus.READY
        assert deck.cards == []

    def test_failure_is_distinct_state(self, hub, fake_service):
        fake_service.flashcard_result = GenerationFailure("bad json")
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        assert deck.status == DeckStatus.FAILED
        assert deck.cards == []
        assert "bad json" in deck.error

    def test_unexpected_error_fails_deck(self, hub, fake_service):
        fake_service.flashcard_result = ConnectionError("connection reset")
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        assert deck.status == DeckStatus.FAILED
        assert "connection reset" in deck.error
        assert hub.deck is deck

    def test_caps_card_count(self, hub, fake_service):
        fake_service.flashcard_result = [FlashcardDraft(front=str(i), back=str(i)) for i in range(8)]
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        assert deck.count == MAX_FLASHCARDS

    def test_new_deck_resets_position(self, hub):
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        deck.next()
        deck.flip()
        again = asyncio.run(hub.generate_flashcards("segment-1"))
        assert (again.cursor, again.flipped) == (0, False)

    def test_changing_active_section_resets_position(self, hub):
        deck = asyncio.run(hub.generate_flashcards("segment-1"))
        deck.next()
        deck.flip()
        hub.start_chat("segment-2")
        assert (deck.cursor, deck.flipped) == (0, False)

    def test_superseded_request_is_discarded(self, hub, fake_service):
        async def scenario():
            gate = asyncio.Event()
            fake_service.gates["generate_flashcards"] = gate
            first = asyncio.create_task(hub.generate_flashcards("segment-1"))
            await asyncio.sleep(0)
            fake_service.gates.pop("generate_flashcards")
            second = await hub.generate_flashcards("segment-2")
            gate.set()
            return await first, second

        first, second = asyncio.run(scenario())
        assert first is None
        assert hub.deck is second
        assert second.section_id == "segment-2"


class TestRefine:
    def test_replaces_content_only(self, hub, fake_service):
        updated = asyncio.run(hub.refine_section("segment-1", "Make it punchier"))
        assert updated.id == "segment-1"
        assert updated.title == "Market"
        assert updated.content == "Rewritten content."
        assert hub.get_section("segment-1").content == "Rewritten content."
        assert fake_service.calls[-1] == ("refine_section", ("Forecasts vary widely.", "Make it punchier"))

    def test_failure_keeps_content(self, hub, fake_service):
        fake_service.refine_result = GenerationFailure("timeout")
        with pytest.raises(GenerationFailure):
            asyncio.run(hub.refine_section("segment-1", "Shorter"))
        assert hub.get_section("segment-1").content == "Forecasts vary widely."

    def test_unexpected_error_is_failure(self, hub, fake_service):
        fake_service.refine_result = ConnectionError("connection reset")
        with pytest.raises(GenerationFailure, match="connection reset"):
            asyncio.run(hub.refine_section("segment-1", "Shorter"))
        assert hub.get_section("segment-1").content == "Forecasts vary widely."

    def test_empty_rewrite_is_failure(self, hub, fake_service):
        fake_service.refine_result = "   "
        with pytest.raises(GenerationFailure):
            asyncio.run(hub.refine_section("segment-1", "Shorter"))
        assert hub.get_section("segment-1").content == "Forecasts vary widely."

    def test_blank_instruction_rejected(self, hub):
        with pytest.raises(ValueError):
            asyncio.run(hub.refine_section("segment-1", " "))

    def test_render_markdown_reflects_refine(self, hub):
        asyncio.run(hub.refine_section("segment-2", "Expand"))
        markdown = hub.render_markdown()
        assert "## Technology\n\nRewritten content." in markdown
        assert markdown.startswith("Solid-state batteries are approaching pilot production.")


class TestClose:
    def test_calls_after_close_are_refused(self, hub):
        hub.close()
        assert hub.closed is True
        with pytest.raises(SessionClosedError):
            asyncio.run(hub.send_message("segment-1", "hello"))
        with pytest.raises(SessionClosedError):
            asyncio.run(hub.generate_flashcards("segment-1"))
        with pytest.raises(SessionClosedError):
            asyncio.run(hub.refine_section("segment-1", "Shorter"))

    def test_in_flight_refine_discarded_after_close(self, hub, fake_service):
        async def scenario():
            gate = asyncio.Event()
            fake_service.gates["refine_section"] = gate
            task = asyncio.create_task(hub.refine_section("segment-1", "Shorter"))
            await asyncio.sleep(0)
            hub.close()
            gate.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert hub.get_section("segment-1").content == "Forecasts vary widely."
