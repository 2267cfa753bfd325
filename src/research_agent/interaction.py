"""Per-section chat, flashcards and refine on a segmented report.

The hub keeps its own copy of the parsed sections, so a refined section
does not require re-parsing the report markdown. Replies that arrive after
their section's conversation, deck or refine request has been superseded,
or after the hub has been closed, are discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from .plan_model import IdFactory, new_id
from .segmenter import ParsedSection, assemble_report
from .service import ChatMessage, GenerationFailure, GenerationService, guarded_call

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

CHAT_APOLOGY = "Sorry, something went wrong. Please try again later."
MAX_FLASHCARDS = 5


class SessionClosedError(RuntimeError):
    """Raised when a section interaction is attempted after the session ended."""


class DeckStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Flashcard:
    id: str
    front: str
    back: str


@dataclass
class FlashcardDeck:
    """Flashcards for one section plus a navigation cursor.

    A READY deck with no cards is a valid result, distinct from LOADING and
    from FAILED. The cursor is clamped to ``[0, len(cards) - 1]`` and never
    wraps.
    """
    section_id: str
    status: DeckStatus = DeckStatus.LOADING
    cards: list[Flashcard] = field(default_factory=list)
    cursor: int = 0
    flipped: bool = False
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.cards)

    @property
    def current(self) -> Flashcard | None:
        if not self.cards:
            return None
        return self.cards[self.cursor]

    def next(self) -> int:
        if self.cursor < self.count - 1:
            self.cursor += 1
            self.flipped = False
        return self.cursor

    def previous(self) -> int:
        if self.cursor > 0:
            self.cursor -= 1
            self.flipped = False
        return self.cursor

    def flip(self) -> bool:
        if self.cards:
            self.flipped = not self.flipped
        return self.flipped

    def reset_position(self) -> None:
        self.cursor = 0
        self.flipped = False


class SectionInteractionHub:
    """Chat, flashcard and refine operations scoped to individual sections."""

    def __init__(
        self,
        sections: list[ParsedSection],
        service: GenerationService,
        id_factory: IdFactory = new_id,
        on_progress: ProgressCallback | None = None,
    ):
        self._sections = [replace(s) for s in sections]
        self._service = service
        self._id_factory = id_factory
        self._on_progress = on_progress

        self._histories: dict[str, list[ChatMessage]] = {}
        self._epochs: dict[tuple[str, str], int] = {}
        self._deck: FlashcardDeck | None = None
        self._active_section_id: str | None = None
        self._closed = False

    def _emit(self, message: str) -> None:
        if self._on_progress:
            self._on_progress(message)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("The research session has been reset")

    def _bump(self, kind: str, section_id: str) -> int:
        key = (kind, section_id)
        self._epochs[key] = self._epochs.get(key, 0) + 1
        return self._epochs[key]

    def _is_current(self, kind: str, section_id: str, epoch: int) -> bool:
        return not self._closed and self._epochs.get((kind, section_id), 0) == epoch

    def _find(self, section_id: str) -> ParsedSection:
        for section in self._sections:
            if section.id == section_id:
                return section
        raise KeyError(f"Unknown section: {section_id}")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sections(self) -> list[ParsedSection]:
        return [replace(s) for s in self._sections]

    @property
    def active_section_id(self) -> str | None:
        return self._active_section_id

    @property
    def deck(self) -> FlashcardDeck | None:
        return self._deck

    def get_section(self, section_id: str) -> ParsedSection:
        """Return a copy of a section.

        Raises:
            KeyError: If no section has this id
        """
        return replace(self._find(section_id))

    def close(self) -> None:
        """End the session; pending replies are dropped and new calls refused."""
        self._closed = True
        self._deck = None
        self._active_section_id = None

    def activate(self, section_id: str) -> None:
        """Make a section the caller's focus; resets deck navigation on change."""
        self._ensure_open()
        self._find(section_id)
        if section_id != self._active_section_id:
            self._active_section_id = section_id
            if self._deck is not None:
                self._deck.reset_position()

    def render_markdown(self) -> str:
        return assemble_report(self._sections)

    # -- chat ---------------------------------------------------------------

    def start_chat(self, section_id: str) -> None:
        self.activate(section_id)
        self._histories[section_id] = []
        self._bump("chat", section_id)

    def history(self, section_id: str) -> list[ChatMessage]:
        self._find(section_id)
        return list(self._histories.get(section_id, []))

    async def send_message(self, section_id: str, text: str) -> ChatMessage | None:
        """Send a user message about a section and record the reply.

        A failed service call is answered with an apology so the user's turn
        is kept. Returns the assistant message, or None when the text was
        blank or the reply arrived for a conversation that has since been
        restarted.
        """
        self._ensure_open()
        section = self._find(section_id)
        if not text.strip():
            return None

        history = self._histories.setdefault(section_id, [])
        prior = list(history)
        history.append(ChatMessage(role="user", content=text))
        epoch = self._epochs.get(("chat", section_id), 0)

        try:
            reply = await guarded_call(self._service.chat_turn(section.content, prior, text), "Chat turn")
        except GenerationFailure as e:
            logger.warning(f"Chat turn failed for section {section_id}: {e}")
            reply = CHAT_APOLOGY

        if not self._is_current("chat", section_id, epoch):
            logger.debug(f"Discarding stale chat reply for section {section_id}")
            return None

        message = ChatMessage(role="assistant", content=reply)
        self._histories[section_id].append(message)
        return message

    # -- flashcards ---------------------------------------------------------

    async def generate_flashcards(self, section_id: str) -> FlashcardDeck | None:
        """Request a new deck for a section.

        The hub's deck is LOADING while the request is outstanding, then
        READY (possibly with zero cards) or FAILED. Returns None if a newer
        deck was requested or the session closed in the meantime.
        """
        self.activate(section_id)
        section = self._find(section_id)
        epoch = self._bump("flashcards", section_id)
        deck = FlashcardDeck(section_id=section_id)
        self._deck = deck
        self._emit(f"Generating flashcards for '{section.title}'")

        try:
            drafts = await guarded_call(
                self._service.generate_flashcards(section.content), "Flashcard generation"
            )
        except GenerationFailure as e:
            if self._is_current("flashcards", section_id, epoch) and self._deck is deck:
                logger.warning(f"Flashcard generation failed for section {section_id}: {e}")
                deck.status = DeckStatus.FAILED
                deck.error = str(e)
                return deck
            return None

        if not self._is_current("flashcards", section_id, epoch) or self._deck is not deck:
            logger.debug(f"Discarding stale flashcards for section {section_id}")
            return None

        deck.cards = [
            Flashcard(id=self._id_factory(), front=d.front, back=d.back)
            for d in drafts[:MAX_FLASHCARDS]
        ]
        deck.status = DeckStatus.READY
        deck.reset_position()
        return deck

    # -- refine -------------------------------------------------------------

    async def refine_section(self, section_id: str, instruction: str) -> ParsedSection | None:
        """Rewrite one section's content following an instruction.

        On success the section's content is replaced (id and title kept) and
        a copy of the section is returned. Returns None if a newer refine of
        the same section superseded this one.

        Raises:
            ValueError: If instruction is blank
            GenerationFailure: If the rewrite failed; content is left untouched
        """
        self.activate(section_id)
        section = self._find(section_id)
        if not instruction.strip():
            raise ValueError("Refine instruction must not be empty")

        epoch = self._bump("refine", section_id)
        self._emit(f"Refining '{section.title}'")
        rewritten = await guarded_call(
            self._service.refine_section(section.content, instruction), "Refine"
        )
        if not rewritten.strip():
            raise GenerationFailure("Refine returned empty content")

        if not self._is_current("refine", section_id, epoch):
            logger.debug(f"Discarding stale refine result for section {section_id}")
            return None

        section.content = rewritten.strip()
        return replace(section)
