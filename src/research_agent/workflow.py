"""Research workflow state machine.

Sequences plan generation, plan review and editing, research execution and
completion. State changes go through the pure :func:`transition` function;
:class:`WorkflowController` adds the service calls around it and keeps the
plan and report consistent when a call fails.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from . import plan_model
from .interaction import SectionInteractionHub
from .plan_merge import merge_plan_suggestion
from .plan_model import ActivePlan, IdFactory, Plan, PlanEditError, derive_active_plan, new_id
from .segmenter import segment_report
from .service import GenerationFailure, GenerationService, Source, guarded_call

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

PLAN_FAILED_MESSAGE = "Failed to generate the research plan. Please try again."
MODIFICATION_FAILED_MESSAGE = "Failed to modify the research plan."
RESEARCH_FAILED_MESSAGE = "Research execution failed. Please try again."


class WorkflowState(str, Enum):
    IDLE = "idle"
    GENERATING_PLAN = "generating_plan"
    REVIEWING_PLAN = "reviewing_plan"
    RESEARCHING = "researching"
    COMPLETED = "completed"


class WorkflowEvent(str, Enum):
    SUBMIT_QUERY = "submit_query"
    PLAN_READY = "plan_ready"
    PLAN_FAILED = "plan_failed"
    REQUEST_MODIFICATION = "request_modification"
    MODIFICATION_FAILED = "modification_failed"
    CONFIRM_RUN = "confirm_run"
    RESEARCH_DONE = "research_done"
    RESEARCH_FAILED = "research_failed"
    RESET = "reset"


class InvalidTransition(RuntimeError):
    """Raised when an operation is not valid in the current state."""


class WorkflowBusyError(InvalidTransition):
    """Raised when a generation or research call is already in flight."""


BUSY_STATES = frozenset({WorkflowState.GENERATING_PLAN, WorkflowState.RESEARCHING})

TRANSITIONS: dict[tuple[WorkflowState, WorkflowEvent], WorkflowState] = {
    (WorkflowState.IDLE, WorkflowEvent.SUBMIT_QUERY): WorkflowState.GENERATING_PLAN,
    (WorkflowState.GENERATING_PLAN, WorkflowEvent.PLAN_READY): WorkflowState.REVIEWING_PLAN,
    (WorkflowState.GENERATING_PLAN, WorkflowEvent.PLAN_FAILED): WorkflowState.IDLE,
    (WorkflowState.REVIEWING_PLAN, WorkflowEvent.REQUEST_MODIFICATION): WorkflowState.GENERATING_PLAN,
    (WorkflowState.GENERATING_PLAN, WorkflowEvent.MODIFICATION_FAILED): WorkflowState.REVIEWING_PLAN,
    (WorkflowState.REVIEWING_PLAN, WorkflowEvent.CONFIRM_RUN): WorkflowState.RESEARCHING,
    (WorkflowState.RESEARCHING, WorkflowEvent.RESEARCH_DONE): WorkflowState.COMPLETED,
    (WorkflowState.RESEARCHING, WorkflowEvent.RESEARCH_FAILED): WorkflowState.REVIEWING_PLAN,
}


def transition(state: WorkflowState, event: WorkflowEvent) -> WorkflowState:
    """Return the state reached from ``state`` on ``event``.

    RESET is accepted from every state.

    Raises:
        InvalidTransition: If the event is not valid in this state
    """
    if event == WorkflowEvent.RESET:
        return WorkflowState.IDLE
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"Cannot {event.value} while {state.value}") from None


@dataclass(frozen=True)
class Report:
    """Result of one research execution.

    Attributes:
        title: Report title, taken from the plan
        markdown_body: Full report text in markdown
        sources: Web sources the research was grounded on
        cover_image: Data URI of the cover image, if one was produced
        word_count: Length of markdown_body in characters
        time_elapsed_seconds: Wall time of the execution, rounded up
    """
    title: str
    markdown_body: str
    sources: tuple[Source, ...] = ()
    cover_image: str | None = None
    word_count: int = 0
    time_elapsed_seconds: int = 0


def measure_length(markdown_body: str) -> int:
    """Size of a report as shown to the user: characters of the markdown body."""
    return len(markdown_body)


class WorkflowController:
    """Drives one research session from query to completed report."""

    def __init__(
        self,
        service: GenerationService,
        id_factory: IdFactory = new_id,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        generate_image: bool = True,
    ):
        self._service = service
        self._id_factory = id_factory
        self._on_progress = on_progress
        self._clock = clock
        self._generate_image = generate_image

        self._state = WorkflowState.IDLE
        self._history: list[WorkflowState] = [WorkflowState.IDLE]
        self._session = 0
        self._query: str | None = None
        self._plan: Plan | None = None
        self._active_plan: ActivePlan | None = None
        self._report: Report | None = None
        self._error: str | None = None
        self._interactions: SectionInteractionHub | None = None

    def _emit(self, message: str) -> None:
        """Emit a progress message if callback is set."""
        if self._on_progress:
            self._on_progress(message)

    def _guard(self, event: WorkflowEvent) -> None:
        if self._state in BUSY_STATES:
            raise WorkflowBusyError(f"A {self._state.value} call is already in progress")
        transition(self._state, event)

    def _fire(self, event: WorkflowEvent) -> None:
        self._state = transition(self._state, event)
        self._history.append(self._state)
        logger.debug(f"Workflow {event.value} -> {self._state.value}")

    def _is_stale(self, session: int) -> bool:
        return session != self._session

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def history(self) -> list[WorkflowState]:
        """States visited since the controller was created."""
        return list(self._history)

    @property
    def query(self) -> str | None:
        return self._query

    @property
    def plan(self) -> Plan | None:
        return self._plan

    @property
    def active_plan(self) -> ActivePlan | None:
        """Projection the last completed report was executed from."""
        return self._active_plan

    @property
    def report(self) -> Report | None:
        return self._report

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def interactions(self) -> SectionInteractionHub | None:
        return self._interactions

    def clear_error(self) -> None:
        self._error = None

    async def submit_query(self, query: str) -> Plan | None:
        """Generate a first plan for a research query.

        Returns the new plan, or None if the session was reset while the call
        was in flight.

        Raises:
            ValueError: If query is blank
            WorkflowBusyError: If a call is already in flight
            InvalidTransition: If not IDLE
            GenerationFailure: If generation failed; state returns to IDLE
        """
        query = query.strip()
        if not query:
            raise ValueError("Query must not be empty")
        self._guard(WorkflowEvent.SUBMIT_QUERY)

        session = self._session
        self._error = None
        self._query = query
        self._fire(WorkflowEvent.SUBMIT_QUERY)
        self._emit(f"Generating research plan for '{query}'")

        try:
            suggestion = await guarded_call(self._service.generate_plan(query), "Plan generation")
            plan = merge_plan_suggestion(suggestion, id_factory=self._id_factory)
        except GenerationFailure as e:
            if self._is_stale(session):
                return None
            logger.warning(f"Plan generation failed: {e}")
            self._plan = None
            self._error = PLAN_FAILED_MESSAGE
            self._fire(WorkflowEvent.PLAN_FAILED)
            raise

        if self._is_stale(session):
            logger.debug("Discarding plan generated for a reset session")
            return None

        self._plan = plan
        self._fire(WorkflowEvent.PLAN_READY)
        self._emit(f"Plan ready with {len(plan.sections)} sections")
        return plan

    async def request_modification(self, instruction: str) -> Plan | None:
        """Regenerate the plan following a free-text instruction.

        The previous plan is only replaced once the new one is complete;
        on failure it is kept unchanged.

        Raises:
            ValueError: If instruction is blank
            WorkflowBusyError: If a call is already in flight
            InvalidTransition: If not REVIEWING_PLAN
            GenerationFailure: If generation failed; state returns to REVIEWING_PLAN
        """
        instruction = instruction.strip()
        if not instruction:
            raise ValueError("Modification instruction must not be empty")
        self._guard(WorkflowEvent.REQUEST_MODIFICATION)

        session = self._session
        previous = self._plan
        self._error = None
        self._fire(WorkflowEvent.REQUEST_MODIFICATION)
        self._emit("Revising research plan")

        try:
            suggestion = await guarded_call(
                self._service.generate_plan(self._query or "", previous, instruction),
                "Plan modification",
            )
            plan = merge_plan_suggestion(
                suggestion,
                previous_plan=previous,
                instruction=instruction,
                id_factory=self._id_factory,
            )
        except GenerationFailure as e:
            if self._is_stale(session):
                return None
            logger.warning(f"Plan modification failed: {e}")
            self._error = MODIFICATION_FAILED_MESSAGE
            self._fire(WorkflowEvent.MODIFICATION_FAILED)
            raise

        if self._is_stale(session):
            logger.debug("Discarding plan revision for a reset session")
            return None

        self._plan = plan
        self._fire(WorkflowEvent.PLAN_READY)
        self._emit(f"Plan revised with {len(plan.sections)} sections")
        return plan

    async def confirm_and_run(self) -> Report | None:
        """Execute the enabled part of the plan and build the report.

        Report text and cover image are requested concurrently; a failed
        image leaves the report without one, a failed text is fatal.

        Raises:
            WorkflowBusyError: If a call is already in flight
            InvalidTransition: If not REVIEWING_PLAN
            PlanEditError: If no section has an enabled point
            GenerationFailure: If research failed; state returns to REVIEWING_PLAN
        """
        self._guard(WorkflowEvent.CONFIRM_RUN)
        if self._plan is None:
            raise InvalidTransition("There is no plan to run")
        plan = self._plan
        active = derive_active_plan(plan)
        if not active.sections:
            raise PlanEditError("The plan has no enabled sections with enabled points")

        session = self._session
        self._error = None
        self._fire(WorkflowEvent.CONFIRM_RUN)
        self._emit(f"Researching {len(active.sections)} sections")
        started = self._clock()

        try:
            report = await self._execute(plan, active, started)
        except GenerationFailure as e:
            if self._is_stale(session):
                return None
            logger.warning(f"Research execution failed: {e}")
            self._error = RESEARCH_FAILED_MESSAGE
            self._fire(WorkflowEvent.RESEARCH_FAILED)
            raise

        if self._is_stale(session):
            logger.debug("Discarding report produced for a reset session")
            return None

        self._report = report
        self._active_plan = active
        self._interactions = SectionInteractionHub(
            segment_report(report.markdown_body, active),
            self._service,
            id_factory=self._id_factory,
            on_progress=self._on_progress,
        )
        self._fire(WorkflowEvent.RESEARCH_DONE)
        self._emit(f"Report ready ({report.word_count} characters, {len(report.sources)} sources)")
        return report

    async def _execute(self, plan: Plan, active: ActivePlan, started: float) -> Report:
        text_result, image_result = await asyncio.gather(
            guarded_call(self._service.execute_research(active), "Research call"),
            self._cover_image(plan.title),
            return_exceptions=True,
        )
        if isinstance(text_result, BaseException):
            raise text_result

        cover_image = None
        if isinstance(image_result, BaseException):
            logger.warning(f"Cover image generation failed: {image_result}")
        else:
            cover_image = image_result

        markdown_body = text_result.markdown_body
        if not markdown_body.strip():
            raise GenerationFailure("Research completed but produced no text")

        return Report(
            title=plan.title,
            markdown_body=markdown_body,
            sources=tuple(text_result.sources),
            cover_image=cover_image,
            word_count=measure_length(markdown_body),
            time_elapsed_seconds=math.ceil(self._clock() - started),
        )

    async def _cover_image(self, title: str) -> str | None:
        if not self._generate_image:
            return None
        return await guarded_call(self._service.generate_cover_image(title), "Cover image")

    def reset(self) -> None:
        """Return to IDLE, dropping plan, report, error and open interactions."""
        if self._interactions is not None:
            self._interactions.close()
        self._session += 1
        self._query = None
        self._plan = None
        self._active_plan = None
        self._report = None
        self._error = None
        self._interactions = None
        self._fire(WorkflowEvent.RESET)

    # -- plan editing -------------------------------------------------------

    def _edit(self, fn: Callable[..., Plan], *args, **kwargs) -> Plan:
        if self._state != WorkflowState.REVIEWING_PLAN or self._plan is None:
            raise InvalidTransition(f"Cannot edit the plan while {self._state.value}")
        self._plan = fn(self._plan, *args, **kwargs)
        return self._plan

    def toggle_section(self, section_id: str) -> Plan:
        return self._edit(plan_model.toggle_section, section_id)

    def toggle_point(self, section_id: str, point_id: str) -> Plan:
        return self._edit(plan_model.toggle_point, section_id, point_id)

    def add_section(self, title: str, description: str = plan_model.USER_SECTION_DESCRIPTION) -> Plan:
        return self._edit(plan_model.add_section, title, description, id_factory=self._id_factory)

    def add_point(self, section_id: str, content: str) -> Plan:
        return self._edit(plan_model.add_point, section_id, content, id_factory=self._id_factory)

    def delete_section(self, section_id: str, confirmed: bool = True) -> Plan:
        return self._edit(plan_model.delete_section, section_id, confirmed=confirmed)

    def delete_point(self, section_id: str, point_id: str, confirmed: bool = True) -> Plan:
        return self._edit(plan_model.delete_point, section_id, point_id, confirmed=confirmed)
