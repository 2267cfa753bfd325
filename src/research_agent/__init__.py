from .interaction import DeckStatus, Flashcard, FlashcardDeck, SectionInteractionHub
from .plan_merge import merge_plan_suggestion
from .plan_model import ActivePlan, Plan, Point, Section, derive_active_plan
from .segmenter import ParsedSection, segment_report
from .service import GenerationFailure, GenerationService
from .workflow import Report, WorkflowController, WorkflowState, transition

__all__ = [
    "ActivePlan",
    "DeckStatus",
    "Flashcard",
    "FlashcardDeck",
    "GenerationFailure",
    "GenerationService",
    "ParsedSection",
    "Plan",
    "Point",
    "Report",
    "Section",
    "SectionInteractionHub",
    "WorkflowController",
    "WorkflowState",
    "derive_active_plan",
    "merge_plan_suggestion",
    "segment_report",
    "transition",
]
