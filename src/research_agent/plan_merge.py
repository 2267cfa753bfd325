"""Turn a generator's plan suggestion into a valid, fully enabled Plan."""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from .plan_model import IdFactory, Plan, Point, Section, new_id
from .service import GenerationFailure, PlanSuggestion


def parse_plan_suggestion(raw: PlanSuggestion | dict[str, Any] | str) -> PlanSuggestion:
    """Validate raw generator output against the plan schema.

    Raises:
        GenerationFailure: If the payload is not valid JSON or does not match
            the schema (missing title, empty sections, wrong types, ...)
    """
    if isinstance(raw, PlanSuggestion):
        return raw
    try:
        if isinstance(raw, (str, bytes)):
            return PlanSuggestion.model_validate_json(raw)
        return PlanSuggestion.model_validate(raw)
    except ValidationError as e:
        raise GenerationFailure(f"Plan suggestion failed validation: {e}") from e


def merge_plan_suggestion(
    raw: PlanSuggestion | dict[str, Any] | str,
    previous_plan: Plan | None = None,
    instruction: str | None = None,
    id_factory: IdFactory = new_id,
) -> Plan:
    """Build a Plan from a suggestion.

    Missing ids are filled from ``id_factory`` and every section and point
    comes back enabled. ``previous_plan`` and ``instruction`` only shape the
    generator prompt; enabled flags from the previous plan are not re-applied.

    Raises:
        GenerationFailure: If the suggestion is malformed or repeats a section
            id, or a point id within one section
    """
    suggestion = parse_plan_suggestion(raw)

    section_ids = _settle_ids(
        [s.id for s in suggestion.sections],
        id_factory,
        "Duplicate section id in plan suggestion",
    )

    sections: list[Section] = []
    for section_id, raw_section in zip(section_ids, suggestion.sections):
        point_ids = _settle_ids(
            [p.id for p in raw_section.points],
            id_factory,
            f"Duplicate point id in section '{raw_section.title}'",
        )
        points = tuple(
            Point(id=point_id, content=raw_point.content, is_enabled=True)
            for point_id, raw_point in zip(point_ids, raw_section.points)
        )
        sections.append(
            Section(
                id=section_id,
                title=raw_section.title,
                description=raw_section.description or "",
                is_enabled=True,
                points=points,
            )
        )

    return Plan(title=suggestion.title, objective=suggestion.objective, sections=tuple(sections))


def _settle_ids(raw_ids: list[str | None], id_factory: IdFactory, duplicate_message: str) -> list[str]:
    """Keep supplied ids, fill blanks with fresh ones that clash with nothing."""
    supplied = [(raw or "").strip() for raw in raw_ids]
    taken: set[str] = set()
    for value in supplied:
        if not value:
            continue
        if value in taken:
            raise GenerationFailure(f"{duplicate_message}: {value}")
        taken.add(value)

    settled: list[str] = []
    for value in supplied:
        if not value:
            value = id_factory()
            while value in taken:
                value = id_factory()
            taken.add(value)
        settled.append(value)
    return settled


def plan_context_json(plan: Plan) -> str:
    """Serialize a plan for use as prompt context, enabled flags included."""
    return json.dumps(plan.to_dict(), ensure_ascii=False, indent=2)
