"""Research plan data model and pure editing operations.

Every editing function returns a new Plan and leaves its input untouched,
so a plan held by the workflow can be swapped atomically.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable

IdFactory = Callable[[], str]

USER_SECTION_DESCRIPTION = "Added by user"


def new_id() -> str:
    return uuid.uuid4().hex


class PlanEditError(ValueError):
    """Raised when a plan edit is given invalid input."""


@dataclass(frozen=True)
class Point:
    """A single question or data point to research.

    Attributes:
        id: Identifier, unique within its section
        content: The question or data point
        is_enabled: Whether the point is included when the plan runs
    """
    id: str
    content: str
    is_enabled: bool = True


@dataclass(frozen=True)
class Section:
    """A topic grouping of research points.

    Attributes:
        id: Identifier, unique within the plan
        title: Section title, used as the report heading
        description: Short summary of what the section covers
        is_enabled: Whether the section is included when the plan runs
        points: Ordered research points
    """
    id: str
    title: str
    description: str = ""
    is_enabled: bool = True
    points: tuple[Point, ...] = ()


@dataclass(frozen=True)
class Plan:
    """The editable research outline."""
    title: str
    objective: str
    sections: tuple[Section, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "objective": self.objective,
            "sections": [
                {
                    "id": s.id,
                    "title": s.title,
                    "description": s.description,
                    "is_enabled": s.is_enabled,
                    "points": [
                        {"id": p.id, "content": p.content, "is_enabled": p.is_enabled}
                        for p in s.points
                    ],
                }
                for s in self.sections
            ],
        }


@dataclass(frozen=True)
class ActiveSection:
    id: str
    title: str
    description: str
    points: tuple[str, ...]


@dataclass(frozen=True)
class ActivePlan:
    """Enabled-only projection of a Plan, used to drive execution."""
    title: str
    objective: str
    sections: tuple[ActiveSection, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "objective": self.objective,
            "sections": [
                {"title": s.title, "description": s.description, "points": list(s.points)}
                for s in self.sections
            ],
        }


def find_section(plan: Plan, section_id: str) -> Section | None:
    for section in plan.sections:
        if section.id == section_id:
            return section
    return None


def _map_section(plan: Plan, section_id: str, fn: Callable[[Section], Section]) -> Plan:
    if find_section(plan, section_id) is None:
        return plan
    sections = tuple(fn(s) if s.id == section_id else s for s in plan.sections)
    return replace(plan, sections=sections)


def toggle_section(plan: Plan, section_id: str) -> Plan:
    return _map_section(plan, section_id, lambda s: replace(s, is_enabled=not s.is_enabled))


def toggle_point(plan: Plan, section_id: str, point_id: str) -> Plan:
    section = find_section(plan, section_id)
    if section is None or not any(p.id == point_id for p in section.points):
        return plan

    def flip(s: Section) -> Section:
        points = tuple(
            replace(p, is_enabled=not p.is_enabled) if p.id == point_id else p
            for p in s.points
        )
        return replace(s, points=points)

    return _map_section(plan, section_id, flip)


def add_section(
    plan: Plan,
    title: str,
    description: str = USER_SECTION_DESCRIPTION,
    id_factory: IdFactory = new_id,
) -> Plan:
    """Append a new enabled section with no points.

    Raises:
        PlanEditError: If title is blank
    """
    title = title.strip()
    if not title:
        raise PlanEditError("Section title must not be empty")

    existing = {s.id for s in plan.sections}
    section_id = id_factory()
    while section_id in existing:
        section_id = id_factory()

    section = Section(id=section_id, title=title, description=description)
    return replace(plan, sections=plan.sections + (section,))


def add_point(
    plan: Plan,
    section_id: str,
    content: str,
    id_factory: IdFactory = new_id,
) -> Plan:
    """Append a new enabled point to a section. No-op if the section is missing.

    Raises:
        PlanEditError: If content is blank
    """
    content = content.strip()
    if not content:
        raise PlanEditError("Point content must not be empty")

    section = find_section(plan, section_id)
    if section is None:
        return plan

    existing = {p.id for p in section.points}
    point_id = id_factory()
    while point_id in existing:
        point_id = id_factory()

    point = Point(id=point_id, content=content)
    return _map_section(plan, section_id, lambda s: replace(s, points=s.points + (point,)))


def delete_section(plan: Plan, section_id: str, confirmed: bool = True) -> Plan:
    if not confirmed or find_section(plan, section_id) is None:
        return plan
    return replace(plan, sections=tuple(s for s in plan.sections if s.id != section_id))


def delete_point(plan: Plan, section_id: str, point_id: str, confirmed: bool = True) -> Plan:
    if not confirmed:
        return plan
    section = find_section(plan, section_id)
    if section is None or not any(p.id == point_id for p in section.points):
        return plan
    return _map_section(
        plan,
        section_id,
        lambda s: replace(s, points=tuple(p for p in s.points if p.id != point_id)),
    )


def derive_active_plan(plan: Plan) -> ActivePlan:
    """Project a plan onto its enabled sections and points.

    Sections left with no enabled points are dropped, so the result never
    contains an empty section.
    """
    sections: list[ActiveSection] = []
    for section in plan.sections:
        if not section.is_enabled:
            continue
        points = tuple(p.content for p in section.points if p.is_enabled)
        if not points:
            continue
        sections.append(
            ActiveSection(
                id=section.id,
                title=section.title,
                description=section.description,
                points=points,
            )
        )
    return ActivePlan(title=plan.title, objective=plan.objective, sections=tuple(sections))
