"""Split a research report into sections at its level-2 headings, and join them back."""

import re
from dataclasses import dataclass

from .plan_model import ActivePlan

PREAMBLE_TITLE = "Preface / Summary"

HEADING_PATTERN = re.compile(r"^## (.*)$", re.MULTILINE)


@dataclass
class ParsedSection:
    id: str
    title: str
    content: str
    is_preamble: bool = False


def _normalize_title(title: str) -> str:
    return " ".join(title.split()).casefold()


def _plan_ids_for(titles: list[str], active_plan: ActivePlan | None) -> list[str] | None:
    """Return the plan section ids if headings map 1:1, in order, onto the plan."""
    if active_plan is None or len(titles) != len(active_plan.sections):
        return None
    for title, section in zip(titles, active_plan.sections):
        if _normalize_title(title) != _normalize_title(section.title):
            return None
    return [section.id for section in active_plan.sections]


def segment_report(markdown: str, active_plan: ActivePlan | None = None) -> list[ParsedSection]:
    """Split a report body into sections at each level-2 heading.

    Text before the first heading becomes a preamble section when it is not
    blank. Ids are positional (``segment-0``, ``segment-1``, ...) unless
    ``active_plan`` is given and the headings match its sections exactly, in
    which case heading sections carry the plan section ids.
    """
    headings = list(HEADING_PATTERN.finditer(markdown))

    preamble_end = headings[0].start() if headings else len(markdown)
    preamble = markdown[:preamble_end].strip()

    chunks: list[tuple[str, str]] = []
    for idx, match in enumerate(headings):
        title = match.group(1).strip()
        end = headings[idx + 1].start() if idx + 1 < len(headings) else len(markdown)
        content = markdown[match.end():end].strip()
        chunks.append((title, content))

    plan_ids = _plan_ids_for([title for title, _ in chunks], active_plan)

    sections: list[ParsedSection] = []
    if preamble:
        sections.append(
            ParsedSection(id="segment-0", title=PREAMBLE_TITLE, content=preamble, is_preamble=True)
        )

    for idx, (title, content) in enumerate(chunks):
        if plan_ids is not None:
            section_id = plan_ids[idx]
        else:
            section_id = f"segment-{len(sections)}"
        sections.append(ParsedSection(id=section_id, title=title, content=content))

    return sections


def assemble_report(sections: list[ParsedSection]) -> str:
    """Join sections back into a markdown body."""
    parts = []
    for section in sections:
        if section.is_preamble:
            parts.append(section.content)
        elif section.content:
            parts.append(f"## {section.title}\n\n{section.content}")
        else:
            parts.append(f"## {section.title}")
    return "\n\n".join(parts).strip() + "\n" if parts else ""
