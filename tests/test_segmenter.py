from research_agent.plan_model import derive_active_plan
from research_agent.segmenter import PREAMBLE_TITLE, ParsedSection, assemble_report, segment_report


def _pairs(sections):
    return [(s.title, s.content) for s in sections]


class TestSegmentReport:
    def test_two_headings_no_preamble(self):
        sections = segment_report("## Intro\nHello\n## Data\nWorld")
        assert _pairs(sections) == [("Intro", "Hello"), ("Data", "World")]
        assert [s.id for s in sections] == ["segment-0", "segment-1"]

    def test_no_headings_single_preamble_section(self):
        sections = segment_report("\n  Just a summary.\nSecond line.  \n")
        assert len(sections) == 1
        assert sections[0].title == PREAMBLE_TITLE
        assert sections[0].content == "Just a summary.\nSecond line."
        assert sections[0].is_preamble is True

    def test_preamble_kept_when_not_blank(self):
        sections = segment_report("Overview text\n\n## Intro\nHello")
        assert _pairs(sections) == [(PREAMBLE_TITLE, "Overview text"), ("Intro", "Hello")]
        assert [s.id for s in sections] == ["segment-0", "segment-1"]

    def test_blank_preamble_omitted(self):
        sections = segment_report("\n\n   \n## Intro\nHello")
        assert _pairs(sections) == [("Intro", "Hello")]

    def test_empty_input(self):
        assert segment_report("") == []
        assert segment_report("   \n") == []

    def test_heading_without_content(self):
        sections = segment_report("## Intro\n## Data\nWorld")
        assert _pairs(sections) == [("Intro", ""), ("Data", "World")]

    def test_other_heading_levels_are_not_boundaries(self):
        markdown = "# Title\n## Intro\n### Detail\nText\n#### Deeper"
        sections = segment_report(markdown)
        assert _pairs(sections) == [
            (PREAMBLE_TITLE, "# Title"),
            ("Intro", "### Detail\nText\n#### Deeper"),
        ]

    def test_marker_requires_space(self):
        sections = segment_report("##NoSpace\ntext")
        assert len(sections) == 1
        assert sections[0].title == PREAMBLE_TITLE

    def test_marker_must_start_line(self):
        sections = segment_report("Text with ## inside\n## Real\nBody")
        assert _pairs(sections) == [(PREAMBLE_TITLE, "Text with ## inside"), ("Real", "Body")]

    def test_title_is_trimmed(self):
        sections = segment_report("##   Spaced title   \nBody")
        assert sections[0].title == "Spaced title"

    def test_deterministic(self):
        markdown = "Lead\n## A\none\n## B\ntwo"
        assert segment_report(markdown) == segment_report(markdown)


class TestPlanKeyedIds:
    def test_ids_follow_plan_when_headings_match(self, sample_plan):
        active = derive_active_plan(sample_plan)
        sections = segment_report("Lead\n## Market\nA\n## Technology\nB", active)
        assert [s.id for s in sections] == ["segment-0", "s1", "s2"]

    def test_title_match_ignores_case_and_spacing(self, sample_plan):
        active = derive_active_plan(sample_plan)
        sections = segment_report("## market\nA\n##  Technology \nB", active)
        assert [s.id for s in sections] == ["s1", "s2"]

    def test_falls_back_to_positional_on_mismatch(self, sample_plan):
        active = derive_active_plan(sample_plan)
        reordered = segment_report("## Technology\nB\n## Market\nA", active)
        assert [s.id for s in reordered] == ["segment-0", "segment-1"]

        extra = segment_report("## Market\nA\n## Technology\nB\n## Sources\nC", active)
        assert [s.id for s in extra] == ["segment-0", "segment-1", "segment-2"]


class TestAssembleReport:
    def test_assemble(self):
        sections = [
            ParsedSection(id="segment-0", title=PREAMBLE_TITLE, content="Lead", is_preamble=True),
            ParsedSection(id="segment-1", title="A", content="one"),
            ParsedSection(id="segment-2", title="B", content=""),
        ]
        assert assemble_report(sections) == "Lead\n\n## A\n\none\n\n## B\n"

    def test_assembled_report_segments_the_same(self):
        original = segment_report("Lead\n## A\none\n## B\ntwo")
        assert _pairs(segment_report(assemble_report(original))) == _pairs(original)

    def test_empty(self):
        assert assemble_report([]) == ""
