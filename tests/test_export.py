from paperplanner.export import EMPTY_SECTION_TEXT, render_markdown
from paperplanner.models import ExportProjection, SectionRegistry


def _projection(contents: dict[str, str], toggles: dict[str, str]) -> ExportProjection:
    return ExportProjection(contents=contents, chat_history={}, active_toggles=toggles)


def test_markdown_lists_one_heading_per_group(registry: SectionRegistry) -> None:
    projection = _projection(
        {"question": "Why?", "hypothesis": "H1 vs H2", "existingdata": "Census"},
        {"approach": "hypothesis", "dataMethod": "existingdata"},
    )
    document = render_markdown(projection, registry)
    lines = document.splitlines()
    assert lines[0] == "# Scientific Paper Project Plan"
    headings = [line for line in lines if line.startswith("## ")]
    assert headings == [
        "## 1. Research Question",
        "## 2. Hypothesis-Based Research",
        "## 3. Target Audience",
        "## 4. Related Papers",
        "## 5. Pre-existing Data",
        "## 6. Data Analysis Plan",
        "## 7. Process, Skills & Timeline",
        "## 8. Abstract",
    ]
    assert "Census" in document
    assert "Needs-Based Research" not in document


def test_empty_sections_are_marked_incomplete(registry: SectionRegistry) -> None:
    document = render_markdown(_projection({"question": "   "}, registry.default_toggles()), registry)
    assert f"## 1. Research Question\n{EMPTY_SECTION_TEXT}" in document
    assert document.count(EMPTY_SECTION_TEXT) == 8
