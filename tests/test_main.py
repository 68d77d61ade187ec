import json
from collections.abc import Iterable
from pathlib import Path

import paperplanner.main as main
from paperplanner.storage import ProjectStore


class Console:
    def __init__(self, inputs: Iterable[str]) -> None:
        self._inputs = iter(inputs)
        self.lines: list[str] = []

    def input(self, prompt: str) -> str:
        return next(self._inputs)

    def print(self, text: str) -> None:
        self.lines.append(text)

    @property
    def output(self) -> str:
        return "\n".join(self.lines)


def _play(tmp_path: Path, inputs: Iterable[str]) -> Console:
    console = Console(inputs)
    code = main.play_shell(console.input, console.print, db_path=tmp_path / "projects.db")
    assert code == 0
    return console


def _latest(tmp_path: Path, name: str) -> dict[str, object]:
    store = ProjectStore(tmp_path / "projects.db")
    try:
        project = next(project for project in store.list_projects() if project.name == name)
        payload = store.latest_snapshot(project.id)
    finally:
        store.close()
    assert payload is not None
    return payload


def test_quit_from_project_menu(tmp_path: Path) -> None:
    console = _play(tmp_path, ["q"])
    assert "No projects yet." in console.output


def test_project_name_is_required(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "   ", "q"])
    assert "Project name is required." in console.output


def test_rating_unlocks_and_save_persists(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "3", "1", "7", "clear enough", "7", "q"])
    assert "Recorded rating 7 for question." in console.output
    assert "Unlocked: Hypothesis-Based Research" in console.output
    assert "Saved project 'thesis'." in console.output

    payload = _latest(tmp_path, "thesis")
    assert payload["scores"] == {"question": 7}


def test_invalid_rating_is_reported(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "3", "1", "15", "", "q"])
    assert "0 to 10" in console.output
    console = _play(tmp_path, ["1", "3", "1", "seven", "q"])
    assert "Rating must be a whole number from 0 to 10." in console.output


def test_edit_section_and_reload_project(tmp_path: Path) -> None:
    _play(tmp_path, ["n", "thesis", "2", "1", "Why do geese fly in a V?", "Energy savings.", ":done", "7", "q"])
    payload = _latest(tmp_path, "thesis")
    sections = payload["sections"]
    assert isinstance(sections, dict)
    assert sections["question"]["content"] == "Why do geese fly in a V?\nEnergy savings."

    console = _play(tmp_path, ["1", "1", "q"])
    assert "    Why do geese fly in a V?" in console.output


def test_edit_can_be_cancelled(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "2", "1", "draft", ":cancel", "1", "q"])
    assert "Edit cancelled." in console.output
    assert "draft" not in console.lines[-20:]


def test_switch_toggle_member(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "4", "1", "2", "q"])
    assert "Research Approach is now needsresearch." in console.output


def test_pro_mode_lists_every_section(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "6", "1", "q"])
    assert "Pro mode enabled." in console.output
    assert any(line.startswith("abstract ") for line in console.lines)


def test_minimize_section(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "5", "1", "q"])
    assert "question is now minimized." in console.output


def test_export_markdown_writes_file(tmp_path: Path) -> None:
    target = tmp_path / "plan.md"
    console = _play(tmp_path, ["n", "thesis", "8", str(target), "q"])
    assert f"Exported plan to {target}" in console.output
    assert target.read_text(encoding="utf-8").startswith("# Scientific Paper Project Plan")


def test_reset_requires_confirmation(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "9", "no", "9", "YES", "q"])
    assert "Reset cancelled." in console.output
    assert "Plan reset." in console.output


def test_import_legacy_file_creates_project(tmp_path: Path) -> None:
    source = tmp_path / "legacy.json"
    source.write_text(json.dumps({"question": "Imported question", "existingdata": "Archive"}), encoding="utf-8")
    console = _play(tmp_path, ["i", str(source), "", "1", "q"])
    assert "Imported project 'legacy'." in console.output
    assert "(pro mode)" in console.output
    assert any(line.startswith("existingdata ") for line in console.lines)

    payload = _latest(tmp_path, "legacy")
    assert payload["toggleGroups"] == {"approach": "hypothesis", "dataMethod": "experiment"}
    assert payload["proMode"] is True


def test_import_rejects_unrecognized_file(tmp_path: Path) -> None:
    source = tmp_path / "bad.json"
    source.write_text(json.dumps({"title": "nothing useful"}), encoding="utf-8")
    console = _play(tmp_path, ["i", str(source), "q"])
    assert "Import failed:" in console.output


def test_delete_project_with_confirmation(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "b", "d", "1", "YES", "q"])
    assert "Deleted project 'thesis'." in console.output
    assert "No projects yet." in console.output


def test_quit_from_nested_menu(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "2", "q"])
    assert not any(line.startswith("Updated") for line in console.lines)


def test_invalid_main_choice(tmp_path: Path) -> None:
    console = _play(tmp_path, ["n", "thesis", "x", "q"])
    assert "Invalid choice." in console.output


def test_run_passes_db_path_and_configures_logging(monkeypatch, tmp_path: Path) -> None:
    seen: dict[str, Path] = {}

    def fake_shell(*, db_path: Path) -> int:
        seen["db_path"] = db_path
        return 0

    monkeypatch.setattr(main, "play_shell", fake_shell)
    db_path = tmp_path / "custom.db"
    assert main.run(["shell", "--db", str(db_path), "--verbose"]) == 0
    assert seen["db_path"] == db_path


def test_main_entry_exits_with_run_code(monkeypatch) -> None:
    monkeypatch.setattr(main, "run", lambda: 3)
    try:
        main.main_entry()
        raise AssertionError("Expected SystemExit.")
    except SystemExit as exc:
        assert exc.code == 3
