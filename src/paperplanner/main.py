"""CLI entrypoint for the paper planner."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Callable
from pathlib import Path

from .dispatcher import MutationDispatcher
from .errors import PlannerError
from .models import Section
from .storage import ProjectStore

logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
DEFAULT_DB_PATH = Path(".paperplanner") / "projects.db"
MENU_QUIT_COMMANDS = {"q"}
MENU_BACK_COMMANDS = {"b"}
EDIT_DONE_COMMANDS = {":done", ":d"}
EDIT_CANCEL_COMMANDS = {":cancel", ":c"}


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _store(db_path: Path) -> ProjectStore:
    """Create the project store at `db_path`."""
    return ProjectStore(db_path)


def _dispatcher() -> MutationDispatcher:
    return MutationDispatcher()


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="paperplanner", description="Plan a scientific paper section by section")
    parser.add_argument("command", nargs="?", default="shell", choices=["shell"])
    parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH, help="project database path")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return play_shell(db_path=args.db)


def play_shell(input_fn: InputFn = input, print_fn: PrintFn = print, db_path: Path = DEFAULT_DB_PATH) -> int:
    """Run persistent menu-driven shell."""
    store = _store(db_path)
    try:
        selected = _select_project(store, input_fn, print_fn)
        if selected is None:
            return 0
        project_id, project_name, dispatcher = selected
        try:
            while True:
                print_fn("\n=== Paper Planner ===")
                print_fn(f"Project: {project_name}{' (pro mode)' if dispatcher.state.pro_mode else ''}")
                print_fn("1) List sections")
                print_fn("2) Edit section")
                print_fn("3) Record feedback")
                print_fn("4) Switch approach / data method")
                print_fn("5) Minimize or expand section")
                print_fn("6) Toggle pro mode")
                print_fn("7) Save")
                print_fn("8) Export markdown")
                print_fn("9) Reset plan")
                print_fn("b) Back")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _sections_flow(dispatcher, print_fn)
                elif choice == "2":
                    _edit_flow(dispatcher, input_fn, print_fn)
                elif choice == "3":
                    _feedback_flow(dispatcher, input_fn, print_fn)
                elif choice == "4":
                    _toggle_flow(dispatcher, input_fn, print_fn)
                elif choice == "5":
                    _minimize_flow(dispatcher, input_fn, print_fn)
                elif choice == "6":
                    dispatcher.set_pro_mode(not dispatcher.state.pro_mode)
                    print_fn(f"Pro mode {'enabled' if dispatcher.state.pro_mode else 'disabled'}.")
                elif choice == "7":
                    store.save_snapshot(project_id, dispatcher.encode())
                    print_fn(f"Saved project '{project_name}'.")
                elif choice == "8":
                    _export_flow(dispatcher, input_fn, print_fn)
                elif choice == "9":
                    _reset_flow(dispatcher, input_fn, print_fn)
                elif choice in MENU_BACK_COMMANDS:
                    switched = _select_project(store, input_fn, print_fn)
                    if switched is None:
                        return 0
                    project_id, project_name, dispatcher = switched
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        store.close()


def _select_project(
    store: ProjectStore, input_fn: InputFn, print_fn: PrintFn
) -> tuple[int, str, MutationDispatcher] | None:
    """Select, create or import a project and load its latest snapshot."""
    while True:
        projects = store.list_projects()
        print_fn("\n=== Projects ===")
        if projects:
            for idx, project in enumerate(projects, start=1):
                print_fn(f"{idx}) {project.name}")
        else:
            print_fn("No projects yet.")
        print_fn("n) New project")
        print_fn("i) Import project from file")
        print_fn("d) Delete project")
        print_fn("q) Quit")

        choice = input_fn("Select project: ").strip().lower()
        if choice in MENU_QUIT_COMMANDS:
            return None
        if choice == "n":
            name = input_fn("New project name: ").strip()
            if not name:
                print_fn("Project name is required.")
                continue
            try:
                created = store.create_project(name)
            except Exception:
                print_fn("Could not create project (name may already exist).")
                continue
            return (created.id, created.name, _dispatcher())
        if choice == "i":
            imported = _import_project_flow(store, input_fn, print_fn)
            if imported is not None:
                return imported
            continue
        if choice == "d":
            _delete_project_flow(store, input_fn, print_fn)
            continue

        if choice.isdigit():
            index = int(choice) - 1
            if 0 <= index < len(projects):
                selected = projects[index]
                dispatcher = _dispatcher()
                payload = store.latest_snapshot(selected.id)
                if payload is not None:
                    try:
                        dispatcher.load_snapshot(payload)
                    except PlannerError as exc:
                        print_fn(f"Saved plan could not be loaded: {exc}")
                        continue
                return (selected.id, selected.name, dispatcher)

        print_fn("Invalid project selection.")


def _import_project_flow(
    store: ProjectStore, input_fn: InputFn, print_fn: PrintFn
) -> tuple[int, str, MutationDispatcher] | None:
    """Load a snapshot file (current or legacy format) into a new project."""
    print_fn("\n=== Import Project ===")
    path_text = input_fn("Import file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return None
    dispatcher = _dispatcher()
    try:
        raw = json.loads(Path(path_text).read_text(encoding="utf-8-sig"))
        dispatcher.load_snapshot(raw)
    except (OSError, ValueError, PlannerError) as exc:
        print_fn(f"Import failed: {exc}")
        return None
    name = input_fn("Project name: ").strip() or Path(path_text).stem
    try:
        project = store.create_project(name)
    except Exception:
        print_fn("Could not create project (name may already exist).")
        return None
    store.save_snapshot(project.id, dispatcher.encode())
    print_fn(f"Imported project '{project.name}'.")
    return (project.id, project.name, dispatcher)


def _delete_project_flow(store: ProjectStore, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Delete a project with explicit confirmation safeguard."""
    projects = store.list_projects()
    if not projects:
        print_fn("No projects available to delete.")
        return

    print_fn("\nDelete project")
    for idx, project in enumerate(projects, start=1):
        print_fn(f"{idx}) {project.name}")
    print_fn("b) Back")
    choice = input_fn("Choose project to delete: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit() or not 0 <= int(choice) - 1 < len(projects):
        print_fn("Invalid choice.")
        return
    target = projects[int(choice) - 1]
    confirm = input_fn(f"Type YES to delete '{target.name}' and all its saves: ").strip()
    if confirm != "YES":
        print_fn("Deletion cancelled.")
        return
    if store.delete_project(target.id):
        print_fn(f"Deleted project '{target.name}'.")
    else:
        print_fn("Project was not found.")


def _visible_sections(dispatcher: MutationDispatcher) -> list[Section]:
    return [dispatcher.state.sections[key] for key in dispatcher.state.visible_section_ids]


def _section_status(section: Section) -> str:
    if section.feedback_rating is None:
        status = "not rated"
    else:
        status = f"rated {section.feedback_rating}/10"
        if section.edited_since_feedback:
            status += ", edited since"
    if section.feedback_error:
        status += ", feedback failed"
    return status


def _sections_flow(dispatcher: MutationDispatcher, print_fn: PrintFn) -> None:
    """Print visible sections with rating state."""
    sections = _visible_sections(dispatcher)
    print_fn("\n=== Sections ===")
    id_width = max(len("Section"), *(len(section.id) for section in sections))
    header = f"{'Section':<{id_width}}  {'View':<9}  Status"
    print_fn(header)
    print_fn("-" * len(header))
    for section in sections:
        view = "minimized" if section.is_minimized else "expanded"
        print_fn(f"{section.id:<{id_width}}  {view:<9}  {_section_status(section)}")
        if not section.is_minimized and section.content.strip():
            for line in section.content.strip().splitlines():
                print_fn(f"    {line}")


def _choose_section(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn, prompt: str) -> str | None:
    sections = _visible_sections(dispatcher)
    for idx, section in enumerate(sections, start=1):
        print_fn(f"{idx}) {section.id} - {section.title}")
    print_fn("b) Back")
    print_fn("q) Quit")
    choice = input_fn(prompt).strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return None
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if choice.isdigit() and 0 <= int(choice) - 1 < len(sections):
        return sections[int(choice) - 1].id
    print_fn("Invalid choice.")
    return None


def _edit_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Replace one section's content with lines typed until :done."""
    print_fn("\n=== Edit Section ===")
    section_id = _choose_section(dispatcher, input_fn, print_fn, "Choose section to edit: ")
    if section_id is None:
        return
    section = dispatcher.section(section_id)
    print_fn(section.placeholder if not section.content else section.content)
    print_fn("Type the new content. End with :done, or :cancel to keep the current text.")
    lines: list[str] = []
    while True:
        line = input_fn("> ")
        command = line.strip().lower()
        if command in EDIT_CANCEL_COMMANDS:
            print_fn("Edit cancelled.")
            return
        if command in EDIT_DONE_COMMANDS:
            break
        lines.append(line)
    dispatcher.set_content(section_id, "\n".join(lines))
    print_fn(f"Updated {section_id}.")


def _feedback_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Record a manual rating for a section."""
    print_fn("\n=== Record Feedback ===")
    section_id = _choose_section(dispatcher, input_fn, print_fn, "Choose section to rate: ")
    if section_id is None:
        return
    rating_text = input_fn("Rating (0-10): ").strip()
    if not rating_text.isdigit():
        print_fn("Rating must be a whole number from 0 to 10.")
        return
    text = input_fn("Feedback note (optional): ").strip()
    before = set(dispatcher.state.visible_section_ids)
    try:
        dispatcher.set_feedback(section_id, int(rating_text), text)
    except PlannerError as exc:
        print_fn(str(exc))
        return
    print_fn(f"Recorded rating {rating_text} for {section_id}.")
    for unlocked in dispatcher.state.visible_section_ids:
        if unlocked not in before:
            print_fn(f"Unlocked: {dispatcher.section(unlocked).title}")


def _toggle_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Switch the active member of a toggle group."""
    groups = dispatcher.registry.toggle_groups
    print_fn("\n=== Switch Section Variant ===")
    for idx, group in enumerate(groups, start=1):
        print_fn(f"{idx}) {group.title} (active: {dispatcher.state.active_toggles.get(group.id)})")
    print_fn("b) Back")
    choice = input_fn("Choose group: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit() or not 0 <= int(choice) - 1 < len(groups):
        print_fn("Invalid choice.")
        return
    group = groups[int(choice) - 1]
    for idx, member in enumerate(group.members, start=1):
        definition = dispatcher.registry.get_section(member)
        print_fn(f"{idx}) {definition.title if definition else member}")
    member_choice = input_fn("Choose variant: ").strip()
    if not member_choice.isdigit() or not 0 <= int(member_choice) - 1 < len(group.members):
        print_fn("Invalid choice.")
        return
    member_id = group.members[int(member_choice) - 1]
    dispatcher.set_active_toggle(group.id, member_id)
    print_fn(f"{group.title} is now {member_id}.")


def _minimize_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    print_fn("\n=== Minimize / Expand ===")
    section_id = _choose_section(dispatcher, input_fn, print_fn, "Choose section: ")
    if section_id is None:
        return
    section = dispatcher.toggle_minimize(section_id).sections[section_id]
    print_fn(f"{section_id} is now {'minimized' if section.is_minimized else 'expanded'}.")


def _export_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Write the markdown plan to a file."""
    print_fn("\n=== Export Markdown ===")
    path_text = input_fn("Export file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    document = dispatcher.export_markdown()
    try:
        Path(path_text).write_text(document, encoding="utf-8")
    except OSError as exc:
        print_fn(f"Export failed: {exc}")
        return
    print_fn(f"Exported plan to {path_text}")


def _reset_flow(dispatcher: MutationDispatcher, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Reset the plan after confirmation."""
    confirm = input_fn("Type YES to discard all content and feedback: ").strip()
    if confirm != "YES":
        print_fn("Reset cancelled.")
        return
    try:
        dispatcher.reset_state()
    except PlannerError as exc:
        print_fn(str(exc))
        return
    print_fn("Plan reset.")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
