import json
from pathlib import Path
from typing import Any

from paperplanner.errors import RegistryError
from paperplanner.registry import load_registry, load_registry_from_path, registry_from_dict


def _minimal(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "entry": "a",
        "sections": [
            {"id": "a", "title": "A"},
            {"id": "b", "title": "B"},
            {"id": "c", "title": "C"},
        ],
        "toggle_groups": [],
        "unlock_edges": [{"from": "a", "threshold": 6, "targets": ["b"]}],
    }
    raw.update(overrides)
    return raw


def _expect_registry_error(raw: dict[str, Any], fragment: str) -> None:
    try:
        registry_from_dict(raw)
        raise AssertionError(f"Expected RegistryError containing {fragment!r}.")
    except RegistryError as exc:
        assert fragment in str(exc)


def test_bundled_registry_declares_default_plan() -> None:
    registry = load_registry()
    assert registry.entry == "question"
    assert len(registry.sections) == 12
    assert registry.group_ids == ("approach", "dataMethod")
    approach = registry.get_group("approach")
    assert approach is not None
    assert approach.members == ("hypothesis", "needsresearch", "exploratoryresearch")
    assert approach.default == "hypothesis"
    assert approach.detection_order[0] == "needsresearch"
    assert registry.get_section("existingdata").toggle_group == "dataMethod"
    assert registry.get_section("audience").toggle_group is None
    assert all(edge.threshold == 6 for edge in registry.edges)


def test_bundled_registry_sections_have_instructions() -> None:
    registry = load_registry()
    for section in registry.sections:
        assert section.title
        assert section.placeholder
        assert section.instructions, section.id


def test_default_toggles_use_declared_defaults() -> None:
    registry = load_registry()
    assert registry.default_toggles() == {"approach": "hypothesis", "dataMethod": "experiment"}


def test_group_default_falls_back_to_first_member() -> None:
    raw = _minimal(toggle_groups=[{"id": "g", "members": ["b", "c"]}])
    registry = registry_from_dict(raw)
    group = registry.get_group("g")
    assert group is not None
    assert group.default == "b"
    assert group.detection_order == ("b", "c")


def test_cycle_is_rejected(tmp_path: Path) -> None:
    raw = _minimal(
        unlock_edges=[
            {"from": "a", "threshold": 6, "targets": ["b"]},
            {"from": "b", "threshold": 6, "targets": ["c"]},
            {"from": "c", "threshold": 6, "targets": ["b"]},
        ]
    )
    path = tmp_path / "cycle.json"
    path.write_text(json.dumps(raw), encoding="utf-8")

    try:
        load_registry_from_path(path)
        raise AssertionError("Expected RegistryError for circular unlock edges.")
    except RegistryError as exc:
        assert "Circular unlock dependency detected" in str(exc)
        assert "b -> c -> b" in str(exc)


def test_cycle_through_group_membership_is_rejected() -> None:
    raw = _minimal(
        toggle_groups=[{"id": "g", "members": ["b", "c"]}],
        unlock_edges=[
            {"from": "a", "threshold": 6, "targets": ["g"]},
            {"from": "b", "threshold": 6, "targets": ["g"]},
        ],
    )
    _expect_registry_error(raw, "Circular unlock dependency detected")


def test_unknown_edge_target_is_rejected() -> None:
    raw = _minimal(unlock_edges=[{"from": "a", "threshold": 6, "targets": ["missing"]}])
    _expect_registry_error(raw, "unknown target")


def test_unknown_edge_source_is_rejected() -> None:
    raw = _minimal(unlock_edges=[{"from": "missing", "threshold": 6, "targets": ["b"]}])
    _expect_registry_error(raw, "unknown source")


def test_duplicate_section_id_is_rejected() -> None:
    raw = _minimal(sections=[{"id": "a"}, {"id": "a"}, {"id": "b"}])
    _expect_registry_error(raw, "Duplicate section id")


def test_threshold_outside_rating_range_is_rejected() -> None:
    raw = _minimal(unlock_edges=[{"from": "a", "threshold": 11, "targets": ["b"]}])
    _expect_registry_error(raw, "out of range")


def test_boolean_threshold_is_rejected() -> None:
    raw = _minimal(unlock_edges=[{"from": "a", "threshold": True, "targets": ["b"]}])
    _expect_registry_error(raw, "must be an integer")


def test_group_default_must_be_member() -> None:
    raw = _minimal(toggle_groups=[{"id": "g", "members": ["b", "c"], "default": "a"}])
    _expect_registry_error(raw, "default is not a member")


def test_section_in_two_groups_is_rejected() -> None:
    raw = _minimal(
        toggle_groups=[
            {"id": "g1", "members": ["b"]},
            {"id": "g2", "members": ["b", "c"]},
        ]
    )
    _expect_registry_error(raw, "more than one toggle group")


def test_group_id_colliding_with_section_is_rejected() -> None:
    raw = _minimal(toggle_groups=[{"id": "b", "members": ["c"]}])
    _expect_registry_error(raw, "collides with a section id")


def test_unknown_entry_is_rejected() -> None:
    raw = _minimal(entry="zzz")
    _expect_registry_error(raw, "Unknown entry section")
