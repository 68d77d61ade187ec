from __future__ import annotations

import shutil
import sys
from collections.abc import Iterator
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from paperplanner.dispatcher import MutationDispatcher  # noqa: E402
from paperplanner.models import SectionRegistry  # noqa: E402
from paperplanner.registry import load_registry  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Per-test temporary directory under ``.tmp_pytest/`` in the project root.

    Overrides pytest's builtin ``tmp_path`` so database and export files stay
    inside the working tree.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


@pytest.fixture
def registry() -> SectionRegistry:
    return load_registry()


@pytest.fixture
def dispatcher(registry: SectionRegistry) -> MutationDispatcher:
    return MutationDispatcher(registry)
