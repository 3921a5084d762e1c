"""Pytest fixtures for docrepo tests."""

from collections.abc import Generator
from pathlib import Path

import pytest

from docrepo.config.settings import get_settings


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point every test at a throwaway data directory and fast HTTP retries."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("MAX_HTTP_RETRIES", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Repository data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    """A small folder of notes, including a hidden file that must be skipped."""
    folder = tmp_path / "notes"
    folder.mkdir()
    (folder / "squash.md").write_text("Squash is played with a small rubber ball.\n")
    (folder / "tennis.txt").write_text("Tennis rackets have larger heads.\n")
    (folder / "sub").mkdir()
    (folder / "sub" / "recipes.md").write_text("Slow cooked stew with carrots.\n")
    (folder / ".hidden.md").write_text("never indexed\n")
    return folder
