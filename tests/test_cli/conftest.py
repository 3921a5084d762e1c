"""Pytest fixtures for CLI tests."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from docrepo.embedding.service import Embedder
from docrepo.rag.repository import DocumentRepository


class TopicEmbedder(Embedder):
    """Two-dimensional embedder: squash-like text vs everything else."""

    engine = "fake"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [[1.0, 0.0] if "squash" in t.lower() else [0.0, 1.0] for t in texts]

    async def dimensions(self) -> int:
        return 2


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep structlog output out of the captured command output."""
    with patch("docrepo.cli.setup_logging"):
        yield


@pytest.fixture
def cli_repository(data_dir):
    """Point every command at a repository in the test data directory."""

    def _build() -> DocumentRepository:
        return DocumentRepository(
            data_dir=data_dir,
            embedder_factory=lambda engine, model: TopicEmbedder(model),
        )

    with patch("docrepo.cli._repository", side_effect=_build):
        yield _build
