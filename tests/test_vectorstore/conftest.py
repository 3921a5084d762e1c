"""Pytest fixtures for vectorstore tests."""

from pathlib import Path

import numpy as np
import pytest

from docrepo.vectorstore.config import VectorStoreConfig


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "index"


@pytest.fixture
def vector_config() -> VectorStoreConfig:
    return VectorStoreConfig()


@pytest.fixture
def unit_vectors() -> dict[str, list[float]]:
    """Three orthogonal-ish 4-dimensional vectors."""
    return {
        "x": [1.0, 0.0, 0.0, 0.0],
        "y": [0.0, 1.0, 0.0, 0.0],
        "xy": (np.array([1.0, 1.0, 0.0, 0.0]) / np.sqrt(2)).tolist(),
    }
