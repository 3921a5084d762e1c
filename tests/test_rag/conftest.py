"""Pytest fixtures for document base, repository and monitor tests."""

import inspect
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from docrepo.embedding.service import Embedder
from docrepo.rag.config import RagConfig
from docrepo.rag.repository import DocRepoListener, DocumentRepository
from docrepo.rag.schemas import QueueTask, SourceType

SQUASH_VECTOR = [1.0, 0.0, 0.0]
TENNIS_VECTOR = [0.9, 0.1, 0.0]
OTHER_VECTOR = [0.1, 0.2, 0.97]


def keyword_vector(text: str) -> list[float]:
    """Deterministic 3-d embedding keyed on a few topic words."""
    lowered = text.lower()
    if "squash" in lowered:
        return list(SQUASH_VECTOR)
    if "tennis" in lowered or "racket" in lowered:
        return list(TENNIS_VECTOR)
    return list(OTHER_VECTOR)


class FakeEmbedder(Embedder):
    """Embedder returning keyword vectors and recording every batch."""

    engine = "fake"

    def __init__(self, model: str, factory: "FakeEmbedderFactory"):
        super().__init__(model)
        self._factory = factory
        self.closed = False

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self._factory.batches.append(list(texts))
        if self._factory.before_embed is not None:
            result = self._factory.before_embed(texts)
            if inspect.isawaitable(result):
                await result
        return [keyword_vector(text) for text in texts]

    async def dimensions(self) -> int:
        return 3

    async def close(self) -> None:
        self.closed = True


class FakeEmbedderFactory:
    """Callable ``(engine, model) -> Embedder`` shared by every base."""

    def __init__(self):
        self.created: list[FakeEmbedder] = []
        self.batches: list[list[str]] = []
        self.before_embed: Callable[[list[str]], Awaitable[None] | None] | None = None

    def __call__(self, engine: str, model: str) -> FakeEmbedder:
        embedder = FakeEmbedder(model, self)
        self.created.append(embedder)
        return embedder


class RecordingListener(DocRepoListener):
    """Listener capturing every notification in order."""

    def __init__(self):
        self.added: list[tuple[str, str, SourceType, str]] = []
        self.removed: list[str] = []
        self.done: list[tuple[QueueTask, int]] = []
        self.errors: list[tuple[QueueTask, Exception, int]] = []

    def on_document_source_added(self, base_id, doc_id, source_type, origin):
        self.added.append((base_id, doc_id, source_type, origin))

    def on_document_source_removed(self, origin):
        self.removed.append(origin)

    def on_task_done(self, task, queue_length):
        self.done.append((task, queue_length))

    def on_task_error(self, task, error, queue_length):
        self.errors.append((task, error, queue_length))


class ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by ``advance`` instead of wall-clock time."""

    def __init__(self):
        self.now = 0.0
        self.timers: list[ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = sorted(
            (t for t in self.active if t.when <= self.now + 1e-9),
            key=lambda t: t.when,
        )
        self.timers = [t for t in self.active if t not in due]
        for timer in due:
            timer.callback()


@pytest.fixture
def rag_config() -> RagConfig:
    """Small chunks and no relevance cutoff so every hit is visible."""
    return RagConfig(chunk_size=100, chunk_overlap=20, relevance_cut_off=0.0)


@pytest.fixture
def embedder_factory() -> FakeEmbedderFactory:
    return FakeEmbedderFactory()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_repo(data_dir: Path, rag_config: RagConfig, embedder_factory: FakeEmbedderFactory):
    """Build repositories over the same data directory."""

    def _make(**kwargs) -> DocumentRepository:
        kwargs.setdefault("config", rag_config)
        kwargs.setdefault("embedder_factory", embedder_factory)
        return DocumentRepository(data_dir=data_dir, **kwargs)

    return _make


@pytest.fixture
def repo(make_repo, listener: RecordingListener) -> DocumentRepository:
    repository = make_repo()
    repository.add_listener(listener)
    return repository


@pytest.fixture
def long_text() -> str:
    """Forty short paragraphs: several embedding batches at chunk_size=100."""
    return "\n\n".join(
        f"Paragraph {i} talks about nothing in particular at all." for i in range(40)
    )
