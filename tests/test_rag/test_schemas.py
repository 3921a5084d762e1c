"""Tests for the document base data model."""

import os

import pytest
from pydantic import ValidationError

from docrepo.rag.cancellation import CancellationToken
from docrepo.rag.schemas import (
    DocumentSource,
    IngestionStage,
    QueueTask,
    RepositoryRecord,
    SourceRecord,
    SourceType,
)


class TestSourceType:
    def test_containers(self):
        assert SourceType.FOLDER.is_container
        assert SourceType.SITEMAP.is_container
        assert not SourceType.FILE.is_container
        assert not SourceType.URL.is_container
        assert not SourceType.TEXT.is_container

    def test_filesystem_types(self):
        assert SourceType.FILE.is_filesystem
        assert SourceType.FOLDER.is_filesystem
        assert not SourceType.SITEMAP.is_filesystem

    def test_from_string(self):
        assert SourceType("sitemap") is SourceType.SITEMAP


class TestDocumentSource:
    def test_file_defaults(self):
        source = DocumentSource(uuid="1", type=SourceType.FILE, origin="/notes/todo.md")

        assert source.title == "todo.md"
        assert source.filename == "todo.md"
        assert source.url == "file:///notes/todo.md"
        assert source.parent_id is None

    def test_folder_title_ignores_trailing_slash(self):
        source = DocumentSource(uuid="1", type=SourceType.FOLDER, origin="/notes/")
        assert source.title == "notes"

    def test_url_defaults(self):
        source = DocumentSource(uuid="1", type=SourceType.URL, origin="https://example.com/a")

        assert source.title == "https://example.com/a"
        assert source.url == "https://example.com/a"

    def test_text_title_truncated(self):
        text = "x" * 100
        source = DocumentSource(uuid="1", type=SourceType.TEXT, origin=text)

        assert source.title == "x" * 64
        assert source.url == ""
        assert source.filename == ""

    def test_explicit_title_kept(self):
        source = DocumentSource(uuid="1", type=SourceType.TEXT, origin="body", title="Meeting")
        assert source.title == "Meeting"

    def test_invalid_type(self):
        with pytest.raises(ValidationError):
            DocumentSource(uuid="1", type="pdf", origin="/a.pdf")

    def test_non_filesystem_always_exists(self):
        source = DocumentSource(uuid="1", type=SourceType.URL, origin="https://example.com")
        assert source.exists()
        assert not source.has_changed()

    def test_file_state_tracking(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("one")
        source = DocumentSource(uuid="1", type=SourceType.FILE, origin=str(path))

        # never ingested: treated as changed
        assert source.has_changed()

        source.record_file_state()
        assert source.file_size == 3
        assert not source.has_changed()

        path.write_text("one two")
        assert source.has_changed()

    def test_mtime_change_detected(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("one")
        source = DocumentSource(uuid="1", type=SourceType.FILE, origin=str(path))
        source.record_file_state()

        stat = os.stat(path)
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert source.has_changed()

    def test_missing_file(self, tmp_path):
        source = DocumentSource(uuid="1", type=SourceType.FILE, origin=str(tmp_path / "gone"))

        assert not source.exists()
        assert not source.has_changed()
        source.record_file_state()
        assert source.last_modified is None

    def test_listing(self):
        source = DocumentSource(uuid="1", type=SourceType.FILE, origin="/notes/todo.md")

        assert source.to_listing() == {
            "uuid": "1",
            "type": "file",
            "title": "todo.md",
            "origin": "/notes/todo.md",
            "filename": "todo.md",
            "url": "file:///notes/todo.md",
        }


class TestRecords:
    def test_nested_round_trip(self):
        record = RepositoryRecord.model_validate(
            {
                "bases": [
                    {
                        "uuid": "b1",
                        "name": "notes",
                        "workspace_id": "ws",
                        "embedding_engine": "openai",
                        "embedding_model": "text-embedding-3-small",
                        "documents": [
                            {
                                "uuid": "f1",
                                "type": "folder",
                                "origin": "/notes",
                                "items": [{"uuid": "c1", "type": "file", "origin": "/notes/a.md"}],
                            }
                        ],
                    }
                ]
            }
        )

        folder = record.bases[0].documents[0]
        assert isinstance(folder.items[0], SourceRecord)
        assert folder.items[0].type == SourceType.FILE

        again = RepositoryRecord.model_validate_json(record.model_dump_json())
        assert again == record


class TestQueueTask:
    def test_defaults(self):
        task = QueueTask(task_id="t", base_id="b", type=SourceType.FILE, origin="/a.md")

        assert task.stage == IngestionStage.QUEUED
        assert task.commit
        assert not task.is_child
        assert not task.cancelled
        assert task.options.skip_size_check is False

    def test_cancellation_follows_token(self):
        task = QueueTask(task_id="t", base_id="b", type=SourceType.FILE, origin="/a.md")
        task.token.cancel()
        assert task.cancelled

    def test_each_task_gets_its_own_token(self):
        a = QueueTask(task_id="a", base_id="b", type=SourceType.FILE, origin="/a.md")
        b = QueueTask(task_id="b", base_id="b", type=SourceType.FILE, origin="/b.md")

        a.token.cancel()

        assert not b.cancelled
        assert isinstance(b.token, CancellationToken)
