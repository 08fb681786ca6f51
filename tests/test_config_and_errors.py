"""
Configuration and error reporting tests.

Tests cover:
  - Config.validate per backend
  - Backend factory selection
  - ErrorReporter codes, bounds and ordering
"""
import pytest

from config import Config
from database.change_feed import LocalChangeFeed
from database.sqlite_client import SQLiteStore
from database.store_factory import create_backend
from errors import CascadeError, RecordNotFoundError, TransportError, ValidationError
from models.production_models import EntityKind
from services.error_reporter import ErrorReporter, error_code


class TestConfig:
    def test_sqlite_needs_no_credentials(self, monkeypatch):
        monkeypatch.setattr(Config, "STORE_BACKEND", "sqlite")
        monkeypatch.setattr(Config, "SUPABASE_URL", None)
        assert Config.validate() is True

    def test_supabase_requires_credentials(self, monkeypatch):
        monkeypatch.setattr(Config, "STORE_BACKEND", "supabase")
        monkeypatch.setattr(Config, "SUPABASE_URL", None)
        monkeypatch.setattr(Config, "SUPABASE_KEY", None)
        with pytest.raises(EnvironmentError) as exc:
            Config.validate()
        assert "SUPABASE_URL" in str(exc.value)
        assert "SUPABASE_KEY" in str(exc.value)

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr(Config, "STORE_BACKEND", "mongo")
        with pytest.raises(EnvironmentError):
            Config.validate()

    def test_sqlite_backend_is_wired(self, monkeypatch):
        monkeypatch.setattr(Config, "STORE_BACKEND", "sqlite")
        monkeypatch.setattr(Config, "SQLITE_DB_PATH", ":memory:")
        store, feed = create_backend()
        try:
            assert isinstance(store, SQLiteStore)
            assert isinstance(feed, LocalChangeFeed)

            received = []
            feed.subscribe("p-1", received.append)
            store.create(EntityKind.ZONE, {"project_id": "p-1", "name": "Кухня"})
            assert len(received) == 1
        finally:
            store.close()


class TestErrorReporter:
    @pytest.mark.parametrize("error, code", [
        (ValidationError("bad"), "VALIDATION_ERROR"),
        (RecordNotFoundError("stage", "s"), "NOT_FOUND"),
        (TransportError("down"), "NETWORK_ERROR"),
        (CascadeError("c", ["component"], "item"), "CASCADE_PARTIAL_FAILURE"),
        (RuntimeError("boom"), "INTERNAL_ERROR"),
    ])
    def test_codes(self, error, code):
        assert error_code(error) == code

    def test_bounded_and_newest_first(self):
        reporter = ErrorReporter(max_size=3)
        for i in range(5):
            reporter.report(ValidationError(f"e{i}"), "test")
        assert len(reporter) == 3
        assert [e.message for e in reporter.recent()] == ["e4", "e3", "e2"]

    def test_validation_details_kept(self):
        reporter = ErrorReporter()
        app_error = reporter.report(ValidationError("bad", {"name": "required"}), "create zone")
        assert app_error.details == {"name": "required"}
        assert app_error.to_dict()["context"] == "create zone"

    def test_clear(self):
        reporter = ErrorReporter()
        reporter.report(RuntimeError("x"))
        reporter.clear()
        assert reporter.recent() == []
