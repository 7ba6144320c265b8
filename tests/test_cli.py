"""Tests for the Typer CLI.

Every command builds its store through ``create_store``; the tests patch it
to hand out one shared in-memory store.
"""

import json
from unittest.mock import patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from resource_vault.cli import CLI_DB_PATH, app
from resource_vault.domain.ports import StorageError

runner = CliRunner()


@pytest.fixture(autouse=True)
def shared_store(store, monkeypatch, tmp_path):
    monkeypatch.delenv("RV_DB_PATH", raising=False)
    monkeypatch.delenv("RV_DB_TYPE", raising=False)
    monkeypatch.chdir(tmp_path)
    with patch("resource_vault.cli.create_store", return_value=store) as factory, \
            patch("resource_vault.cli.console", Console(width=200)):
        yield factory


@pytest.fixture
def payload_file(tmp_path):
    def write(data, name="payload.json"):
        path = tmp_path / name
        path.write_text(json.dumps(data))
        return str(path)
    return write


class TestWriteCommands:
    """Test create, update and delete."""

    def test_create(self, store, payload_file):
        result = runner.invoke(app, ["create", "Patient", payload_file({"id": "p1", "name": "A"})])

        assert result.exit_code == 0
        assert "Created Patient/p1 (version 1)" in result.output
        assert store.read("Patient", "p1").value.body == {"name": "A"}

    def test_create_duplicate_fails(self, store, payload_file):
        store.create("Patient", {"id": "p1"})

        result = runner.invoke(app, ["create", "Patient", payload_file({"id": "p1"})])

        assert result.exit_code == 1
        assert "AlreadyExists" in result.output

    def test_create_with_unreadable_payload(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{nope")

        result = runner.invoke(app, ["create", "Patient", str(path)])

        assert result.exit_code == 1
        assert "Cannot read payload" in result.output

    def test_update(self, store, payload_file):
        store.create("Patient", {"id": "p1", "name": "A"})

        result = runner.invoke(app, ["update", "Patient", "p1", payload_file({"name": "B"})])

        assert result.exit_code == 0
        assert "version 2" in result.output
        assert store.read("Patient", "p1").value.body == {"name": "B"}

    def test_delete(self, store):
        store.create("Patient", {"id": "p1"})

        result = runner.invoke(app, ["delete", "Patient", "p1"])

        assert result.exit_code == 0
        assert store.read("Patient", "p1").value.deleted is True

    def test_delete_missing(self):
        result = runner.invoke(app, ["delete", "Patient", "nobody"])
        assert result.exit_code == 1
        assert "NotFound" in result.output


class TestReadCommands:
    """Test read, search and history."""

    def test_read(self, store):
        store.create("Patient", {"id": "p1", "name": "A"})

        result = runner.invoke(app, ["read", "Patient", "p1"])

        assert result.exit_code == 0
        assert json.loads(result.output)["name"] == "A"

    def test_read_version(self, store):
        store.create("Patient", {"id": "p1", "name": "A"})
        store.update("Patient", "p1", {"name": "B"})

        result = runner.invoke(app, ["read", "Patient", "p1", "--version", "1"])

        assert result.exit_code == 0
        assert json.loads(result.output)["name"] == "A"

    def test_search_table(self, store):
        store.create("Observation", {"id": "o1", "subject": {"reference": "Patient/p1"}})
        store.create("Observation", {"id": "o2", "subject": {"reference": "Patient/p2"}})

        result = runner.invoke(app, ["search", "Observation", "--owner", "Patient/p1"])

        assert result.exit_code == 0
        assert "Observation/o1" in result.output
        assert "Observation/o2" not in result.output

    def test_search_invalid_timestamp(self):
        result = runner.invoke(app, ["search", "Patient", "--updated-after", "last tuesday"])
        assert result.exit_code == 1
        assert "Invalid search options" in result.output

    def test_search_unsupported_kind(self):
        result = runner.invoke(app, ["search", "Spaceship"])
        assert result.exit_code == 1
        assert "UnsupportedKind" in result.output

    def test_history(self, store):
        store.create("Patient", {"id": "p1"})
        store.update("Patient", "p1", {"name": "B"})
        store.delete("Patient", "p1")

        result = runner.invoke(app, ["history", "Patient", "p1"])

        assert result.exit_code == 0
        assert "yes" in result.output


class TestOperationalCommands:
    """Test init-db, info and the version flag."""

    def test_init_db(self):
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Storage ready" in result.output

    def test_init_db_failure(self, shared_store):
        shared_store.side_effect = StorageError("Failed to initialize backend: disk full")

        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 1
        assert "disk full" in result.output

    def test_info(self):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "Owner Policy" in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "Resource-Vault v" in result.output

    def test_commands_default_to_file_backend(self, store, shared_store):
        store.create("Patient", {"id": "p1"})

        result = runner.invoke(app, ["read", "Patient", "p1"])

        assert result.exit_code == 0
        settings = shared_store.call_args.args[0]
        assert settings.db_config.db_path == CLI_DB_PATH

    def test_init_db_reports_file_backend(self):
        result = runner.invoke(app, ["init-db"])
        assert f"duckdb:{CLI_DB_PATH}" in result.output

    def test_explicit_db_path_is_kept(self, monkeypatch, tmp_path, shared_store):
        monkeypatch.setenv("RV_DB_PATH", str(tmp_path / "ops.duckdb"))

        runner.invoke(app, ["init-db"])

        assert shared_store.call_args.args[0].db_config.db_path == str(tmp_path / "ops.duckdb")
