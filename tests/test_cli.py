"""Tests for the command line interface."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from mysqlprovider.cli import app
from mysqlprovider.sql import cli as sql_cli
from mysqlprovider.sql.modules.mysql import MySQLBuilder, MySQLProvider

from .conftest import FAST_BACKOFF, FakeDatabase, FakeDriver

runner = CliRunner()

CONFIG = """
provider:
  endpoint: db.example.com:3306
  username: root
  password: pw
databases:
- name: shop
user_passwords:
- user: app
  host: "%"
grants:
- user: app
  host: "%"
  database: shop
  privileges: [select, insert]
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "mysql.yaml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def fake_database(monkeypatch: pytest.MonkeyPatch) -> FakeDatabase:
    database = FakeDatabase()
    build = MySQLBuilder.build

    def _build(self, **options):
        options.update(driver=FakeDriver(database), backoff=FAST_BACKOFF, environ={})
        return build(self, **options)

    monkeypatch.setattr(MySQLBuilder, "build", _build)
    return database


def test_validate_summarizes_configuration(config_file: Path) -> None:
    result = runner.invoke(app, ["sql", "validate", str(config_file)])

    assert result.exit_code == 0
    assert "Configuration is valid" in result.output
    assert "db.example.com:3306" in result.output
    assert "INSERT, SELECT on shop.*" in result.output


def test_validate_reports_invalid_configuration(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("provider:\n  endpoint: db\n  username: root\n  tls: maybe\n")

    result = runner.invoke(app, ["sql", "validate", str(path)])

    assert result.exit_code == 1
    assert "Validation Error" in result.output


def test_init_writes_a_valid_template(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    output = tmp_path / "config.yaml"
    monkeypatch.setenv("APP_PASSWORD", "app-secret")

    result = runner.invoke(app, ["sql", "init", "-o", str(output)])

    assert result.exit_code == 0
    assert output.read_text() == sql_cli.TEMPLATE
    assert runner.invoke(app, ["sql", "validate", str(output)]).exit_code == 0


def test_init_keeps_existing_file_when_declined(tmp_path: Path) -> None:
    output = tmp_path / "config.yaml"
    output.write_text("keep me")

    result = runner.invoke(app, ["sql", "init", "-o", str(output)], input="n\n")

    assert result.exit_code == 0
    assert output.read_text() == "keep me"


def test_execute_masks_generated_passwords(config_file: Path, fake_database: FakeDatabase) -> None:
    result = runner.invoke(app, ["sql", "execute", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "executed successfully" in result.output
    assert "password: (sensitive)" in result.output
    assert any(sql.startswith("ALTER USER `app`@`%`") for sql in fake_database.executed)


def test_execute_can_show_generated_passwords(config_file: Path, fake_database: FakeDatabase) -> None:
    result = runner.invoke(app, ["sql", "execute", "-c", str(config_file), "--show-sensitive"])

    assert result.exit_code == 0
    assert "password: (sensitive)" not in result.output


def test_execute_fails_when_a_resource_fails(config_file: Path, fake_database: FakeDatabase) -> None:
    def _execute(sql, params=None):
        if sql.startswith("GRANT"):
            raise RuntimeError("boom")
        return 0

    fake_database.execute = _execute

    result = runner.invoke(app, ["sql", "execute", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "Some resources failed" in result.output


def test_ping_prints_version(config_file: Path, fake_database: FakeDatabase) -> None:
    fake_database.raw_version = "5.7.5"

    result = runner.invoke(app, ["sql", "ping", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "5.7.5" in result.output
    assert "legacy" in result.output


def test_destroy_drops_existing_database(config_file: Path, fake_database: FakeDatabase) -> None:
    fake_database.responses = {"SCHEMATA": [("utf8mb4", "utf8mb4_general_ci")]}

    result = runner.invoke(app, ["sql", "destroy", "-c", str(config_file)])

    assert result.exit_code == 0
    assert fake_database.executed == ["DROP DATABASE `shop`"]


def test_execute_reports_malformed_yaml(tmp_path: Path, fake_database: FakeDatabase) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("provider: [unclosed\n")

    result = runner.invoke(app, ["sql", "execute", "-c", str(path)])

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert isinstance(result.exception, SystemExit)


def test_validate_rejects_top_level_list(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    result = runner.invoke(app, ["sql", "validate", str(path)])

    assert result.exit_code == 1
    assert "Configuration must be a mapping" in result.output


def test_destroy_reports_unexpected_errors(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _build(self, **options):
        raise KeyError("unexpected")

    monkeypatch.setattr(MySQLBuilder, "build", _build)

    result = runner.invoke(app, ["sql", "destroy", "-c", str(config_file)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)


def test_interrupted_execute_keeps_its_exit_code(
    config_file: Path, fake_database: FakeDatabase, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _execute(self):
        raise KeyboardInterrupt

    monkeypatch.setattr(MySQLProvider, "execute", _execute)

    result = runner.invoke(app, ["sql", "execute", "-c", str(config_file)])

    assert result.exit_code == 130
    assert "Error:" not in result.output


def test_template_warns_that_passwords_rotate_on_execute() -> None:
    assert "generated and set on every execute" in sql_cli.TEMPLATE
    assert "fresh random password" in sql_cli.execute_config.__doc__
