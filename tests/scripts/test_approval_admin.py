"""
Tests for the operator commands in scripts/approval_admin.py.

Each test points the commands at a SQLite file under tmp_path so that
successive invocations share one database.
"""

from pathlib import Path
from uuid import uuid4

import pytest
import yaml

from approval_kernel.db.engine import reset_engine
from scripts.approval_admin import _parse_args, main

STANDARD_TEMPLATES = (
    Path(__file__).resolve().parents[2] / "approval_config" / "templates" / "standard.yaml"
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("APPROVAL_CONFIG_PATH", "DATABASE_URL", "APPROVAL_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_url(tmp_path):
    yield f"sqlite:///{tmp_path / 'admin.db'}"
    reset_engine()


class TestArguments:

    def test_commands(self):
        args = _parse_args(["--db-url", "sqlite://", "load-templates", "flows.yaml"])
        assert args.command == "load-templates"
        assert args.path == "flows.yaml"
        assert args.db_url == "sqlite://"
        assert args.config is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            _parse_args([])


class TestCommands:

    def test_init_db(self, db_url, capsys):
        assert main(["--db-url", db_url, "init-db"]) == 0
        assert "Tables created" in capsys.readouterr().out

    def test_load_templates_then_stats(self, db_url, capsys):
        main(["--db-url", db_url, "init-db"])
        assert main(["--db-url", db_url, "load-templates", str(STANDARD_TEMPLATES)]) == 0
        out = capsys.readouterr().out
        assert "Loaded 3 template(s)." in out
        assert "Purchase order (v1)" in out

        assert main(["--db-url", db_url, "stats"]) == 0
        out = capsys.readouterr().out
        assert "Requests: 0" in out
        assert "By template:" in out

    def test_invalid_template_file_fails(self, db_url, tmp_path, capsys, captured_logs):
        main(["--db-url", db_url, "init-db"])
        broken = tmp_path / "broken.yaml"
        broken.write_text(yaml.safe_dump({"templates": [{
            "name": "No end",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "a1", "type": "approver"},
            ],
            "edges": [{"source": "start", "target": "a1"}],
        }]}))

        assert main(["--db-url", db_url, "load-templates", str(broken)]) == 1
        assert "ERROR [" in capsys.readouterr().err
        failures = [r for r in captured_logs() if r["message"] == "admin_command_failed"]
        assert failures[0]["command"] == "load-templates"


class TestConfiguredDefaults:
    """Settings from the override file reach the services the commands build."""

    @pytest.fixture
    def base_args(self, db_url, tmp_path):
        config = tmp_path / "settings.yaml"
        config.write_text(yaml.safe_dump({
            "approvers": {"role_keywords": ["approver"]},
            "requests": {"default_priority": "high"},
        }))
        args = ["--config", str(config), "--db-url", db_url]
        main(args + ["init-db"])
        return args

    def test_request_priority_falls_back_to_configured_default(self, base_args, capsys):
        main(base_args + ["load-templates", str(STANDARD_TEMPLATES)])
        out = capsys.readouterr().out
        template_id = next(
            line.split()[0] for line in out.splitlines() if "Purchase order" in line
        )
        request = ["create-request", "--template", template_id, "--title", "Laptop",
                   "--requester", str(uuid4())]

        assert main(base_args + request) == 0
        assert "priority=high" in capsys.readouterr().out

        assert main(base_args + request + ["--priority", "low"]) == 0
        assert "priority=low" in capsys.readouterr().out

    def test_approvers_match_configured_keywords(self, base_args, capsys):
        main(base_args + ["add-user", "Ann", "ann@example.com", "--role", "Budget approver"])
        main(base_args + ["add-user", "Bob", "bob@example.com", "--role", "Manager"])
        capsys.readouterr()

        assert main(base_args + ["approvers"]) == 0
        out = capsys.readouterr().out
        assert "Ann" in out
        assert "Bob" not in out
        assert "1 approver(s) for roles: approver" in out

    def test_unknown_template_fails(self, base_args, capsys):
        request = ["create-request", "--template", str(uuid4()), "--title", "Laptop",
                   "--requester", str(uuid4())]
        assert main(base_args + request) == 1
        assert "ERROR [TEMPLATE_NOT_FOUND]" in capsys.readouterr().err
