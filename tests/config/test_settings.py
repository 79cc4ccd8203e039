"""
Tests for approval_config: settings resolution and template definition files.

Resolution order (later wins): defaults.yaml, the override file,
then DATABASE_URL / APPROVAL_LOG_LEVEL.
"""

from pathlib import Path

import pytest
import yaml

from approval_config import get_active_config, load_template_definitions
from approval_config.loader import compute_checksum, merge_settings, parse_settings
from approval_kernel.db.memory import InMemoryWorkflowRepository
from approval_kernel.domain.graph import approver_sequence
from approval_kernel.services.template_service import TemplateService

STANDARD_TEMPLATES = (
    Path(__file__).resolve().parents[2] / "approval_config" / "templates" / "standard.yaml"
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("APPROVAL_CONFIG_PATH", "DATABASE_URL", "APPROVAL_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data, name="override.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestGetActiveConfig:

    def test_defaults(self):
        settings = get_active_config()
        assert settings.database.url.startswith("postgresql")
        assert settings.database.pool_size == 20
        assert settings.locking.timeout_seconds == 0.0
        assert settings.log_level == "INFO"
        assert settings.approver_role_keywords == ("manager", "director", "supervisor")
        assert settings.default_priority == "medium"

    def test_override_file_merges(self, tmp_path):
        path = _write(tmp_path, {"locking": {"timeout_seconds": 2.5}, "database": {"echo": True}})
        settings = get_active_config(path)

        assert settings.locking.timeout_seconds == 2.5
        assert settings.database.echo is True
        # Untouched keys keep their defaults
        assert settings.database.pool_size == 20
        assert str(path) in settings.source

    def test_override_from_environment_path(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"logging": {"level": "debug"}})
        monkeypatch.setenv("APPROVAL_CONFIG_PATH", str(path))
        assert get_active_config().log_level == "DEBUG"

    def test_environment_wins(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"database": {"url": "sqlite:///from-file.db"}})
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        monkeypatch.setenv("APPROVAL_LOG_LEVEL", "warning")

        settings = get_active_config(path)
        assert settings.database.url == "sqlite://"
        assert settings.log_level == "WARNING"
        assert settings.source.endswith("env:APPROVAL_LOG_LEVEL")

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_trace_logged(self, captured_logs):
        settings = get_active_config()
        trace = [r for r in captured_logs() if r["message"] == "APPROVAL_CONFIG_TRACE"]
        assert len(trace) == 1
        assert trace[0]["checksum"] == settings.checksum
        assert trace[0]["lock_timeout_seconds"] == 0.0
        assert trace[0]["config_sources"][0].endswith("defaults.yaml")


class TestParseSettings:

    @pytest.fixture
    def base(self):
        return {"database": {"url": "sqlite://"}}

    def test_minimal(self, base):
        settings = parse_settings(base)
        assert settings.database.url == "sqlite://"
        assert settings.locking.timeout_seconds == 0.0
        assert settings.approver_role_keywords == ()

    def test_missing_url(self):
        with pytest.raises(KeyError):
            parse_settings({"database": {}})

    @pytest.mark.parametrize("override", [
        {"logging": {"level": "LOUD"}},
        {"locking": {"timeout_seconds": -1}},
        {"locking": {"timeout_seconds": "soon"}},
        {"locking": {"timeout_seconds": True}},
        {"requests": {"default_priority": "critical"}},
        {"approvers": {"role_keywords": "manager"}},
        {"database": {"pool_size": "many"}},
    ])
    def test_invalid_values(self, base, override):
        with pytest.raises(ValueError):
            parse_settings(merge_settings(base, override))

    def test_checksum_deterministic(self, base):
        extended = merge_settings(base, {"locking": {"timeout_seconds": 0}})
        assert parse_settings(base).checksum == parse_settings(dict(base)).checksum
        assert compute_checksum(base) != compute_checksum(extended)
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_merge_is_recursive_and_copies(self, base):
        merged = merge_settings(base, {"database": {"echo": True}})
        assert merged["database"] == {"url": "sqlite://", "echo": True}
        assert base == {"database": {"url": "sqlite://"}}


class TestTemplateDefinitions:

    def test_standard_file(self):
        definitions = load_template_definitions(STANDARD_TEMPLATES)
        assert [d.name for d in definitions] == [
            "Leave request",
            "Expense reimbursement",
            "Purchase order",
        ]
        assert definitions[2].category == "procurement"

    def test_standard_file_loads_into_repository(self, deterministic_clock):
        service = TemplateService(InMemoryWorkflowRepository(), deterministic_clock)
        created = service.load_definitions(load_template_definitions(STANDARD_TEMPLATES))

        assert len(created) == 3
        purchase = created[2]
        # The amount check is a decision node and is passed through
        assert approver_sequence(purchase.graph) == ("manager", "director", "finance")

    def test_missing_templates_key(self, tmp_path):
        with pytest.raises(KeyError):
            load_template_definitions(_write(tmp_path, {"other": []}))

    def test_nodes_must_be_a_list(self, tmp_path):
        path = _write(tmp_path, {"templates": [{"name": "x", "nodes": {}, "edges": []}]})
        with pytest.raises(ValueError):
            load_template_definitions(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_template_definitions(path)
