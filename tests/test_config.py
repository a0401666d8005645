"""
Unit tests for configuration loading and validation.

Tests rule tables, strict YAML validation, settings and logging setup.
"""

import json
import logging
import os
import tempfile
from datetime import timedelta

import pytest
import yaml

from quota_guard.config.loader import (
    DEFAULT_RULE_TABLE,
    RateLimitRule,
    RuleTable,
    Tier,
    load_rule_table,
)
from quota_guard.config.log_setup import JSONFormatter, configure_logging
from quota_guard.config.settings import QuotaGuardSettings
from quota_guard.core.factory import load_rules

MINUTE = timedelta(seconds=60)


class TestTier:
    """Test tier parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("BASE", Tier.BASE),
        ("elevated", Tier.ELEVATED),
        (" Unlimited ", Tier.UNLIMITED),
        (Tier.BASE, Tier.BASE),
    ])
    def test_parse(self, value, expected):
        assert Tier.parse(value) == expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="must be one of"):
            Tier.parse("FREE")

    def test_parse_non_string(self):
        with pytest.raises(ValueError, match="must be a string"):
            Tier.parse(3)


class TestRateLimitRule:
    """Test rule validation."""

    def test_valid_rule(self):
        rule = RateLimitRule(window=MINUTE, max_requests=5, tier=Tier.BASE)

        assert rule.window_seconds == 60.0

    def test_non_positive_window(self):
        with pytest.raises(ValueError, match="window must be > 0"):
            RateLimitRule(window=timedelta(0), max_requests=5, tier=Tier.BASE)

    def test_non_positive_max_requests(self):
        with pytest.raises(ValueError, match="max_requests must be > 0"):
            RateLimitRule(window=MINUTE, max_requests=0, tier=Tier.BASE)


class TestRuleTable:
    """Test rule table construction and lookup."""

    def test_default_table_values(self):
        """Built-in budgets per operation and tier."""
        expected = {
            "generate-avatar": {Tier.BASE: 5, Tier.ELEVATED: 20, Tier.UNLIMITED: 100},
            "download-avatar": {Tier.BASE: 30, Tier.ELEVATED: 100, Tier.UNLIMITED: 500},
            "spotify-data": {Tier.BASE: 10, Tier.ELEVATED: 10, Tier.UNLIMITED: 10},
        }
        for operation, budgets in expected.items():
            for tier, max_requests in budgets.items():
                rule = DEFAULT_RULE_TABLE.resolve(operation, tier)
                assert rule.max_requests == max_requests
                assert rule.window == MINUTE

    def test_unknown_operation_resolves_to_none(self):
        assert DEFAULT_RULE_TABLE.resolve("delete-avatar", Tier.BASE) is None
        assert DEFAULT_RULE_TABLE.rules_for("delete-avatar") == ()

    def test_fallback_to_first_rule(self):
        table = RuleTable({
            "generate-avatar": [
                RateLimitRule(window=MINUTE, max_requests=9, tier=Tier.ELEVATED),
                RateLimitRule(window=MINUTE, max_requests=2, tier=Tier.BASE),
            ]
        })

        assert table.resolve("generate-avatar", Tier.UNLIMITED).max_requests == 9

    def test_empty_rule_list_rejected(self):
        with pytest.raises(ValueError, match="at least one rule"):
            RuleTable({"generate-avatar": []})

    def test_duplicate_tier_rejected(self):
        with pytest.raises(ValueError, match="more than one rule"):
            RuleTable({
                "generate-avatar": [
                    RateLimitRule(window=MINUTE, max_requests=5, tier=Tier.BASE),
                    RateLimitRule(window=MINUTE, max_requests=6, tier=Tier.BASE),
                ]
            })

    def test_table_is_immutable(self):
        """The mapping and rule lists cannot be changed after construction."""
        source = {"generate-avatar": [RateLimitRule(window=MINUTE, max_requests=5, tier=Tier.BASE)]}
        table = RuleTable.from_rules(source)
        source["generate-avatar"].append(RateLimitRule(window=MINUTE, max_requests=6, tier=Tier.ELEVATED))
        source["download-avatar"] = []

        assert len(table.rules_for("generate-avatar")) == 1
        assert table.operations == ("generate-avatar",)
        with pytest.raises(TypeError):
            table.rules["download-avatar"] = ()
        with pytest.raises(AttributeError):
            table.rules = {}


class TestRuleTableLoading:
    """Test YAML rule table loading and strict validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "rules.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, sort_keys=False)
        return config_path

    def _valid_config(self):
        return {
            "operations": {
                "generate-avatar": [
                    {"tier": "BASE", "window_seconds": 60, "max_requests": 5},
                    {"tier": "elevated", "window_seconds": 60, "max_requests": 20},
                ],
                "download-avatar": [
                    {"tier": "BASE", "window_seconds": 30.5, "max_requests": 30},
                ],
            }
        }

    def test_valid_config_loads_correctly(self):
        table = load_rule_table(self._write_config(self._valid_config()))

        assert table.operations == ("generate-avatar", "download-avatar")
        rule = table.resolve("generate-avatar", Tier.ELEVATED)
        assert rule.max_requests == 20
        assert rule.window == MINUTE
        assert table.resolve("download-avatar", Tier.BASE).window_seconds == 30.5

    def test_order_preserved_for_fallback(self):
        table = load_rule_table(self._write_config(self._valid_config()))

        assert table.resolve("generate-avatar", Tier.UNLIMITED).tier == Tier.BASE

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_rule_table(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("operations: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_rule_table(path)

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_rule_table(path)

    def test_unknown_top_level_key(self):
        config = self._valid_config()
        config["limits"] = {}

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_rule_table(self._write_config(config))

    def test_null_operations(self):
        with pytest.raises(ValueError, match="'operations' must be a dictionary"):
            load_rule_table(self._write_config({"operations": None}))

    def test_operations_not_a_dict(self):
        with pytest.raises(ValueError, match="'operations' must be a dictionary"):
            load_rule_table(self._write_config({"operations": ["generate-avatar"]}))

    def test_empty_rule_list(self):
        with pytest.raises(ValueError, match="non-empty list"):
            load_rule_table(self._write_config({"operations": {"generate-avatar": []}}))

    def test_unknown_rule_key(self):
        config = self._valid_config()
        config["operations"]["generate-avatar"][0]["burst"] = 2

        with pytest.raises(ValueError, match=r"Unknown keys in operations.generate-avatar\[0\]"):
            load_rule_table(self._write_config(config))

    def test_missing_rule_key(self):
        config = self._valid_config()
        del config["operations"]["download-avatar"][0]["max_requests"]

        with pytest.raises(ValueError, match="Missing required 'max_requests'"):
            load_rule_table(self._write_config(config))

    @pytest.mark.parametrize("window", [0, -5, "60", True])
    def test_invalid_window(self, window):
        config = self._valid_config()
        config["operations"]["generate-avatar"][0]["window_seconds"] = window

        with pytest.raises(ValueError, match="'window_seconds'"):
            load_rule_table(self._write_config(config))

    @pytest.mark.parametrize("max_requests", [0, -1, 2.5, False])
    def test_invalid_max_requests(self, max_requests):
        config = self._valid_config()
        config["operations"]["generate-avatar"][0]["max_requests"] = max_requests

        with pytest.raises(ValueError, match="'max_requests'"):
            load_rule_table(self._write_config(config))

    def test_invalid_tier(self):
        config = self._valid_config()
        config["operations"]["generate-avatar"][0]["tier"] = "PRO"

        with pytest.raises(ValueError, match="'tier' in operations.generate-avatar"):
            load_rule_table(self._write_config(config))

    def test_duplicate_tier(self):
        config = self._valid_config()
        config["operations"]["generate-avatar"][1]["tier"] = "BASE"

        with pytest.raises(ValueError, match="more than one rule"):
            load_rule_table(self._write_config(config))

    def test_settings_rules_file(self):
        path = self._write_config(self._valid_config())

        table = load_rules(QuotaGuardSettings(rules_file=path))

        assert "spotify-data" not in table.operations

    def test_settings_without_rules_file_use_defaults(self):
        assert load_rules(QuotaGuardSettings(rules_file=None)) is DEFAULT_RULE_TABLE


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in ("DB_PATH", "RULES_FILE", "LOG_LEVEL", "STRUCTURED_LOGGING"):
            monkeypatch.delenv(f"QUOTA_GUARD_{name}", raising=False)

        settings = QuotaGuardSettings(_env_file=None)

        assert settings.db_path == "quota_guard.db"
        assert settings.rules_file is None
        assert settings.log_level == "INFO"
        assert settings.structured_logging is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUOTA_GUARD_DB_PATH", "/tmp/usage.db")
        monkeypatch.setenv("QUOTA_GUARD_STRUCTURED_LOGGING", "true")

        settings = QuotaGuardSettings(_env_file=None)

        assert settings.db_path == "/tmp/usage.db"
        assert settings.structured_logging is True


class TestLogging:
    """Test logging configuration."""

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord(
            name="quota_guard.core.limiter",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Rate limit exceeded: %s",
            args=("user-1",),
            exc_info=None,
        )
        record.subject = "user-1"
        record.operation = "generate-avatar"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "quota_guard.core.limiter"
        assert payload["message"] == "Rate limit exceeded: user-1"
        assert payload["subject"] == "user-1"
        assert payload["operation"] == "generate-avatar"
        assert "tier" not in payload
        assert "exc_info" not in payload

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("store down")
        except RuntimeError:
            import sys
            record = logging.LogRecord(
                "quota_guard", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        payload = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: store down" in payload["exc_info"]

    def _configure(self, *args, **kwargs):
        """Run configure_logging and return the resulting root handlers and level."""
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(*args, **kwargs)
            return list(root.handlers), root.level
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_configure_structured(self):
        handlers, level = self._configure("debug", structured=True)

        assert level == logging.DEBUG
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, JSONFormatter)

    def test_configure_plain(self):
        handlers, level = self._configure("WARNING")

        assert level == logging.WARNING
        assert not isinstance(handlers[0].formatter, JSONFormatter)

    def test_configure_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("LOUD")
