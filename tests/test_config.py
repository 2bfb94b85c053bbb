# python -m pytest tests/test_config.py -v

"""Tests for configuration loading and validation."""

import pytest

from index_maintenance.config import get_default_config, load_config, parse_config
from index_maintenance.errors import ConfigurationError
from index_maintenance.models import DatabaseScope


class TestLoadConfig:

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / 'absent.yaml'))
        assert config.policy.reorganize_threshold == 10.0
        assert config.policy.rebuild_threshold == 30.0
        assert config.policy.min_size_units == 1000
        assert config.policy.execute_actions is True
        assert config.policy.include_secondary_objects is True
        assert config.scope is DatabaseScope.CURRENT
        assert config.report.enabled is True
        assert config.backend == 'sqlite'

    def test_yaml_overrides_merge_with_defaults(self, tmp_path):
        path = tmp_path / 'maintenance.yaml'
        path.write_text(
            "policy:\n"
            "  rebuild_threshold: 40\n"
            "scope:\n"
            "  mode: specific\n"
            "  database: Sales\n"
            "report:\n"
            "  email:\n"
            "    recipients: 'dba@company.com; admin@company.com'\n"
        )
        config = load_config(str(path))

        assert config.policy.rebuild_threshold == 40.0
        assert config.policy.reorganize_threshold == 10.0
        assert config.scope is DatabaseScope.SPECIFIC
        assert config.specific_database == 'Sales'
        assert config.report.recipients == ['dba@company.com', 'admin@company.com']
        assert config.report.smtp.port == 587

    def test_quoted_false_means_analysis_only(self, tmp_path):
        path = tmp_path / 'maintenance.yaml'
        path.write_text("policy:\n  execute_actions: \"false\"\nreport:\n  enabled: 'no'\n")
        config = load_config(str(path))

        assert config.policy.execute_actions is False
        assert config.report.enabled is False

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yaml'
        path.write_text("policy: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path))


class TestValidation:

    def _raw(self, **sections):
        raw = get_default_config()
        for section, values in sections.items():
            raw[section].update(values)
        return raw

    def test_rebuild_below_reorganize(self):
        with pytest.raises(ConfigurationError, match='rebuild_threshold'):
            parse_config(self._raw(policy={'reorganize_threshold': 40, 'rebuild_threshold': 30}))

    def test_threshold_out_of_range(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(policy={'rebuild_threshold': 130}))

    def test_negative_min_size(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(policy={'min_size_units': -1}))

    def test_specific_scope_needs_name(self):
        with pytest.raises(ConfigurationError, match='SPECIFIC'):
            parse_config(self._raw(scope={'mode': 'SPECIFIC', 'database': ''}))

    def test_unknown_scope(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(scope={'mode': 'EVERYTHING'}))

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(backend={'type': 'oracle'}))

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(execution={'mutation_timeout_seconds': 0}))

    def test_flag_words(self):
        for value, expected in (('yes', True), ('OFF', False), ('0', False), (1, True), (False, False)):
            config = parse_config(self._raw(policy={'include_secondary_objects': value}))
            assert config.policy.include_secondary_objects is expected

    def test_unrecognized_flag(self):
        for value in ('maybe', '', 2, None):
            with pytest.raises(ConfigurationError, match='execute_actions'):
                parse_config(self._raw(policy={'execute_actions': value}))

    def test_non_numeric_threshold(self):
        with pytest.raises(ConfigurationError):
            parse_config(self._raw(policy={'reorganize_threshold': 'ten'}))


class TestOverrides:

    def test_command_line_overrides(self):
        config = parse_config(get_default_config()).with_overrides(
            execute_actions=False, scope=DatabaseScope.SPECIFIC,
            specific_database='Inventory', send_report=False
        )
        assert config.policy.execute_actions is False
        assert config.scope is DatabaseScope.SPECIFIC
        assert config.specific_database == 'Inventory'
        assert config.report.enabled is False
        assert config.backend_options['database_dir'] == './data'

    def test_overrides_are_validated(self):
        with pytest.raises(ConfigurationError):
            parse_config(get_default_config()).with_overrides(scope=DatabaseScope.SPECIFIC)
