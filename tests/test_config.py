"""Tests for config module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (
    DEFAULTS, ConfigError, apply_overrides, deep_merge, get_config_dir, load_namespace,
    lookup, parse_override,
)


class TestDeepMerge:
    """Tests for deep_merge()."""

    def test_nested_merge(self):
        base = {'database': {'engine_version': '17.6', 'instance_size': 'MICRO'}}
        merged = deep_merge(base, {'database': {'instance_size': 'SMALL'}})

        assert merged == {'database': {'engine_version': '17.6', 'instance_size': 'SMALL'}}

    def test_lists_replace(self):
        merged = deep_merge({'azs': ['a', 'b']}, {'azs': ['c']})
        assert merged == {'azs': ['c']}

    def test_inputs_untouched(self):
        base = {'a': {'b': 1}}
        override = {'a': {'c': 2}}
        deep_merge(base, override)

        assert base == {'a': {'b': 1}}
        assert override == {'a': {'c': 2}}


class TestOverrides:
    """Tests for parse_override() and apply_overrides()."""

    def test_parse_scalar_types(self):
        assert parse_override('app.replicas=3') == ('app.replicas', 3)
        assert parse_override('database.deletion_protection=true') == (
            'database.deletion_protection', True)
        assert parse_override('region=us-east-1') == ('region', 'us-east-1')
        assert parse_override('account="123456789012"') == ('account', '123456789012')

    def test_parse_empty_value(self):
        assert parse_override('region=') == ('region', '')

    def test_parse_value_with_equals(self):
        assert parse_override('app.args=a=b') == ('app.args', 'a=b')

    def test_parse_missing_equals(self):
        with pytest.raises(ConfigError, match="key=value"):
            parse_override('region')

    def test_parse_empty_key(self):
        with pytest.raises(ConfigError, match="empty key"):
            parse_override('=value')

    def test_apply_creates_sections(self):
        result = apply_overrides({'cluster': {'name': 'c'}}, [
            'cluster.version=1.33',
            'app.image=nginx',
        ])
        assert result == {
            'cluster': {'name': 'c', 'version': 1.33},
            'app': {'image': 'nginx'},
        }

    def test_apply_replaces_scalar_with_section(self):
        result = apply_overrides({'app': 'flat'}, ['app.image=nginx'])
        assert result == {'app': {'image': 'nginx'}}

    def test_apply_does_not_mutate(self):
        namespace = {'region': 'us-east-1'}
        apply_overrides(namespace, ['region=eu-west-1'])
        assert namespace == {'region': 'us-east-1'}


class TestLookup:
    """Tests for lookup()."""

    def test_flat_key_wins(self):
        namespace = {'cluster.name': 'flat', 'cluster': {'name': 'nested'}}
        assert lookup(namespace, 'cluster.name') == 'flat'

    def test_dotted_path(self):
        assert lookup({'cicd': {'github': {'owner': 'me'}}}, 'cicd.github.owner') == 'me'

    def test_missing(self):
        assert lookup({'cluster': {'name': 'c'}}, 'cluster.version') is None
        assert lookup({'cluster': 'c'}, 'cluster.name') is None


class TestGetConfigDir:
    """Tests for get_config_dir()."""

    def test_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(tmp_path))
        assert get_config_dir() == tmp_path

    def test_env_var_missing_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(tmp_path / 'nope'))
        with pytest.raises(ConfigError, match="does not exist"):
            get_config_dir()

    def test_beside_stack_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)
        (tmp_path / 'config').mkdir()
        assert get_config_dir(tmp_path) == tmp_path / 'config'

    def test_none_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)
        assert get_config_dir(tmp_path) is None
        assert get_config_dir() is None


class TestLoadNamespace:
    """Tests for load_namespace()."""

    @pytest.fixture(autouse=True)
    def _no_env(self, monkeypatch):
        monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)

    def test_defaults_only(self, tmp_path):
        namespace = load_namespace(stackfile_dir=tmp_path)

        assert namespace == DEFAULTS
        assert namespace is not DEFAULTS
        assert 'account' not in namespace

    def test_config_merged_over_defaults(self, tmp_path):
        (tmp_path / 'config').mkdir()
        (tmp_path / 'config' / 'config.yaml').write_text(
            "account: '123456789012'\n"
            "database:\n"
            "  instance_size: SMALL\n"
        )
        namespace = load_namespace(stackfile_dir=tmp_path)

        assert namespace['account'] == '123456789012'
        assert namespace['database']['instance_size'] == 'SMALL'
        assert namespace['database']['engine_version'] == '17.6'

    def test_explicit_config_file(self, tmp_path):
        path = tmp_path / 'site.yaml'
        path.write_text("region: eu-west-1\n")
        assert load_namespace(config_file=path)['region'] == 'eu-west-1'

    def test_explicit_config_file_missing(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_namespace(config_file=tmp_path / 'missing.yaml')

    def test_overrides_applied_last(self, tmp_path):
        path = tmp_path / 'site.yaml'
        path.write_text("region: eu-west-1\n")
        namespace = load_namespace(config_file=path, overrides=['region=us-west-2'])
        assert namespace['region'] == 'us-west-2'

    def test_empty_config_file(self, tmp_path):
        path = tmp_path / 'site.yaml'
        path.write_text("")
        assert load_namespace(config_file=path) == DEFAULTS

    def test_config_must_be_mapping(self, tmp_path):
        path = tmp_path / 'site.yaml'
        path.write_text("- a\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_namespace(config_file=path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'site.yaml'
        path.write_text("region: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_namespace(config_file=path)

    def test_example_config(self, example_stack):
        namespace = load_namespace(stackfile_dir=example_stack.parent)

        assert namespace['account'] == '123456789012'
        assert namespace['cicd']['github']['owner'] == 'example-org'
        assert namespace['cicd']['github']['token_secret'] == 'github-token'
