"""Configuration namespace management.

The configuration namespace is a nested mapping consumed both by unit
synthesis (each unit kind reads its own section) and by manifest rendering
(`${section.key}` placeholders).

Resolution order (later wins):
1. DEFAULTS below (one section per unit kind)
2. config.yaml from the config directory or an explicit --config file
3. Dotted key=value overrides (--set)

Config directory discovery:
1. $STACK_DRIVER_CONFIG environment variable
2. config/ beside the stack file
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from common import DriverError


class ConfigError(DriverError):
    """Configuration error."""


# Built-in defaults for every unit kind. Keys are the names units and
# manifests look up; sections are merged key by key with config.yaml.
DEFAULTS: dict[str, Any] = {
    'vpc': {
        'max_azs': 2,
        'nat_gateways': 1,
    },
    'database': {
        'engine_version': '17.6',
        'instance_class': 'BURSTABLE3',
        'instance_size': 'MICRO',
        'database_name': 'customers',
        'secret_username': 'postgres',
        'deletion_protection': False,
    },
    'redis': {
        'node_type': 'cache.t3.micro',
        'num_nodes': 1,
        'cluster_id': 'customer-cache',
        'description': 'Redis cache for customer service',
    },
    'cluster': {
        'name': 'customer-service-cluster',
        'version': '1.34',
        'workload_namespace': 'customer-service',
        'fargate_profile': 'customer-service-fargate-profile',
    },
    'logging': {
        'log_group_name': '/aws/eks/customer-service',
        'retention_days': 7,
        'dashboard_name': 'customer-service-eks',
    },
    'cicd': {
        'repository': {'name': 'customer-service'},
        'github': {
            'owner': 'your-github-user',
            'repo': 'customer-service',
            'token_secret': 'github-token',
        },
        'build': {
            'build_spec_path': 'buildspecs/build-spec.yaml',
            'deploy_spec_path': 'buildspecs/deploy-spec.yaml',
            'image': 'aws/codebuild/standard:7.0',
        },
        'pipeline': {
            'name': 'CustomerServicePipeline',
            'stages': {'source': 'Source', 'build': 'Build', 'deploy': 'Deploy'},
            'actions': {'source': 'GitHub_Source', 'build': 'Build', 'deploy': 'Deploy'},
        },
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Return a new dict with override merged over base.

    Nested mappings merge key by key; any other override value replaces
    the base value wholesale (lists are not concatenated).
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file that must contain a mapping (or nothing)."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def parse_override(expr: str) -> tuple[str, Any]:
    """Parse a 'dotted.key=value' override; value is read as a YAML scalar."""
    if '=' not in expr:
        raise ConfigError(f"Override must be key=value, got '{expr}'")
    key, raw = expr.split('=', 1)
    key = key.strip()
    if not key:
        raise ConfigError(f"Override has an empty key: '{expr}'")
    try:
        value = yaml.safe_load(raw) if raw else ''
    except yaml.YAMLError:
        value = raw
    return key, value


def apply_overrides(namespace: dict, overrides: list[str]) -> dict:
    """Apply dotted key=value overrides, creating sections as needed."""
    result = copy.deepcopy(namespace)
    for expr in overrides:
        key, value = parse_override(expr)
        parts = key.split('.')
        section = result
        for part in parts[:-1]:
            child = section.get(part)
            if not isinstance(child, dict):
                child = {}
                section[part] = child
            section = child
        section[parts[-1]] = value
    return result


def lookup(namespace: dict, name: str) -> Any:
    """Look up name in the namespace.

    A flat key present verbatim wins; otherwise name is treated as a dotted
    path into nested mappings. Returns None when nothing matches.
    """
    if name in namespace:
        return namespace[name]
    node: Any = namespace
    for part in name.split('.'):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def get_config_dir(stackfile_dir: Optional[Path] = None) -> Optional[Path]:
    """Discover the config directory.

    Resolution order:
    1. $STACK_DRIVER_CONFIG environment variable (must exist)
    2. config/ beside the stack file

    Returns None when no directory is found (defaults only).
    """
    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")

    if stackfile_dir is not None:
        sibling = stackfile_dir / 'config'
        if sibling.is_dir():
            return sibling

    return None


def load_namespace(
    config_file: Optional[Path] = None,
    stackfile_dir: Optional[Path] = None,
    overrides: Optional[list[str]] = None,
) -> dict:
    """Build the configuration namespace for a run.

    Args:
        config_file: Explicit config YAML (skips directory discovery)
        stackfile_dir: Directory of the stack file, for config/ discovery
        overrides: Dotted key=value overrides applied last

    Returns:
        Nested namespace dict

    Raises:
        ConfigError: If a config file is missing or malformed
    """
    namespace = copy.deepcopy(DEFAULTS)

    if config_file is None:
        config_dir = get_config_dir(stackfile_dir)
        if config_dir is not None and (config_dir / 'config.yaml').exists():
            config_file = config_dir / 'config.yaml'
    elif not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")

    if config_file is not None:
        namespace = deep_merge(namespace, _parse_yaml(config_file))

    if overrides:
        namespace = apply_overrides(namespace, overrides)
    return namespace
