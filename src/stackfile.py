"""Stack file loading and validation.

A stack file declares the provisioning units of one deployment, their
dependencies, how their inputs are wired to other units' outputs, and the
manifests they apply. Example:

    schema_version: 1
    name: customer-service
    settings:
      workers: 4
      readiness_timeout: 300
    units:
      - name: network
        kind: network
      - name: data
        kind: database
        depends_on: [network]
        inputs:
          vpc_id: ${network.vpc.vpc_id}
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from manifest import ManifestSource
from stack_opr.applier import DEFAULT_READINESS_KINDS

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = {1}

_NAME = re.compile(r'^[A-Za-z0-9_-]+$')


@dataclass
class RunSettings:
    """Execution settings for a run.

    Attributes:
        workers: Maximum units deployed concurrently within a layer
        poll_interval: Seconds between readiness polls
        readiness_timeout: Seconds a manifest document may take to become ready
        deploy_timeout: Seconds a unit resource may take to become ready
        readiness_kinds: Manifest kinds whose dependents wait for readiness
    """
    workers: int = 4
    poll_interval: float = 5.0
    readiness_timeout: float = 300.0
    deploy_timeout: float = 1800.0
    readiness_kinds: frozenset = field(default=DEFAULT_READINESS_KINDS)

    def __post_init__(self) -> None:
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ConfigError(f"settings.workers must be a positive integer, got {self.workers!r}")
        for attr in ('poll_interval', 'readiness_timeout', 'deploy_timeout'):
            value = getattr(self, attr)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"settings.{attr} must be a positive number, got {value!r}")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RunSettings':
        """Create RunSettings from dictionary."""
        if not data:
            return cls()
        kinds = data.get('readiness_kinds')
        return cls(
            workers=data.get('workers', 4),
            poll_interval=data.get('poll_interval', 5.0),
            readiness_timeout=data.get('readiness_timeout', 300.0),
            deploy_timeout=data.get('deploy_timeout', 1800.0),
            readiness_kinds=frozenset(kinds) if kinds is not None else DEFAULT_READINESS_KINDS,
        )


@dataclass
class UnitDefinition:
    """A provisioning unit as declared in the stack file.

    Attributes:
        name: Unique unit name
        kind: Deployable kind (network, database, cluster, ...)
        depends_on: Names of units that must be deployed first
        inputs: Input name -> template string resolved before synthesis
        properties: Overrides merged over the kind's config section
        manifests: Manifest sources applied after the unit's resources
        manifest_edges: Extra document edges (id -> ids it depends on)
    """
    name: str
    kind: str
    depends_on: list[str] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    manifests: list[ManifestSource] = field(default_factory=list)
    manifest_edges: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> 'UnitDefinition':
        """Create UnitDefinition from dictionary.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Unit entry must be a mapping, got {type(data).__name__}")
        for required in ('name', 'kind'):
            if required not in data:
                raise ConfigError(f"Unit missing required field: {required}")
        name = data['name']
        if not isinstance(name, str) or not _NAME.match(name):
            raise ConfigError(f"Invalid unit name {name!r}: use letters, digits, '-' and '_'")

        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list):
            raise ConfigError(f"Unit '{name}': depends_on must be a list")

        manifests = []
        for entry in data.get('manifests') or []:
            manifests.append(_manifest_source(entry, name, base_dir))

        edges = data.get('manifest_edges') or {}
        if not isinstance(edges, dict):
            raise ConfigError(f"Unit '{name}': manifest_edges must be a mapping")

        return cls(
            name=name,
            kind=str(data['kind']),
            depends_on=[str(d) for d in depends_on],
            inputs=dict(data.get('inputs') or {}),
            properties=dict(data.get('properties') or {}),
            manifests=manifests,
            manifest_edges={k: list(v) if isinstance(v, list) else [v] for k, v in edges.items()},
        )


def _manifest_source(entry: Any, unit: str, base_dir: Optional[Path]) -> ManifestSource:
    """Resolve a manifests[] entry: a path, or {inline: text}."""
    if isinstance(entry, dict) and 'inline' in entry:
        return ManifestSource(text=str(entry['inline']), source=f'{unit}:inline')
    if isinstance(entry, str):
        path = Path(entry)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        if not path.exists():
            raise ConfigError(f"Unit '{unit}': manifest not found: {path}")
        return ManifestSource(text=path.read_text(encoding='utf-8'), source=str(path))
    raise ConfigError(f"Unit '{unit}': manifest entry must be a path or {{inline: ...}}")


@dataclass
class StackDefinition:
    """All units of one deployment plus run settings."""
    name: str
    units: list[UnitDefinition]
    description: str = ''
    settings: RunSettings = field(default_factory=RunSettings)
    source_path: Optional[Path] = None

    def get_unit(self, name: str) -> UnitDefinition:
        """Get a unit definition by name.

        Raises:
            KeyError: If unit not declared
        """
        for unit in self.units:
            if unit.name == name:
                return unit
        raise KeyError(name)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'StackDefinition':
        """Create StackDefinition from dictionary.

        Raises:
            ConfigError: If the stack file is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported stack file schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        if 'name' not in data:
            raise ConfigError("Stack file missing required field: name")

        units_data = data.get('units')
        if not units_data or not isinstance(units_data, list):
            raise ConfigError("Stack file must declare a non-empty units list")

        base_dir = source_path.parent if source_path else None
        units = [UnitDefinition.from_dict(u, base_dir) for u in units_data]

        return cls(
            name=data['name'],
            description=data.get('description', ''),
            units=units,
            settings=RunSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )


def load_stackfile(path: Path) -> StackDefinition:
    """Load and validate a stack file.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if not path.exists():
        raise ConfigError(f"Stack file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Stack file {path} must contain a mapping")

    definition = StackDefinition.from_dict(data, source_path=path)
    logger.debug(f"Loaded stack '{definition.name}' with {len(definition.units)} unit(s) from {path}")
    return definition
