"""Deployable unit kinds: shared types and the kind registry.

A kind turns a unit's resolved inputs and properties into the resource
nodes it creates, plus any built-in manifests it applies. Kinds are plain
classes registered by name and looked up from the stack file's `kind:`
field; they never reference other units directly, only the inputs the
orchestrator resolved for them from the output registry.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from config import ConfigError
from manifest import ManifestSource

_KINDS: dict[str, type] = {}


@dataclass
class ResourceNode:
    """A resource declared by a unit.

    Attributes:
        id: Node id, unique within the unit (used in output keys)
        type: Resource type tag passed to the provisioning API
        properties: Property tree; strings may use ${self.<node>.<attr>}
            to reference attributes of nodes created earlier in the unit
        depends_on: Node ids in the same unit that must be created first
        outputs: Output name -> attribute name read after creation
        exports: Output name -> flat export name in the output registry
        wait_ready: Block until the provisioning API reports ready
    """
    id: str
    type: str
    properties: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    exports: dict[str, str] = field(default_factory=dict)
    wait_ready: bool = False

    def __repr__(self) -> str:
        return f"ResourceNode({self.id}, type={self.type})"


@dataclass
class UnitInputs:
    """Everything a kind needs to synthesize one unit.

    Attributes:
        unit: Unit name
        inputs: Resolved input values (from the output registry)
        properties: Kind config section merged with unit overrides
        namespace: Full configuration namespace
    """
    unit: str
    inputs: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    namespace: dict[str, Any] = field(default_factory=dict)

    def require(self, name: str) -> Any:
        """Get a resolved input, failing clearly if it was not wired."""
        if name not in self.inputs:
            raise ConfigError(f"Unit '{self.unit}' requires input '{name}'")
        return self.inputs[name]

    def prop(self, path: str, default: Any = None) -> Any:
        """Get a dotted property path, or default."""
        node: Any = self.properties
        for part in path.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node


@runtime_checkable
class Deployable(Protocol):
    """Capability implemented by every unit kind."""

    config_sections: tuple[str, ...]

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        """Compute the resource nodes for a unit."""

    def manifests(self, inputs: UnitInputs) -> list[ManifestSource]:
        """Built-in manifest templates applied after the unit's resources."""

    def manifest_target(self, inputs: UnitInputs, outputs: dict[str, str]) -> Optional[str]:
        """Target system manifests are applied to (e.g. a cluster name)."""


def register_kind(name: str) -> Callable[[type], type]:
    """Class decorator registering a Deployable under a kind name."""
    def decorator(cls: type) -> type:
        if name in _KINDS:
            raise ValueError(f"Kind '{name}' is already registered")
        cls.kind = name
        _KINDS[name] = cls
        return cls
    return decorator


def get_kind(name: str) -> Deployable:
    """Instantiate the Deployable registered under name.

    Raises:
        ConfigError: If no kind has that name
    """
    cls: Optional[type] = _KINDS.get(name)
    if cls is None:
        raise ConfigError(f"Unknown unit kind '{name}'. Available: {', '.join(list_kinds())}")
    deployable: Deployable = cls()
    return deployable


def list_kinds() -> list[str]:
    return sorted(_KINDS)


class BaseKind:
    """Default behaviour shared by the built-in kinds."""

    kind = ''
    config_sections: tuple[str, ...] = ()

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        return []

    def manifests(self, inputs: UnitInputs) -> list[ManifestSource]:
        return []

    def manifest_target(self, inputs: UnitInputs, outputs: dict[str, str]) -> Optional[str]:
        target = inputs.inputs.get('cluster_name')
        return str(target) if target is not None else None
