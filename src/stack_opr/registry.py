"""Output registry for cross-unit wiring.

Units never reach into each other's resources. A unit publishes named
outputs once it is deployed, and later units resolve them by key:

    (unit, node, output) -> value

Keys are also addressable as the dotted string 'unit.node.output', and an
output may additionally be published under a flat export name (e.g.
'DatabaseSecretArn') for use in manifest placeholders.

Publishing is write-once: re-publishing an identical value is a no-op, a
different value is a ConflictingOutputError.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from common import DriverError

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r'^[A-Za-z0-9_-]+$')


class RegistryError(DriverError):
    """Base class for output registry errors."""


class ConflictingOutputError(RegistryError):
    """An output key or export name was published twice with different values."""


class UnresolvedOutputError(RegistryError):
    """An output key or export name was never published."""


@dataclass(frozen=True)
class OutputKey:
    """Identity of a published output.

    Attributes:
        unit: Name of the publishing unit
        node: Resource node id within that unit
        output: Output name on that node
    """
    unit: str
    node: str
    output: str

    def __post_init__(self) -> None:
        for part in (self.unit, self.node, self.output):
            if not isinstance(part, str) or not _SEGMENT.match(part):
                raise ValueError(f"Invalid output key segment: {part!r}")

    @classmethod
    def parse(cls, dotted: str) -> 'OutputKey':
        """Parse 'unit.node.output'.

        Raises:
            ValueError: If dotted does not have exactly three valid segments
        """
        parts = dotted.split('.')
        if len(parts) != 3:
            raise ValueError(f"Output key must be unit.node.output, got '{dotted}'")
        return cls(*parts)

    def __str__(self) -> str:
        return f'{self.unit}.{self.node}.{self.output}'


class OutputRegistry:
    """Process-wide table of published outputs.

    Safe to share between concurrently deploying units: the lock guards
    only the dict operations, never any I/O.
    """

    def __init__(self) -> None:
        self._values: dict[OutputKey, str] = {}
        self._exports: dict[str, OutputKey] = {}
        self._lock = threading.Lock()

    def publish(self, key: OutputKey, value: str, export: Optional[str] = None) -> None:
        """Publish an output value.

        Args:
            key: Output identity
            value: Resolved value (stored as a string)
            export: Optional flat name the value is also resolvable under

        Raises:
            ConflictingOutputError: If key (or export) already maps elsewhere
        """
        self.publish_many([(key, value, export)])

    def publish_many(self, items: Iterable[tuple[OutputKey, str, Optional[str]]]) -> None:
        """Publish a batch of (key, value, export) entries all or nothing.

        Every entry is checked against the table and against the rest of the
        batch before any is written, so a conflict leaves the registry as it
        was.

        Raises:
            ConflictingOutputError: If any key or export already maps elsewhere
        """
        batch = [(key, str(value), export) for key, value, export in items]
        with self._lock:
            values: dict[OutputKey, str] = {}
            exports: dict[str, OutputKey] = {}
            for key, value, export in batch:
                existing = values.get(key, self._values.get(key))
                if existing is not None and existing != value:
                    raise ConflictingOutputError(
                        f"Output {key} already published as '{existing}', refusing '{value}'")
                values[key] = value
                if export is not None:
                    owner = exports.get(export, self._exports.get(export))
                    if owner is not None and owner != key:
                        raise ConflictingOutputError(
                            f"Export '{export}' already published by {owner}, refusing {key}")
                    exports[export] = key
            new = [key for key in values if key not in self._values]
            self._values.update(values)
            self._exports.update(exports)
        for key in new:
            logger.debug(f"Published {key} = {values[key]}")

    def export_owner(self, name: str) -> Optional[OutputKey]:
        """Key published under export name, or None."""
        with self._lock:
            return self._exports.get(name)

    def resolve(self, key: OutputKey) -> str:
        """Return the value published for key.

        Raises:
            UnresolvedOutputError: If key was never published
        """
        with self._lock:
            value = self._values.get(key)
        if value is None:
            raise UnresolvedOutputError(f"Output {key} has not been published")
        return value

    def lookup(self, name: str) -> str:
        """Resolve an export name or a dotted 'unit.node.output' reference.

        Raises:
            UnresolvedOutputError: If name matches nothing published
        """
        with self._lock:
            exported = self._exports.get(name)
        if exported is not None:
            return self.resolve(exported)
        try:
            key = OutputKey.parse(name)
        except ValueError as e:
            raise UnresolvedOutputError(f"No export named '{name}'") from e
        return self.resolve(key)

    def has(self, key: OutputKey) -> bool:
        with self._lock:
            return key in self._values

    def outputs_for(self, unit: str) -> dict[str, str]:
        """All outputs of one unit as {'node.output': value}."""
        with self._lock:
            return {
                f'{k.node}.{k.output}': v
                for k, v in self._values.items() if k.unit == unit
            }

    def snapshot(self) -> dict[str, str]:
        """Copy of the whole table keyed by dotted key."""
        with self._lock:
            return {str(k): v for k, v in self._values.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
