"""Execution state for stack orchestration.

Tracks per-unit lifecycle status and per-document apply status, and builds
the final run report. State lives only for the duration of one run; the
report can be written out but is never loaded back.

Unit lifecycle (monotonic):

    declared -> synthesizing -> deployed | failed
    declared -> skipped
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import DriverError

logger = logging.getLogger(__name__)

DECLARED = 'declared'
SYNTHESIZING = 'synthesizing'
DEPLOYED = 'deployed'
FAILED = 'failed'
SKIPPED = 'skipped'

APPLIED = 'applied'

CANCELLED = 'cancelled'

_TRANSITIONS = {
    DECLARED: {SYNTHESIZING, SKIPPED},
    SYNTHESIZING: {DEPLOYED, FAILED},
    DEPLOYED: set(),
    FAILED: set(),
    SKIPPED: set(),
}


class StateTransitionError(DriverError):
    """A unit was moved backwards or out of a terminal state."""


def _describe(error: Optional[BaseException]) -> Optional[str]:
    if error is None:
        return None
    return f"{type(error).__name__}: {error}"


@dataclass
class DocumentResult:
    """Apply outcome of one manifest document.

    Attributes:
        id: Document id (Kind/name)
        status: applied, failed or skipped
        error: First error for a failed document
        caused_by: Root-cause failed document ids for a skipped document
        optional: True if the document is off the unit's critical path
    """
    id: str
    status: str
    error: Optional[BaseException] = None
    caused_by: list[str] = field(default_factory=list)
    optional: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'id': self.id, 'status': self.status}
        if self.error is not None:
            d['error'] = _describe(self.error)
        if self.caused_by:
            d['caused_by'] = list(self.caused_by)
        if self.optional:
            d['optional'] = True
        return d


@dataclass
class ApplyReport:
    """Per-document results of one apply() call, in application order."""
    results: dict[str, DocumentResult] = field(default_factory=dict)
    cancelled: bool = False

    def add(self, result: DocumentResult) -> None:
        self.results[result.id] = result

    def merge(self, other: 'ApplyReport') -> None:
        self.results.update(other.results)
        self.cancelled = self.cancelled or other.cancelled

    def status_map(self) -> dict[str, str]:
        return {doc_id: r.status for doc_id, r in self.results.items()}

    def errors(self) -> dict[str, BaseException]:
        """First error per failed document."""
        return {doc_id: r.error for doc_id, r in self.results.items()
                if r.status == FAILED and r.error is not None}

    def with_status(self, status: str) -> list[str]:
        return [doc_id for doc_id, r in self.results.items() if r.status == status]

    @property
    def critical_failures(self) -> list[str]:
        """Non-optional documents that did not end applied."""
        return [doc_id for doc_id, r in self.results.items()
                if r.status != APPLIED and not r.optional]

    @property
    def ok(self) -> bool:
        return not self.critical_failures and not self.cancelled


@dataclass
class UnitState:
    """Per-unit execution state.

    Attributes:
        name: Unit name
        status: declared, synthesizing, deployed, failed or skipped
        error: Failure cause (failed units)
        caused_by: Root-cause unit names, or 'cancelled' (skipped units)
        outputs: Published outputs as {'node.output': value}
        documents: Manifest apply results
        started_at: Timestamp when synthesis started
        completed_at: Timestamp of the terminal transition
    """
    name: str
    status: str = DECLARED
    error: Optional[BaseException] = None
    caused_by: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    documents: ApplyReport = field(default_factory=ApplyReport)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def _move(self, new_status: str) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise StateTransitionError(
                f"Unit '{self.name}' cannot move from {self.status} to {new_status}")
        self.status = new_status

    def start(self) -> None:
        self._move(SYNTHESIZING)
        self.started_at = time.time()

    def complete(self, outputs: Optional[dict[str, str]] = None) -> None:
        self._move(DEPLOYED)
        self.completed_at = time.time()
        if outputs:
            self.outputs.update(outputs)

    def fail(self, error: BaseException) -> None:
        self._move(FAILED)
        self.completed_at = time.time()
        self.error = error

    def skip(self, caused_by: list[str]) -> None:
        self._move(SKIPPED)
        self.completed_at = time.time()
        self.caused_by = sorted(set(caused_by))

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    @property
    def root_causes(self) -> list[str]:
        """Names a dependent should report as its root cause."""
        if self.status == FAILED:
            return [self.name]
        if self.status == SKIPPED:
            return list(self.caused_by)
        return []

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'status': self.status,
        }
        if self.error is not None:
            d['error'] = _describe(self.error)
        if self.caused_by:
            d['caused_by'] = list(self.caused_by)
        if self.outputs:
            d['outputs'] = dict(self.outputs)
        if self.documents.results:
            d['documents'] = [r.to_dict() for r in self.documents.results.values()]
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


class RunReport:
    """Run-level state: every unit's outcome plus the layering used."""

    def __init__(self, name: str):
        self.name = name
        self.layers: list[list[str]] = []
        self._units: dict[str, UnitState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.cancelled = False

    def add_unit(self, name: str) -> UnitState:
        """Register a unit for tracking."""
        state = UnitState(name=name)
        self._units[name] = state
        return state

    def get_unit(self, name: str) -> UnitState:
        """Get unit state by name.

        Raises:
            KeyError: If unit not registered
        """
        return self._units[name]

    @property
    def units(self) -> dict[str, UnitState]:
        return dict(self._units)

    def with_status(self, status: str) -> list[str]:
        return [name for name, s in self._units.items() if s.status == status]

    @property
    def success(self) -> bool:
        return all(s.status == DEPLOYED for s in self._units.values())

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'success': self.success,
            'cancelled': self.cancelled,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'layers': [list(layer) for layer in self.layers],
            'units': {name: s.to_dict() for name, s in self._units.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def format_table(self) -> str:
        """Human-readable summary, one line per unit and document."""
        lines = [f"Run '{self.name}': {'SUCCEEDED' if self.success else 'FAILED'}"]
        for name, s in self._units.items():
            detail = ''
            if s.status == FAILED:
                detail = f"  ({_describe(s.error)})"
            elif s.status == SKIPPED:
                detail = f"  (caused by: {', '.join(s.caused_by)})"
            lines.append(f"  {name:<24} {s.status:<10}{detail}")
            for r in s.documents.results.values():
                doc_detail = ''
                if r.status == FAILED:
                    doc_detail = f"  ({_describe(r.error)})"
                elif r.status == SKIPPED:
                    doc_detail = f"  (caused by: {', '.join(r.caused_by)})"
                lines.append(f"    - {r.id:<36} {r.status}{doc_detail}")
        return '\n'.join(lines)

    def save(self, path: Path) -> Path:
        """Write the report as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(self.to_json())
        logger.debug(f"Saved run report to {path}")
        return path
