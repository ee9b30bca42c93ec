"""Stack orchestrator.

Walks the scheduler's layers and drives every unit through its lifecycle:

    declared -> synthesizing -> deployed | failed
    declared -> skipped            (a dependency failed, or the run was aborted)

Synthesizing a unit means resolving its inputs from the output registry,
computing its resource nodes, creating them, and rendering and applying
its manifests. Outputs are staged while the unit works and published to
the registry only once it is deployed, so no other unit can ever read the
outputs of a unit that failed.

Units within a layer deploy concurrently on a bounded worker pool; layers
run strictly one after the other.
"""

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Optional

from common import DriverError, RunCancelled
from config import ConfigError, deep_merge
from manifest import (
    ManifestBundle, MalformedManifestError, RenderError, make_resolver, parse, render,
    render_value,
)
from provisioner import Provisioner, ResourceSpec
from stack_opr.applier import ApplyError, DocumentApplier, submit
from stack_opr.graph import StackGraph, stable_order
from stack_opr.registry import OutputKey, OutputRegistry, UnresolvedOutputError
from stack_opr.state import CANCELLED, ApplyReport, RunReport, UnitState
from stackfile import StackDefinition, UnitDefinition
from stacks import Deployable, ResourceNode, UnitInputs, get_kind

logger = logging.getLogger(__name__)


def build_graph(definition: StackDefinition) -> StackGraph:
    """Register every unit two-phase: declare all, then link all."""
    graph = StackGraph()
    for unit in definition.units:
        graph.declare_unit(unit.name)
    for unit in definition.units:
        graph.link_unit(unit.name, unit.depends_on)
    return graph


class ScopedRegistry:
    """Read view of the output registry limited to a unit's dependencies.

    Dotted 'unit.node.output' references and export names that belong to
    units outside the reader's transitive dependencies are refused even if
    the value exists, since nothing orders the reader after that unit.
    """

    def __init__(self, registry: OutputRegistry, reader: str, allowed: set[str]):
        self.registry = registry
        self.reader = reader
        self.allowed = allowed

    def lookup(self, name: str) -> str:
        key = self.registry.export_owner(name)
        if key is not None:
            if key.unit not in self.allowed:
                raise UnresolvedOutputError(
                    f"Unit '{self.reader}' reads export '{name}' of '{key.unit}' "
                    f"but does not depend on '{key.unit}'")
            return self.registry.resolve(key)
        try:
            key = OutputKey.parse(name)
        except ValueError:
            return self.registry.lookup(name)
        if key.unit not in self.allowed:
            raise UnresolvedOutputError(
                f"Unit '{self.reader}' reads {key} but does not depend on '{key.unit}'")
        return self.registry.resolve(key)


@dataclass
class StackOrchestrator:
    """Deploys every unit of a stack definition in dependency order.

    Attributes:
        definition: Units and run settings
        provisioner: Provisioning API client
        namespace: Configuration namespace
        registry: Output registry shared by all units of the run
    """
    definition: StackDefinition
    provisioner: Provisioner
    namespace: dict = field(default_factory=dict)
    registry: OutputRegistry = field(default_factory=OutputRegistry)
    graph: StackGraph = field(init=False, repr=False)
    _kinds: dict[str, Deployable] = field(init=False, repr=False)
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        """Build the graph and resolve unit kinds.

        Raises:
            ConfigError: If a unit names an unknown kind
            GraphError: On duplicate units or unknown dependencies
        """
        self.graph = build_graph(self.definition)
        self._kinds = {unit.name: get_kind(unit.kind) for unit in self.definition.units}

    @property
    def settings(self):
        return self.definition.settings

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def plan(self) -> list[list[str]]:
        """Deployment layers, without deploying anything.

        Raises:
            CycleError: If the units' dependencies contain a cycle
        """
        return self.graph.compute_order()

    def abort(self) -> None:
        """Request cooperative cancellation of the run.

        Queued units are skipped; in-flight units stop at their next
        submit or poll boundary; deployed units are left as they are.
        """
        logger.warning("[run] Abort requested, stopping at the next boundary")
        self._cancel.set()

    def run_all(self) -> RunReport:
        """Deploy every unit.

        Returns:
            RunReport with one UnitState per unit

        Raises:
            CycleError: Before anything is deployed, if no order exists
        """
        layers = self.graph.compute_order()
        report = RunReport(self.definition.name)
        report.layers = layers
        for unit in self.definition.units:
            report.add_unit(unit.name)
        report.start()

        with ThreadPoolExecutor(max_workers=self.settings.workers,
                                thread_name_prefix='unit') as pool:
            for index, layer in enumerate(layers):
                runnable = []
                for name in layer:
                    state = report.get_unit(name)
                    if self._cancel.is_set():
                        state.skip([CANCELLED])
                        continue
                    causes = self._upstream_causes(name, report)
                    if causes:
                        logger.warning(f"[run] Skipping unit '{name}': "
                                       f"caused by failed {', '.join(causes)}")
                        state.skip(causes)
                        continue
                    runnable.append(name)

                if not runnable:
                    continue
                logger.info(f"[run] Layer {index}: {', '.join(runnable)}")
                futures = [
                    pool.submit(self._deploy_unit,
                                self.definition.get_unit(name), report.get_unit(name))
                    for name in runnable
                ]
                for future in as_completed(futures):
                    future.result()

        report.cancelled = self._cancel.is_set()
        report.finish()
        logger.info(f"[run] '{report.name}' finished: "
                    f"{len(report.with_status('deployed'))} deployed, "
                    f"{len(report.with_status('failed'))} failed, "
                    f"{len(report.with_status('skipped'))} skipped")
        return report

    def _upstream_causes(self, name: str, report: RunReport) -> list[str]:
        causes: set[str] = set()
        for dep in self.graph.get_unit(name).depends_on:
            causes.update(report.get_unit(dep).root_causes)
        return sorted(causes)

    def _deploy_unit(self, unit: UnitDefinition, state: UnitState) -> None:
        """Drive one unit to a terminal state. Runs on a worker thread."""
        if self._cancel.is_set():
            state.skip([CANCELLED])
            return

        state.start()
        logger.info(f"[run] Synthesizing unit '{unit.name}' ({unit.kind})")
        try:
            outputs = self._synthesize(unit, state)
        except DriverError as e:
            logger.error(f"[run] Unit '{unit.name}' failed: {e}")
            state.fail(e)
            return

        state.complete(outputs)
        logger.info(f"[run] Unit '{unit.name}' deployed")

    def _synthesize(self, unit: UnitDefinition, state: UnitState) -> dict[str, str]:
        kind = self._kinds[unit.name]
        scoped = ScopedRegistry(self.registry, unit.name,
                                self.graph.dependencies_of(unit.name))
        resolve = make_resolver(self.namespace, scoped)

        try:
            inputs = render_value(unit.inputs, resolve, document=f'{unit.name}:inputs')
        except RenderError as e:
            if isinstance(e.__cause__, UnresolvedOutputError):
                raise UnresolvedOutputError(
                    f"Input '{e.path}' of unit '{unit.name}': {e.__cause__}") from e
            raise
        properties: dict[str, Any] = {
            section: copy.deepcopy(self.namespace.get(section, {}))
            for section in kind.config_sections
        }
        properties = deep_merge(
            properties,
            render_value(unit.properties, resolve, document=f'{unit.name}:properties'),
        )
        unit_inputs = UnitInputs(unit=unit.name, inputs=inputs,
                                 properties=properties, namespace=self.namespace)

        nodes = kind.synthesize(unit_inputs)
        staged, exports = self._create_nodes(unit.name, nodes)
        outputs = {f'{k.node}.{k.output}': v for k, v in staged.items()}

        sources = kind.manifests(unit_inputs) + list(unit.manifests)
        if sources:
            render_namespace = dict(self.namespace)
            render_namespace.update(inputs)
            render_namespace.update(outputs)
            bundles = self._render_manifests(unit, sources, render_namespace, scoped)
            target = kind.manifest_target(unit_inputs, outputs)
            self._apply_manifests(unit, state, bundles, target)

        self.registry.publish_many(
            (key, value, exports.get(key)) for key, value in staged.items())
        return outputs

    def _create_nodes(
        self, unit: str, nodes: list[ResourceNode],
    ) -> tuple[dict[OutputKey, str], dict[OutputKey, str]]:
        """Create a unit's resource nodes in dependency order.

        Returns:
            (staged outputs, export names) keyed by OutputKey
        """
        by_id: dict[str, ResourceNode] = {}
        for node in nodes:
            if node.id in by_id:
                raise ConfigError(f"Unit '{unit}' declares node '{node.id}' twice")
            by_id[node.id] = node
        for node in nodes:
            unknown = [d for d in node.depends_on if d not in by_id]
            if unknown:
                raise ConfigError(
                    f"Node '{unit}/{node.id}' depends on unknown node(s): {', '.join(unknown)}")

        order = stable_order([n.id for n in nodes], {n.id: n.depends_on for n in nodes})
        attributes: dict[str, dict] = {}
        staged: dict[OutputKey, str] = {}
        exports: dict[OutputKey, str] = {}

        def resolve_self(name: str, document: str, path: str) -> str:
            parts = name.split('.', 2)
            if len(parts) != 3 or parts[0] != 'self':
                raise RenderError(document, path, name,
                                  'resource properties may only use ${self.<node>.<attribute>}')
            attrs = attributes.get(parts[1])
            if attrs is None:
                raise RenderError(document, path, name,
                                  f"node '{parts[1]}' has not been created yet")
            try:
                return str(attrs[parts[2]])
            except KeyError:
                raise RenderError(document, path, name,
                                  f"node '{parts[1]}' reported no attribute '{parts[2]}'") from None

        for node_id in order:
            node = by_id[node_id]
            properties = render_value(node.properties, resolve_self,
                                      document=f'{unit}/{node.id}')
            spec = ResourceSpec(type=node.type, name=node.id, properties=properties, unit=unit)
            _, status = submit(
                self.provisioner, spec,
                wait_ready=node.wait_ready,
                timeout=self.settings.deploy_timeout,
                interval=self.settings.poll_interval,
                cancel=self._cancel,
                read_attributes=True,
            )
            attrs = status.attributes if status is not None else {}
            attributes[node.id] = attrs

            for output, attribute in node.outputs.items():
                try:
                    value = attrs[attribute]
                except KeyError:
                    raise ApplyError(f'{node.type}/{node.id}',
                                     f"attribute '{attribute}' missing after creation") from None
                key = OutputKey(unit, node.id, output)
                staged[key] = str(value)
                if output in node.exports:
                    exports[key] = node.exports[output]

        return staged, exports

    def _render_manifests(self, unit: UnitDefinition, sources, namespace: dict,
                          registry: ScopedRegistry) -> list[ManifestBundle]:
        """Parse and render every manifest source before anything is applied."""
        bundles = []
        seen: set[str] = set()
        for source in sources:
            bundle = render(parse(source.text, source=source.source), namespace, registry)
            duplicates = seen.intersection(bundle.ids)
            if duplicates:
                raise MalformedManifestError(
                    f"Unit '{unit.name}' declares {', '.join(sorted(duplicates))} "
                    f"in more than one manifest")
            seen.update(bundle.ids)
            bundles.append(bundle)

        unknown = sorted(set(unit.manifest_edges) - seen)
        if unknown:
            raise MalformedManifestError(
                f"Unit '{unit.name}' has manifest_edges for unknown document(s): "
                f"{', '.join(unknown)}")
        return bundles

    def _apply_manifests(self, unit: UnitDefinition, state: UnitState,
                         bundles: list[ManifestBundle], target: Optional[str]) -> None:
        """Check every bundle orders cleanly before applying any of them."""
        applier = DocumentApplier(
            provisioner=self.provisioner,
            readiness_kinds=self.settings.readiness_kinds,
            poll_interval=self.settings.poll_interval,
            timeout=self.settings.readiness_timeout,
            unit=unit.name,
            target=target,
            cancel=self._cancel,
        )
        planned = []
        seen: set[str] = set()
        for bundle in bundles:
            edges = {k: v for k, v in unit.manifest_edges.items() if k in bundle.ids}
            applier.order(bundle, extra_edges=edges, prior=seen)
            seen.update(bundle.ids)
            planned.append((bundle, edges))

        documents = ApplyReport()
        state.documents = documents
        for bundle, edges in planned:
            documents.merge(applier.apply(bundle, extra_edges=edges, prior=documents.results))

        if documents.cancelled:
            raise RunCancelled(f"Unit '{unit.name}' interrupted while applying manifests")
        if documents.critical_failures:
            raise ApplyError(
                unit.name,
                f"{len(documents.critical_failures)} manifest document(s) not applied: "
                f"{', '.join(documents.critical_failures)}")
