"""Dependency-aware manifest applier.

Applies the documents of a rendered bundle one at a time. The order is
source order, adjusted only where an explicit edge demands otherwise.
Edges come from:
- the stackdriver.io/depends-on annotation
- extra_edges passed by the caller
- an implicit edge from every namespaced document to its Namespace
  document when the same bundle declares it

Readiness-bearing kinds block after submission until describe() reports
ready; other kinds unblock dependents as soon as they are accepted. A
failure skips the failed document's transitive dependents only: documents
on unrelated branches keep applying.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Container, Iterable, Optional

from common import DriverError, ReadinessTimeoutError, RunCancelled
from manifest import ManifestBundle, ManifestDocument, MalformedManifestError
from provisioner import Provisioner, ProvisioningError, ResourceSpec, ResourceHandle, ResourceStatus
from readiness import wait_until_ready
from stack_opr.graph import CycleError, stable_order
from stack_opr.state import (
    APPLIED, CANCELLED, FAILED, SKIPPED, ApplyReport, DocumentResult,
)

logger = logging.getLogger(__name__)

DEFAULT_READINESS_KINDS = frozenset({
    'Namespace',
    'ServiceAccount',
    'CustomResourceDefinition',
    'Deployment',
    'StatefulSet',
    'DaemonSet',
    'Job',
})


class ApplyError(DriverError):
    """Submitting a resource, or waiting for it to become ready, failed.

    The provisioning failure or ReadinessTimeoutError is chained as
    __cause__.
    """

    def __init__(self, document: str, message: str):
        super().__init__(f"{document}: {message}")
        self.document = document


def submit(
    provisioner: Provisioner,
    spec: ResourceSpec,
    wait_ready: bool,
    timeout: float,
    interval: float,
    cancel: Optional[threading.Event] = None,
    read_attributes: bool = False,
) -> tuple[ResourceHandle, Optional[ResourceStatus]]:
    """Create one resource, optionally gating on readiness.

    Returns:
        (handle, status); status is the ready status when waited on, the
        single describe() result when only attributes were requested, and
        None otherwise.

    Raises:
        ApplyError: On a provisioning failure or readiness timeout
        RunCancelled: If cancel is set before or during the wait
    """
    label = f'{spec.type.split(":")[-1]}/{spec.name}'
    if cancel is not None and cancel.is_set():
        raise RunCancelled(f"Cancelled before submitting {label}")

    logger.info(f"[apply] Submitting {label}" + (f" to {spec.target}" if spec.target else ''))
    try:
        handle = provisioner.create(spec)
    except ProvisioningError as e:
        raise ApplyError(label, f"submission failed: {e}") from e

    status = None
    try:
        if wait_ready:
            status = wait_until_ready(provisioner, handle, timeout=timeout,
                                      interval=interval, cancel=cancel)
        elif read_attributes:
            status = provisioner.describe(handle)
    except ReadinessTimeoutError as e:
        raise ApplyError(label, str(e)) from e
    except ProvisioningError as e:
        raise ApplyError(label, str(e)) from e
    return handle, status


def _root_causes(result: DocumentResult) -> list[str]:
    if result.status == FAILED:
        return [result.id]
    return list(result.caused_by)


@dataclass
class DocumentApplier:
    """Applies rendered manifest bundles against the provisioning API.

    Attributes:
        provisioner: Provisioning API client
        readiness_kinds: Kinds whose dependents wait for observed readiness
        poll_interval: Seconds between readiness polls
        timeout: Maximum seconds to wait for one document to become ready
        unit: Owning unit name, passed through on submissions
        target: Target system (e.g. cluster name), passed through
        cancel: Cooperative cancellation flag
    """
    provisioner: Provisioner
    readiness_kinds: frozenset = field(default=DEFAULT_READINESS_KINDS)
    poll_interval: float = 5.0
    timeout: float = 300.0
    unit: str = ''
    target: Optional[str] = None
    cancel: Optional[threading.Event] = None

    def needs_ready(self, doc: ManifestDocument) -> bool:
        if doc.wait_ready is not None:
            return doc.wait_ready
        return doc.kind in self.readiness_kinds

    def edges(
        self,
        bundle: ManifestBundle,
        extra_edges: Optional[dict[str, Iterable[str]]] = None,
        prior: Optional[Container[str]] = None,
    ) -> dict[str, list[str]]:
        """Collect dependency edges for every document in the bundle.

        Edges may also point at prior, the ids of documents applied from
        earlier bundles.

        Raises:
            MalformedManifestError: If an edge names an unknown document
        """
        ids = set(bundle.ids)
        prior = prior or {}
        extra_edges = extra_edges or {}

        unknown_sources = sorted(set(extra_edges) - ids)
        if unknown_sources:
            raise MalformedManifestError(
                f"Edges given for unknown document(s) in {bundle.source}: "
                f"{', '.join(unknown_sources)}")

        namespaces = {doc.name for doc in bundle if doc.kind == 'Namespace'}
        deps: dict[str, list[str]] = {}
        for doc in bundle:
            wanted = list(doc.depends_on) + list(extra_edges.get(doc.id, ()))
            if doc.kind != 'Namespace' and doc.namespace in namespaces:
                wanted.append(f'Namespace/{doc.namespace}')
            for dep in wanted:
                if dep not in ids and dep not in prior:
                    raise MalformedManifestError(
                        f"{doc.id} in {bundle.source} depends on unknown document '{dep}'")
            deps[doc.id] = list(dict.fromkeys(wanted))
        return deps

    def order(
        self,
        bundle: ManifestBundle,
        extra_edges: Optional[dict[str, Iterable[str]]] = None,
        prior: Optional[Container[str]] = None,
    ) -> tuple[list[ManifestDocument], dict[str, list[str]]]:
        """Return (documents in application order, dependency edges).

        Raises:
            MalformedManifestError: On unknown edge targets or a cycle
        """
        deps = self.edges(bundle, extra_edges, prior)
        try:
            ordered_ids = stable_order(bundle.ids, deps)
        except CycleError as e:
            raise MalformedManifestError(
                f"Dependency cycle among documents in {bundle.source}: "
                f"{', '.join(e.units)}") from e
        return [bundle.get(doc_id) for doc_id in ordered_ids], deps

    def apply(
        self,
        bundle: ManifestBundle,
        extra_edges: Optional[dict[str, Iterable[str]]] = None,
        prior: Optional[dict[str, DocumentResult]] = None,
    ) -> ApplyReport:
        """Apply a rendered bundle document by document.

        Args:
            bundle: Rendered bundle
            extra_edges: Additional edges, document id -> ids it depends on
            prior: Results of earlier bundles that edges may point at

        Returns:
            ApplyReport with one DocumentResult per document

        Raises:
            MalformedManifestError: If the edges are invalid (nothing applied)
        """
        prior = prior or {}
        documents, deps = self.order(bundle, extra_edges, prior)
        report = ApplyReport()

        def result_of(doc_id: str) -> DocumentResult:
            return report.results.get(doc_id) or prior[doc_id]

        for doc in documents:
            if report.cancelled or (self.cancel is not None and self.cancel.is_set()):
                report.cancelled = True
                report.add(DocumentResult(doc.id, SKIPPED, caused_by=[CANCELLED],
                                          optional=doc.optional))
                continue

            blocked = [d for d in deps[doc.id] if result_of(d).status != APPLIED]
            if blocked:
                causes = sorted({c for d in blocked for c in _root_causes(result_of(d))})
                logger.warning(f"[apply] Skipping {doc.id}: depends on {', '.join(causes)}")
                report.add(DocumentResult(doc.id, SKIPPED, caused_by=causes,
                                          optional=doc.optional))
                continue

            spec = ResourceSpec(
                type=f'k8s:{doc.kind}',
                name=doc.name,
                properties=doc.body,
                unit=self.unit,
                target=self.target,
            )
            try:
                submit(self.provisioner, spec, wait_ready=self.needs_ready(doc),
                       timeout=self.timeout, interval=self.poll_interval, cancel=self.cancel)
            except RunCancelled as e:
                logger.warning(f"[apply] {doc.id} interrupted: {e}")
                report.cancelled = True
                report.add(DocumentResult(doc.id, FAILED, error=e, optional=doc.optional))
            except ApplyError as e:
                logger.error(f"[apply] {doc.id} failed: {e}")
                report.add(DocumentResult(doc.id, FAILED, error=e, optional=doc.optional))
            else:
                report.add(DocumentResult(doc.id, APPLIED, optional=doc.optional))

        return report
