"""Provisioning API boundary.

The core only ever calls create(), describe() (for readiness and to read
attributes after creation) and never delete(); teardown is left to the
caller. Two adapters ship with the driver:

- HttpProvisioner: talks to a provisioning service over HTTP
- DryRunProvisioner: records submissions, reports everything ready
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import requests

from common import DriverError

logger = logging.getLogger(__name__)

STATE_PENDING = 'pending'
STATE_READY = 'ready'
STATE_FAILED = 'failed'


class ProvisioningError(DriverError):
    """The provisioning API rejected a request or could not be reached."""


@dataclass
class ResourceSpec:
    """A resource submission.

    Attributes:
        type: Resource type tag (e.g. 'aws:rds:DBInstance', 'k8s:ConfigMap')
        name: Logical name, unique within its owning unit
        properties: Resource property tree
        unit: Name of the owning unit
        target: Optional target system (e.g. cluster name for manifests)
    """
    type: str
    name: str
    properties: dict = field(default_factory=dict)
    unit: str = ''
    target: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'properties': self.properties,
        }
        if self.unit:
            d['unit'] = self.unit
        if self.target is not None:
            d['target'] = self.target
        return d


@dataclass(frozen=True)
class ResourceHandle:
    """Opaque reference to a created resource."""
    id: str
    type: str = ''
    name: str = ''


@dataclass
class ResourceStatus:
    """Result of describe().

    Attributes:
        state: pending, ready or failed
        attributes: Attributes readable once the resource exists
        message: Optional human-readable detail
    """
    state: str = STATE_PENDING
    attributes: dict = field(default_factory=dict)
    message: str = ''

    @property
    def is_ready(self) -> bool:
        return self.state == STATE_READY

    @property
    def is_failed(self) -> bool:
        return self.state == STATE_FAILED


@runtime_checkable
class Provisioner(Protocol):
    """Protocol for provisioning API clients."""

    def create(self, spec: ResourceSpec) -> ResourceHandle:
        """Submit a resource for creation."""

    def describe(self, handle: ResourceHandle) -> ResourceStatus:
        """Report current state and attributes of a resource."""

    def delete(self, handle: ResourceHandle) -> None:
        """Delete a resource."""


class HttpProvisioner:
    """Provisioning client for a REST provisioning service.

    Endpoints:
        POST   {base_url}/resources        -> {"id": ...}
        GET    {base_url}/resources/{id}   -> {"state", "attributes", "message"}
        DELETE {base_url}/resources/{id}
    """

    def __init__(self, base_url: str, token: str = '', verify: bool = True,
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f'{self.base_url}{path}'
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ProvisioningError(f"Timeout calling {method} {url}") from e
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Cannot reach {url}: {e}") from e

        if resp.status_code >= 400:
            raise ProvisioningError(
                f"{method} {url} failed: {resp.status_code} - {resp.text[:200]}")
        return resp

    def _json(self, resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProvisioningError(f"Invalid JSON from {resp.url}: {e}") from e
        if not isinstance(data, dict):
            raise ProvisioningError(f"Unexpected response from {resp.url}: {data!r}")
        return data

    def create(self, spec: ResourceSpec) -> ResourceHandle:
        data = self._json(self._request('POST', '/resources', json=spec.to_dict()))
        if 'id' not in data:
            raise ProvisioningError(f"Create response for {spec.name} has no id")
        logger.debug(f"Created {spec.type} '{spec.name}' as {data['id']}")
        return ResourceHandle(id=str(data['id']), type=spec.type, name=spec.name)

    def describe(self, handle: ResourceHandle) -> ResourceStatus:
        data = self._json(self._request('GET', f'/resources/{handle.id}'))
        attributes = data.get('attributes')
        if attributes is None:
            attributes = {}
        elif not isinstance(attributes, dict):
            raise ProvisioningError(
                f"Unexpected attributes for resource {handle.id}: {attributes!r}")
        return ResourceStatus(
            state=data.get('state', STATE_PENDING),
            attributes=attributes,
            message=data.get('message', ''),
        )

    def delete(self, handle: ResourceHandle) -> None:
        self._request('DELETE', f'/resources/{handle.id}')


class _DryRunAttributes(dict):
    """Attribute map that invents a value for any attribute read."""

    def __init__(self, name: str):
        super().__init__()
        self.name = name

    def __missing__(self, key: str) -> str:
        return f'dryrun-{self.name}-{key}'


class DryRunProvisioner:
    """Provisioner that records submissions without touching anything.

    Every resource is reported ready immediately, with synthetic attribute
    values so that downstream outputs and placeholders still resolve.
    """

    def __init__(self) -> None:
        self.submitted: list[ResourceSpec] = []

    def create(self, spec: ResourceSpec) -> ResourceHandle:
        self.submitted.append(spec)
        print(f"  [dry-run] create {spec.type} '{spec.name}'"
              + (f" on {spec.target}" if spec.target else ''))
        return ResourceHandle(id=f'dryrun-{len(self.submitted)}', type=spec.type, name=spec.name)

    def describe(self, handle: ResourceHandle) -> ResourceStatus:
        return ResourceStatus(state=STATE_READY, attributes=_DryRunAttributes(handle.name))

    def delete(self, handle: ResourceHandle) -> None:
        raise ProvisioningError("DryRunProvisioner does not delete resources")
