"""Deployable unit kinds.

Importing this package registers every built-in kind:

    network     VPC
    database    Postgres instance + Redis cache
    cluster     Kubernetes cluster + app-config manifests
    workload    Manifests applied to an existing cluster
    pipeline    CI/CD pipeline deploying to the cluster
    monitoring  Log group + dashboard
"""

from stacks.base import (
    BaseKind,
    Deployable,
    ResourceNode,
    UnitInputs,
    get_kind,
    list_kinds,
    register_kind,
)
from stacks import cluster, database, monitoring, network, pipeline, workload  # noqa: F401

__all__ = [
    'BaseKind',
    'Deployable',
    'ResourceNode',
    'UnitInputs',
    'get_kind',
    'list_kinds',
    'register_kind',
]
