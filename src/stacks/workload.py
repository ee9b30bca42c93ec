"""Workload unit: manifests applied to an existing cluster."""

from stacks.base import BaseKind, register_kind


@register_kind('workload')
class WorkloadKind(BaseKind):
    """Creates no resources of its own; applies the unit's manifests.

    Inputs:
        cluster_name: Cluster the manifests are applied to
    """

    config_sections = ('cluster',)
