"""Cluster unit: managed Kubernetes cluster for the workload.

Besides the cluster and its Fargate profile, the unit applies two built-in
manifests once the cluster is ready: the workload Namespace and the
app-config ConfigMap that hands database and cache endpoints to the pods.
"""

from typing import Optional

from manifest import ManifestSource
from stacks.base import BaseKind, ResourceNode, UnitInputs, register_kind

APP_CONFIG_TEMPLATE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: ${cluster.workload_namespace}
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: app-config
  namespace: ${cluster.workload_namespace}
data:
  CDK_DEFAULT_ACCOUNT: "${account}"
  CDK_DEFAULT_REGION: "${region}"
  RDS_ENDPOINT: "${rds_endpoint}"
  REDIS_ENDPOINT: "${redis_endpoint}"
  DB_USERNAME: "${database.secret_username}"
"""


@register_kind('cluster')
class ClusterKind(BaseKind):
    """Kubernetes cluster with a Fargate profile for the workload namespace.

    Inputs:
        vpc_id, subnet_ids: Network placement
        rds_endpoint, redis_endpoint: Rendered into the app-config ConfigMap

    Outputs:
        cluster.cluster_name, cluster.endpoint, cluster.arn
    """

    config_sections = ('cluster', 'database')

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        subnet_ids = [s.strip() for s in str(inputs.require('subnet_ids')).split(',') if s.strip()]
        cluster_props = {
            'clusterName': inputs.prop('cluster.name', 'customer-service-cluster'),
            'version': str(inputs.prop('cluster.version', '1.34')),
            'vpcId': inputs.require('vpc_id'),
            'subnetIds': subnet_ids,
            'defaultCapacity': 0,
        }
        # Only some deployments pin an admin role; others rely on the creator
        if masters_role := inputs.prop('cluster.masters_role_arn'):
            cluster_props['mastersRoleArn'] = masters_role

        workload_ns = inputs.prop('cluster.workload_namespace', 'customer-service')
        return [
            ResourceNode(
                id='cluster',
                type='aws:eks:Cluster',
                properties=cluster_props,
                outputs={
                    'cluster_name': 'Name',
                    'endpoint': 'Endpoint',
                    'arn': 'Arn',
                },
                wait_ready=True,
            ),
            ResourceNode(
                id='fargate_profile',
                type='aws:eks:FargateProfile',
                properties={
                    'clusterName': '${self.cluster.Name}',
                    'fargateProfileName': inputs.prop(
                        'cluster.fargate_profile', 'customer-service-fargate-profile'),
                    'selectors': [{'namespace': workload_ns}],
                },
                depends_on=['cluster'],
                wait_ready=True,
            ),
        ]

    def manifests(self, inputs: UnitInputs) -> list[ManifestSource]:
        return [ManifestSource(text=APP_CONFIG_TEMPLATE, source=f'{inputs.unit}:app-config')]

    def manifest_target(self, inputs: UnitInputs, outputs: dict[str, str]) -> Optional[str]:
        return outputs.get('cluster.cluster_name')
