"""Monitoring unit: log group and dashboard for the cluster workload."""

from stacks.base import BaseKind, ResourceNode, UnitInputs, register_kind


@register_kind('monitoring')
class MonitoringKind(BaseKind):
    config_sections = ('logging',)

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        metric = {'namespace': 'AWS/EKS', 'metricName': 'pod_cpu_utilization'}
        if cluster_name := inputs.inputs.get('cluster_name'):
            metric['dimensions'] = {'ClusterName': cluster_name}

        return [
            ResourceNode(
                id='log_group',
                type='aws:logs:LogGroup',
                properties={
                    'logGroupName': inputs.prop('logging.log_group_name', '/aws/eks/customer-service'),
                    'retentionInDays': inputs.prop('logging.retention_days', 7),
                },
                outputs={'name': 'LogGroupName'},
            ),
            ResourceNode(
                id='dashboard',
                type='aws:cloudwatch:Dashboard',
                properties={
                    'dashboardName': inputs.prop('logging.dashboard_name', 'customer-service-eks'),
                    'widgets': [{
                        'type': 'graph',
                        'title': 'Pod CPU Utilization',
                        'left': [metric],
                    }],
                },
                outputs={'name': 'DashboardName'},
            ),
        ]
