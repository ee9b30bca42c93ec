"""Database unit: Postgres instance plus the Redis read-through cache."""

from stacks.base import BaseKind, ResourceNode, UnitInputs, register_kind


@register_kind('database')
class DatabaseKind(BaseKind):
    """Postgres instance and Redis replication group inside the VPC.

    Inputs:
        vpc_id: VPC to place both in
        subnet_ids: Comma-separated private subnet ids

    Outputs:
        postgres.endpoint, postgres.port, postgres.secret_arn
        (also exported as DatabaseSecretArn), redis.primary_endpoint
    """

    config_sections = ('database', 'redis')

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        vpc_id = inputs.require('vpc_id')
        subnet_ids = [s.strip() for s in str(inputs.require('subnet_ids')).split(',') if s.strip()]
        cluster_id = inputs.prop('redis.cluster_id', 'customer-cache')

        return [
            ResourceNode(
                id='redis_subnets',
                type='aws:elasticache:SubnetGroup',
                properties={
                    'description': 'Subnet group for Redis',
                    'subnetIds': subnet_ids,
                },
                outputs={'name': 'Ref'},
            ),
            ResourceNode(
                id='redis_sg',
                type='aws:ec2:SecurityGroup',
                properties={
                    'vpcId': vpc_id,
                    'description': f'Security group for Redis cluster {cluster_id}',
                    'allowAllOutbound': False,
                },
                outputs={'group_id': 'GroupId'},
            ),
            ResourceNode(
                id='redis',
                type='aws:elasticache:ReplicationGroup',
                properties={
                    'replicationGroupId': cluster_id,
                    'replicationGroupDescription': inputs.prop('redis.description', ''),
                    'cacheNodeType': inputs.prop('redis.node_type', 'cache.t3.micro'),
                    'engine': 'redis',
                    'numCacheClusters': inputs.prop('redis.num_nodes', 1),
                    'cacheSubnetGroupName': '${self.redis_subnets.Ref}',
                    'securityGroupIds': ['${self.redis_sg.GroupId}'],
                    'automaticFailoverEnabled': False,
                },
                depends_on=['redis_subnets', 'redis_sg'],
                outputs={'primary_endpoint': 'PrimaryEndPoint.Address'},
                wait_ready=True,
            ),
            ResourceNode(
                id='postgres',
                type='aws:rds:DBInstance',
                properties={
                    'engine': 'postgres',
                    'engineVersion': str(inputs.prop('database.engine_version', '17.6')),
                    'instanceClass': inputs.prop('database.instance_class', 'BURSTABLE3'),
                    'instanceSize': inputs.prop('database.instance_size', 'MICRO'),
                    'vpcId': vpc_id,
                    'subnetIds': subnet_ids,
                    'databaseName': inputs.prop('database.database_name', 'customers'),
                    'credentials': {
                        'generatedSecret': True,
                        'username': inputs.prop('database.secret_username', 'postgres'),
                    },
                    'deletionProtection': inputs.prop('database.deletion_protection', False),
                    'removalPolicy': 'destroy',
                    'storageEncrypted': True,
                },
                outputs={
                    'endpoint': 'Endpoint.Address',
                    'port': 'Endpoint.Port',
                    'secret_arn': 'SecretArn',
                },
                exports={'secret_arn': 'DatabaseSecretArn'},
                wait_ready=True,
            ),
        ]
