"""Network unit: the VPC every other unit is placed in."""

from stacks.base import BaseKind, ResourceNode, UnitInputs, register_kind


@register_kind('network')
class NetworkKind(BaseKind):
    """VPC spread over max_azs availability zones with NAT egress.

    Outputs:
        vpc.vpc_id, vpc.private_subnet_ids, vpc.public_subnet_ids
    """

    config_sections = ('vpc',)

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        return [
            ResourceNode(
                id='vpc',
                type='aws:ec2:Vpc',
                properties={
                    'name': f'{inputs.unit}-vpc',
                    'maxAzs': inputs.prop('vpc.max_azs', 2),
                    'natGateways': inputs.prop('vpc.nat_gateways', 1),
                },
                outputs={
                    'vpc_id': 'VpcId',
                    'private_subnet_ids': 'PrivateSubnetIds',
                    'public_subnet_ids': 'PublicSubnetIds',
                },
                wait_ready=True,
            ),
        ]
