"""Pipeline unit: CI/CD pipeline that builds and deploys the workload."""

from stacks.base import BaseKind, ResourceNode, UnitInputs, register_kind


@register_kind('pipeline')
class PipelineKind(BaseKind):
    """Source -> build -> deploy pipeline feeding the cluster.

    Inputs:
        cluster_name: Passed to the deploy project as CLUSTER_NAME

    Outputs:
        pipeline.name, pipeline.arn, repository.uri
    """

    config_sections = ('cicd',)

    def synthesize(self, inputs: UnitInputs) -> list[ResourceNode]:
        cluster_name = inputs.require('cluster_name')
        owner = inputs.prop('cicd.github.owner')
        repo = inputs.prop('cicd.github.repo')
        build_image = inputs.prop('cicd.build.image', 'aws/codebuild/standard:7.0')
        stages = inputs.prop('cicd.pipeline.stages', {})
        actions = inputs.prop('cicd.pipeline.actions', {})

        return [
            ResourceNode(
                id='repository',
                type='aws:ecr:RepositoryLookup',
                properties={'repositoryName': inputs.prop('cicd.repository.name')},
                outputs={'uri': 'RepositoryUri'},
            ),
            ResourceNode(
                id='build_project',
                type='aws:codebuild:Project',
                properties={
                    'source': {'type': 'GITHUB', 'owner': owner, 'repo': repo},
                    'environment': {'buildImage': build_image, 'privileged': True},
                    'buildSpec': inputs.prop('cicd.build.build_spec_path'),
                },
                outputs={'name': 'Name'},
            ),
            ResourceNode(
                id='deploy_project',
                type='aws:codebuild:Project',
                properties={
                    'environment': {
                        'buildImage': build_image,
                        'environmentVariables': {'CLUSTER_NAME': cluster_name},
                    },
                    'buildSpec': inputs.prop('cicd.build.deploy_spec_path'),
                },
                outputs={'name': 'Name'},
            ),
            ResourceNode(
                id='pipeline',
                type='aws:codepipeline:Pipeline',
                properties={
                    'name': inputs.prop('cicd.pipeline.name', 'CustomerServicePipeline'),
                    'stages': [
                        {
                            'name': stages.get('source', 'Source'),
                            'actions': [{
                                'name': actions.get('source', 'GitHub_Source'),
                                'provider': 'GitHub',
                                'owner': owner,
                                'repo': repo,
                                'oauthTokenSecret': inputs.prop('cicd.github.token_secret'),
                                'output': 'source',
                            }],
                        },
                        {
                            'name': stages.get('build', 'Build'),
                            'actions': [{
                                'name': actions.get('build', 'Build'),
                                'provider': 'CodeBuild',
                                'project': '${self.build_project.Name}',
                                'input': 'source',
                                'outputs': ['build'],
                            }],
                        },
                        {
                            'name': stages.get('deploy', 'Deploy'),
                            'actions': [{
                                'name': actions.get('deploy', 'Deploy'),
                                'provider': 'CodeBuild',
                                'project': '${self.deploy_project.Name}',
                                'input': 'source',
                                'environmentVariables': {
                                    'IMAGE_URI': '${self.repository.RepositoryUri}',
                                },
                            }],
                        },
                    ],
                },
                depends_on=['repository', 'build_project', 'deploy_project'],
                outputs={'name': 'Name', 'arn': 'Arn'},
                wait_ready=True,
            ),
        ]
