"""
The container application's resource descriptors, built from InfraLocals.

ECR repository -> task definition -> ECS service -> load balancer target
group, plus the network and IAM pieces they reference.
"""
import json
from pathlib import Path
from typing import List

from .models import ResourceDescriptor, ref
from ..core.config import InfraLocals
from ..core.exceptions import ValidationError


ECS_TASK_EXECUTION_POLICY_ARN = 'arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy'


def build_descriptors(locals: InfraLocals) -> List[ResourceDescriptor]:
    """Build the full descriptor set for the Fargate service behind an ALB."""
    subnets = [f"default_subnet.{_zone_name(zone)}" for zone in locals.availability_zones]

    descriptors = [
        ResourceDescriptor('ecr_repository', 'app', {'name': locals.ecr_repo_name}),
        ResourceDescriptor('ecs_cluster', 'app', {'name': locals.cluster_name}),
        ResourceDescriptor('default_vpc', 'default', {}),
    ]

    for zone in locals.availability_zones:
        descriptors.append(ResourceDescriptor(
            'default_subnet', _zone_name(zone), {'availability_zone': zone}
        ))

    descriptors += [
        ResourceDescriptor('iam_role', 'task_execution', {
            'name': locals.task_execution_role_name,
            'assume_role_policy': {
                'Version': '2012-10-17',
                'Statement': [{
                    'Effect': 'Allow',
                    'Principal': {'Service': 'ecs-tasks.amazonaws.com'},
                    'Action': 'sts:AssumeRole',
                }],
            },
        }),
        ResourceDescriptor('iam_role_policy_attachment', 'task_execution', {
            'role': ref('iam_role.task_execution', 'name'),
            'policy_arn': ECS_TASK_EXECUTION_POLICY_ARN,
        }),
        ResourceDescriptor('ecs_task_definition', 'app', {
            'family': locals.task_family,
            'requires_compatibilities': ['FARGATE'],
            'network_mode': 'awsvpc',
            'cpu': locals.task_cpu,
            'memory': locals.task_memory,
            'execution_role_arn': ref('iam_role.task_execution', 'arn'),
            'container_definitions': [{
                'name': locals.task_name,
                'image': f"{ref('ecr_repository.app', 'repository_url')}:{locals.image_tag}",
                'essential': True,
                'cpu': locals.task_cpu,
                'memory': locals.task_memory,
                'portMappings': [{
                    'containerPort': locals.container_port,
                    'hostPort': locals.container_port,
                }],
            }],
        }),
        ResourceDescriptor('security_group', 'load_balancer', {
            'ingress': [{'from_port': 80, 'to_port': 80, 'protocol': 'tcp', 'cidr_blocks': ['0.0.0.0/0']}],
            'egress': [{'from_port': 0, 'to_port': 0, 'protocol': '-1', 'cidr_blocks': ['0.0.0.0/0']}],
        }),
        ResourceDescriptor('lb', 'app', {
            'name': locals.load_balancer_name,
            'load_balancer_type': 'application',
            'subnets': [ref(subnet, 'id') for subnet in subnets],
            'security_groups': [ref('security_group.load_balancer', 'id')],
        }),
        ResourceDescriptor('lb_target_group', 'app', {
            'name': locals.target_group_name,
            'port': locals.container_port,
            'protocol': 'HTTP',
            'target_type': 'ip',
            'vpc_id': ref('default_vpc.default', 'id'),
            'health_check': {'matcher': '200,301,302', 'path': '/'},
        }),
        ResourceDescriptor('lb_listener', 'http', {
            'load_balancer_arn': ref('lb.app', 'arn'),
            'port': 80,
            'protocol': 'HTTP',
            'default_action': {'type': 'forward', 'target_group_arn': ref('lb_target_group.app', 'arn')},
        }),
        ResourceDescriptor('security_group', 'service', {
            'ingress': [{
                'from_port': 0, 'to_port': 0, 'protocol': '-1',
                'security_groups': [ref('security_group.load_balancer', 'id')],
            }],
            'egress': [{'from_port': 0, 'to_port': 0, 'protocol': '-1', 'cidr_blocks': ['0.0.0.0/0']}],
        }),
        ResourceDescriptor('ecs_service', 'app', {
            'name': locals.service_name,
            'cluster': ref('ecs_cluster.app', 'id'),
            'task_definition': ref('ecs_task_definition.app', 'arn'),
            'launch_type': 'FARGATE',
            'desired_count': locals.desired_count,
            'load_balancer': {
                'target_group_arn': ref('lb_target_group.app', 'arn'),
                'container_name': locals.task_name,
                'container_port': locals.container_port,
            },
            'network_configuration': {
                'subnets': [ref(subnet, 'id') for subnet in subnets],
                'assign_public_ip': True,
                'security_groups': [ref('security_group.service', 'id')],
            },
        }, depends_on=('lb_listener.http',)),
    ]
    return descriptors


def load_descriptors(path: Path) -> List[ResourceDescriptor]:
    """Load descriptors from a JSON file holding a list of descriptor objects.

    Raises:
        ValidationError: If the file is not valid JSON or an entry is malformed
    """
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read descriptors from {path}: {e}")

    if not isinstance(data, list):
        raise ValidationError(f"Descriptor file {path} must contain a JSON list")

    try:
        return [ResourceDescriptor.from_dict(item) for item in data]
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Malformed descriptor in {path}: {e}")


def save_descriptors(descriptors: List[ResourceDescriptor], path: Path) -> None:
    with open(path, 'w') as f:
        json.dump([d.to_dict() for d in descriptors], f, indent=2)


def _zone_name(zone: str) -> str:
    return zone.replace('-', '_')
