"""Tests for resource descriptors, the dependency graph and the catalog."""

import json

import pytest

from infra_state.core.config import InfraLocals
from infra_state.core.exceptions import ValidationError
from infra_state.descriptors.catalog import build_descriptors, load_descriptors, save_descriptors
from infra_state.descriptors.graph import DescriptorGraph
from infra_state.descriptors.models import ResourceDescriptor, ref


def addresses(descriptors):
    return [d.address for d in descriptors]


class TestDescriptor:

    def test_address(self):
        assert ResourceDescriptor('ecs_cluster', 'app').address == 'ecs_cluster.app'

    def test_references_found_in_nested_attributes(self):
        descriptor = ResourceDescriptor('ecs_service', 'app', {
            'cluster': ref('ecs_cluster.app', 'id'),
            'load_balancer': {'target_group_arn': ref('lb_target_group.app', 'arn')},
            'subnets': [ref('subnet.a', 'id'), 'subnet-literal'],
        }, depends_on=('lb_listener.http',))

        assert descriptor.references() == {
            'ecs_cluster.app', 'lb_target_group.app', 'subnet.a', 'lb_listener.http'
        }

    def test_reference_inside_longer_string(self):
        descriptor = ResourceDescriptor('ecs_task_definition', 'app', {
            'image': f"{ref('ecr_repository.app', 'repository_url')}:latest",
        })
        assert descriptor.references() == {'ecr_repository.app'}

    def test_dict_round_trip(self):
        descriptor = ResourceDescriptor('lb', 'app', {'subnets': ('a', 'b')}, depends_on=('x.y',))
        data = descriptor.to_dict()

        assert data['attributes'] == {'subnets': ['a', 'b']}
        assert ResourceDescriptor.from_dict(data).address == 'lb.app'
        json.dumps(data)


class TestGraph:

    def test_dependencies_come_first(self):
        graph = DescriptorGraph([
            ResourceDescriptor('ecs_service', 'app', {'task': ref('ecs_task_definition.app')}),
            ResourceDescriptor('ecs_task_definition', 'app', {'image': ref('ecr_repository.app', 'url')}),
            ResourceDescriptor('ecr_repository', 'app'),
        ])

        assert addresses(graph.topological_order()) == [
            'ecr_repository.app', 'ecs_task_definition.app', 'ecs_service.app'
        ]

    def test_independent_descriptors_sorted_by_address(self):
        graph = DescriptorGraph([
            ResourceDescriptor('b', 'x'),
            ResourceDescriptor('a', 'x'),
            ResourceDescriptor('c', 'x'),
        ])
        assert addresses(graph.topological_order()) == ['a.x', 'b.x', 'c.x']

    def test_cycle_is_rejected(self):
        graph = DescriptorGraph([
            ResourceDescriptor('a', 'x', depends_on=('b.x',)),
            ResourceDescriptor('b', 'x', depends_on=('a.x',)),
            ResourceDescriptor('c', 'x'),
        ])
        with pytest.raises(ValidationError, match='a.x, b.x'):
            graph.topological_order()

    def test_unknown_reference_is_rejected(self):
        with pytest.raises(ValidationError, match='missing.thing'):
            DescriptorGraph([ResourceDescriptor('a', 'x', {'v': ref('missing.thing', 'id')})])

    def test_duplicate_address_is_rejected(self):
        with pytest.raises(ValidationError, match='Duplicate'):
            DescriptorGraph([ResourceDescriptor('a', 'x'), ResourceDescriptor('a', 'x')])

    def test_dependents(self):
        graph = DescriptorGraph([
            ResourceDescriptor('a', 'x'),
            ResourceDescriptor('b', 'x', depends_on=('a.x',)),
            ResourceDescriptor('c', 'x', depends_on=('a.x',)),
        ])
        assert graph.dependents('a.x') == {'b.x', 'c.x'}
        assert graph.dependencies('b.x') == {'a.x'}


class TestCatalog:

    def test_catalog_is_a_valid_graph(self):
        descriptors = build_descriptors(InfraLocals())
        order = addresses(DescriptorGraph(descriptors).topological_order())

        assert order.index('ecr_repository.app') < order.index('ecs_task_definition.app')
        assert order.index('ecs_task_definition.app') < order.index('ecs_service.app')
        assert order.index('lb_listener.http') < order.index('ecs_service.app')
        assert order.index('iam_role.task_execution') < order.index('ecs_task_definition.app')
        assert order[-1] == 'ecs_service.app'

    def test_catalog_uses_locals(self):
        locals_ = InfraLocals(
            ecr_repo_name='shop-repo',
            container_port=8080,
            availability_zones=['eu-west-1a', 'eu-west-1b'],
        )
        by_address = {d.address: d for d in build_descriptors(locals_)}

        assert by_address['ecr_repository.app'].attributes['name'] == 'shop-repo'
        assert by_address['lb_target_group.app'].attributes['port'] == 8080
        assert 'default_subnet.eu_west_1a' in by_address
        assert 'default_subnet.eu_west_1b' in by_address
        service = by_address['ecs_service.app']
        assert service.attributes['load_balancer']['container_port'] == 8080
        assert len(service.attributes['network_configuration']['subnets']) == 2

    def test_save_and_load(self, tmp_path):
        path = tmp_path / 'descriptors.json'
        descriptors = build_descriptors(InfraLocals())

        save_descriptors(descriptors, path)
        loaded = load_descriptors(path)

        assert addresses(loaded) == addresses(descriptors)
        assert loaded[0].attributes == descriptors[0].attributes

    def test_load_rejects_non_list(self, tmp_path):
        path = tmp_path / 'descriptors.json'
        path.write_text('{"kind": "a"}')
        with pytest.raises(ValidationError):
            load_descriptors(path)

    def test_load_rejects_malformed_entry(self, tmp_path):
        path = tmp_path / 'descriptors.json'
        path.write_text('[{"kind": "a"}]')
        with pytest.raises(ValidationError):
            load_descriptors(path)

    def test_load_rejects_invalid_json(self, tmp_path):
        path = tmp_path / 'descriptors.json'
        path.write_text('not json')
        with pytest.raises(ValidationError):
            load_descriptors(path)
