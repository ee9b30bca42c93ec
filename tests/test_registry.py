"""Tests for stack_opr.registry module."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from stack_opr.registry import (
    ConflictingOutputError, OutputKey, OutputRegistry, UnresolvedOutputError,
)


class TestOutputKey:
    """Tests for OutputKey."""

    def test_parse_and_str(self):
        key = OutputKey.parse('data.postgres.endpoint')
        assert key == OutputKey('data', 'postgres', 'endpoint')
        assert str(key) == 'data.postgres.endpoint'

    def test_parse_wrong_arity(self):
        with pytest.raises(ValueError, match="unit.node.output"):
            OutputKey.parse('data.endpoint')

    def test_invalid_segment(self):
        with pytest.raises(ValueError, match="segment"):
            OutputKey('data', 'post gres', 'endpoint')

    def test_hashable(self):
        assert len({OutputKey('a', 'b', 'c'), OutputKey.parse('a.b.c')}) == 1


class TestPublishResolve:
    """Tests for publish-once semantics."""

    def test_resolve_published(self):
        registry = OutputRegistry()
        key = OutputKey('DB', 'instance', 'endpoint')
        registry.publish(key, 'db.internal:5432')

        assert registry.resolve(key) == 'db.internal:5432'
        assert registry.has(key)
        assert len(registry) == 1

    def test_identical_republish_is_noop(self):
        registry = OutputRegistry()
        key = OutputKey('DB', 'instance', 'endpoint')
        registry.publish(key, 'db.internal')
        registry.publish(key, 'db.internal')

        assert registry.resolve(key) == 'db.internal'
        assert len(registry) == 1

    def test_conflicting_republish(self):
        registry = OutputRegistry()
        key = OutputKey('DB', 'instance', 'endpoint')
        registry.publish(key, 'db.internal')

        with pytest.raises(ConflictingOutputError, match="DB.instance.endpoint"):
            registry.publish(key, 'other.internal')
        assert registry.resolve(key) == 'db.internal'

    def test_values_are_stored_as_strings(self):
        registry = OutputRegistry()
        key = OutputKey('DB', 'instance', 'port')
        registry.publish(key, 5432)
        registry.publish(key, '5432')

        assert registry.resolve(key) == '5432'

    def test_resolve_unpublished(self):
        with pytest.raises(UnresolvedOutputError, match="a.b.c"):
            OutputRegistry().resolve(OutputKey('a', 'b', 'c'))


class TestExports:
    """Tests for flat export names."""

    def test_lookup_by_export_and_dotted(self):
        registry = OutputRegistry()
        key = OutputKey('data', 'postgres', 'secret_arn')
        registry.publish(key, 'arn:secret', export='DatabaseSecretArn')

        assert registry.lookup('DatabaseSecretArn') == 'arn:secret'
        assert registry.lookup('data.postgres.secret_arn') == 'arn:secret'

    def test_export_owned_by_other_key(self):
        registry = OutputRegistry()
        registry.publish(OutputKey('a', 'n', 'o'), 'x', export='Shared')
        with pytest.raises(ConflictingOutputError, match="Shared"):
            registry.publish(OutputKey('b', 'n', 'o'), 'x', export='Shared')

    def test_export_owner(self):
        registry = OutputRegistry()
        key = OutputKey('data', 'postgres', 'secret_arn')
        registry.publish(key, 'arn:secret', export='DatabaseSecretArn')

        assert registry.export_owner('DatabaseSecretArn') == key
        assert registry.export_owner('Nothing') is None

    def test_lookup_unknown_name(self):
        with pytest.raises(UnresolvedOutputError, match="Nothing"):
            OutputRegistry().lookup('Nothing')

    def test_lookup_unknown_dotted(self):
        with pytest.raises(UnresolvedOutputError):
            OutputRegistry().lookup('net.vpc.vpc_id')


class TestPublishMany:
    """Tests for batch publishing."""

    def test_publishes_every_entry(self):
        registry = OutputRegistry()
        registry.publish_many([
            (OutputKey('db', 'n', 'plain'), 'p', None),
            (OutputKey('db', 'n', 'secret'), 's', 'Shared'),
        ])

        assert registry.outputs_for('db') == {'n.plain': 'p', 'n.secret': 's'}
        assert registry.lookup('Shared') == 's'

    def test_export_conflict_writes_nothing(self):
        registry = OutputRegistry()
        registry.publish(OutputKey('first', 'n', 'secret'), 's1', export='Shared')

        with pytest.raises(ConflictingOutputError, match="Shared"):
            registry.publish_many([
                (OutputKey('second', 'n', 'plain'), 'p', None),
                (OutputKey('second', 'n', 'secret'), 's2', 'Shared'),
            ])

        assert not registry.has(OutputKey('second', 'n', 'plain'))
        assert len(registry) == 1
        assert registry.export_owner('Shared') == OutputKey('first', 'n', 'secret')

    def test_conflict_within_batch(self):
        registry = OutputRegistry()
        with pytest.raises(ConflictingOutputError):
            registry.publish_many([
                (OutputKey('a', 'n', 'x'), '1', 'Shared'),
                (OutputKey('a', 'n', 'y'), '2', 'Shared'),
            ])
        assert len(registry) == 0
        assert registry.export_owner('Shared') is None


class TestViews:
    """Tests for outputs_for and snapshot."""

    def test_outputs_for_unit(self):
        registry = OutputRegistry()
        registry.publish(OutputKey('net', 'vpc', 'vpc_id'), 'vpc-1')
        registry.publish(OutputKey('net', 'vpc', 'subnets'), 's-1,s-2')
        registry.publish(OutputKey('data', 'pg', 'endpoint'), 'pg')

        assert registry.outputs_for('net') == {'vpc.vpc_id': 'vpc-1', 'vpc.subnets': 's-1,s-2'}
        assert registry.snapshot() == {
            'net.vpc.vpc_id': 'vpc-1',
            'net.vpc.subnets': 's-1,s-2',
            'data.pg.endpoint': 'pg',
        }

    def test_concurrent_publishers(self):
        registry = OutputRegistry()

        def publish(unit):
            for i in range(50):
                registry.publish(OutputKey(unit, 'node', f'o{i}'), f'{unit}-{i}')

        threads = [threading.Thread(target=publish, args=(f'u{n}',)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 400
        assert registry.resolve(OutputKey('u3', 'node', 'o17')) == 'u3-17'
