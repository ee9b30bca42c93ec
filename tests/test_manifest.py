"""Tests for the manifest template engine."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest import (
    MalformedManifestError, ManifestSource, RenderError, load_bundle, make_resolver,
    parse, render, render_value,
)
from stack_opr.registry import OutputKey, OutputRegistry

APP_BUNDLE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: customer-service
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: app-config
  namespace: customer-service
  annotations:
    stackdriver.io/depends-on: Namespace/customer-service
data:
  REGION: ${region}
  RDS_ENDPOINT: ${data.postgres.endpoint}
  REPLICAS: 3
  ENABLED: true
  LITERAL: $${region}
"""


class TestParse:
    """Tests for parse()."""

    def test_preserves_order_and_ids(self):
        bundle = parse(APP_BUNDLE, source='app.yaml')

        assert bundle.ids == ['Namespace/customer-service', 'ConfigMap/app-config']
        assert [d.index for d in bundle] == [0, 1]
        assert bundle.source == 'app.yaml'
        assert len(bundle) == 2

    def test_document_properties(self):
        doc = parse(APP_BUNDLE).get('ConfigMap/app-config')

        assert doc.kind == 'ConfigMap'
        assert doc.name == 'app-config'
        assert doc.namespace == 'customer-service'
        assert doc.depends_on == ['Namespace/customer-service']
        assert doc.wait_ready is None
        assert doc.optional is False

    def test_preserves_nesting_depth(self):
        bundle = parse("kind: Deployment\nmetadata: {name: web}\n"
                       "spec: {template: {spec: {containers: [{name: app, ports: [{containerPort: 80}]}]}}}\n")
        containers = bundle.get('Deployment/web').body['spec']['template']['spec']['containers']
        assert containers[0]['ports'][0]['containerPort'] == 80

    def test_drops_empty_documents(self):
        bundle = parse("---\nkind: A\nmetadata: {name: a}\n---\n---\n")
        assert bundle.ids == ['A/a']

    def test_annotations(self):
        bundle = parse(
            "kind: Job\n"
            "metadata:\n"
            "  name: migrate\n"
            "  annotations:\n"
            "    stackdriver.io/depends-on: 'ConfigMap/a, Secret/b'\n"
            "    stackdriver.io/wait-ready: 'false'\n"
            "    stackdriver.io/optional: 'true'\n"
        )
        doc = bundle.get('Job/migrate')

        assert doc.depends_on == ['ConfigMap/a', 'Secret/b']
        assert doc.wait_ready is False
        assert doc.optional is True

    def test_invalid_yaml(self):
        with pytest.raises(MalformedManifestError, match="Invalid YAML"):
            parse("kind: [unclosed\n")

    def test_non_mapping_document(self):
        with pytest.raises(MalformedManifestError, match="must be a mapping"):
            parse("- just\n- a list\n")

    def test_missing_kind(self):
        with pytest.raises(MalformedManifestError, match="kind"):
            parse("metadata: {name: x}\n")

    def test_missing_name(self):
        with pytest.raises(MalformedManifestError, match="metadata.name"):
            parse("kind: ConfigMap\nmetadata: {}\n")

    def test_duplicate_id(self):
        with pytest.raises(MalformedManifestError, match="ConfigMap/a"):
            parse("kind: ConfigMap\nmetadata: {name: a}\n---\nkind: ConfigMap\nmetadata: {name: a}\n")

    def test_get_unknown_document(self):
        with pytest.raises(KeyError):
            parse(APP_BUNDLE).get('Secret/nope')

    def test_load_bundle(self, tmp_path):
        path = tmp_path / 'app.yaml'
        path.write_text(APP_BUNDLE)

        bundle = load_bundle(path)
        assert bundle.source == str(path)
        assert len(bundle) == 2

    def test_source_from_missing_path(self, tmp_path):
        with pytest.raises(MalformedManifestError, match="Cannot read"):
            ManifestSource.from_path(tmp_path / 'missing.yaml')


class TestRender:
    """Tests for render()."""

    def _registry(self):
        registry = OutputRegistry()
        registry.publish(OutputKey('data', 'postgres', 'endpoint'), 'pg.internal')
        return registry

    def test_substitutes_namespace_and_registry(self):
        rendered = render(parse(APP_BUNDLE), {'region': 'us-east-1'}, self._registry())
        data = rendered.get('ConfigMap/app-config').body['data']

        assert data['REGION'] == 'us-east-1'
        assert data['RDS_ENDPOINT'] == 'pg.internal'

    def test_non_string_leaves_pass_through(self):
        rendered = render(parse(APP_BUNDLE), {'region': 'us-east-1'}, self._registry())
        data = rendered.get('ConfigMap/app-config').body['data']

        assert data['REPLICAS'] == 3
        assert data['ENABLED'] is True

    def test_escape_yields_literal_placeholder(self):
        rendered = render(parse(APP_BUNDLE), {'region': 'us-east-1'}, self._registry())
        assert rendered.get('ConfigMap/app-config').body['data']['LITERAL'] == '${region}'

    def test_pure(self):
        bundle = parse(APP_BUNDLE)
        render(bundle, {'region': 'us-east-1'}, self._registry())

        assert bundle.get('ConfigMap/app-config').body['data']['REGION'] == '${region}'

    def test_idempotent(self):
        bundle = parse(APP_BUNDLE)
        first = render(bundle, {'region': 'us-east-1'}, self._registry())
        second = render(bundle, {'region': 'us-east-1'}, self._registry())

        assert first.to_yaml() == second.to_yaml()

    def test_namespace_wins_over_registry(self):
        rendered = render(
            parse(APP_BUNDLE),
            {'region': 'eu-west-1', 'data.postgres.endpoint': 'override'},
            self._registry(),
        )
        assert rendered.get('ConfigMap/app-config').body['data']['RDS_ENDPOINT'] == 'override'

    def test_dotted_path_into_nested_namespace(self):
        bundle = parse("kind: A\nmetadata: {name: a}\nspec: {ns: '${cluster.workload_namespace}'}\n")
        rendered = render(bundle, {'cluster': {'workload_namespace': 'customers'}})
        assert rendered.get('A/a').body['spec']['ns'] == 'customers'

    def test_undefined_placeholder_fails_with_field_path(self):
        bundle = parse("kind: A\nmetadata: {name: a}\nspec:\n  items:\n    - value: 'x-${UNDEFINED}'\n")
        with pytest.raises(RenderError) as exc_info:
            render(bundle, {}, OutputRegistry())

        err = exc_info.value
        assert err.document == 'A/a'
        assert err.path == 'spec.items[0].value'
        assert err.placeholder == 'UNDEFINED'
        assert 'A/a:spec.items[0].value' in str(err)

    def test_undefined_without_registry(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {x: '${UNDEFINED}'}\n")
        with pytest.raises(RenderError, match="UNDEFINED"):
            render(bundle, {})

    def test_none_value_is_unresolved(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {x: '${account}'}\n")
        with pytest.raises(RenderError, match="account"):
            render(bundle, {'account': None})

    def test_mapping_value_is_not_a_scalar(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {x: '${cluster}'}\n")
        with pytest.raises(RenderError, match="not a scalar"):
            render(bundle, {'cluster': {'name': 'c'}})

    def test_invalid_placeholder_name(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {x: '${}'}\n")
        with pytest.raises(RenderError, match="invalid placeholder"):
            render(bundle, {})

    def test_booleans_render_lowercase(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {x: 'protect=${database.deletion_protection}'}\n")
        rendered = render(bundle, {'database': {'deletion_protection': False}})
        assert rendered.get('A/a').body['data']['x'] == 'protect=false'

    def test_placeholder_in_name_changes_id(self):
        bundle = parse("kind: Namespace\nmetadata: {name: '${ns}'}\n")
        assert render(bundle, {'ns': 'prod'}).ids == ['Namespace/prod']

    def test_mapping_keys_are_not_substituted(self):
        bundle = parse("kind: A\nmetadata: {name: a}\ndata: {'${key}': v}\n")
        rendered = render(bundle, {'key': 'replaced'})
        assert rendered.get('A/a').body['data'] == {'${key}': 'v'}

    def test_to_yaml_preserves_key_order(self):
        text = render(parse(APP_BUNDLE), {'region': 'r'}, self._registry()).to_yaml()
        assert text.index('apiVersion') < text.index('kind') < text.index('metadata')
        assert '\n---\n' in text


class TestRenderValue:
    """Tests for render_value() on plain trees."""

    def test_renders_nested_tree(self):
        resolve = make_resolver({'a': 'A', 'n': 2})
        value = {'list': ['${a}', {'deep': '${a}-${n}'}], 'num': 7}

        assert render_value(value, resolve) == {'list': ['A', {'deep': 'A-2'}], 'num': 7}

    def test_custom_resolver(self):
        seen = []

        def resolve(name, document, path):
            seen.append((name, document, path))
            return name.upper()

        assert render_value({'k': '${x}'}, resolve, document='doc') == {'k': 'X'}
        assert seen == [('x', 'doc', 'k')]

    def test_unterminated_placeholder(self):
        resolve = make_resolver({'FOO': 'f'})
        with pytest.raises(RenderError, match="unterminated placeholder") as exc_info:
            render_value({'k': 'x-${FOO'}, resolve, document='doc')
        assert exc_info.value.path == 'k'

        with pytest.raises(RenderError, match="unterminated placeholder"):
            render_value({'k': '$${FOO'}, resolve)

    def test_stray_dollar_and_braces_pass_through(self):
        resolve = make_resolver({'FOO': 'f'})
        assert render_value('$5 {x} $${FOO} ${FOO}', resolve) == '$5 {x} ${FOO} f'
