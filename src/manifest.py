"""Manifest template engine.

A manifest source is a multi-document YAML stream. Each document describes
one resource in the target system (kind, metadata, arbitrarily nested
properties) and may contain `${NAME}` placeholders in string values.

parse() splits a source into an ordered ManifestBundle; render() returns a
new bundle with every placeholder substituted, looking NAME up first in the
configuration namespace and then in the output registry. A placeholder that
resolves nowhere is a RenderError naming the document and field path.

Annotations understood on document metadata:
    stackdriver.io/depends-on: comma-separated ids (Kind/name) to wait for
    stackdriver.io/wait-ready: "true"/"false", overrides kind readiness
    stackdriver.io/optional:   "true" keeps the document off the critical path
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import yaml

from common import DriverError
from config import lookup
from stack_opr.registry import OutputRegistry, UnresolvedOutputError

logger = logging.getLogger(__name__)

ANNOTATION_DEPENDS_ON = 'stackdriver.io/depends-on'
ANNOTATION_WAIT_READY = 'stackdriver.io/wait-ready'
ANNOTATION_OPTIONAL = 'stackdriver.io/optional'

# `$${NAME}` escapes a literal `${NAME}`; group 3 is empty when `}` is missing
_PLACEHOLDER = re.compile(r'\$(\$?)\{([^}]*)(\}?)')
_VALID_NAME = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.\-]*$')

_TRUE = {'true', 'yes', '1'}


class TemplateError(DriverError):
    """Base class for manifest template errors."""


class MalformedManifestError(TemplateError):
    """Manifest source is not a valid sequence of documents."""


class RenderError(TemplateError):
    """A placeholder could not be substituted.

    Attributes:
        document: Id of the document being rendered
        path: Dotted field path of the offending value
        placeholder: The placeholder name
    """

    def __init__(self, document: str, path: str, placeholder: str, reason: str):
        super().__init__(
            f"Cannot render ${{{placeholder}}} at {document}:{path or '<root>'}: {reason}"
        )
        self.document = document
        self.path = path
        self.placeholder = placeholder


@dataclass
class ManifestDocument:
    """A single declarative document from a manifest source.

    Attributes:
        body: Full document tree (kind, metadata, spec/data/...)
        index: Position within the source stream
        source: Where the document was parsed from
    """
    body: dict
    index: int = 0
    source: str = '<inline>'

    @property
    def kind(self) -> str:
        return self.body['kind']

    @property
    def metadata(self) -> dict:
        return self.body.get('metadata') or {}

    @property
    def name(self) -> str:
        return self.metadata['name']

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.get('namespace')

    @property
    def annotations(self) -> dict:
        return self.metadata.get('annotations') or {}

    @property
    def id(self) -> str:
        return f'{self.kind}/{self.name}'

    @property
    def depends_on(self) -> list[str]:
        """Explicit dependency ids declared by annotation."""
        raw = self.annotations.get(ANNOTATION_DEPENDS_ON, '')
        if isinstance(raw, list):
            return [str(d).strip() for d in raw if str(d).strip()]
        return [d.strip() for d in str(raw).split(',') if d.strip()]

    @property
    def wait_ready(self) -> Optional[bool]:
        """Per-document readiness override, None when not annotated."""
        raw = self.annotations.get(ANNOTATION_WAIT_READY)
        if raw is None:
            return None
        return str(raw).lower() in _TRUE

    @property
    def optional(self) -> bool:
        return str(self.annotations.get(ANNOTATION_OPTIONAL, '')).lower() in _TRUE

    def __repr__(self) -> str:
        return f"ManifestDocument({self.id}, index={self.index})"


@dataclass
class ManifestBundle:
    """Ordered documents parsed from one manifest source."""
    documents: list[ManifestDocument] = field(default_factory=list)
    source: str = '<inline>'

    def __iter__(self) -> Iterator[ManifestDocument]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def ids(self) -> list[str]:
        return [d.id for d in self.documents]

    def get(self, doc_id: str) -> ManifestDocument:
        """Get a document by id.

        Raises:
            KeyError: If no document has that id
        """
        for doc in self.documents:
            if doc.id == doc_id:
                return doc
        raise KeyError(doc_id)

    def to_yaml(self) -> str:
        """Serialize back to a multi-document YAML stream."""
        return yaml.safe_dump_all(
            [d.body for d in self.documents],
            sort_keys=False,
            default_flow_style=False,
        )


@dataclass
class ManifestSource:
    """Raw manifest text plus a label for error messages."""
    text: str
    source: str = '<inline>'

    @classmethod
    def from_path(cls, path: Path) -> 'ManifestSource':
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise MalformedManifestError(f"Cannot read manifest {path}: {e}") from e
        return cls(text=text, source=str(path))


def parse(raw_text: str, source: str = '<inline>') -> ManifestBundle:
    """Split a multi-document source into a ManifestBundle.

    Empty documents (e.g. a trailing '---') are dropped. Source order and
    nesting depth are preserved.

    Raises:
        MalformedManifestError: On invalid YAML, a non-mapping document, a
            document without kind or metadata.name, or a duplicate id
    """
    try:
        raw_docs = list(yaml.safe_load_all(raw_text))
    except yaml.YAMLError as e:
        raise MalformedManifestError(f"Invalid YAML in {source}: {e}") from e

    documents: list[ManifestDocument] = []
    seen: set[str] = set()
    for position, data in enumerate(raw_docs):
        if data is None:
            continue
        where = f"{source} document #{position}"
        if not isinstance(data, dict):
            raise MalformedManifestError(
                f"{where} must be a mapping, got {type(data).__name__}")
        if not isinstance(data.get('kind'), str) or not data['kind']:
            raise MalformedManifestError(f"{where} missing required field: kind")
        metadata = data.get('metadata')
        if not isinstance(metadata, dict) or not metadata.get('name'):
            raise MalformedManifestError(f"{where} missing required field: metadata.name")
        if not isinstance(metadata['name'], str):
            raise MalformedManifestError(f"{where} metadata.name must be a string")

        doc = ManifestDocument(body=data, index=len(documents), source=source)
        if doc.id in seen:
            raise MalformedManifestError(f"{where} duplicates document id '{doc.id}'")
        seen.add(doc.id)
        documents.append(doc)

    logger.debug(f"Parsed {len(documents)} document(s) from {source}")
    return ManifestBundle(documents=documents, source=source)


def load_bundle(path: Path) -> ManifestBundle:
    """Read and parse a manifest file."""
    src = ManifestSource.from_path(path)
    return parse(src.text, source=src.source)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


class _Resolver:
    """Placeholder lookup: configuration namespace first, then registry."""

    def __init__(self, namespace: dict, registry: Optional[OutputRegistry]):
        self.namespace = namespace
        self.registry = registry

    def __call__(self, name: str, document: str, path: str) -> str:
        value = lookup(self.namespace, name)
        if value is not None:
            if isinstance(value, (dict, list)):
                raise RenderError(document, path, name,
                                  f"resolves to a {type(value).__name__}, not a scalar")
            return _to_text(value)
        if self.registry is not None:
            try:
                return self.registry.lookup(name)
            except UnresolvedOutputError as e:
                raise RenderError(document, path, name,
                                  'not in namespace or output registry') from e
        raise RenderError(document, path, name, 'not in namespace')


def _substitute(text: str, resolve: Callable[[str, str, str], str],
                document: str, path: str) -> str:
    def replace(match: re.Match) -> str:
        name = match.group(2)
        if not match.group(3):
            raise RenderError(document, path, name, 'unterminated placeholder')
        if match.group(1):
            return '${' + name + '}'
        if not _VALID_NAME.match(name):
            raise RenderError(document, path, name, 'invalid placeholder name')
        return resolve(name, document, path)

    return _PLACEHOLDER.sub(replace, text)


def render_value(value: Any, resolve: Callable[[str, str, str], str],
                 document: str = '<value>', path: str = '') -> Any:
    """Return a copy of value with placeholders substituted in string leaves.

    Mapping keys and non-string leaves are passed through unchanged.
    """
    if isinstance(value, dict):
        return {
            key: render_value(item, resolve, document, f'{path}.{key}' if path else str(key))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            render_value(item, resolve, document, f'{path}[{i}]')
            for i, item in enumerate(value)
        ]
    if isinstance(value, str):
        return _substitute(value, resolve, document, path)
    return copy.deepcopy(value)


def make_resolver(namespace: dict,
                  registry: Optional[OutputRegistry] = None) -> Callable[[str, str, str], str]:
    """Build the namespace-then-registry lookup used by render_value()."""
    return _Resolver(namespace, registry)


def render(bundle: ManifestBundle, namespace: dict,
           registry: Optional[OutputRegistry] = None) -> ManifestBundle:
    """Render every document of a bundle.

    Pure: the input bundle is not modified, and rendering the same bundle
    with the same namespace and registry contents yields identical output.

    Raises:
        RenderError: On the first placeholder that cannot be resolved
    """
    resolve = make_resolver(namespace, registry)
    rendered = []
    for doc in bundle:
        body = render_value(doc.body, resolve, document=doc.id)
        rendered.append(ManifestDocument(body=body, index=doc.index, source=doc.source))
    return ManifestBundle(documents=rendered, source=bundle.source)
