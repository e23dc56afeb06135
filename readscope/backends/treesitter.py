"""
Grammar-based symbol extraction.

Uses tree-sitter for fast, error-aware parsing of Python, Rust, TypeScript
and JavaScript. Each language is described by a small rule table: which node
types are definitions, which of them own a body worth descending into, and
which wrapper nodes (decorators, exports) should lend their range to the
definition they wrap.
"""

from dataclasses import dataclass, field
from pathlib import PurePosixPath

import structlog
import tree_sitter_javascript as ts_javascript
import tree_sitter_python as ts_python
import tree_sitter_rust as ts_rust
import tree_sitter_typescript as ts_typescript
from tree_sitter import Language, Node, Parser

from readscope.backends.base import RawSymbol, span_from_points
from readscope.errors import ParseError
from readscope.symbols.models import Span, SymbolKind

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GrammarRules:
    """How to find symbols in one tree-sitter grammar."""

    definitions: dict[str, SymbolKind]
    containers: frozenset[str]
    wrappers: dict[str, str | None] = field(default_factory=dict)
    declarations: frozenset[str] = frozenset()


# Kinds whose nested functions are methods
METHOD_OWNERS = frozenset(
    {SymbolKind.CLASS, SymbolKind.STRUCT, SymbolKind.IMPL, SymbolKind.INTERFACE, SymbolKind.ENUM}
)

FUNCTION_VALUES = frozenset(
    {"arrow_function", "function_expression", "function", "generator_function"}
)

PYTHON_RULES = GrammarRules(
    definitions={
        "function_definition": SymbolKind.FUNCTION,
        "class_definition": SymbolKind.CLASS,
    },
    containers=frozenset({"class_definition"}),
    wrappers={"decorated_definition": "definition"},
)

RUST_RULES = GrammarRules(
    definitions={
        "function_item": SymbolKind.FUNCTION,
        "function_signature_item": SymbolKind.FUNCTION,
        "struct_item": SymbolKind.STRUCT,
        "union_item": SymbolKind.STRUCT,
        "enum_item": SymbolKind.ENUM,
        "trait_item": SymbolKind.INTERFACE,
        "impl_item": SymbolKind.IMPL,
        "mod_item": SymbolKind.MODULE,
        "const_item": SymbolKind.CONSTANT,
        "static_item": SymbolKind.VARIABLE,
        "type_item": SymbolKind.TYPE_ALIAS,
        "macro_definition": SymbolKind.MACRO,
    },
    containers=frozenset({"impl_item", "trait_item", "mod_item"}),
)

TYPESCRIPT_RULES = GrammarRules(
    definitions={
        "function_declaration": SymbolKind.FUNCTION,
        "generator_function_declaration": SymbolKind.FUNCTION,
        "function_signature": SymbolKind.FUNCTION,
        "class_declaration": SymbolKind.CLASS,
        "abstract_class_declaration": SymbolKind.CLASS,
        "interface_declaration": SymbolKind.INTERFACE,
        "type_alias_declaration": SymbolKind.TYPE_ALIAS,
        "enum_declaration": SymbolKind.ENUM,
        "method_definition": SymbolKind.METHOD,
        "method_signature": SymbolKind.METHOD,
        "abstract_method_signature": SymbolKind.METHOD,
        "internal_module": SymbolKind.MODULE,
        "module": SymbolKind.MODULE,
    },
    containers=frozenset(
        {
            "class_declaration",
            "abstract_class_declaration",
            "interface_declaration",
            "internal_module",
            "module",
        }
    ),
    wrappers={"export_statement": "declaration", "expression_statement": None},
    declarations=frozenset({"lexical_declaration", "variable_declaration"}),
)

JAVASCRIPT_RULES = GrammarRules(
    definitions={
        "function_declaration": SymbolKind.FUNCTION,
        "generator_function_declaration": SymbolKind.FUNCTION,
        "class_declaration": SymbolKind.CLASS,
        "method_definition": SymbolKind.METHOD,
    },
    containers=frozenset({"class_declaration"}),
    wrappers={"export_statement": "declaration"},
    declarations=frozenset({"lexical_declaration", "variable_declaration"}),
)

# extension -> (language key, rules)
LANGUAGES: dict[str, tuple[str, GrammarRules]] = {
    ".py": ("python", PYTHON_RULES),
    ".pyi": ("python", PYTHON_RULES),
    ".rs": ("rust", RUST_RULES),
    ".ts": ("typescript", TYPESCRIPT_RULES),
    ".mts": ("typescript", TYPESCRIPT_RULES),
    ".cts": ("typescript", TYPESCRIPT_RULES),
    ".tsx": ("tsx", TYPESCRIPT_RULES),
    ".js": ("javascript", JAVASCRIPT_RULES),
    ".jsx": ("javascript", JAVASCRIPT_RULES),
    ".mjs": ("javascript", JAVASCRIPT_RULES),
    ".cjs": ("javascript", JAVASCRIPT_RULES),
}


def _load_language(key: str) -> Language:
    if key == "python":
        return Language(ts_python.language())
    if key == "rust":
        return Language(ts_rust.language())
    if key == "typescript":
        return Language(ts_typescript.language_typescript())
    if key == "tsx":
        return Language(ts_typescript.language_tsx())
    return Language(ts_javascript.language())


class TreeSitterBackend:
    """
    Tree-sitter based symbol extraction.

    Usage:
        backend = TreeSitterBackend()
        raw = backend.extract("pkg/module.py", source)
    """

    name = "tree-sitter"

    def __init__(self) -> None:
        self._parsers: dict[str, Parser] = {}

    @staticmethod
    def supported_extensions() -> frozenset[str]:
        return frozenset(LANGUAGES)

    def supports_path(self, rel_path: str) -> bool:
        return PurePosixPath(rel_path).suffix.lower() in LANGUAGES

    def extract(self, rel_path: str, source: str) -> list[RawSymbol]:
        """
        Parse a file and list its definitions.

        Args:
            rel_path: Project-relative path (selects the grammar)
            source: File contents

        Returns:
            Raw symbols in tree order

        Raises:
            ParseError: If the extension is unsupported or the source has syntax errors
        """
        suffix = PurePosixPath(rel_path).suffix.lower()
        if suffix not in LANGUAGES:
            raise ParseError(rel_path, f"unsupported file type '{suffix}'")

        key, rules = LANGUAGES[suffix]
        source_bytes = source.encode("utf-8")
        tree = self._parser(key).parse(source_bytes)
        root = tree.root_node

        if root.has_error:
            line = self._first_error_line(root)
            raise ParseError(rel_path, f"syntax error near line {line}")

        out: list[RawSymbol] = []
        self._walk(root, rules, source_bytes, None, out)
        logger.debug("extracted_symbols", path=rel_path, language=key, count=len(out))
        return out

    def _parser(self, key: str) -> Parser:
        if key not in self._parsers:
            self._parsers[key] = Parser(_load_language(key))
        return self._parsers[key]

    def _walk(
        self,
        node: Node,
        rules: GrammarRules,
        source: bytes,
        owner: SymbolKind | None,
        out: list[RawSymbol],
    ) -> None:
        for child in node.named_children:
            self._visit(child, child, rules, source, owner, out)

    def _visit(
        self,
        node: Node,
        outer: Node,
        rules: GrammarRules,
        source: bytes,
        owner: SymbolKind | None,
        out: list[RawSymbol],
    ) -> None:
        """Record ``node`` if it is a definition, using ``outer`` for its range."""
        node_type = node.type

        if node_type in rules.wrappers:
            inner = self._unwrap(node, rules)
            if inner is not None:
                self._visit(inner, outer, rules, source, owner, out)
            return

        if node_type in rules.declarations:
            self._visit_declaration(node, outer, source, out)
            return

        kind = rules.definitions.get(node_type)
        if kind is None:
            return

        name = self._definition_name(node, source)
        if not name:
            return

        if kind == SymbolKind.FUNCTION and owner in METHOD_OWNERS:
            kind = SymbolKind.METHOD
        out.append(RawSymbol(name=name, kind=kind, span=self._span(outer)))

        if node_type in rules.containers:
            body = node.child_by_field_name("body")
            if body is not None:
                self._walk(body, rules, source, kind, out)

    def _unwrap(self, node: Node, rules: GrammarRules) -> Node | None:
        """Find the definition held by a wrapper node."""
        field_name = rules.wrappers[node.type]
        if field_name is not None:
            inner = node.child_by_field_name(field_name)
            if inner is not None:
                return inner
        for child in node.named_children:
            if child.type in rules.definitions or child.type in rules.declarations:
                return child
        return None

    def _visit_declaration(
        self,
        node: Node,
        outer: Node,
        source: bytes,
        out: list[RawSymbol],
    ) -> None:
        """Record `const f = () => ...` style function bindings."""
        declarators = [c for c in node.named_children if c.type == "variable_declarator"]
        for declarator in declarators:
            value = declarator.child_by_field_name("value")
            name_node = declarator.child_by_field_name("name")
            if value is None or name_node is None or value.type not in FUNCTION_VALUES:
                continue
            span_node = outer if len(declarators) == 1 else declarator
            out.append(
                RawSymbol(
                    name=self._text(name_node, source),
                    kind=SymbolKind.FUNCTION,
                    span=self._span(span_node),
                )
            )

    def _definition_name(self, node: Node, source: bytes) -> str | None:
        if node.type == "impl_item":
            return self._impl_name(node, source)
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return None
        return self._text(name_node, source)

    def _impl_name(self, node: Node, source: bytes) -> str | None:
        """Name an impl block after its type, and trait when present."""
        type_node = node.child_by_field_name("type")
        if type_node is None:
            return None
        trait_node = node.child_by_field_name("trait")
        if trait_node is not None:
            return f"impl {self._text(trait_node, source)} for {self._text(type_node, source)}"
        return f"impl {self._text(type_node, source)}"

    def _text(self, node: Node, source: bytes) -> str:
        """Get the text content of a node."""
        return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")

    def _span(self, node: Node) -> Span:
        start = node.start_point
        end = node.end_point
        return span_from_points(
            start_byte=node.start_byte,
            end_byte=node.end_byte,
            start_row=start[0],
            end_row=end[0],
            end_column=end[1],
        )

    def _first_error_line(self, node: Node) -> int:
        """Line of the first ERROR or missing node, depth-first."""
        if node.type == "ERROR" or node.is_missing:
            return node.start_point[0] + 1
        for child in node.children:
            if child.has_error or child.is_missing:
                return self._first_error_line(child)
        return node.start_point[0] + 1
