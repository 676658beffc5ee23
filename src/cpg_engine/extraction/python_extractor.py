# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Python extraction adapter built on the standard ast module.

Entities reported per file:
- One MODULE entity spanning the whole file
- CLASS entities for class definitions (nested classes included)
- FUNCTION entities for functions and methods
- VARIABLE entities for module-level assignments

References reported per file:
- CALLS: f(), obj.method(), getattr(obj, "name")()
- IMPORTS: import x, from x import y (relative imports keep their dots)
- USES: base classes, decorators and loads of module-level names

Every entity carries its parent's local key, which becomes a CONTAINS edge
(module -> class -> method). Calls are attributed to the innermost enclosing
function, falling back to the class body or the module.
"""

import ast
import logging
import posixpath
from typing import List, Optional, Set

from cpg_engine.errors import ExtractionError
from cpg_engine.hashing import make_node_key
from cpg_engine.models import (
    CallType,
    EdgeType,
    ExtractedEntity,
    ExtractedReference,
    FileExtraction,
    NodeType,
    Parameter,
)

from .base import Extractor

logger = logging.getLogger(__name__)

# Nodes adding one decision point to cyclomatic complexity
_BRANCH_NODES = (
    ast.If,
    ast.For,
    ast.AsyncFor,
    ast.While,
    ast.ExceptHandler,
    ast.IfExp,
    ast.Assert,
    ast.comprehension,
)

_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)


def _first_line(docstring: Optional[str]) -> Optional[str]:
    if not docstring:
        return None
    stripped = docstring.strip()
    return stripped.splitlines()[0].strip() if stripped else None


def _unparse(node: Optional[ast.AST]) -> Optional[str]:
    if node is None:
        return None
    return ast.unparse(node)


def _complexity(func: ast.AST) -> int:
    """McCabe-style complexity of one function, ignoring nested scopes."""
    score = 1
    stack: List[ast.AST] = list(ast.iter_child_nodes(func))
    while stack:
        node = stack.pop()
        if isinstance(node, _SCOPE_NODES):
            continue
        if isinstance(node, _BRANCH_NODES):
            score += 1
            if isinstance(node, ast.comprehension):
                score += len(node.ifs)
        elif isinstance(node, ast.BoolOp):
            score += len(node.values) - 1
        elif isinstance(node, ast.Try):
            score += 1 if node.orelse else 0
        elif hasattr(ast, "match_case") and isinstance(node, ast.match_case):
            score += 1
        stack.extend(ast.iter_child_nodes(node))
    return score


def _parameters(args: ast.arguments) -> List[Parameter]:
    params: List[Parameter] = []
    positional = list(args.posonlyargs) + list(args.args)
    first_default = len(positional) - len(args.defaults)
    for i, arg in enumerate(positional):
        params.append(Parameter(arg.arg, _unparse(arg.annotation), i >= first_default))
    if args.vararg is not None:
        params.append(Parameter(args.vararg.arg, _unparse(args.vararg.annotation), True))
    for arg, default in zip(args.kwonlyargs, args.kw_defaults):
        params.append(Parameter(arg.arg, _unparse(arg.annotation), default is not None))
    if args.kwarg is not None:
        params.append(Parameter(args.kwarg.arg, _unparse(args.kwarg.annotation), True))
    return params


def _reference_name(node: ast.AST) -> Optional[str]:
    """Name referenced by a base class or decorator expression."""
    if isinstance(node, ast.Call):
        node = node.func
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _module_entity_name(file_path: str) -> str:
    stem = posixpath.splitext(posixpath.basename(file_path))[0]
    if stem == "__init__":
        parent = posixpath.basename(posixpath.dirname(file_path))
        return parent or stem
    return stem


def _module_level_names(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for stmt in tree.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(stmt.name)
        elif isinstance(stmt, (ast.Import, ast.ImportFrom)):
            for alias in stmt.names:
                if alias.name != "*":
                    names.add(alias.asname or alias.name.split(".")[0])
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                names.update(
                    n.id
                    for n in ast.walk(target)
                    if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Store)
                )
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            names.add(stmt.target.id)
    return names


class _Collector(ast.NodeVisitor):
    """Single pass over a module collecting entities and references."""

    def __init__(self, file_path: str, content: str, tree: ast.Module):
        self.file_path = file_path
        self.content = content
        self.lines = content.splitlines()
        self.entities: List[ExtractedEntity] = []
        self.references: List[ExtractedReference] = []
        self.global_names = _module_level_names(tree)

        end_line = max(len(self.lines), 1)
        module = ExtractedEntity(
            name=_module_entity_name(file_path),
            node_type=NodeType.MODULE,
            start_line=1,
            end_line=end_line,
            source_text=content,
            docstring=_first_line(ast.get_docstring(tree)),
            # Line 0 keeps the module key apart from a definition on line 1
            node_key=make_node_key(file_path, 0, _module_entity_name(file_path)),
        )
        self.entities.append(module)
        self._by_local_key = {module.local_key: module}
        # Containers for CONTAINS edges and owners for references
        self._scopes: List[ExtractedEntity] = [module]
        # Locally bound names per enclosing function
        self._locals: List[Set[str]] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _source(self, node: ast.AST) -> str:
        segment = ast.get_source_segment(self.content, node)
        if segment is not None:
            return segment
        start = getattr(node, "lineno", 1)
        end = getattr(node, "end_lineno", start) or start
        return "\n".join(self.lines[start - 1 : end])

    def _owner(self) -> ExtractedEntity:
        return self._scopes[-1]

    def _add_reference(
        self,
        target_name: str,
        edge_type: str,
        line: int,
        qualifier: Optional[str] = None,
        target_module: Optional[str] = None,
        call_type: Optional[str] = None,
        owner: Optional[ExtractedEntity] = None,
    ) -> None:
        source = owner or self._owner()
        self.references.append(
            ExtractedReference(
                source_local_key=source.local_key,
                target_name=target_name,
                edge_type=edge_type,
                line=line,
                qualifier=qualifier,
                target_module=target_module,
                call_type=call_type,
            )
        )

    def _is_shadowed(self, name: str) -> bool:
        return any(name in scope for scope in self._locals)

    def _add_entity(self, node: ast.AST, name: str, node_type: str, **extra) -> ExtractedEntity:
        existing = self._by_local_key.get(f"{node.lineno}:{name}")  # type: ignore[attr-defined]
        if existing is not None:
            # "x, x = ..." binds one entity
            return existing
        entity = ExtractedEntity(
            name=name,
            node_type=node_type,
            start_line=node.lineno,  # type: ignore[attr-defined]
            end_line=getattr(node, "end_lineno", None) or node.lineno,  # type: ignore[attr-defined]
            start_column=getattr(node, "col_offset", 0),
            end_column=getattr(node, "end_col_offset", 0) or 0,
            source_text=self._source(node),
            parent_local_key=self._owner().local_key,
            **extra,
        )
        self.entities.append(entity)
        self._by_local_key[entity.local_key] = entity
        return entity

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        bases = ", ".join(
            [ast.unparse(b) for b in node.bases] + [ast.unparse(k) for k in node.keywords]
        )
        entity = self._add_entity(
            node,
            node.name,
            NodeType.CLASS,
            signature=f"class {node.name}({bases})" if bases else f"class {node.name}",
            docstring=_first_line(ast.get_docstring(node)),
        )
        for expr in node.bases + node.decorator_list:
            name = _reference_name(expr)
            if name:
                self._add_reference(name, EdgeType.USES, expr.lineno, owner=entity)
            self.visit(expr)

        self._scopes.append(entity)
        for stmt in node.body:
            self.visit(stmt)
        self._scopes.pop()

    def _visit_function(self, node, is_async: bool) -> None:
        prefix = "async def" if is_async else "def"
        signature = f"{prefix} {node.name}({ast.unparse(node.args)})"
        if node.returns is not None:
            signature += f" -> {ast.unparse(node.returns)}"

        entity = self._add_entity(
            node,
            node.name,
            NodeType.FUNCTION,
            signature=signature,
            complexity=_complexity(node),
            parameters=_parameters(node.args),
            return_type=_unparse(node.returns),
            docstring=_first_line(ast.get_docstring(node)),
        )
        for expr in node.decorator_list:
            name = _reference_name(expr)
            if name:
                self._add_reference(name, EdgeType.USES, expr.lineno, owner=entity)
            self.visit(expr)

        # Annotations and defaults are evaluated in the enclosing scope
        self.visit(node.args)
        if node.returns is not None:
            self.visit(node.returns)

        bound = {a.arg for a in ast.walk(node.args) if isinstance(a, ast.arg)}
        bound.update(
            n.id
            for stmt in node.body
            for n in ast.walk(stmt)
            if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Store)
        )
        self._scopes.append(entity)
        self._locals.append(bound)
        for stmt in node.body:
            self.visit(stmt)
        self._locals.pop()
        self._scopes.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node, is_async=False)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node, is_async=True)

    def visit_arg(self, node: ast.arg) -> None:
        if node.annotation is not None:
            self.visit(node.annotation)

    def _module_level(self) -> bool:
        return len(self._scopes) == 1

    def visit_Assign(self, node: ast.Assign) -> None:
        if self._module_level():
            for target in node.targets:
                for name in ast.walk(target):
                    if isinstance(name, ast.Name) and isinstance(name.ctx, ast.Store):
                        self._add_entity(node, name.id, NodeType.VARIABLE)
        for target in node.targets:
            self.visit(target)
        self.visit(node.value)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if self._module_level() and isinstance(node.target, ast.Name):
            self._add_entity(node, node.target.id, NodeType.VARIABLE)
        self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._add_reference(
                "",
                EdgeType.IMPORTS,
                node.lineno,
                qualifier=alias.asname or alias.name.split(".")[0],
                target_module=alias.name,
            )

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        module = "." * node.level + (node.module or "")
        for alias in node.names:
            if alias.name == "*":
                self._add_reference("", EdgeType.IMPORTS, node.lineno, target_module=module)
                continue
            self._add_reference(
                alias.name,
                EdgeType.IMPORTS,
                node.lineno,
                qualifier=alias.asname or alias.name,
                target_module=module,
            )

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Name):
            self._add_reference(func.id, EdgeType.CALLS, node.lineno, call_type=CallType.DIRECT)
        elif isinstance(func, ast.Attribute):
            qualifier = ast.unparse(func.value)
            self._add_reference(
                func.attr,
                EdgeType.CALLS,
                node.lineno,
                qualifier=qualifier,
                call_type=CallType.METHOD,
            )
            self.visit(func.value)
        elif (
            isinstance(func, ast.Call)
            and isinstance(func.func, ast.Name)
            and func.func.id == "getattr"
            and len(func.args) >= 2
            and isinstance(func.args[1], ast.Constant)
            and isinstance(func.args[1].value, str)
        ):
            self._add_reference(
                func.args[1].value,
                EdgeType.CALLS,
                node.lineno,
                qualifier=ast.unparse(func.args[0]),
                call_type=CallType.DYNAMIC,
            )
            self.visit(func)
        else:
            self.visit(func)

        for arg in node.args:
            self.visit(arg)
        for keyword in node.keywords:
            self.visit(keyword.value)

    def visit_Name(self, node: ast.Name) -> None:
        if not isinstance(node.ctx, ast.Load):
            return
        if node.id not in self.global_names or self._is_shadowed(node.id):
            return
        self._add_reference(node.id, EdgeType.USES, node.lineno)


class PythonExtractor(Extractor):
    """Extraction adapter for Python source files."""

    def language(self) -> str:
        return "python"

    def extract(self, file_path: str, content: str) -> FileExtraction:
        try:
            tree = ast.parse(content, filename=file_path)
        except SyntaxError as e:
            raise ExtractionError(file_path, f"syntax error at line {e.lineno}: {e.msg}") from e
        except ValueError as e:
            # Source containing NUL bytes
            raise ExtractionError(file_path, str(e)) from e

        collector = _Collector(file_path, content, tree)
        try:
            for stmt in tree.body:
                collector.visit(stmt)
        except RecursionError as e:
            raise ExtractionError(file_path, "source nesting exceeds recursion limit") from e

        logger.debug(
            f"Extracted {len(collector.entities)} entities and "
            f"{len(collector.references)} references from {file_path}"
        )
        return FileExtraction(
            file_path=file_path,
            language=self.language(),
            entities=collector.entities,
            references=collector.references,
        )
