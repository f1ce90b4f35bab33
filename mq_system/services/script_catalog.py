"""Loads rule scripts from the script store and vets them before they run.

Every script is parsed once. The literal arguments of its ``register_value``
calls name the device topics the engine must subscribe to; any that do not
look like ``path/path:value`` reject the script. Constructs that could swallow
the engine's abort signal reject it as well.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass
from types import CodeType

from mq_system.core.errors import ScriptError
from mq_system.core.topics import ValueReference, parse_value_reference
from mq_system.db.session import Store
from mq_system.repositories.scripts import ScriptSnapshot, list_scripts


REGISTER_FUNCTION = "register_value"
FORBIDDEN_NAMES = frozenset({"BaseException", "AbortRequested"})

logger = logging.getLogger("mq_system.catalog")


@dataclass(frozen=True)
class LoadedScript:
    name: str
    code: CodeType
    references: tuple[ValueReference, ...]

    @property
    def topics(self) -> set[str]:
        return {reference.status_topic for reference in self.references}


@dataclass(frozen=True)
class CatalogSnapshot:
    scripts: tuple[LoadedScript, ...]
    rejected: tuple[str, ...]

    @property
    def topics(self) -> list[str]:
        topics: set[str] = set()
        for script in self.scripts:
            topics |= script.topics
        return sorted(topics)


def scan_references(tree: ast.AST) -> list[ValueReference]:
    references: list[ValueReference] = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        if not (isinstance(node.func, ast.Name) and node.func.id == REGISTER_FUNCTION):
            continue
        for argument in node.args:
            if isinstance(argument, ast.Constant) and isinstance(argument.value, str):
                try:
                    references.append(parse_value_reference(argument.value))
                except ValueError as exc:
                    raise ScriptError(f"line {argument.lineno}: {exc}") from exc
    return references


class _AbortGuard(ast.NodeVisitor):
    def __init__(self) -> None:
        self._finally_depth = 0
        self._loop_depth_in_finally: list[int] = []

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            raise ScriptError(f"line {node.lineno}: bare 'except:' is not allowed")
        if not _is_plain_handler(node.type):
            raise ScriptError(f"line {node.lineno}: except clauses must name exception classes")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        _check_identifier(node.id, node.lineno)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        _check_identifier(node.attr, node.lineno)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str) and node.value in FORBIDDEN_NAMES:
            raise ScriptError(f"line {node.lineno}: {node.value!r} is not allowed")

    def visit_Try(self, node: ast.Try) -> None:
        for child in (*node.body, *node.handlers, *node.orelse):
            self.visit(child)
        self._finally_depth += 1
        self._loop_depth_in_finally.append(0)
        for child in node.finalbody:
            self.visit(child)
        self._loop_depth_in_finally.pop()
        self._finally_depth -= 1

    visit_TryStar = visit_Try

    def _visit_loop(self, node: ast.AST) -> None:
        if self._loop_depth_in_finally:
            self._loop_depth_in_finally[-1] += 1
            self.generic_visit(node)
            self._loop_depth_in_finally[-1] -= 1
        else:
            self.generic_visit(node)

    visit_For = _visit_loop
    visit_While = _visit_loop
    visit_AsyncFor = _visit_loop

    def visit_Return(self, node: ast.Return) -> None:
        if self._finally_depth:
            raise ScriptError(f"line {node.lineno}: 'return' inside 'finally' is not allowed")
        self.generic_visit(node)

    def visit_Break(self, node: ast.Break) -> None:
        self._check_loop_exit(node, "break")

    def visit_Continue(self, node: ast.Continue) -> None:
        self._check_loop_exit(node, "continue")

    def _check_loop_exit(self, node: ast.stmt, keyword: str) -> None:
        if self._loop_depth_in_finally and self._loop_depth_in_finally[-1] == 0:
            raise ScriptError(f"line {node.lineno}: '{keyword}' inside 'finally' is not allowed")

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        # a nested function body starts a fresh scope
        saved = (self._finally_depth, self._loop_depth_in_finally)
        self._finally_depth, self._loop_depth_in_finally = 0, []
        self.generic_visit(node)
        self._finally_depth, self._loop_depth_in_finally = saved

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_Lambda = visit_FunctionDef


def _is_plain_handler(node: ast.expr) -> bool:
    if isinstance(node, ast.Tuple):
        return all(_is_plain_handler(element) for element in node.elts)
    while isinstance(node, ast.Attribute):
        node = node.value
    return isinstance(node, ast.Name)


def _check_identifier(name: str, lineno: int) -> None:
    # aliases of BaseException start from one of these names
    if name in FORBIDDEN_NAMES:
        raise ScriptError(f"line {lineno}: {name} is not allowed")
    if name.startswith("__") and name.endswith("__"):
        raise ScriptError(f"line {lineno}: dunder name {name} is not allowed")


def check_script(name: str, body: str) -> tuple[ast.Module, list[ValueReference]]:
    """Parse ``body`` and return its tree and declared references; raise ``ScriptError`` when rejected."""
    try:
        tree = ast.parse(body, filename=f"<script {name}>", mode="exec")
    except SyntaxError as exc:
        raise ScriptError(f"syntax error line {exc.lineno}: {exc.msg}") from exc
    references = scan_references(tree)
    _AbortGuard().visit(tree)
    return tree, references


def load_script(snapshot: ScriptSnapshot) -> LoadedScript:
    tree, references = check_script(snapshot.name, snapshot.body)
    try:
        code = compile(tree, filename=f"<script {snapshot.name}>", mode="exec")
    except (SyntaxError, ValueError) as exc:
        raise ScriptError(f"compile failed: {exc}") from exc
    return LoadedScript(name=snapshot.name, code=code, references=tuple(references))


def load_catalog(store: Store) -> CatalogSnapshot:
    with store.session() as db:
        snapshots = list_scripts(db)

    loaded: list[LoadedScript] = []
    rejected: list[str] = []
    for snapshot in snapshots:
        try:
            loaded.append(load_script(snapshot))
        except ScriptError as exc:
            logger.warning("script rejected name=%s error=%s", snapshot.name, exc)
            rejected.append(snapshot.name)
    logger.info("script catalog loaded scripts=%s rejected=%s", len(loaded), len(rejected))
    return CatalogSnapshot(scripts=tuple(loaded), rejected=tuple(rejected))
