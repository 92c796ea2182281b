#!/usr/bin/env python3
"""
AwaitGuard Scope Resolver

Builds lexical scopes, variables and references for a parsed Python module,
following Python's binding rules (function-wide locals, ``global`` and
``nonlocal`` declarations, class bodies invisible to nested functions,
comprehensions evaluating their first iterable in the enclosing scope).

Every ``ast.Name`` occurrence becomes exactly one Reference, classified as
read and/or write. Writes that store the value of an assignment carry the
value expression as ``write_expr``.

License: MIT
Version: 1.0.0
"""

import ast
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)


class ScopeType(Enum):
    """Kinds of lexical scope"""

    MODULE = "module"
    FUNCTION = "function"
    CLASS = "class"
    COMPREHENSION = "comprehension"


# Nodes that open a scope with its own code path
FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.GeneratorExp)

# Comprehensions run inline in the enclosing function
COMPREHENSION_NODES = (ast.ListComp, ast.SetComp, ast.DictComp)


@dataclass(eq=False)
class Variable:
    """A binding of a name in one scope"""

    name: str
    scope: "Scope"
    references: List["Reference"] = field(default_factory=list)
    defs: List[ast.AST] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"Variable({self.name!r}, {self.scope.type.value})"


@dataclass(eq=False)
class Reference:
    """One occurrence of a name"""

    identifier: ast.Name
    from_scope: "Scope"
    read: bool = False
    write: bool = False
    write_expr: Optional[ast.expr] = None
    resolved: Optional[Variable] = None
    parents: Dict[ast.AST, ast.AST] = field(default_factory=dict, repr=False)

    @property
    def name(self) -> str:
        return self.identifier.id

    def parent_of(self, node: ast.AST) -> Optional[ast.AST]:
        return self.parents.get(node)

    def is_read(self) -> bool:
        return self.read

    def is_write(self) -> bool:
        return self.write

    def __repr__(self) -> str:
        flags = ("r" if self.read else "") + ("w" if self.write else "")
        return f"Reference({self.name!r}, {flags}, line {self.identifier.lineno})"


@dataclass(eq=False)
class Scope:
    """A lexical scope and everything declared or referenced directly in it"""

    type: ScopeType
    block: ast.AST
    upper: Optional["Scope"] = None
    child_scopes: List["Scope"] = field(default_factory=list)
    variables: Dict[str, Variable] = field(default_factory=dict)
    references: List[Reference] = field(default_factory=list)
    global_names: Set[str] = field(default_factory=set)
    nonlocal_names: Set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.upper is not None:
            self.upper.child_scopes.append(self)

    @property
    def variable_scope(self) -> "Scope":
        """Nearest enclosing module or function scope"""
        scope = self
        while scope.type not in (ScopeType.MODULE, ScopeType.FUNCTION):
            scope = scope.upper
        return scope

    def walk(self) -> Iterator["Scope"]:
        """Yield this scope and all descendant scopes, depth first"""
        yield self
        for child in self.child_scopes:
            yield from child.walk()

    def __repr__(self) -> str:
        name = getattr(self.block, "name", type(self.block).__name__)
        return f"Scope({self.type.value}, {name})"


class ScopeManager:
    """
    Scope analysis for one module.

    Bindings are collected for the whole tree before any reference is
    resolved, so a name assigned late in a function still makes every
    occurrence in that function local.
    """

    def __init__(self, tree: ast.AST):
        self.tree = tree
        self.parents: Dict[ast.AST, ast.AST] = {}
        self._scopes_by_node: Dict[ast.AST, Scope] = {}

        for parent in ast.walk(tree):
            for child in ast.iter_child_nodes(parent):
                self.parents[child] = parent

        builder = _ScopeBuilder(self)
        self.global_scope = builder.build(tree)
        self._resolve_all()

    @property
    def scopes(self) -> List[Scope]:
        return list(self.global_scope.walk())

    def acquire(self, node: ast.AST) -> Optional[Scope]:
        """Return the scope opened by ``node``, if any"""
        return self._scopes_by_node.get(node)

    def parent_of(self, node: ast.AST) -> Optional[ast.AST]:
        return self.parents.get(node)

    def _register(self, scope: Scope):
        self._scopes_by_node[scope.block] = scope

    def _resolve_all(self):
        unresolved = 0
        for scope in self.global_scope.walk():
            for reference in scope.references:
                reference.parents = self.parents
                variable = self._lookup(scope, reference.name)
                if variable is None:
                    unresolved += 1
                    continue
                reference.resolved = variable
                variable.references.append(reference)
        logger.debug("Resolved scopes, %d unresolved references", unresolved)

    def _lookup(self, start: Scope, name: str) -> Optional[Variable]:
        scope = start
        while scope is not None:
            # Class bodies are only visible to code directly inside them
            if scope is start or scope.type is not ScopeType.CLASS:
                if name in scope.global_names:
                    return self.global_scope.variables.get(name)
                if name not in scope.nonlocal_names and name in scope.variables:
                    return scope.variables[name]
            scope = scope.upper
        return None


class _ScopeBuilder(ast.NodeVisitor):
    """Single pass that creates scopes, bindings and unresolved references"""

    def __init__(self, manager: ScopeManager):
        self.manager = manager
        self.scope: Optional[Scope] = None

    def build(self, tree: ast.AST) -> Scope:
        if isinstance(tree, (ast.Module, ast.Interactive, ast.Expression)):
            root = self._open(ScopeType.MODULE, tree)
            self.generic_visit(tree)
        else:
            # A bare statement or expression, analyzed as if it were a module
            root = self._open(ScopeType.MODULE, tree)
            self.visit(tree)
        self.scope = None
        return root

    # Scope helpers

    def _open(self, scope_type: ScopeType, block: ast.AST) -> Scope:
        scope = Scope(scope_type, block, upper=self.scope)
        self.manager._register(scope)
        self.scope = scope
        return scope

    def _close(self, scope: Scope):
        self.scope = scope.upper

    def _bind(self, name: str, node: ast.AST, scope: Optional[Scope] = None) -> Optional[Variable]:
        scope = scope or self.scope
        if name in scope.global_names:
            scope = self._root()
        elif name in scope.nonlocal_names:
            return None
        variable = scope.variables.get(name)
        if variable is None:
            variable = Variable(name, scope)
            scope.variables[name] = variable
        variable.defs.append(node)
        return variable

    def _root(self) -> Scope:
        scope = self.scope
        while scope.upper is not None:
            scope = scope.upper
        return scope

    def _reference(self, node: ast.Name, read: bool, write: bool, write_expr=None):
        reference = Reference(
            identifier=node,
            from_scope=self.scope,
            read=read,
            write=write,
            write_expr=write_expr,
        )
        self.scope.references.append(reference)
        return reference

    # Names

    def visit_Name(self, node: ast.Name):
        if isinstance(node.ctx, ast.Load):
            self._reference(node, read=True, write=False)
        else:
            self._bind(node.id, node)
            self._reference(node, read=False, write=True)

    def _visit_target(self, target: ast.expr, write_expr: Optional[ast.expr], read=False):
        """Visit an assignment target whose stored value is ``write_expr``"""
        if isinstance(target, ast.Name):
            self._bind(target.id, target)
            self._reference(target, read=read, write=True, write_expr=write_expr)
        elif isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self._visit_target(element, write_expr)
        elif isinstance(target, ast.Starred):
            self._visit_target(target.value, write_expr)
        else:
            self.visit(target)

    # Assignments

    def visit_Assign(self, node: ast.Assign):
        for target in node.targets:
            self._visit_target(target, node.value)
        self.visit(node.value)

    def visit_AugAssign(self, node: ast.AugAssign):
        self._visit_target(node.target, node.value, read=True)
        self.visit(node.value)

    def visit_AnnAssign(self, node: ast.AnnAssign):
        if node.value is not None:
            self._visit_target(node.target, node.value)
        elif isinstance(node.target, ast.Name):
            self._bind(node.target.id, node.target)
        else:
            self.visit(node.target)
        self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)

    def visit_NamedExpr(self, node: ast.NamedExpr):
        # Walrus targets bind in the nearest scope that is not a comprehension
        # or generator expression
        scope = self.scope
        while scope.type is ScopeType.COMPREHENSION or isinstance(scope.block, ast.GeneratorExp):
            scope = scope.upper
        self._bind(node.target.id, node.target, scope)
        self._reference(node.target, read=False, write=True, write_expr=node.value)
        self.visit(node.value)

    # Declarations

    def visit_Global(self, node: ast.Global):
        self.scope.global_names.update(node.names)
        root = self._root()
        for name in node.names:
            if name not in root.variables:
                root.variables[name] = Variable(name, root)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self.scope.nonlocal_names.update(node.names)

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self._bind(alias.asname or alias.name.split(".")[0], node)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        for alias in node.names:
            if alias.name != "*":
                self._bind(alias.asname or alias.name, node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._bind(node.name, node)
        for stmt in node.body:
            self.visit(stmt)

    def visit_MatchAs(self, node):
        if node.pattern is not None:
            self.visit(node.pattern)
        if node.name:
            self._bind(node.name, node)

    def visit_MatchStar(self, node):
        if node.name:
            self._bind(node.name, node)

    def visit_MatchMapping(self, node):
        for key in node.keys:
            self.visit(key)
        for pattern in node.patterns:
            self.visit(pattern)
        if node.rest:
            self._bind(node.rest, node)

    # Functions and classes

    def _visit_arguments_outer(self, args: ast.arguments):
        """Defaults and annotations are evaluated where the function is defined"""
        for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)
        for arg in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if arg is not None and arg.annotation is not None:
                self.visit(arg.annotation)

    def _bind_arguments(self, args: ast.arguments):
        for arg in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if arg is not None:
                self._bind(arg.arg, arg)

    def _visit_function(self, node):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_arguments_outer(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        self._bind(node.name, node)

        scope = self._open(ScopeType.FUNCTION, node)
        self._bind_arguments(node.args)
        for stmt in node.body:
            self.visit(stmt)
        self._close(scope)

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_Lambda(self, node: ast.Lambda):
        self._visit_arguments_outer(node.args)
        scope = self._open(ScopeType.FUNCTION, node)
        self._bind_arguments(node.args)
        self.visit(node.body)
        self._close(scope)

    def visit_ClassDef(self, node: ast.ClassDef):
        for decorator in node.decorator_list:
            self.visit(decorator)
        for base in node.bases:
            self.visit(base)
        for keyword in node.keywords:
            self.visit(keyword)
        self._bind(node.name, node)

        scope = self._open(ScopeType.CLASS, node)
        for stmt in node.body:
            self.visit(stmt)
        self._close(scope)

    # Comprehensions

    def _visit_comprehension(self, node, scope_type: ScopeType, elements):
        generators = node.generators
        # The outermost iterable belongs to the enclosing scope
        self.visit(generators[0].iter)

        scope = self._open(scope_type, node)
        for index, generator in enumerate(generators):
            if index:
                self.visit(generator.iter)
            self._visit_target(generator.target, None)
            for condition in generator.ifs:
                self.visit(condition)
        for element in elements:
            self.visit(element)
        self._close(scope)

    def visit_ListComp(self, node: ast.ListComp):
        self._visit_comprehension(node, ScopeType.COMPREHENSION, [node.elt])

    visit_SetComp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp):
        self._visit_comprehension(node, ScopeType.COMPREHENSION, [node.key, node.value])

    def visit_GeneratorExp(self, node: ast.GeneratorExp):
        self._visit_comprehension(node, ScopeType.FUNCTION, [node.elt])
