#!/usr/bin/env python3
"""
AwaitGuard: Atomic Update Analysis

Detects assignments inside resumable functions (coroutines and generators)
that may be computed from a stale value:

    async def bump():
        counter.value = counter.value + await delta()

``counter.value`` is read, the coroutine suspends at ``await``, and the sum is
stored afterwards. Any other task that updated ``counter.value`` while this
one was suspended has its write silently lost.

The analysis runs on the events of a code path walk. Each segment tracks
the variables read since the last suspension point ("fresh") and the
variables read before a suspension point that has since been crossed
("outdated"). When an assignment's value finishes evaluating, every target
variable that is shared with other functions and outdated on the current
segments is reported.

License: MIT
Version: 1.0.0
"""

import ast
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Union

import astunparse

from awaitguard_cfg import CodePath, CodePathAnalyzer, CodePathListener, CodePathSegment
from awaitguard_scope import FUNCTION_NODES, Reference, Scope, ScopeManager, ScopeType, Variable

logger = logging.getLogger(__name__)

MESSAGE = (
    "Possible race condition: `{value}` might be reassigned based on an "
    "outdated value of `{value}`."
)

# Assignments written with a bare ``=``
PLAIN_ASSIGNMENTS = (ast.Assign, ast.AnnAssign, ast.NamedExpr)

SUSPENDING_EXPRESSIONS = (ast.Await, ast.Yield, ast.YieldFrom)


class PreconditionError(Exception):
    """Scope or code path input broke its contract"""


@dataclass(frozen=True)
class ResolvedVariable:
    """A variable bound in some scope of the analyzed module"""

    binding: Variable

    @property
    def name(self) -> str:
        return self.binding.name

    @property
    def scope(self) -> Scope:
        return self.binding.scope

    @property
    def references(self) -> List[Reference]:
        return self.binding.references


@dataclass(frozen=True)
class UnresolvedVariable:
    """Placeholder for a builtin or undefined name, shared per name"""

    name: str
    scope: Scope = field(compare=False, repr=False)
    references: List[Reference] = field(default_factory=list, compare=False, repr=False)


TrackedVariable = Union[ResolvedVariable, UnresolvedVariable]


@dataclass
class Violation:
    """A possibly non-atomic update"""

    assignment_text: str
    node: ast.AST
    lineno: int = 0
    col_offset: int = 0

    @property
    def message(self) -> str:
        return MESSAGE.format(value=self.assignment_text)

    def to_dict(self) -> Dict[str, object]:
        return {
            "target": self.assignment_text,
            "line": self.lineno,
            "column": self.col_offset,
            "message": self.message,
        }


# Reference indexing


def index_references(
    scope: Scope, out: Optional[Dict[ast.Name, Reference]] = None
) -> Dict[ast.Name, Reference]:
    """Map every identifier of a function to its reference, nested functions excluded"""
    if out is None:
        out = {}
    for reference in scope.references:
        out[reference.identifier] = reference
    for child in scope.child_scopes:
        if child.type is not ScopeType.FUNCTION:
            index_references(child, out)
    return out


# Names and escape


def _constant_key(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Constant) and isinstance(node.value, (str, int)):
        return str(node.value)
    return None


def reference_name(reference: Reference) -> str:
    """
    Dotted access path of a reference.

    ``obj`` -> ``"obj"``, ``obj.a.b`` -> ``"obj.a.b"``, ``obj["a"]`` ->
    ``"obj.a"``, ``obj[key]`` -> ``"obj.*"``.
    """
    names = [reference.identifier.id]
    node = reference.identifier
    while True:
        parent = reference.parent_of(node)
        if isinstance(parent, ast.Attribute) and parent.value is node:
            names.append(parent.attr)
        elif isinstance(parent, ast.Subscript) and parent.value is node:
            key = _constant_key(parent.slice)
            names.append(key if key is not None else "*")
        else:
            break
        node = parent
    return ".".join(names)


def is_local_without_escape(
    variable: TrackedVariable, name: str, shared_names: FrozenSet[str] = frozenset()
) -> bool:
    """True if ``variable`` under ``name`` is only ever touched by its own function"""
    if variable.name in shared_names:
        return False
    function_scope = variable.scope.variable_scope
    return all(
        reference.from_scope.variable_scope is function_scope
        for reference in variable.references
        if reference_name(reference) == name
    )


# Reference shape policies


def member_chain_write_expr(reference: Reference) -> Optional[ast.expr]:
    """
    Value stored through the attribute/subscript chain headed by ``reference``.

    ``a.b = value`` reads ``a`` but writes through it; the write is committed
    when ``value`` has been evaluated.
    """
    node = reference.identifier
    while True:
        parent = reference.parent_of(node)
        if isinstance(parent, ast.Assign) and any(target is node for target in parent.targets):
            return parent.value
        if isinstance(parent, (ast.AugAssign, ast.AnnAssign)) and parent.target is node:
            return parent.value
        if isinstance(parent, (ast.Attribute, ast.Subscript)) and parent.value is node:
            node = parent
            continue
        return None


def write_expr_of(reference: Reference) -> Optional[ast.expr]:
    return reference.write_expr or member_chain_write_expr(reference)


def counts_as_read(reference: Reference, write_expr: Optional[ast.expr]) -> bool:
    """A read, unless the reference only feeds a plain ``=`` assignment"""
    if not reference.is_read():
        return False
    if write_expr is None:
        return True
    return not isinstance(reference.parent_of(write_expr), PLAIN_ASSIGNMENTS)


def is_assignment_value(reference: Reference, write_expr: Optional[ast.expr]) -> bool:
    """``write_expr`` is the value of an assignment, not of an annotated declaration"""
    if write_expr is None:
        return False
    parent = reference.parent_of(write_expr)
    if isinstance(parent, (ast.Assign, ast.AugAssign, ast.NamedExpr)):
        return parent.value is write_expr
    if isinstance(parent, ast.AnnAssign):
        return parent.value is write_expr and not isinstance(parent.target, ast.Name)
    return False


def _contains_yield(function: ast.AST) -> bool:
    pending = [function.body] if isinstance(function, ast.Lambda) else list(function.body)
    while pending:
        node = pending.pop()
        if isinstance(node, (ast.Yield, ast.YieldFrom)):
            return True
        if isinstance(node, FUNCTION_NODES + (ast.ClassDef,)):
            continue
        pending.extend(ast.iter_child_nodes(node))
    return False


def is_resumable(node: ast.AST) -> bool:
    """Coroutines, generator functions and generator expressions"""
    if isinstance(node, (ast.AsyncFunctionDef, ast.GeneratorExp)):
        return True
    if isinstance(node, (ast.FunctionDef, ast.Lambda)):
        return _contains_yield(node)
    return False


# Segment state


@dataclass
class SegmentState:
    fresh: Set[TrackedVariable] = field(default_factory=set)
    outdated: Set[TrackedVariable] = field(default_factory=set)


class SegmentInfo:
    """Fresh and outdated reads per code path segment"""

    def __init__(self):
        self._states: Dict[str, SegmentState] = {}

    def state_of(self, segment: CodePathSegment) -> Optional[SegmentState]:
        return self._states.get(segment.id)

    def initialize(self, segment: CodePathSegment):
        """Start a segment with the union of its predecessors' states"""
        state = SegmentState()
        for prev_segment in segment.prev_segments:
            prev_state = self._states.get(prev_segment.id)
            if prev_state is not None:
                state.fresh.update(prev_state.fresh)
                state.outdated.update(prev_state.outdated)
        self._states[segment.id] = state

    def mark_as_read(self, segments: Iterable[CodePathSegment], variable: TrackedVariable):
        for segment in segments:
            state = self._states.get(segment.id)
            if state is not None:
                state.fresh.add(variable)

    def make_outdated(self, segments: Iterable[CodePathSegment]):
        for segment in segments:
            state = self._states.get(segment.id)
            if state is not None:
                state.outdated.update(state.fresh)
                state.fresh.clear()

    def is_outdated(self, segments: Iterable[CodePathSegment], variable: TrackedVariable) -> bool:
        for segment in segments:
            state = self._states.get(segment.id)
            if state is not None and variable in state.outdated:
                return True
        return False


# Tracker


@dataclass
class _Frame:
    code_path: CodePath
    reference_map: Optional[Dict[ast.Name, Reference]]


class AtomicUpdateTracker(CodePathListener):
    """
    Listens to a code path walk and collects non-atomic update violations.

    One tracker serves one walk; create a new one for every run.
    """

    def __init__(
        self,
        scope_manager: ScopeManager,
        source: Optional[str] = None,
        shared_names: Iterable[str] = (),
    ):
        self.scope_manager = scope_manager
        self.source = source
        self.shared_names = frozenset(shared_names)
        self.segment_info = SegmentInfo()
        self.violations: List[Violation] = []
        self.stats: Dict[str, int] = {
            "code_paths": 0,
            "resumable_functions": 0,
            "segments": 0,
            "back_edges": 0,
            "unreachable_segments": 0,
            "suspension_points": 0,
            "checked_assignments": 0,
        }
        self._stack: List[_Frame] = []
        self._unresolved: Dict[str, UnresolvedVariable] = {}
        self._pending: Dict[ast.expr, List[Reference]] = {}

    # Code path events

    def on_code_path_start(self, code_path: CodePath, node: ast.AST):
        scope = self.scope_manager.acquire(node)
        reference_map = None
        if scope is not None and scope.type is ScopeType.FUNCTION and is_resumable(node):
            reference_map = index_references(scope)
            self.stats["resumable_functions"] += 1
            logger.debug(
                "Checking resumable %s at line %s",
                getattr(node, "name", type(node).__name__),
                getattr(node, "lineno", "?"),
            )
        self.stats["code_paths"] += 1
        self._stack.append(_Frame(code_path, reference_map))

    def on_code_path_end(self, code_path: CodePath, node: ast.AST):
        if not self._stack or self._stack[-1].code_path is not code_path:
            raise PreconditionError(f"{code_path!r} ended but is not the active code path")
        self._stack.pop()
        self.stats["back_edges"] += len(code_path.looped_edges())
        self.stats["unreachable_segments"] += sum(
            1 for segment in code_path.traverse_segments() if not segment.reachable
        )

    def on_code_path_segment_start(self, segment: CodePathSegment):
        if not self._stack:
            raise PreconditionError(f"{segment!r} started outside of any code path")
        self.stats["segments"] += 1
        self.segment_info.initialize(segment)

    def on_node_enter(self, node: ast.AST):
        if isinstance(node, ast.Name):
            self._handle_identifier(node)

    def on_node_exit(self, node: ast.AST):
        if isinstance(node, (ast.expr, ast.AsyncWith)):
            self._handle_evaluated(node)

    # Variables

    def get_variable(self, reference: Reference) -> TrackedVariable:
        if reference.resolved is not None:
            return ResolvedVariable(reference.resolved)

        name = reference.name
        variable = self._unresolved.get(name)
        if variable is None:
            variable = UnresolvedVariable(name, self.scope_manager.global_scope)
            self._unresolved[name] = variable
        if not any(known is reference for known in variable.references):
            variable.references.append(reference)
        return variable

    # Handlers

    def _active_frame(self) -> Optional[_Frame]:
        if not self._stack or self._stack[-1].reference_map is None:
            return None
        return self._stack[-1]

    def _handle_identifier(self, node: ast.Name):
        frame = self._active_frame()
        reference = frame.reference_map.get(node) if frame else None
        if reference is None:
            return

        variable = self.get_variable(reference)
        name = reference_name(reference)
        write_expr = write_expr_of(reference)
        segments = frame.code_path.current_segments

        if counts_as_read(reference, write_expr):
            self.segment_info.mark_as_read(segments, variable)

        if is_assignment_value(reference, write_expr) and not is_local_without_escape(
            variable, name, self.shared_names
        ):
            self._pending.setdefault(write_expr, []).append(reference)

    def _handle_evaluated(self, node: ast.AST):
        frame = self._active_frame()
        if frame is None:
            return
        segments = frame.code_path.current_segments

        if self.is_suspension_point(node):
            self.stats["suspension_points"] += 1
            self.segment_info.make_outdated(segments)

        references = self._pending.pop(node, None)
        if not references:
            return
        self.stats["checked_assignments"] += 1
        for reference in references:
            if self.segment_info.is_outdated(segments, self.get_variable(reference)):
                self._report(reference, node)

    def is_suspension_point(self, node: ast.AST) -> bool:
        if isinstance(node, SUSPENDING_EXPRESSIONS + (ast.AsyncWith,)):
            return True
        parents = self.scope_manager.parents
        parent = parents.get(node)
        if isinstance(parent, ast.AsyncFor):
            return parent.iter is node
        if isinstance(parent, ast.comprehension) and parent.is_async and parent.iter is node:
            owner = parents.get(parent)
            # The first iterable of a generator expression is evaluated eagerly
            return not (isinstance(owner, ast.GeneratorExp) and owner.generators[0] is parent)
        if isinstance(parent, ast.withitem) and parent.context_expr is node:
            return isinstance(parents.get(parent), ast.AsyncWith)
        return False

    # Reporting

    def _target_of(self, reference: Reference, assignment: ast.AST) -> ast.AST:
        node = reference.identifier
        while True:
            parent = reference.parent_of(node)
            if parent is assignment:
                return node
            if parent is None:
                raise PreconditionError(f"{reference!r} is not inside its assignment")
            node = parent

    def _source_text(self, node: ast.AST) -> str:
        if self.source is not None:
            text = ast.get_source_segment(self.source, node)
            if text:
                return text
        return astunparse.unparse(node).strip()

    def _report(self, reference: Reference, write_expr: ast.expr):
        assignment = reference.parent_of(write_expr)
        if assignment is None:
            raise PreconditionError(f"write expression of {reference!r} has no assignment")
        target = self._target_of(reference, assignment)
        violation = Violation(
            assignment_text=self._source_text(target),
            node=assignment,
            lineno=getattr(assignment, "lineno", 0),
            col_offset=getattr(assignment, "col_offset", 0),
        )
        logger.debug("Line %d: %s", violation.lineno, violation.message)
        self.violations.append(violation)


# Entry points


def run_tracker(
    node: ast.AST,
    scope_manager: ScopeManager,
    source: Optional[str] = None,
    shared_names: Iterable[str] = (),
) -> AtomicUpdateTracker:
    """Walk ``node`` with a fresh tracker and return it"""
    tracker = AtomicUpdateTracker(scope_manager, source, shared_names)
    CodePathAnalyzer(tracker).analyze(node)
    return tracker


def analyze_function(
    function_node: ast.AST,
    scope_manager: ScopeManager,
    source: Optional[str] = None,
    shared_names: Iterable[str] = (),
) -> List[Violation]:
    """Violations in one function body and the functions nested in it"""
    return run_tracker(function_node, scope_manager, source, shared_names).violations


def analyze_module(
    tree: ast.AST, source: Optional[str] = None, shared_names: Iterable[str] = ()
) -> List[Violation]:
    return run_tracker(tree, ScopeManager(tree), source, shared_names).violations


def analyze_source(
    source: str, filename: str = "<unknown>", shared_names: Iterable[str] = ()
) -> List[Violation]:
    """Parse and analyze Python source; ``SyntaxError`` propagates"""
    tree = ast.parse(source, filename=filename)
    return analyze_module(tree, source, shared_names)
