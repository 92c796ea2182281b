#!/usr/bin/env python3
"""
AwaitGuard Code Path Analyzer

Walks a Python AST depth first, in evaluation order, and partitions every
function body into code path segments: maximal straight-line regions
connected by directed edges. The segment graph of each code path is kept in
a networkx DiGraph.

The walk is the event source for analyses. A listener is told when a code
path (module or function body) starts and ends, when a new segment starts,
and when each node is entered and exited. Segments are created at the moment
the walk reaches them, so ``prev_segments`` only ever names segments that
already exist. Loop back edges are added afterwards and are marked as looped.

License: MIT
Version: 1.0.0
"""

import ast
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import networkx as nx

from awaitguard_scope import COMPREHENSION_NODES, FUNCTION_NODES

logger = logging.getLogger(__name__)

# Leaf node kinds that carry no code of their own
_SKIPPED_NODES = (ast.expr_context, ast.operator, ast.boolop, ast.unaryop, ast.cmpop)


@dataclass(eq=False)
class CodePathSegment:
    """A straight-line region of one code path"""

    id: str
    prev_segments: List["CodePathSegment"] = field(default_factory=list)
    reachable: bool = True

    def __repr__(self) -> str:
        state = "" if self.reachable else ", unreachable"
        return f"CodePathSegment({self.id}{state})"


@dataclass
class _LoopContext:
    continue_segment: CodePathSegment
    break_segments: List[CodePathSegment] = field(default_factory=list)


@dataclass
class _TryContext:
    thrown_segments: List[CodePathSegment] = field(default_factory=list)
    returned_segments: List[CodePathSegment] = field(default_factory=list)


class CodePath:
    """Control flow graph of one module or function body"""

    def __init__(self, path_id: str, node: ast.AST, upper: Optional["CodePath"] = None):
        self.id = path_id
        self.node = node
        self.upper = upper
        self.graph = nx.DiGraph()
        self.current_segments: List[CodePathSegment] = []
        self.initial_segment: Optional[CodePathSegment] = None
        self.returned_segments: List[CodePathSegment] = []
        self.thrown_segments: List[CodePathSegment] = []
        self._segment_numbers = itertools.count(1)
        self._loops: List[_LoopContext] = []
        self._tries: List[_TryContext] = []

    def add_segment(self, prev_segments: List[CodePathSegment], reachable: bool) -> CodePathSegment:
        segment = CodePathSegment(
            f"{self.id}_{next(self._segment_numbers)}", list(prev_segments), reachable
        )
        self.graph.add_node(segment.id, segment=segment)
        for prev in prev_segments:
            self.graph.add_edge(prev.id, segment.id, looped=False)
        if self.initial_segment is None:
            self.initial_segment = segment
        return segment

    def add_looped_edge(self, source: CodePathSegment, target: CodePathSegment):
        if source.reachable:
            self.graph.add_edge(source.id, target.id, looped=True)

    @property
    def segments(self) -> List[CodePathSegment]:
        return [data["segment"] for _, data in self.graph.nodes(data=True)]

    def segment(self, segment_id: str) -> CodePathSegment:
        return self.graph.nodes[segment_id]["segment"]

    def looped_edges(self) -> List[tuple]:
        return [(u, v) for u, v, looped in self.graph.edges(data="looped") if looped]

    def traverse_segments(self) -> Iterator[CodePathSegment]:
        """Yield segments in forward topological order, ignoring back edges"""
        forward = nx.subgraph_view(
            self.graph, filter_edge=lambda u, v: not self.graph.edges[u, v]["looped"]
        )
        for segment_id in nx.topological_sort(forward):
            yield self.segment(segment_id)

    def __repr__(self) -> str:
        return f"CodePath({self.id}, {type(self.node).__name__})"


class CodePathListener:
    """Receiver of code path events; every hook defaults to a no-op"""

    def on_code_path_start(self, code_path: CodePath, node: ast.AST):
        pass

    def on_code_path_end(self, code_path: CodePath, node: ast.AST):
        pass

    def on_code_path_segment_start(self, segment: CodePathSegment):
        pass

    def on_node_enter(self, node: ast.AST):
        pass

    def on_node_exit(self, node: ast.AST):
        pass


def _unique(segments: List[CodePathSegment]) -> List[CodePathSegment]:
    seen: Dict[int, CodePathSegment] = {}
    for segment in segments:
        seen.setdefault(id(segment), segment)
    return list(seen.values())


class CodePathAnalyzer:
    """
    Depth-first walker that builds code paths and notifies a listener.

    Function definitions, lambdas and generator expressions get their own
    code path. Their decorators, default values, annotations and (for
    generator expressions) outermost iterable are walked in the enclosing
    code path, where Python evaluates them. Class bodies and list, set and
    dict comprehensions run inline in the enclosing code path.
    """

    def __init__(self, listener: CodePathListener):
        self.listener = listener
        self.code_path: Optional[CodePath] = None
        self.code_paths: List[CodePath] = []
        self._path_numbers = itertools.count(1)

    def analyze(self, node: ast.AST) -> List[CodePath]:
        """Walk ``node`` (a module or a function-like node) and return its code paths"""
        if isinstance(node, FUNCTION_NODES):
            self._walk_function_body(node)
        else:
            self._start_code_path(node)
            self._walk(node)
            self._end_code_path(node)
        return self.code_paths

    # Code paths and segments

    def _start_code_path(self, node: ast.AST):
        code_path = CodePath(f"s{next(self._path_numbers)}", node, upper=self.code_path)
        self.code_path = code_path
        self.code_paths.append(code_path)
        logger.debug("Code path %s started at %s", code_path.id, type(node).__name__)
        self.listener.on_code_path_start(code_path, node)
        self._new_segment([], initial=True)

    def _end_code_path(self, node: ast.AST):
        code_path = self.code_path
        self.listener.on_code_path_end(code_path, node)
        self.code_path = code_path.upper

    def _new_segment(self, prev_segments: List[CodePathSegment], initial: bool = False) -> CodePathSegment:
        reachable_prevs = _unique([s for s in prev_segments if s.reachable])
        segment = self.code_path.add_segment(reachable_prevs, initial or bool(reachable_prevs))
        self.code_path.current_segments = [segment]
        self.listener.on_code_path_segment_start(segment)
        return segment

    def _new_unreachable_segment(self):
        self._new_segment([])

    def _current(self) -> List[CodePathSegment]:
        return list(self.code_path.current_segments)

    # Generic walk

    def _walk(self, node: ast.AST):
        if isinstance(node, _SKIPPED_NODES):
            return
        self.listener.on_node_enter(node)
        handler = getattr(self, "_walk_" + type(node).__name__, None)
        if handler is not None:
            handler(node)
        else:
            self._walk_fields(node)
        self.listener.on_node_exit(node)

    def _walk_fields(self, node: ast.AST):
        for _, value in ast.iter_fields(node):
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, ast.AST):
                        self._walk(item)
            elif isinstance(value, ast.AST):
                self._walk(value)

    def _walk_all(self, nodes):
        for node in nodes:
            if node is not None:
                self._walk(node)

    # Functions, classes and comprehensions

    def _walk_arguments_outer(self, args: ast.arguments):
        self._walk_all(args.defaults)
        self._walk_all(args.kw_defaults)
        for arg in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if arg is not None and arg.annotation is not None:
                self._walk(arg.annotation)

    def _walk_function_body(self, node: ast.AST):
        self._start_code_path(node)
        if isinstance(node, ast.Lambda):
            self._walk(node.body)
        elif isinstance(node, ast.GeneratorExp):
            self._walk_generators(node.generators, skip_first_iter=True)
            self._walk(node.elt)
        else:
            self._walk_all(node.body)
        self._end_code_path(node)

    def _walk_FunctionDef(self, node):
        self._walk_all(node.decorator_list)
        self._walk_arguments_outer(node.args)
        if node.returns is not None:
            self._walk(node.returns)
        self._walk_function_body(node)

    _walk_AsyncFunctionDef = _walk_FunctionDef

    def _walk_Lambda(self, node: ast.Lambda):
        self._walk_arguments_outer(node.args)
        self._walk_function_body(node)

    def _walk_GeneratorExp(self, node: ast.GeneratorExp):
        self._walk(node.generators[0].iter)
        self._walk_function_body(node)

    def _walk_ClassDef(self, node: ast.ClassDef):
        self._walk_all(node.decorator_list)
        self._walk_all(node.bases)
        self._walk_all(node.keywords)
        self._walk_all(node.body)

    def _walk_generators(self, generators, skip_first_iter=False):
        for index, generator in enumerate(generators):
            self.listener.on_node_enter(generator)
            if index or not skip_first_iter:
                self._walk(generator.iter)
            self._walk(generator.target)
            self._walk_all(generator.ifs)
            self.listener.on_node_exit(generator)

    def _walk_ListComp(self, node):
        self._walk_generators(node.generators)
        self._walk(node.elt)

    _walk_SetComp = _walk_ListComp

    def _walk_DictComp(self, node: ast.DictComp):
        self._walk_generators(node.generators)
        self._walk(node.key)
        self._walk(node.value)

    def _walk_Dict(self, node: ast.Dict):
        for key, value in zip(node.keys, node.values):
            if key is not None:
                self._walk(key)
            self._walk(value)

    # Branches

    def _walk_branches(self, test, body, orelse):
        self._walk(test)
        fork = self._current()

        self._new_segment(fork)
        self._walk_all(body if isinstance(body, list) else [body])
        ends = self._current()

        self._new_segment(fork)
        self._walk_all(orelse if isinstance(orelse, list) else [orelse])
        ends.extend(self._current())

        self._new_segment(ends)

    def _walk_If(self, node: ast.If):
        self._walk_branches(node.test, node.body, node.orelse)

    def _walk_IfExp(self, node: ast.IfExp):
        self._walk_branches(node.test, node.body, node.orelse)

    def _walk_BoolOp(self, node: ast.BoolOp):
        exits: List[CodePathSegment] = []
        self._walk(node.values[0])
        for value in node.values[1:]:
            exits.extend(self._current())
            self._new_segment(self._current())
            self._walk(value)
        exits.extend(self._current())
        self._new_segment(exits)

    def _walk_Match(self, node):
        self._walk(node.subject)
        head = self._current()
        ends = list(head)
        for case in node.cases:
            self._new_segment(head)
            self._walk(case)
            ends.extend(self._current())
        self._new_segment(ends)

    # Loops

    def _walk_loop_body(self, node, head: List[CodePathSegment], continue_segment: CodePathSegment):
        loop = _LoopContext(continue_segment)
        self.code_path._loops.append(loop)

        self._new_segment(head)
        self._walk_all(node.body)
        for segment in self.code_path.current_segments:
            self.code_path.add_looped_edge(segment, continue_segment)
        self.code_path._loops.pop()

        self._new_segment(head)
        self._walk_all(node.orelse)
        self._new_segment(self._current() + loop.break_segments)

    def _walk_While(self, node: ast.While):
        test_segment = self._new_segment(self._current())
        self._walk(node.test)
        self._walk_loop_body(node, self._current(), test_segment)

    def _walk_For(self, node):
        self._walk(node.iter)
        head_segment = self._new_segment(self._current())
        self._walk(node.target)
        self._walk_loop_body(node, self._current(), head_segment)

    _walk_AsyncFor = _walk_For

    def _walk_Break(self, node: ast.Break):
        if self.code_path._loops:
            self.code_path._loops[-1].break_segments.extend(self._current())
        self._new_unreachable_segment()

    def _walk_Continue(self, node: ast.Continue):
        if self.code_path._loops:
            target = self.code_path._loops[-1].continue_segment
            for segment in self.code_path.current_segments:
                self.code_path.add_looped_edge(segment, target)
        self._new_unreachable_segment()

    # Exits and exceptions

    def _walk_Return(self, node: ast.Return):
        if node.value is not None:
            self._walk(node.value)
        if self.code_path._tries:
            self.code_path._tries[-1].returned_segments.extend(self._current())
        else:
            self.code_path.returned_segments.extend(self._current())
        self._new_unreachable_segment()

    def _walk_Raise(self, node: ast.Raise):
        self._walk_all([node.exc, node.cause])
        if self.code_path._tries:
            self.code_path._tries[-1].thrown_segments.extend(self._current())
        else:
            self.code_path.thrown_segments.extend(self._current())
        self._new_unreachable_segment()

    def _walk_Try(self, node):
        entry = self._new_segment(self._current())
        context = _TryContext()
        self.code_path._tries.append(context)
        self._walk_all(node.body)
        self.code_path._tries.pop()
        body_ends = self._current()

        handler_ends: List[CodePathSegment] = []
        for handler in node.handlers:
            self._new_segment([entry] + body_ends + context.thrown_segments)
            self._walk(handler)
            handler_ends.extend(self._current())

        self._new_segment(body_ends)
        self._walk_all(node.orelse)
        normal_ends = self._current() + handler_ends

        if not node.finalbody:
            self._propagate(context, caught=bool(node.handlers))
            self._new_segment(normal_ends)
            return

        if any(segment.reachable for segment in normal_ends):
            self._new_segment(normal_ends)
        else:
            self._new_segment(context.thrown_segments + context.returned_segments)
        self._walk_all(node.finalbody)

    _walk_TryStar = _walk_Try

    def _propagate(self, context: _TryContext, caught: bool):
        """Hand returns, and raises no handler took, to the enclosing try or the code path"""
        outer = self.code_path._tries[-1] if self.code_path._tries else self.code_path
        outer.returned_segments.extend(context.returned_segments)
        if not caught:
            outer.thrown_segments.extend(context.thrown_segments)
