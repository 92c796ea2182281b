"""Unit tests for the building blocks of the atomic update analysis."""

import ast
import unittest

from awaitguard_analysis import (
    AtomicUpdateTracker,
    PreconditionError,
    ResolvedVariable,
    SegmentInfo,
    UnresolvedVariable,
    analyze_function,
    analyze_module,
    counts_as_read,
    index_references,
    is_assignment_value,
    is_local_without_escape,
    is_resumable,
    member_chain_write_expr,
    reference_name,
    run_tracker,
    write_expr_of,
)
from awaitguard_cfg import CodePath, CodePathSegment
from tests.test_utils import build, find_function, references_by_position


class TestReferenceIndexer(unittest.TestCase):
    """index_references collects a function's own references only."""

    def test_nested_functions_are_excluded(self):
        tree, manager = build("""\
            async def f(a):
                b = a
                class K:
                    c = b
                [d for d in a]
                def g():
                    return a
                lambda: a
            """)
        scope = manager.acquire(find_function(tree, "f"))
        reference_map = index_references(scope)

        self.assertEqual(
            sorted(node.id for node in reference_map),
            ["a", "a", "b", "b", "c", "d", "d"],
        )
        for node, reference in reference_map.items():
            self.assertIs(reference.identifier, node)


class TestNameClassifier(unittest.TestCase):
    """reference_name builds dotted access paths."""

    def test_access_paths(self):
        _, manager = build("""\
            obj.a.b
            obj["key"].c
            obj[i]
            obj.method().x
            """)
        references = references_by_position(manager)

        self.assertEqual(reference_name(references[("obj", 1)]), "obj.a.b")
        self.assertEqual(reference_name(references[("obj", 2)]), "obj.key.c")
        self.assertEqual(reference_name(references[("obj", 3)]), "obj.*")
        self.assertEqual(reference_name(references[("obj", 4)]), "obj.method")
        self.assertEqual(reference_name(references[("i", 3)]), "i")


class TestEscapeClassifier(unittest.TestCase):
    """is_local_without_escape decides per access path."""

    def setUp(self):
        self.tree, self.manager = build("""\
            shared = 1
            def outer():
                local = {}
                captured = {}
                local["x"] = 1
                captured["y"] = 1
                def inner():
                    return captured["y"]
                return local
            """)
        scope = self.manager.acquire(find_function(self.tree, "outer"))
        self.local = ResolvedVariable(scope.variables["local"])
        self.captured = ResolvedVariable(scope.variables["captured"])

    def test_local_variable(self):
        self.assertTrue(is_local_without_escape(self.local, "local.x"))

    def test_captured_path_escapes(self):
        self.assertFalse(is_local_without_escape(self.captured, "captured.y"))

    def test_uncaptured_path_of_captured_variable(self):
        self.assertTrue(is_local_without_escape(self.captured, "captured"))

    def test_module_variable_only_used_at_module_level(self):
        shared = ResolvedVariable(self.manager.global_scope.variables["shared"])
        self.assertTrue(is_local_without_escape(shared, "shared"))

    def test_shared_names_always_escape(self):
        self.assertFalse(
            is_local_without_escape(self.local, "local.x", frozenset({"local"}))
        )


class TestReferencePolicies(unittest.TestCase):
    """The two reference shape policies, tested on their own."""

    def setUp(self):
        self.tree, self.manager = build("""\
            a.b = value
            a.b += value
            a[i] = value
            x = a.b
            """)
        self.references = references_by_position(self.manager)
        self.statements = self.tree.body

    def test_member_chain_feeds_plain_assignment(self):
        reference = self.references[("a", 1)]
        write_expr = member_chain_write_expr(reference)
        self.assertIs(write_expr, self.statements[0].value)
        self.assertFalse(counts_as_read(reference, write_expr))
        self.assertTrue(is_assignment_value(reference, write_expr))

    def test_member_chain_feeds_augmented_assignment(self):
        reference = self.references[("a", 2)]
        write_expr = member_chain_write_expr(reference)
        self.assertIs(write_expr, self.statements[1].value)
        self.assertTrue(counts_as_read(reference, write_expr))

    def test_subscript_key_is_a_plain_read(self):
        reference = self.references[("i", 3)]
        self.assertIsNone(member_chain_write_expr(reference))
        self.assertTrue(counts_as_read(reference, None))
        self.assertIs(
            member_chain_write_expr(self.references[("a", 3)]),
            self.statements[2].value,
        )

    def test_value_side_read(self):
        reference = self.references[("a", 4)]
        self.assertIsNone(write_expr_of(reference))
        self.assertTrue(counts_as_read(reference, None))

    def test_bare_target_write(self):
        reference = self.references[("x", 4)]
        write_expr = write_expr_of(reference)
        self.assertIs(write_expr, self.statements[3].value)
        self.assertFalse(counts_as_read(reference, write_expr))
        self.assertTrue(is_assignment_value(reference, write_expr))

    def test_annotated_name_is_a_declaration(self):
        _, manager = build("""\
            total: int = start
            """)
        reference = references_by_position(manager)[("total", 1)]
        self.assertIsNotNone(reference.write_expr)
        self.assertFalse(is_assignment_value(reference, reference.write_expr))


class TestSegmentInfo(unittest.TestCase):
    """Fresh/outdated bookkeeping and the join."""

    def setUp(self):
        self.info = SegmentInfo()
        self.start = CodePathSegment("s1_1")
        self.info.initialize(self.start)

    def test_read_then_suspend(self):
        self.info.mark_as_read([self.start], "v")
        self.assertFalse(self.info.is_outdated([self.start], "v"))

        self.info.make_outdated([self.start])
        self.assertTrue(self.info.is_outdated([self.start], "v"))
        self.assertEqual(self.info.state_of(self.start).fresh, set())

    def test_join_unions_both_sets(self):
        self.info.mark_as_read([self.start], "v")
        self.info.make_outdated([self.start])
        left = CodePathSegment("s1_2", [self.start])
        right = CodePathSegment("s1_3")
        self.info.initialize(left)
        self.info.initialize(right)
        self.info.mark_as_read([right], "w")

        merged = CodePathSegment("s1_4", [left, right])
        self.info.initialize(merged)
        state = self.info.state_of(merged)

        self.assertEqual(state.outdated, {"v"})
        self.assertEqual(state.fresh, {"w"})
        self.assertTrue(self.info.is_outdated([merged], "v"))

    def test_fresh_and_outdated_after_join(self):
        self.info.mark_as_read([self.start], "v")
        suspended = CodePathSegment("s1_2", [self.start])
        skipped = CodePathSegment("s1_3", [self.start])
        self.info.initialize(suspended)
        self.info.initialize(skipped)
        self.info.make_outdated([suspended])

        merged = CodePathSegment("s1_4", [suspended, skipped])
        self.info.initialize(merged)
        state = self.info.state_of(merged)
        self.assertIn("v", state.fresh)
        self.assertIn("v", state.outdated)

    def test_predecessor_without_state_is_skipped(self):
        orphan = CodePathSegment("s1_9", [CodePathSegment("s9_9")])
        self.info.initialize(orphan)
        self.assertEqual(self.info.state_of(orphan).fresh, set())
        self.assertEqual(self.info.state_of(orphan).outdated, set())

    def test_unknown_segments_are_ignored(self):
        unknown = CodePathSegment("s7_7")
        self.info.mark_as_read([unknown], "v")
        self.info.make_outdated([unknown])
        self.assertFalse(self.info.is_outdated([unknown], "v"))
        self.assertIsNone(self.info.state_of(unknown))


class TestVariables(unittest.TestCase):

    def test_resolved_equality_follows_binding(self):
        _, manager = build("""\
            x = 1
            """)
        binding = manager.global_scope.variables["x"]
        self.assertEqual(ResolvedVariable(binding), ResolvedVariable(binding))
        self.assertEqual(len({ResolvedVariable(binding), ResolvedVariable(binding)}), 1)

    def test_unresolved_equality_follows_name(self):
        _, manager = build("""\
            y
            """)
        first = UnresolvedVariable("y", manager.global_scope)
        second = UnresolvedVariable("y", manager.global_scope, [object()])
        self.assertEqual(first, second)
        self.assertEqual(hash(first), hash(second))
        self.assertNotEqual(first, UnresolvedVariable("z", manager.global_scope))

    def test_tracker_caches_unresolved_placeholder(self):
        _, manager = build("""\
            y
            y
            """)
        tracker = AtomicUpdateTracker(manager)
        references = references_by_position(manager)
        first = tracker.get_variable(references[("y", 1)])
        second = tracker.get_variable(references[("y", 2)])
        self.assertIs(first, second)
        self.assertEqual(len(first.references), 2)


class TestResumable(unittest.TestCase):

    def test_resumable_kinds(self):
        tree, _ = build("""\
            async def a():
                pass
            def b():
                yield
            def c():
                pass
            def d():
                def e():
                    yield
            handler = lambda: (yield)
            gen = (x for x in range(3))
            """)
        self.assertTrue(is_resumable(find_function(tree, "a")))
        self.assertTrue(is_resumable(find_function(tree, "b")))
        self.assertFalse(is_resumable(find_function(tree, "c")))
        self.assertFalse(is_resumable(find_function(tree, "d")))
        self.assertTrue(is_resumable(find_function(tree, "e")))
        lambda_node = next(n for n in ast.walk(tree) if isinstance(n, ast.Lambda))
        generator = next(n for n in ast.walk(tree) if isinstance(n, ast.GeneratorExp))
        self.assertTrue(is_resumable(lambda_node))
        self.assertTrue(is_resumable(generator))


class TestSuspensionPoints(unittest.TestCase):

    def test_suspension_sites(self):
        tree, manager = build("""\
            async def f(s, cm):
                await s
                async for x in s:
                    pass
                async with cm as c:
                    pass
                [y async for y in s]
                (z async for z in s)
            """)
        tracker = AtomicUpdateTracker(manager)
        body = find_function(tree, "f").body
        await_node = body[0].value
        async_for = body[1]
        async_with = body[2]
        list_comp = body[3].value
        generator = body[4].value

        self.assertTrue(tracker.is_suspension_point(await_node))
        self.assertFalse(tracker.is_suspension_point(await_node.value))
        self.assertTrue(tracker.is_suspension_point(async_for.iter))
        self.assertTrue(tracker.is_suspension_point(async_with.items[0].context_expr))
        self.assertTrue(tracker.is_suspension_point(async_with))
        self.assertTrue(tracker.is_suspension_point(list_comp.generators[0].iter))
        self.assertFalse(tracker.is_suspension_point(generator.generators[0].iter))


class TestPreconditions(unittest.TestCase):

    def setUp(self):
        self.tree, self.manager = build("""\
            pass
            """)

    def test_ending_inactive_code_path(self):
        tracker = AtomicUpdateTracker(self.manager)
        with self.assertRaises(PreconditionError):
            tracker.on_code_path_end(CodePath("s1", self.tree), self.tree)

    def test_segment_outside_code_path(self):
        tracker = AtomicUpdateTracker(self.manager)
        with self.assertRaises(PreconditionError):
            tracker.on_code_path_segment_start(CodePathSegment("s1_1"))


class TestEntryPoints(unittest.TestCase):
    SOURCE = """\
        obj = make()

        async def first():
            obj.x = obj.x + await g()

        async def second():
            obj.y = obj.y + await g()
        """

    def test_analyze_function_reports_only_that_function(self):
        tree, manager = build(self.SOURCE)
        violations = analyze_function(find_function(tree, "first"), manager)
        self.assertEqual(
            [(v.assignment_text, v.lineno) for v in violations], [("obj.x", 4)]
        )

    def test_analyze_function_includes_nested_functions(self):
        tree, manager = build("""\
            obj = make()

            def outer():
                async def inner():
                    obj.x = obj.x + await g()
                return inner
            """)
        violations = analyze_function(find_function(tree, "outer"), manager)
        self.assertEqual([v.lineno for v in violations], [5])

    def test_targets_rendered_without_source(self):
        tree, _ = build(self.SOURCE)
        violations = analyze_module(tree)
        self.assertEqual(
            [(v.assignment_text, v.lineno) for v in violations],
            [("obj.x", 4), ("obj.y", 7)],
        )

    def test_tracker_counts_graph_shape(self):
        tree, manager = build("""\
            async def f(items):
                for item in items:
                    if item:
                        break
                    await item
                return
            """)
        stats = run_tracker(tree, manager).stats
        self.assertEqual(stats["code_paths"], 2)
        self.assertEqual(stats["back_edges"], 1)
        self.assertEqual(stats["unreachable_segments"], 2)


if __name__ == "__main__":
    unittest.main()
