from __future__ import annotations

import unittest

from distbuild.errors import CyclicDependencyError, DuplicateTargetError, UnknownTargetError
from distbuild.graph import Target, TargetGraph


def _graph(*specs: tuple[str, tuple[str, ...]]) -> TargetGraph:
    return TargetGraph(Target(name=name, deps=deps) for name, deps in specs)


class TargetGraphResolveTests(unittest.TestCase):
    def test_siblings_share_prerequisite(self) -> None:
        graph = _graph(("A", ()), ("B", ("A",)), ("C", ("A",)))
        self.assertEqual(graph.resolve("B").names(), ["A", "B"])
        self.assertEqual(graph.resolve("C").names(), ["A", "C"])

    def test_each_prerequisite_listed_once_before_dependents(self) -> None:
        graph = _graph(
            ("common", ()),
            ("server", ("common",)),
            ("css", ()),
            ("index", ("css", "common")),
            ("dist", ("server", "index")),
        )
        order = graph.resolve("dist").names()
        self.assertEqual(sorted(order), sorted(set(order)))
        self.assertEqual(len(order), 5)
        for target in graph:
            for dep in target.deps:
                self.assertLess(order.index(dep), order.index(target.name))
        self.assertEqual(order[-1], "dist")

    def test_declaration_order_breaks_ties(self) -> None:
        graph = _graph(("x", ()), ("y", ()), ("z", ()), ("all", ("z", "x", "y")))
        self.assertEqual(graph.resolve("all").names(), ["z", "x", "y", "all"])

    def test_unknown_requested_target(self) -> None:
        graph = _graph(("A", ()))
        with self.assertRaises(UnknownTargetError) as ctx:
            graph.resolve("missing")
        self.assertIn("Available targets: A", str(ctx.exception))

    def test_unknown_prerequisite_names_referencing_target(self) -> None:
        graph = _graph(("A", ("ghost",)))
        with self.assertRaises(UnknownTargetError) as ctx:
            graph.resolve("A")
        self.assertEqual(ctx.exception.name, "ghost")
        self.assertEqual(ctx.exception.referenced_by, "A")

    def test_cycle_is_reported_with_path(self) -> None:
        graph = _graph(("root", ("a",)), ("a", ("b",)), ("b", ("c",)), ("c", ("a",)))
        with self.assertRaises(CyclicDependencyError) as ctx:
            graph.resolve("root")
        self.assertEqual(ctx.exception.cycle, ["a", "b", "c", "a"])
        self.assertIn("a -> b -> c -> a", str(ctx.exception))

    def test_self_dependency_is_a_cycle(self) -> None:
        graph = _graph(("loop", ("loop",)))
        with self.assertRaises(CyclicDependencyError):
            graph.resolve("loop")

    def test_check_detects_cycle_outside_default_target(self) -> None:
        graph = _graph(("ok", ()), ("p", ("q",)), ("q", ("p",)))
        graph.resolve("ok")
        with self.assertRaises(CyclicDependencyError):
            graph.check()

    def test_duplicate_registration_rejected(self) -> None:
        graph = _graph(("A", ()))
        with self.assertRaises(DuplicateTargetError):
            graph.add(Target(name="A"))


class ExecutionPlanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.graph = _graph(
            ("common", ()),
            ("css", ()),
            ("server", ("common",)),
            ("index", ("css",)),
            ("dist", ("server", "index")),
        )

    def test_waves_group_independent_targets(self) -> None:
        waves = [[target.name for target in wave] for wave in self.graph.resolve("dist").waves()]
        self.assertEqual(waves, [["common", "css"], ["server", "index"], ["dist"]])

    def test_wave_depth_follows_longest_path(self) -> None:
        graph = _graph(("a", ()), ("b", ("a",)), ("c", ("a", "b")))
        waves = [[target.name for target in wave] for wave in graph.resolve("c").waves()]
        self.assertEqual(waves, [["a"], ["b"], ["c"]])

    def test_dependents_are_transitive(self) -> None:
        plan = self.graph.resolve("dist")
        self.assertEqual(plan.dependents("css"), ["index", "dist"])
        self.assertEqual(plan.dependents("dist"), [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
