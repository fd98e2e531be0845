from __future__ import annotations

import unittest

from core.template import TemplateError, TemplateResolver, extract_placeholders, topological_order


class TemplateResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.context = {
            "workspace": "/src/farm",
            "project": {"name": "farm", "version": "0.0.0"},
            "toolchains": {"rust": {"path": "/store/abc-rust-1.80.0"}},
        }
        self.resolver = TemplateResolver(self.context)

    def test_resolve_placeholder(self) -> None:
        result = self.resolver.resolve("{{project.name}}-{{project.version}}")
        self.assertEqual(result, "farm-0.0.0")

    def test_single_placeholder_keeps_value_type(self) -> None:
        resolver = TemplateResolver({"store": {"retries": 3}})
        self.assertEqual(resolver.resolve("{{store.retries}}"), 3)

    def test_nested_variable_resolution(self) -> None:
        context = {
            "toolchains": {"rust": {"path": "/store/rust"}},
            "paths": {
                "src": "{{toolchains.rust.path}}/lib/rustlib/src/rust/library",
                "alias": "{{paths.src}}",
            },
        }
        resolver = TemplateResolver(context)
        self.assertEqual(resolver.resolve("{{paths.alias}}"), "/store/rust/lib/rustlib/src/rust/library")

    def test_resolves_inside_collections(self) -> None:
        value = {"argv": ["echo", "{{project.name}}"], "cwd": "{{workspace}}"}
        self.assertEqual(self.resolver.resolve(value), {"argv": ["echo", "farm"], "cwd": "/src/farm"})

    def test_unknown_path_raises(self) -> None:
        with self.assertRaises(TemplateError):
            self.resolver.resolve("{{toolchains.node.path}}")

    def test_cycle_detection(self) -> None:
        context = {
            "variables": {
                "alpha": "{{variables.beta}}",
                "beta": "{{variables.alpha}}",
            }
        }
        resolver = TemplateResolver(context)
        with self.assertRaises(TemplateError):
            resolver.resolve("{{variables.alpha}}")

    def test_extract_placeholders(self) -> None:
        found = extract_placeholders({"a": "{{ toolchains.rust.path }}/bin", "b": ["{{workspace}}"]})
        self.assertEqual(found, {"toolchains.rust.path", "workspace"})


class TopologicalOrderTests(unittest.TestCase):
    def test_dependencies_come_first(self) -> None:
        graph = {
            "install": ["native-build"],
            "native-build": ["managed-build"],
            "managed-build": ["managed-install"],
            "managed-install": [],
        }
        self.assertEqual(
            topological_order(graph),
            ["managed-install", "managed-build", "native-build", "install"],
        )

    def test_priority_breaks_ties(self) -> None:
        graph = {"b": [], "a": [], "c": ["a", "b"]}
        self.assertEqual(topological_order(graph), ["a", "b", "c"])
        self.assertEqual(topological_order(graph, priority={"b": 0, "a": 1}), ["b", "a", "c"])

    def test_unknown_dependencies_are_ignored(self) -> None:
        self.assertEqual(topological_order({"a": ["external"]}), ["a"])

    def test_cycle_is_reported(self) -> None:
        with self.assertRaises(TemplateError) as ctx:
            topological_order({"a": ["b"], "b": ["a"]})
        self.assertIn("Circular dependency", str(ctx.exception))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
