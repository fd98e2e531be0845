from __future__ import annotations

from pathlib import Path
import io
import os
import tempfile
import unittest

from croft.artifacts import ArtifactCollector, ArtifactRule, LauncherScript, LauncherSpec
from croft.console import Console
from croft.errors import InstallError, MissingArtifactError

from support import make_resolved, write_executable


EPOCH = 315532800


class ArtifactRuleTests(unittest.TestCase):
    def test_from_mapping_defaults(self) -> None:
        rule = ArtifactRule.from_mapping({"pattern": "create-farm", "destination": "bin"})
        self.assertEqual(rule.source, "native")
        self.assertFalse(rule.mandatory)
        self.assertEqual(rule.label, "create-farm")

    def test_destination_must_stay_inside_prefix(self) -> None:
        for destination in ("/usr/bin", "../bin", "lib/../../etc"):
            with self.subTest(destination=destination):
                with self.assertRaises(ValueError):
                    ArtifactRule(pattern="x", destination=destination)

    def test_unknown_source_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ArtifactRule.from_mapping({"pattern": "x", "destination": "bin", "source": "python"})

    def test_unknown_keys_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ArtifactRule.from_mapping({"pattern": "x", "destination": "bin", "strip": True})

    def test_alternative_patterns(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp)
            for name in ("libfarm.so", "farm.node", "libfarm.dylib", "notes.txt"):
                (root / name).write_bytes(b"")
            rule = ArtifactRule(pattern="*.so|*.dylib|*.node", destination="lib")
            self.assertEqual([path.name for path in rule.matches(root)], ["farm.node", "libfarm.dylib", "libfarm.so"])
            self.assertEqual(rule.matches(root / "missing"), [])


class LauncherTests(unittest.TestCase):
    def test_bind_uses_store_entry_point(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            node = make_resolved(Path(temp), "node", ["node"])
            spec = LauncherSpec.from_mapping({"name": "farm", "interpreter": "node:node", "entry": "lib/farm/bin/farm.js"})
            script = spec.bind([node])
        self.assertEqual(script.interpreter, str(node.store_path / "bin" / "node"))
        self.assertEqual(
            script.render(Path("/opt/farm")),
            f'#!/bin/sh\nexec {node.store_path}/bin/node /opt/farm/lib/farm/bin/farm.js "$@"\n',
        )

    def test_render_quotes_paths(self) -> None:
        script = LauncherScript(name="farm", interpreter="/store/my node/bin/node", entry="lib/farm.js")
        self.assertIn("exec '/store/my node/bin/node' '/opt/my farm/lib/farm.js' \"$@\"", script.render(Path("/opt/my farm")))

    def test_bind_requires_declared_toolchain_and_entry(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            node = make_resolved(Path(temp), "node", ["node"])
            with self.assertRaises(InstallError):
                LauncherSpec("farm", "deno:deno", "farm.js").bind([node])
            with self.assertRaises(InstallError):
                LauncherSpec("farm", "node:nodejs", "farm.js").bind([node])

    def test_interpreter_must_name_entry_point(self) -> None:
        with self.assertRaises(ValueError):
            LauncherSpec.from_mapping({"name": "farm", "interpreter": "node", "entry": "farm.js"})


class ArtifactCollectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.native = self.root / "target" / "release"
        self.managed = self.root / "workspace"
        self.staging = self.root / "staging"
        self.prefix = self.root / "result"
        self.errors = io.StringIO()
        self.collector = ArtifactCollector(console=Console("info", stream=io.StringIO(), error_stream=self.errors))
        write_executable(self.native / "create-farm")
        (self.native / "libfarm.so").write_bytes(b"\x7fELF")
        cli = self.managed / "packages" / "cli"
        write_executable(cli / "bin" / "farm.js", "#!/usr/bin/env node\n")
        (cli / "package.json").write_text("{}", encoding="utf-8")
        (cli / "node_modules").mkdir()
        os.symlink("../../../store/cac", cli / "node_modules" / "cac")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _rules(self):
        return [
            ArtifactRule("create-farm", "bin", executable=True, mandatory=True),
            ArtifactRule("*.so|*.dylib|*.node", "lib", executable=True, name="native libraries"),
            ArtifactRule("packages/cli", "lib/farm", source="managed"),
        ]

    def _install(self, rules=None, launchers=()):
        return self.collector.install(
            self.native,
            self.managed,
            self._rules() if rules is None else rules,
            launchers,
            staging_dir=self.staging,
            prefix=self.prefix,
        )

    def test_layout_and_modes(self) -> None:
        layout = self._install(launchers=[LauncherScript("farm", "/store/node/bin/node", "lib/farm/bin/farm.js")])
        self.assertEqual(layout.binaries, ("bin/create-farm", "bin/farm"))
        self.assertEqual(layout.libraries, ("lib/libfarm.so",))
        self.assertEqual(layout.launchers, ("bin/farm",))
        self.assertEqual((self.staging / "bin" / "create-farm").stat().st_mode & 0o777, 0o755)
        self.assertEqual((self.staging / "lib" / "libfarm.so").stat().st_mode & 0o777, 0o755)
        self.assertEqual((self.staging / "lib" / "farm" / "package.json").stat().st_mode & 0o777, 0o644)
        self.assertEqual((self.staging / "lib" / "farm" / "bin" / "farm.js").stat().st_mode & 0o777, 0o755)
        self.assertIn(str(self.prefix / "lib" / "farm" / "bin" / "farm.js"), (self.staging / "bin" / "farm").read_text(encoding="utf-8"))

    def test_symlinks_are_recreated_not_followed(self) -> None:
        self._install()
        link = self.staging / "lib" / "farm" / "node_modules" / "cac"
        self.assertTrue(link.is_symlink())
        self.assertEqual(os.readlink(link), "../../../store/cac")

    def test_mtimes_are_normalized(self) -> None:
        self._install()
        for directory, dirnames, filenames in os.walk(self.staging):
            for name in filenames:
                path = Path(directory) / name
                self.assertEqual(int(os.lstat(path).st_mtime), EPOCH, path)
        self.assertEqual(int(self.staging.stat().st_mtime), EPOCH)

    def test_missing_mandatory_artifact(self) -> None:
        (self.native / "create-farm").unlink()
        with self.assertRaises(MissingArtifactError) as ctx:
            self._install()
        self.assertEqual(ctx.exception.missing, ["create-farm"])
        self.assertIn("create-farm", self.errors.getvalue())

    def test_optional_rule_may_match_nothing(self) -> None:
        (self.native / "libfarm.so").unlink()
        layout = self._install()
        self.assertEqual(layout.libraries, ())
        self.assertIn("native libraries", layout.skipped)

    def test_launcher_without_entry_is_skipped(self) -> None:
        launcher = LauncherScript("farm", "/store/node/bin/node", "lib/farm/bin/missing.js")
        layout = self._install(launchers=[launcher])
        self.assertEqual(layout.launchers, ())
        self.assertIn("launcher farm", layout.skipped)

    def test_mandatory_launcher_without_entry(self) -> None:
        launcher = LauncherScript("farm", "/store/node/bin/node", "lib/farm/bin/missing.js", mandatory=True)
        with self.assertRaises(MissingArtifactError) as ctx:
            self._install(launchers=[launcher])
        self.assertEqual(ctx.exception.missing, ["launcher farm"])

    def test_collision_between_rules(self) -> None:
        (self.native / "nested").mkdir()
        write_executable(self.native / "nested" / "create-farm")
        rules = [
            ArtifactRule("create-farm", "bin", executable=True),
            ArtifactRule("nested/create-farm", "bin", name="nested"),
        ]
        with self.assertRaises(InstallError):
            self._install(rules)

    def test_launcher_colliding_with_binary(self) -> None:
        launcher = LauncherScript("create-farm", "/store/node/bin/node", "lib/farm/bin/farm.js")
        with self.assertRaises(InstallError):
            self._install(launchers=[launcher])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
