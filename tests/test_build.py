from __future__ import annotations

from pathlib import Path
from unittest import mock
import errno
import json
import os
import tempfile
import textwrap
import unittest

from croft.build import BuildOptions, BuildOrchestrator, phase_order
from croft.config_loader import WorkspaceConfig
from croft.console import Console
from croft.environment import SOURCE_DATE_EPOCH
from croft.errors import (
    EXIT_BUILD,
    EXIT_INSTALL,
    InstallError,
    LockfileDriftError,
    MissingArtifactError,
    ToolFailureError,
    WorkspaceLockedError,
)
from croft.locking import WorkspaceLock

from support import (
    CROFT_TOML,
    ScriptedCommandRunner,
    StaticResolver,
    farm_toolchains,
    make_workspace,
    managed_build_effect,
    native_build_effect,
    relocate_managed_tree,
)


class BuildOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name).resolve()
        self.root = make_workspace(base / "farm")
        self.toolchains = farm_toolchains(base / "store")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _orchestrator(self, runner: ScriptedCommandRunner, *, config: WorkspaceConfig | None = None) -> BuildOrchestrator:
        return BuildOrchestrator(
            config=config or WorkspaceConfig.from_directory(self.root, env={}),
            resolver=StaticResolver(self.toolchains),
            command_runner=runner,
            console=Console("none"),
        )

    def _runner(self, **kwargs) -> ScriptedCommandRunner:
        effects = {
            "pnpm run": managed_build_effect(self.root),
            "cargo build": native_build_effect(self.root, **kwargs),
        }
        return ScriptedCommandRunner(effects)

    def test_phase_order_is_fixed(self) -> None:
        self.assertEqual(
            phase_order(),
            ["lockfile-check", "managed-install", "managed-build", "native-build", "install"],
        )

    def test_successful_build_produces_layout(self) -> None:
        runner = self._runner()
        artifacts = self._orchestrator(runner).build()

        output = self.root / "result"
        self.assertEqual(artifacts.prefix, output)
        self.assertTrue(artifacts.published)
        create_farm = output / "bin" / "create-farm"
        launcher = output / "bin" / "farm"
        self.assertTrue(create_farm.is_file())
        self.assertTrue(os.access(create_farm, os.X_OK))
        self.assertTrue(os.access(launcher, os.X_OK))
        self.assertEqual(launcher.stat().st_mode & 0o777, 0o755)
        self.assertTrue((output / "lib" / "libfarm.so").is_file())
        self.assertTrue((output / "lib" / "farm" / "bin" / "farm.js").is_file())
        self.assertEqual(artifacts.libraries, (output / "lib" / "libfarm.so",))

        node = self.toolchains[1].entry("node")
        script = launcher.read_text(encoding="utf-8")
        self.assertTrue(script.startswith("#!/bin/sh\n"))
        self.assertIn(f"exec {node} {output / 'lib' / 'farm' / 'bin' / 'farm.js'} \"$@\"", script)
        self.assertEqual(int(create_farm.stat().st_mtime), int(SOURCE_DATE_EPOCH))

        keys = [runner.key(record.command) for record in runner.commands]
        self.assertEqual(keys, ["pnpm install", "pnpm run", "cargo build"])
        self.assertIn("--frozen-lockfile", runner.commands[0].command)
        self.assertEqual(runner.commands[2].command[1:], ["build", "--release", "--workspace", "--locked"])
        self.assertEqual(runner.commands[0].env["SOURCE_DATE_EPOCH"], SOURCE_DATE_EPOCH)
        self.assertEqual(runner.commands[0].env["NODE_ENV"], "development")
        self.assertTrue(runner.commands[0].env["PATH"].startswith(str(self.toolchains[0].bin_paths[0])))
        self.assertEqual(list((self.root / ".croft" / "staging").iterdir()), [])

    def test_optional_rule_with_no_matches_succeeds(self) -> None:
        artifacts = self._orchestrator(self._runner(libraries=())).build()
        self.assertEqual(artifacts.libraries, ())
        self.assertTrue((self.root / "result" / "bin" / "create-farm").is_file())

    def test_missing_primary_binary_fails_install(self) -> None:
        with self.assertRaises(MissingArtifactError) as ctx:
            self._orchestrator(self._runner(binary=False)).build()
        self.assertEqual(ctx.exception.missing, ["create-farm"])
        self.assertEqual(ctx.exception.exit_code, EXIT_INSTALL)
        self.assertFalse((self.root / "result").exists())
        staged = Path(ctx.exception.context["staging"])
        self.assertEqual(staged.parent, self.root / ".croft" / "staging")
        self.assertTrue((staged / "lib" / "libfarm.so").is_file())
        self.assertTrue((staged / "bin" / "farm").is_file())
        self.assertIn(f"staging: {staged}", str(ctx.exception))

    def test_lockfile_drift_stops_before_any_tool_runs(self) -> None:
        manifest = self.root / "packages" / "cli" / "package.json"
        data = json.loads(manifest.read_text(encoding="utf-8"))
        data["dependencies"]["cac"] = "^7.0.0"
        manifest.write_text(json.dumps(data), encoding="utf-8")

        runner = self._runner()
        with self.assertRaises(LockfileDriftError) as ctx:
            self._orchestrator(runner).build()
        self.assertEqual(ctx.exception.phase, "lockfile-check")
        self.assertEqual(ctx.exception.exit_code, EXIT_BUILD)
        self.assertIn("cac", "\n".join(ctx.exception.drift))
        self.assertEqual(runner.commands, [])

    def test_failed_install_discards_node_modules(self) -> None:
        partial = self.root / "node_modules" / ".pnpm"
        partial.mkdir(parents=True)
        runner = ScriptedCommandRunner(failures={"pnpm install": 1})
        with self.assertRaises(ToolFailureError) as ctx:
            self._orchestrator(runner).build()
        self.assertEqual(ctx.exception.phase, "managed-install")
        self.assertEqual(ctx.exception.tool, "pnpm")
        self.assertEqual(ctx.exception.returncode, 1)
        self.assertFalse((self.root / "node_modules").exists())
        self.assertEqual([runner.key(record.command) for record in runner.commands], ["pnpm install"])

    def test_managed_tree_in_package_dir(self) -> None:
        web = relocate_managed_tree(self.root, "web")
        config_text = CROFT_TOML + textwrap.dedent(
            """
            [managed]
            package_dir = "web"
            """
        )
        (self.root / "croft.toml").write_text(config_text, encoding="utf-8")
        runner = ScriptedCommandRunner(
            {"pnpm run": managed_build_effect(web), "cargo build": native_build_effect(self.root)}
        )
        artifacts = self._orchestrator(runner).build()
        self.assertEqual(runner.commands[0].cwd, str(web))
        self.assertEqual(runner.commands[2].cwd, str(self.root))
        self.assertTrue((artifacts.prefix / "lib" / "farm" / "bin" / "farm.js").is_file())

    def test_native_failure_names_cargo(self) -> None:
        runner = ScriptedCommandRunner({"pnpm run": managed_build_effect(self.root)}, failures={"cargo build": 101})
        with self.assertRaises(ToolFailureError) as ctx:
            self._orchestrator(runner).build()
        self.assertEqual(ctx.exception.phase, "native-build")
        self.assertEqual(ctx.exception.tool, "cargo")
        self.assertIn("native-build", str(ctx.exception))
        self.assertFalse((self.root / "result").exists())

    def test_locked_workspace_fails_fast(self) -> None:
        config = WorkspaceConfig.from_directory(self.root, env={})
        runner = self._runner()
        with WorkspaceLock(config.state_dir):
            with self.assertRaises(WorkspaceLockedError):
                self._orchestrator(runner, config=config).build(BuildOptions(wait=0.0))
        self.assertEqual(runner.commands, [])

    def test_dry_run_records_without_publishing(self) -> None:
        runner = ScriptedCommandRunner()
        artifacts = self._orchestrator(runner).build(BuildOptions(dry_run=True))
        self.assertFalse(artifacts.published)
        self.assertFalse((self.root / "result").exists())
        self.assertEqual(len(runner.commands), 3)
        lines = list(runner.iter_formatted(workspace=self.root))
        self.assertTrue(lines[0].startswith("[dry-run] [managed-install]"))

    def test_hooks_run_around_phase(self) -> None:
        config_text = CROFT_TOML + textwrap.dedent(
            """
            [hooks]
            stamp = "echo {{project.name}}"

            [phases.native-build]
            pre_hook = "stamp"
            post_hook = "undefined"
            """
        )
        (self.root / "croft.toml").write_text(config_text, encoding="utf-8")
        runner = self._runner()
        self._orchestrator(runner).build()
        keys = [runner.key(record.command) for record in runner.commands]
        self.assertEqual(keys, ["pnpm install", "pnpm run", "sh -c", "cargo build"])
        self.assertEqual(runner.commands[2].command[-1], "echo farm")

    def test_rebuild_replaces_previous_output(self) -> None:
        self._orchestrator(self._runner()).build()
        stale = self.root / "result" / "stale.txt"
        stale.write_text("old", encoding="utf-8")
        self._orchestrator(self._runner()).build()
        self.assertFalse(stale.exists())
        self.assertTrue((self.root / "result" / "bin" / "create-farm").is_file())
        retired = self.root / ".croft" / "retired"
        self.assertEqual(list(retired.iterdir()) if retired.exists() else [], [])

    def test_failed_publish_restores_previous_output(self) -> None:
        self._orchestrator(self._runner()).build()
        previous = self.root / "result" / "previous.txt"
        previous.write_text("kept", encoding="utf-8")
        original_rename = Path.rename

        def rename(path, target):
            if path.parent.name == "staging":
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return original_rename(path, target)

        with mock.patch.object(Path, "rename", autospec=True, side_effect=rename):
            with self.assertRaises(InstallError) as ctx:
                self._orchestrator(self._runner()).build()
        self.assertEqual(ctx.exception.exit_code, EXIT_INSTALL)
        self.assertEqual(ctx.exception.context["output"], str(self.root / "result"))
        self.assertIn("Invalid cross-device link", str(ctx.exception))
        self.assertEqual(previous.read_text(encoding="utf-8"), "kept")
        self.assertTrue((self.root / "result" / "bin" / "create-farm").is_file())

    def test_output_override(self) -> None:
        target = self.root / "dist"
        artifacts = self._orchestrator(self._runner()).build(BuildOptions(output_dir=target))
        self.assertEqual(artifacts.prefix, target)
        self.assertIn(str(target), (target / "bin" / "farm").read_text(encoding="utf-8"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
