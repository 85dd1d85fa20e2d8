from __future__ import annotations

import pathlib
import subprocess
import sys
import tempfile
import textwrap
import unittest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]


class GeneratorBehaviorTests(unittest.TestCase):
    def run_gen(self, in_path: pathlib.Path, out_path: pathlib.Path, check: bool = False) -> subprocess.CompletedProcess[str]:
        cmd = [
            sys.executable,
            "-m",
            "eventbridge",
            "--in",
            str(in_path),
            "--out",
            str(out_path),
        ]
        if check:
            cmd.append("--check")
        return subprocess.run(cmd, cwd=REPO_ROOT, text=True, capture_output=True)

    def test_targeted_substitution_and_passthrough(self) -> None:
        source = textwrap.dedent(
            """
            from typing import Protocol

            # @event_bridge in comment should remain untouched
            TOKEN = "@event_bridge in string"


            class Passthrough:
                k: int


            @event_bridge
            @forward_to_trait(DemoApi)
            @trait_returned_error(str)
            class Demo:
                SetIndex: (int,)
                Initialize: ()


            class DemoApi(Protocol):
                async def set_index(self, index: int): ...
                async def initialize(self): ...
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "demo.py.bridge"
            out_path = tmp / "demo.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)
            self.assertIn("generated:", result.stdout)

            generated = out_path.read_text(encoding="utf-8")
            self.assertTrue(generated.startswith("# eventbridge-generated\n"))
            self.assertIn("class Passthrough:", generated)
            self.assertIn("# @event_bridge in comment should remain untouched", generated)
            self.assertIn('"@event_bridge in string"', generated)
            self.assertIn("class DemoApi(Protocol):", generated)
            self.assertIn("class Demo:", generated)
            self.assertIn('async def forward_to(self, api: "DemoApi") -> "Outcome[None, str]":', generated)
            self.assertNotIn("@forward_to_trait", generated)
            self.assertEqual(generated.count("import dataclasses\n"), 1)
            self.assertEqual(generated.count("from eventbridge.runtime import Err, Ok, Outcome"), 1)
            compile(generated, str(out_path), "exec")

    def test_check_mode_reports_drift(self) -> None:
        source = textwrap.dedent(
            """
            @event_handler
            @event_handler_trait(Api)
            class A:
                Ping: ()
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "a.py.bridge"
            out_path = tmp / "a.py"
            in_path.write_text(source, encoding="utf-8")

            missing = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(missing.returncode, 0)
            self.assertIn("is missing", missing.stderr)

            first = self.run_gen(in_path, out_path)
            self.assertEqual(first.returncode, 0, msg=first.stderr)

            check_ok = self.run_gen(in_path, out_path, check=True)
            self.assertEqual(check_ok.returncode, 0, msg=check_ok.stderr)
            self.assertIn("up-to-date", check_ok.stdout)

            in_path.write_text(source + "# changed\n", encoding="utf-8")
            check_bad = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(check_bad.returncode, 0)
            self.assertIn("out of date", check_bad.stderr)

    def test_rerun_reports_unchanged(self) -> None:
        source = textwrap.dedent(
            """
            @event_handler
            @event_handler_trait(Api)
            class A:
                Ping: ()
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "a.py.bridge"
            out_path = tmp / "a.py"
            in_path.write_text(source, encoding="utf-8")

            first = self.run_gen(in_path, out_path)
            self.assertEqual(first.returncode, 0, msg=first.stderr)
            second = self.run_gen(in_path, out_path)
            self.assertEqual(second.returncode, 0, msg=second.stderr)
            self.assertIn("unchanged:", second.stdout)

    def test_missing_trait_rejected_with_location(self) -> None:
        source = textwrap.dedent(
            """
            import enum

            @event_bridge
            @trait_returned_error(str)
            class Bad:
                Ping: ()
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "bad.py.bridge"
            out_path = tmp / "bad.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("Missing @forward_to_trait(TraitName) decorator", result.stderr)
            self.assertRegex(result.stderr, r"bad\.py\.bridge:5:\d+: error:")
            self.assertFalse(out_path.exists())

    def test_qualified_trait_path_rejected(self) -> None:
        source = textwrap.dedent(
            """
            @event_bridge
            @forward_to_trait(api.TestApi)
            @trait_returned_error(str)
            class Bad:
                Ping: ()
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "bad.py.bridge"
            out_path = tmp / "bad.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("Trait path must be a single identifier, got 'api.TestApi'", result.stderr)
            self.assertRegex(result.stderr, r"bad\.py\.bridge:2:\d+: error:")

    def test_marker_on_function_rejected(self) -> None:
        source = textwrap.dedent(
            """
            @event_bridge
            @forward_to_trait(Api)
            @trait_returned_error(str)
            def not_a_union():
                pass
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "func.py.bridge"
            out_path = tmp / "func.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("applies only to tagged-union class declarations", result.stderr)

    def test_syntax_error_reported_with_location(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "broken.py.bridge"
            out_path = tmp / "broken.py"
            in_path.write_text("class Broken(\n", encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertRegex(result.stderr, r"broken\.py\.bridge:\d+:\d+: error:")

    def test_non_utf8_source_reported_with_location(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "latin1.py.bridge"
            out_path = tmp / "latin1.py"
            in_path.write_bytes(b"x = 1\nname = '\xe9t\xe9'\n")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertRegex(result.stderr, r"latin1\.py\.bridge:2:9: error: schema source is not valid UTF-8")
            self.assertNotIn("Traceback", result.stderr)
            self.assertFalse(out_path.exists())

    def test_check_mode_reports_hand_edits(self) -> None:
        source = textwrap.dedent(
            """
            @event_handler
            @event_handler_trait(Api)
            class A:
                Ping: ()
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "a.py.bridge"
            out_path = tmp / "a.py"
            in_path.write_text(source, encoding="utf-8")

            first = self.run_gen(in_path, out_path)
            self.assertEqual(first.returncode, 0, msg=first.stderr)

            out_path.write_text(out_path.read_text(encoding="utf-8") + "EXTRA = 1\n", encoding="utf-8")
            check = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(check.returncode, 0)
            self.assertIn("was edited by hand", check.stderr)

            regenerated = self.run_gen(in_path, out_path)
            self.assertIn("generated:", regenerated.stdout)
            self.assertNotIn("EXTRA", out_path.read_text(encoding="utf-8"))

    def test_missing_input_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            result = self.run_gen(tmp / "absent.py.bridge", tmp / "absent.py")
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("input file does not exist", result.stderr)


if __name__ == "__main__":
    unittest.main()
