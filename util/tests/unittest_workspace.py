import os
import shutil
import unittest
from pathlib import Path
from typing import Optional

from util.workspace import (
    PILOT_CONFIG_PATH_ENVVAR,
    PilotWorkspace,
    fully_resolve_path,
    get_config_path,
    get_latest_run_path_from_workspace_path,
    get_runs_path_from_workspace_path,
    is_fully_resolved,
)


class WorkspaceTests(unittest.TestCase):
    scratchspace_path: Path = Path()
    workspace_path: Path = Path()

    @classmethod
    def setUpClass(cls) -> None:
        cls.scratchspace_path = Path.cwd() / "util/tests/test_workspace_scratchspace/"
        cls.workspace_path = cls.scratchspace_path / "pilot_workspace"

    def setUp(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)
        self.scratchspace_path.mkdir(parents=True)
        # In real usage, each run is a different Python process so this would be 0.
        PilotWorkspace._num_times_created_this_run = 0

    def tearDown(self) -> None:
        # You can comment this out if you want to inspect the scratchspace after a test.
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)

    def _make_input_file(self, name: str, content: str) -> Path:
        path = fully_resolve_path(self.scratchspace_path / name)
        path.write_text(content)
        return fully_resolve_path(path)

    def test_init_creates_run_dir(self) -> None:
        workspace = PilotWorkspace(fully_resolve_path(self.workspace_path))
        runs_path = get_runs_path_from_workspace_path(workspace.pilot_workspace_path)
        latest_run_path = get_latest_run_path_from_workspace_path(
            workspace.pilot_workspace_path
        )

        self.assertTrue(workspace.pilot_this_run_path.is_dir())
        self.assertEqual(workspace.pilot_this_run_path.parent, runs_path)
        self.assertTrue(workspace.pilot_this_run_path.name.startswith("run_"))
        self.assertTrue(latest_run_path.is_symlink())
        self.assertTrue(latest_run_path.resolve().samefile(workspace.pilot_this_run_path))

    def test_latest_run_follows_new_runs(self) -> None:
        first = PilotWorkspace(fully_resolve_path(self.workspace_path))
        PilotWorkspace._num_times_created_this_run = 0
        second = PilotWorkspace(fully_resolve_path(self.workspace_path))

        self.assertNotEqual(first.pilot_this_run_path, second.pilot_this_run_path)
        self.assertTrue(first.pilot_this_run_path.is_dir())
        self.assertTrue(
            second.pilot_latest_run_path.resolve().samefile(second.pilot_this_run_path)
        )

    def test_only_one_workspace_per_run(self) -> None:
        PilotWorkspace(fully_resolve_path(self.workspace_path))
        with self.assertRaises(AssertionError):
            PilotWorkspace(fully_resolve_path(self.workspace_path))

    def test_save_file(self) -> None:
        workspace = PilotWorkspace(fully_resolve_path(self.workspace_path))
        input_path = self._make_input_file("query_trace.csv", "query_id,timestamp,parameters\n")
        workspace.save_file(input_path)

        saved_path = workspace.pilot_this_run_path / "query_trace.csv"
        self.assertTrue(saved_path.is_file())
        self.assertEqual(saved_path.read_text(), input_path.read_text())

    def test_open_and_save(self) -> None:
        workspace = PilotWorkspace(fully_resolve_path(self.workspace_path))
        input_path = self._make_input_file("knobs.yaml", "bool_knobs: []\n")
        with workspace.open_and_save(input_path) as f:
            self.assertEqual(f.read(), "bool_knobs: []\n")
        self.assertTrue((workspace.pilot_this_run_path / "knobs.yaml").is_file())

        with self.assertRaises(AssertionError):
            workspace.open_and_save(Path("knobs.yaml"))

    def test_fully_resolve_path(self) -> None:
        resolved = fully_resolve_path(Path("some_dir") / ".." / "other_dir")
        self.assertEqual(resolved, Path.cwd().resolve() / "other_dir")
        # is_fully_resolved() also requires the path to exist.
        self.assertFalse(is_fully_resolved(resolved))
        self.assertTrue(is_fully_resolved(fully_resolve_path(self.scratchspace_path)))


class ConfigPathTests(unittest.TestCase):
    saved_envvar: Optional[str] = None

    def setUp(self) -> None:
        self.saved_envvar = os.environ.pop(PILOT_CONFIG_PATH_ENVVAR, None)

    def tearDown(self) -> None:
        os.environ.pop(PILOT_CONFIG_PATH_ENVVAR, None)
        if self.saved_envvar is not None:
            os.environ[PILOT_CONFIG_PATH_ENVVAR] = self.saved_envvar

    def test_default(self) -> None:
        self.assertEqual(get_config_path(), Path("pilot_config.yaml"))

    def test_envvar(self) -> None:
        os.environ[PILOT_CONFIG_PATH_ENVVAR] = "/etc/pilot/config.yaml"
        self.assertEqual(get_config_path(), Path("/etc/pilot/config.yaml"))


if __name__ == "__main__":
    unittest.main()
