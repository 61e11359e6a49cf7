"""
This file contains everything needed to manage the workspace (the pilot_workspace/ folder).
"""

import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any

import yaml

DEFAULT_PILOT_CONFIG_PATH = Path("pilot_config.yaml")
PILOT_CONFIG_PATH_ENVVAR = "PILOT_CONFIG_PATH"


def get_runs_path_from_workspace_path(workspace_path: Path) -> Path:
    return workspace_path / "task_runs"


def get_latest_run_path_from_workspace_path(workspace_path: Path) -> Path:
    return get_runs_path_from_workspace_path(workspace_path) / "latest_run.link"


class PilotWorkspace:
    """
    Every invocation of task.py gets its own run_*/ dir. Logs of the planning cycle go there, together
    with copies of the inputs (trace files, knob action configs) that the cycle read.
    """

    _num_times_created_this_run: int = 0

    def __init__(self, pilot_workspace_path: Path):
        # A new run_*/ dir is created per construction, so there should only be one per process.
        PilotWorkspace._num_times_created_this_run += 1
        assert (
            PilotWorkspace._num_times_created_this_run == 1
        ), f"PilotWorkspace has been created {PilotWorkspace._num_times_created_this_run} times. It should only be created once per run."

        self.pilot_workspace_path = pilot_workspace_path
        self.pilot_workspace_path.mkdir(parents=True, exist_ok=True)
        assert is_fully_resolved(self.pilot_workspace_path)

        self.pilot_runs_path = get_runs_path_from_workspace_path(
            self.pilot_workspace_path
        )
        self.pilot_runs_path.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            try:
                self.pilot_this_run_path = (
                    self.pilot_runs_path
                    / f"run_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}"
                )
                # `exist_ok` is False because we don't want to override a previous run's data.
                self.pilot_this_run_path.mkdir(parents=True, exist_ok=False)
                break
            except FileExistsError:
                # Two runs started within the same second.
                time.sleep(1)

        self.pilot_latest_run_path = get_latest_run_path_from_workspace_path(
            self.pilot_workspace_path
        )
        try_remove_file(self.pilot_latest_run_path)
        try_create_symlink(self.pilot_this_run_path, self.pilot_latest_run_path)

    def save_file(self, path: Path) -> None:
        """
        Copy an input file into this run's dir so the run can be inspected later even if the
        original (e.g. a trace that keeps growing) changes.
        """
        assert isinstance(path, Path)
        assert path.is_file(), f"path ({path}) is not a file"
        shutil.copy(path, self.pilot_this_run_path / path.name)

    def open_and_save(self, open_path: Path, mode: str = "r") -> IO[Any]:
        """
        Open an input file and save a copy of it in task_runs/run_*/. Only use this for reading.
        """
        assert mode == "r"
        assert is_fully_resolved(
            open_path
        ), f"open_and_save(): open_path ({open_path}) should be a fully resolved path"
        self.save_file(open_path)
        return open(open_path, mode=mode)


def get_config_path() -> Path:
    return Path(os.getenv(PILOT_CONFIG_PATH_ENVVAR, str(DEFAULT_PILOT_CONFIG_PATH)))


def get_workspace_path_from_config(pilot_config_path: Path) -> Path:
    """
    Returns the workspace path (as a fully resolved path) from the config file.
    """
    with open(pilot_config_path) as f:
        # The workspace may not exist yet so we can't call fully_resolve_path() here.
        return Path(yaml.safe_load(f)["pilot_workspace_path"]).resolve().absolute()


def make_standard_pilot_workspace() -> PilotWorkspace:
    """
    The "standard" way to make a PilotWorkspace, using the PILOT_CONFIG_PATH envvar and the default
    path of pilot_config.yaml.
    """
    return PilotWorkspace(get_workspace_path_from_config(get_config_path()))


def fully_resolve_path(inputpath: os.PathLike[str]) -> Path:
    """
    Fully resolve any path to a real, absolute path. Relative paths are relative to the current
    working directory. It does not check whether the path exists.
    """
    realabspath = Path(inputpath).expanduser()
    if not realabspath.is_absolute():
        realabspath = Path.cwd() / realabspath
    return realabspath.resolve()


def is_fully_resolved(path: Path) -> bool:
    """
    Checks if a path exists, is absolute, and contains no symlinks in its entire ancestry.
    """
    assert isinstance(path, Path)
    resolved_path = path.resolve()
    if not resolved_path.exists():
        return False
    # Comparing strings is the strictest form of equality here.
    return str(resolved_path) == str(path)


def try_create_symlink(src_path: Path, dst_path: Path) -> None:
    assert dst_path.name.endswith(".link")
    try:
        os.symlink(src_path, dst_path)
    except FileExistsError:
        pass


def try_remove_file(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
