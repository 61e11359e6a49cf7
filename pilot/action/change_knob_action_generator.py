from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pilot.action.abstract_action import ActionId
from pilot.action.action_catalog import ActionCatalog
from pilot.action.change_knob_action import (
    ChangeIntegerKnobAction,
    ToggleBooleanKnobAction,
)
from pilot.exceptions import AmbiguousActionDefinitionError, InvalidConfigError
from pilot.settings import KnobType, SettingsManager
from util.workspace import PilotWorkspace


@dataclass
class KnobChangeConfig:
    """
    Which knobs the pilot may change, and how. Boolean knobs are toggled. Each delta of an integer
    knob produces two actions: +delta and -delta.
    """

    bool_knobs: list[str] = field(default_factory=list)
    int_knobs: dict[str, list[int]] = field(default_factory=dict)

    def get_knob_names(self) -> list[str]:
        return self.bool_knobs + list(self.int_knobs.keys())


def load_knob_change_config(
    path: Path, pilot_workspace: Optional[PilotWorkspace] = None
) -> KnobChangeConfig:
    if pilot_workspace is not None:
        f = pilot_workspace.open_and_save(path)
    else:
        f = open(path)
    with f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    bool_knobs = data.get("bool_knobs", []) or []
    int_knobs = data.get("int_knobs", {}) or {}
    if not isinstance(bool_knobs, list) or not isinstance(int_knobs, dict):
        raise InvalidConfigError(
            f"{path}: bool_knobs must be a list and int_knobs a mapping"
        )
    for knob_name, deltas in int_knobs.items():
        if not isinstance(deltas, list) or any(
            isinstance(d, bool) or not isinstance(d, int) or d <= 0 for d in deltas
        ):
            raise InvalidConfigError(
                f"{path}: the deltas of {knob_name} must be a list of positive integers"
            )
    return KnobChangeConfig(
        bool_knobs=[str(k) for k in bool_knobs],
        int_knobs={str(k): list(v) for k, v in int_knobs.items()},
    )


class ChangeKnobActionGenerator:
    def generate_actions(
        self, settings_manager: SettingsManager, knob_change_config: KnobChangeConfig
    ) -> ActionCatalog:
        """
        Build the candidate actions for the knobs in the config. Action ids are assigned in the
        order the config lists the knobs, starting at 0.
        """
        catalog = ActionCatalog()
        next_action_id = 0

        def add(action: Any) -> None:
            issue = catalog.try_add(action)
            if issue is not None:
                raise AmbiguousActionDefinitionError(issue.describe())

        for knob_name in knob_change_config.bool_knobs:
            if settings_manager.get_knob_spec(knob_name).knob_type != KnobType.BOOLEAN:
                raise InvalidConfigError(f"{knob_name} is not a boolean knob")
            add(ToggleBooleanKnobAction(ActionId(next_action_id), knob_name))
            next_action_id += 1

        for knob_name, deltas in knob_change_config.int_knobs.items():
            if settings_manager.get_knob_spec(knob_name).knob_type != KnobType.INTEGER:
                raise InvalidConfigError(f"{knob_name} is not an integer knob")
            for delta in deltas:
                increase = ChangeIntegerKnobAction(
                    ActionId(next_action_id), knob_name, delta
                )
                decrease = ChangeIntegerKnobAction(
                    ActionId(next_action_id + 1), knob_name, -delta
                )
                increase.add_reverse_action(decrease.action_id)
                decrease.add_reverse_action(increase.action_id)
                add(increase)
                add(decrease)
                next_action_id += 2

        return catalog
