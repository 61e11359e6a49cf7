from pilot.action.abstract_action import AbstractAction, ActionId
from pilot.action.action_catalog import (
    ActionCatalog,
    ActionCatalogIssue,
    ActionCatalogIssueKind,
)
from pilot.action.change_knob_action import (
    ChangeIntegerKnobAction,
    ChangeKnobAction,
    ToggleBooleanKnobAction,
)
from pilot.action.change_knob_action_generator import (
    ChangeKnobActionGenerator,
    KnobChangeConfig,
    load_knob_change_config,
)
