from typing import NewType

from pilot.settings import KnobSettings

ActionId = NewType("ActionId", int)


class AbstractAction:
    """
    A reversible change to exactly one configuration parameter. Applying an action only ever touches
    the KnobSettings it is given, so the search can apply actions to clones without side effects.
    """

    def __init__(self, action_id: ActionId, knob_name: str) -> None:
        self.action_id = action_id
        self.knob_name = knob_name
        # Actions that undo this one.
        self.reverse_action_ids: list[ActionId] = []

    def add_reverse_action(self, action_id: ActionId) -> None:
        if action_id not in self.reverse_action_ids:
            self.reverse_action_ids.append(action_id)

    def get_reverse_action_ids(self) -> list[ActionId]:
        return self.reverse_action_ids

    # Subclasses should override these functions.
    def apply(self, settings: KnobSettings) -> None:
        raise NotImplementedError

    def is_valid(self, settings: KnobSettings) -> bool:
        """
        Whether applying the action to these settings produces a legal configuration.
        """
        raise NotImplementedError

    def to_sql_command(self, settings: KnobSettings) -> str:
        """
        The command that applies this action to a configuration currently equal to settings.
        """
        raise NotImplementedError

    def effect_key(self) -> tuple[object, ...]:
        """
        Two actions with the same effect key do the same thing.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(action_id={self.action_id}, knob_name={self.knob_name})"
