from pilot.action.abstract_action import AbstractAction, ActionId
from pilot.settings import KnobSettings, KnobType, KnobValue


class ChangeKnobAction(AbstractAction):
    def new_value(self, settings: KnobSettings) -> KnobValue:
        raise NotImplementedError

    def apply(self, settings: KnobSettings) -> None:
        settings.set(self.knob_name, self.new_value(settings))

    def to_sql_command(self, settings: KnobSettings) -> str:
        spec = settings.get_spec(self.knob_name)
        return f"SET {self.knob_name} = {spec.format_value(self.new_value(settings))};"


class ToggleBooleanKnobAction(ChangeKnobAction):
    """
    Flips a boolean knob. It is its own reverse.
    """

    def __init__(self, action_id: ActionId, knob_name: str) -> None:
        super().__init__(action_id, knob_name)
        self.add_reverse_action(action_id)

    def new_value(self, settings: KnobSettings) -> KnobValue:
        return not settings.get(self.knob_name)

    def is_valid(self, settings: KnobSettings) -> bool:
        return settings.get_spec(self.knob_name).knob_type == KnobType.BOOLEAN

    def effect_key(self) -> tuple[object, ...]:
        return (self.knob_name, "toggle")


class ChangeIntegerKnobAction(ChangeKnobAction):
    """
    Adds a signed delta to an integer knob. It pairs with the action that adds the negated delta.
    """

    def __init__(self, action_id: ActionId, knob_name: str, delta: int) -> None:
        super().__init__(action_id, knob_name)
        assert delta != 0, f"a zero delta on {knob_name} would be a no-op"
        self.delta = delta

    def new_value(self, settings: KnobSettings) -> KnobValue:
        return int(settings.get(self.knob_name)) + self.delta

    def is_valid(self, settings: KnobSettings) -> bool:
        spec = settings.get_spec(self.knob_name)
        if spec.knob_type != KnobType.INTEGER:
            return False
        return spec.contains(self.new_value(settings))

    def effect_key(self) -> tuple[object, ...]:
        return (self.knob_name, "delta", self.delta)

    def __repr__(self) -> str:
        return f"ChangeIntegerKnobAction(action_id={self.action_id}, knob_name={self.knob_name}, delta={self.delta})"
