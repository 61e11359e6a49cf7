from dataclasses import dataclass
from enum import Enum, unique
from typing import Iterable, Iterator, Optional

from pilot.action.abstract_action import AbstractAction, ActionId
from pilot.exceptions import AmbiguousActionDefinitionError, NotFoundError


@unique
class ActionCatalogIssueKind(Enum):
    # The same action id was added twice.
    DUPLICATE = 0
    # A different action id with the same effect already exists.
    AMBIGUOUS = 1


@dataclass(frozen=True)
class ActionCatalogIssue:
    kind: ActionCatalogIssueKind
    action_id: ActionId
    conflicting_action_id: ActionId

    def describe(self) -> str:
        if self.kind == ActionCatalogIssueKind.DUPLICATE:
            return f"action {self.action_id} is defined more than once"
        return f"action {self.action_id} has the same effect as action {self.conflicting_action_id}"


class ActionCatalog:
    """
    The candidate actions of the pilot, in insertion order. It is built once at startup and is
    read-only afterwards.
    """

    def __init__(self, actions: Iterable[AbstractAction] = ()) -> None:
        self.action_map: dict[ActionId, AbstractAction] = {}
        self._effect_to_action_id: dict[tuple[object, ...], ActionId] = {}
        for action in actions:
            issue = self.try_add(action)
            if issue is not None:
                raise AmbiguousActionDefinitionError(issue.describe())

    def try_add(self, action: AbstractAction) -> Optional[ActionCatalogIssue]:
        """
        Add the action, or return why it can't be added. The catalog is unchanged in the latter case.
        """
        if action.action_id in self.action_map:
            return ActionCatalogIssue(
                ActionCatalogIssueKind.DUPLICATE, action.action_id, action.action_id
            )
        effect = action.effect_key()
        if effect in self._effect_to_action_id:
            return ActionCatalogIssue(
                ActionCatalogIssueKind.AMBIGUOUS,
                action.action_id,
                self._effect_to_action_id[effect],
            )
        self.action_map[action.action_id] = action
        self._effect_to_action_id[effect] = action.action_id
        return None

    def get_action(self, action_id: ActionId) -> AbstractAction:
        if action_id not in self.action_map:
            raise NotFoundError(f"action {action_id} is not in the catalog")
        return self.action_map[action_id]

    def get_candidate_actions(self) -> list[ActionId]:
        return list(self.action_map.keys())

    def __contains__(self, action_id: object) -> bool:
        return action_id in self.action_map

    def __iter__(self) -> Iterator[AbstractAction]:
        return iter(self.action_map.values())

    def __len__(self) -> int:
        return len(self.action_map)
