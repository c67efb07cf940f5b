"""
CookBooks - Static catalogs of the triggers and actions a hardware family
offers. The recipe manager builds its type-tag factories from them.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Type

from device import Identifiable

from .actions import (
    Action,
    SceneSetAction,
    SceneSetToggleAction,
    ZoneSetLevelAction,
    ZoneSetLevelToggleAction,
)
from .triggers import ButtonTrigger, TimeTrigger, Trigger


@dataclass
class CookBook(Identifiable):
    logo_url: str = ""
    triggers: List[Type[Trigger]] = field(default_factory=list)
    actions: List[Type[Action]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "logoUrl": self.logo_url,
            "triggers": [describe(t) for t in self.triggers],
            "actions": [describe(a) for a in self.actions],
        }


def describe(variant) -> Dict[str, Any]:
    """UI-facing description of a trigger or action variant."""
    instance = variant.new()
    return {
        "id": variant.type(),
        "name": instance.name(),
        "description": instance.description(),
        "ingredients": [i.to_dict() for i in variant.ingredients()],
    }


COOKBOOKS = (
    CookBook(
        id="1",
        name="Lutron Smart Bridge Pro",
        description="Recipes for the Lutron Smart Bridge Pro",
        logo_url="lutron_400x400.png",
        triggers=[ButtonTrigger, TimeTrigger],
        actions=[ZoneSetLevelAction, ZoneSetLevelToggleAction, SceneSetAction,
                 SceneSetToggleAction],
    ),
)


def build_trigger_factory(cookbooks=COOKBOOKS) -> Dict[str, Type[Trigger]]:
    factory = {}
    for book in cookbooks:
        for trigger in book.triggers:
            factory[trigger.type()] = trigger
    return factory


def build_action_factory(cookbooks=COOKBOOKS) -> Dict[str, Type[Action]]:
    factory = {}
    for book in cookbooks:
        for action in book.actions:
            factory[action.type()] = action
    return factory
