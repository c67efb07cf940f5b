"""
Actions - What a recipe does when its trigger fires.

execute() only builds a CommandGroup and hands it to the command
processor; transmission happens later on the processor's worker.
"""
import logging
import threading
from typing import Any, Dict, List, Tuple

from commands import CommandGroup, SceneSet, ZoneSetLevel

from .ingredients import FLOAT, STRING, BindError, Ingredient, bind_values, dump_values

logger = logging.getLogger("modules.actions")


class ActionError(Exception):
    """Raised when an action cannot be executed against the current system."""
    pass


class Action:
    """Base class for action variants."""

    NAME = ""
    DESCRIPTION = ""
    INGREDIENTS: Tuple[Ingredient, ...] = ()

    @classmethod
    def type(cls) -> str:
        return cls.__name__

    def name(self) -> str:
        return self.NAME

    def description(self) -> str:
        return self.DESCRIPTION

    @classmethod
    def ingredients(cls) -> List[Ingredient]:
        return list(cls.INGREDIENTS)

    @classmethod
    def new(cls) -> "Action":
        return cls()

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "Action":
        raise NotImplementedError

    def ingredient_values(self) -> Dict[str, Any]:
        raise NotImplementedError

    def dump_ingredients(self) -> Dict[str, Any]:
        return dump_values(self.INGREDIENTS, self.ingredient_values())

    def execute(self, system):
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.type()}({self.ingredient_values()})"


# =============================================================================
# HELPERS
# =============================================================================

def _check_level(field: str, level: float):
    if not 0.0 <= level <= 100.0:
        raise BindError(field, "level must be between 0 and 100")


def _zone_command(system, zone_id: str, level: float) -> ZoneSetLevel:
    zone = system.zones.get(zone_id)
    if zone is None:
        raise ActionError(f"Unknown ZoneID {zone_id}")
    return ZoneSetLevel(device_id=zone.device_id, zone_id=zone.id,
                        zone_address=zone.address, zone_name=zone.name, level=level)


def _scene_group(system, scene_id: str) -> CommandGroup:
    scene = system.scenes.get(scene_id)
    if scene is None:
        raise ActionError(f"Unknown SceneID {scene_id}")

    desc = f"Scene[{scene.name}] Set"
    if not scene.is_managed:
        return CommandGroup(desc, [SceneSet(device_id=scene.device_id, scene_id=scene.id,
                                            scene_address=scene.address,
                                            scene_name=scene.name)])

    if not scene.commands:
        raise ActionError(f"Scene {scene.name} has no zone levels")
    # Managed scenes are expanded into their zone levels
    return CommandGroup(desc, [_zone_command(system, c.zone_id, c.level)
                               for c in scene.commands])


def _submit(system, group: CommandGroup):
    logger.info(f"Executing: {group.desc}")
    system.cmd_processor.enqueue(group)


# =============================================================================
# VARIANTS
# =============================================================================

class ZoneSetLevelAction(Action):
    NAME = "Zone Set Level"
    DESCRIPTION = "Sets the zone to the specified level"
    INGREDIENTS = (
        Ingredient("Level", "Level", "The target level for the zone, between 0-100",
                   FLOAT, required=True),
        Ingredient("ZoneID", "Zone ID", "The ID of the zone whose level will be set",
                   STRING, required=True, reference="zone"),
    )

    def __init__(self, zone_id: str = "", level: float = 0.0):
        self.zone_id = zone_id
        self.level = level

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "ZoneSetLevelAction":
        bound = bind_values(cls.INGREDIENTS, values)
        _check_level("Level", bound["Level"])
        return cls(zone_id=bound["ZoneID"], level=bound["Level"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {"Level": self.level, "ZoneID": self.zone_id}

    def execute(self, system):
        cmd = _zone_command(system, self.zone_id, self.level)
        _submit(system, CommandGroup(f"Zone[{cmd.zone_name}] Set Level {self.level:.2f}", [cmd]))


class ZoneSetLevelToggleAction(Action):
    """Alternates a zone between two levels on every execution."""

    NAME = "Zone Set Level Toggle"
    DESCRIPTION = "Toggles the zone between two levels"
    INGREDIENTS = (
        Ingredient("ZoneID", "Zone ID", "The ID of the zone whose level will be set",
                   STRING, required=True, reference="zone"),
        Ingredient("Level1", "Level 1", "The first level, between 0-100", FLOAT,
                   required=True),
        Ingredient("Level2", "Level 2", "The second level, between 0-100", FLOAT,
                   required=True),
    )

    def __init__(self, zone_id: str = "", level1: float = 0.0, level2: float = 0.0):
        self.zone_id = zone_id
        self.level1 = level1
        self.level2 = level2
        self._toggled = False
        self._lock = threading.Lock()

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "ZoneSetLevelToggleAction":
        bound = bind_values(cls.INGREDIENTS, values)
        _check_level("Level1", bound["Level1"])
        _check_level("Level2", bound["Level2"])
        return cls(zone_id=bound["ZoneID"], level1=bound["Level1"], level2=bound["Level2"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {"ZoneID": self.zone_id, "Level1": self.level1, "Level2": self.level2}

    def execute(self, system):
        with self._lock:
            level = self.level2 if self._toggled else self.level1
            cmd = _zone_command(system, self.zone_id, level)
            self._toggled = not self._toggled
        _submit(system, CommandGroup(f"Zone[{cmd.zone_name}] Toggle Level {level:.2f}", [cmd]))


class SceneSetAction(Action):
    NAME = "Scene Set"
    DESCRIPTION = "Sets the specified scene"
    INGREDIENTS = (
        Ingredient("SceneID", "Scene ID", "The ID of the scene to set", STRING,
                   required=True, reference="scene"),
    )

    def __init__(self, scene_id: str = ""):
        self.scene_id = scene_id

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "SceneSetAction":
        bound = bind_values(cls.INGREDIENTS, values)
        return cls(scene_id=bound["SceneID"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {"SceneID": self.scene_id}

    def execute(self, system):
        _submit(system, _scene_group(system, self.scene_id))


class SceneSetToggleAction(Action):
    """Alternates between two scenes on every execution."""

    NAME = "Scene Set Toggle"
    DESCRIPTION = "Toggles between two scenes"
    INGREDIENTS = (
        Ingredient("SceneID1", "Scene ID 1", "The first scene", STRING,
                   required=True, reference="scene"),
        Ingredient("SceneID2", "Scene ID 2", "The second scene", STRING,
                   required=True, reference="scene"),
    )

    def __init__(self, scene_id1: str = "", scene_id2: str = ""):
        self.scene_id1 = scene_id1
        self.scene_id2 = scene_id2
        self._toggled = False
        self._lock = threading.Lock()

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "SceneSetToggleAction":
        bound = bind_values(cls.INGREDIENTS, values)
        return cls(scene_id1=bound["SceneID1"], scene_id2=bound["SceneID2"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {"SceneID1": self.scene_id1, "SceneID2": self.scene_id2}

    def execute(self, system):
        with self._lock:
            scene_id = self.scene_id2 if self._toggled else self.scene_id1
            group = _scene_group(system, scene_id)
            self._toggled = not self._toggled
        _submit(system, group)


ACTION_TYPES = (ZoneSetLevelAction, ZoneSetLevelToggleAction, SceneSetAction,
                SceneSetToggleAction)
