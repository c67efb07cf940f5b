"""
Abstract, hardware-agnostic commands.

Actions describe what should happen ("set zone X to level L") and wrap one
or more commands in a CommandGroup. The command processor later asks the
extension owning the target device to build the hardware-specific form.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class Command:
    device_id: Optional[str] = None

    @property
    def feature_id(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ZoneSetLevel(Command):
    zone_id: str = ""
    zone_address: str = ""
    zone_name: str = ""
    level: float = 0.0

    @property
    def feature_id(self) -> str:
        return self.zone_id

    def __str__(self) -> str:
        return f"Zone[{self.zone_name}] Set Level: {self.level:.2f}"


@dataclass(frozen=True)
class SceneSet(Command):
    scene_id: str = ""
    scene_address: str = ""
    scene_name: str = ""

    def __str__(self) -> str:
        return f"Scene[{self.scene_name}] Set"


@dataclass
class CommandGroup:
    """The atomic unit of work submitted to the command processor."""
    desc: str
    cmds: List[Command] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created: float = field(default_factory=time.time)

    def __len__(self) -> int:
        return len(self.cmds)

    def __str__(self) -> str:
        return f"CommandGroup[{self.id}] {self.desc} ({len(self.cmds)} cmd)"
