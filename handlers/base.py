"""
Extension Base - Hardware family integration points.

An extension exposes, per device it understands:
  - a command builder (abstract command -> transmittable hardware command)
  - a network (how to open and authenticate a connection)
  - event translation (raw device lines -> reporting / button events)

Extensions register themselves with @register_extension so the composition
root can load every known hardware family at start-up.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from error_handler import TransmitError

logger = logging.getLogger("handlers.base")

# Registry to map extension names to Extension classes
EXTENSION_REGISTRY: Dict[str, type] = {}


def register_extension(name: str):
    """Decorator to register an extension class under a name."""
    def decorator(cls):
        EXTENSION_REGISTRY[name] = cls
        cls.NAME = name
        logger.info(f"📋 Registered extension {cls.__name__} as '{name}'")
        return cls
    return decorator


@dataclass
class FeatureReport:
    """Values a command sets, replayed and then shielded from stale reports."""
    feature_id: str
    attrs: Mapping[str, Any]
    delay: float


@dataclass
class HardwareCommand:
    """A command in its transmittable, hardware-specific form."""
    device: Any
    payload: bytes
    desc: str = ""
    report: Optional[FeatureReport] = None

    async def transmit(self):
        await self.device.write(self.payload)

    def __str__(self) -> str:
        return self.desc or self.payload.decode("utf-8", errors="replace").strip()


class CommandBuilder:
    """Builds hardware commands for one hardware family."""

    def build(self, cmd) -> HardwareCommand:
        raise TransmitError(f"Unsupported command type: {type(cmd).__name__}")


class Network:
    """Opens connections to devices of one hardware family."""

    async def connect(self, device):
        """Return an asyncio (reader, writer) pair for the device."""
        raise NotImplementedError


@dataclass
class ExtEvents:
    """Event consumer/producer an extension provides for a device."""
    consumer: Any = None
    producer: Any = None


class Extension:
    """
    Base class for hardware family extensions.
    Every hook returns None when the device is not handled.
    """
    NAME = "extension"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

    def builder_for_device(self, system, device) -> Optional[CommandBuilder]:
        return None

    def network_for_device(self, system, device) -> Optional[Network]:
        return None

    def events_for_device(self, system, device) -> Optional[ExtEvents]:
        return None


class Extensions:
    """All loaded extensions of a system."""

    def __init__(self):
        self._extensions: List[Extension] = []

    def register(self, ext: Extension):
        self._extensions.append(ext)
        logger.info(f"Extension loaded: {ext.NAME}")

    def load_registered(self, config: Optional[Dict[str, Any]] = None):
        """Instantiate every extension in the registry with its config section."""
        config = config or {}
        for name, cls in sorted(EXTENSION_REGISTRY.items()):
            self.register(cls(config.get(name, {})))

    def find_cmd_builder(self, system, device) -> Optional[CommandBuilder]:
        for ext in self._extensions:
            builder = ext.builder_for_device(system, device)
            if builder is not None:
                return builder
        return None

    def find_network(self, system, device) -> Optional[Network]:
        for ext in self._extensions:
            network = ext.network_for_device(system, device)
            if network is not None:
                return network
        return None

    def find_events(self, system, device) -> Optional[ExtEvents]:
        for ext in self._extensions:
            events = ext.events_for_device(system, device)
            if events is not None:
                return events
        return None

    @property
    def names(self) -> List[str]:
        return [ext.NAME for ext in self._extensions]

    def __len__(self) -> int:
        return len(self._extensions)
