"""
Device Model - Addressable hardware entities.

A Device owns child entities (zones, buttons, sensors and, for hubs, other
devices). Adding a child whose address is already taken is an integrity
error and leaves the collection untouched.

Connection handling:
  connect() asks the device's extension for a network, opens the
  connection and registers a LineProducer with the broker. The producer
  frames the byte stream into lines and enqueues one RawLineEvent per line.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from error_handler import ConnectError, TransmitError
from events import DEVICE_DISCONNECTED, GenericEvent, RawLineEvent

logger = logging.getLogger("device")

# Prompt characters some bridges print in front of every line
PROMPT_CHARS = "GNET>"
LINE_END = "\r\n"
READ_CHUNK = 4096


class IntegrityError(Exception):
    """Raised when adding an entity would break address/ID uniqueness."""
    pass


@dataclass
class Identifiable:
    id: str = ""
    name: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"ID": self.id, "Name": self.name, "Description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identifiable":
        return cls(id=str(data.get("ID", "")),
                   name=str(data.get("Name", "")),
                   description=str(data.get("Description", "")))


@dataclass
class Auth:
    login: str = ""
    password: str = ""


@dataclass
class Zone(Identifiable):
    address: str = ""
    device_id: Optional[str] = None
    type: str = "light"
    output: str = "continuous"

    @property
    def feature_id(self) -> str:
        """The zone's level is the feature commands target and events report."""
        return self.id


@dataclass
class Button(Identifiable):
    address: str = ""
    device_id: Optional[str] = None


@dataclass
class Sensor(Identifiable):
    address: str = ""
    device_id: Optional[str] = None
    attr: str = "level"


@dataclass
class SceneCommand:
    zone_id: str
    level: float


@dataclass
class Scene(Identifiable):
    """
    A scene is either addressed on a device (the hardware stores it) or
    managed here as a list of zone levels.
    """
    address: str = ""
    device_id: Optional[str] = None
    commands: List[SceneCommand] = field(default_factory=list)

    @property
    def is_managed(self) -> bool:
        return not (self.address and self.device_id)


@dataclass(eq=False)
class Device(Identifiable):
    address: str = ""
    model_number: str = ""
    auth: Optional[Auth] = None
    hub_id: Optional[str] = None

    zones: Dict[str, Zone] = field(default_factory=dict)
    buttons: Dict[str, Button] = field(default_factory=dict)
    sensors: Dict[str, Sensor] = field(default_factory=dict)
    devices: Dict[str, "Device"] = field(default_factory=dict)

    last_seen: float = 0
    _reader: Any = field(default=None, repr=False)
    _writer: Any = field(default=None, repr=False)
    _producer: Any = field(default=None, repr=False)
    _write_lock: Optional[asyncio.Lock] = field(default=None, repr=False)

    # =========================================================================
    # CHILD ENTITIES
    # =========================================================================

    def add_zone(self, zone: Zone):
        self._add_child(self.zones, zone, "zone")

    def add_button(self, button: Button):
        self._add_child(self.buttons, button, "button")

    def add_sensor(self, sensor: Sensor):
        self._add_child(self.sensors, sensor, "sensor")

    def add_device(self, device: "Device"):
        if device is self:
            raise IntegrityError(f"Device {self.id} cannot own itself")
        self._add_child(self.devices, device, "device")
        device.hub_id = self.id

    def _add_child(self, collection: Dict[str, Any], child, kind: str):
        if not child.id:
            raise IntegrityError(f"{kind} has no ID")
        if child.id in collection:
            raise IntegrityError(f"Duplicate {kind} ID {child.id} on device {self.name}")
        if child.address and any(c.address == child.address for c in collection.values()):
            raise IntegrityError(
                f"Duplicate {kind} address {child.address} on device {self.name}"
            )
        if kind != "device":
            child.device_id = self.id
        collection[child.id] = child
        logger.debug(f"[{self.name}] Added {kind} {child.name} @ {child.address}")

    def zone_by_address(self, address: str) -> Optional[Zone]:
        return _by_address(self.zones, address)

    def button_by_address(self, address: str) -> Optional[Button]:
        return _by_address(self.buttons, address)

    # =========================================================================
    # CONNECTION
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self, system) -> None:
        """
        Open the device connection and start streaming events.

        Raises:
            ConnectError: no network is available for this device or the
                connection/handshake failed
        """
        network = system.extensions.find_network(system, self)
        if network is None:
            raise ConnectError(f"No network available for device {self.name} ({self.model_number})")

        try:
            reader, writer = await network.connect(self)
        except ConnectError:
            raise
        except Exception as e:
            raise ConnectError(f"Failed to connect to {self.name} @ {self.address}: {e}") from e

        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._producer = LineProducer(self, reader)
        system.broker.add_producer(self._producer)
        logger.info(f"[{self.name}] Connected to {self.address}")

    async def disconnect(self, system=None):
        if system is not None and self._producer is not None:
            system.broker.remove_producer(self._producer)
        self._producer = None
        writer, self._writer, self._reader = self._writer, None, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception as e:
                logger.debug(f"[{self.name}] Error while closing connection: {e}")
        logger.info(f"[{self.name}] Disconnected")

    async def write(self, data: bytes):
        """Write raw bytes to the device connection."""
        if self._writer is None:
            raise TransmitError(f"Device {self.name} is not connected", transient=True)
        async with self._write_lock:
            self._writer.write(data)
            await self._writer.drain()

    def _connection_closed(self, producer) -> bool:
        """The stream read by producer ended: release the connection so it can be reopened."""
        if producer is not self._producer:
            return False
        writer = self._writer
        self._producer = None
        self._writer = None
        self._reader = None
        if writer is not None:
            writer.close()
        return True


def _by_address(collection: Dict[str, Any], address: str):
    for child in collection.values():
        if child.address == address:
            return child
    return None


def split_lines(buffer: str) -> Tuple[List[str], str]:
    """
    Frame a text buffer into lines.

    Leading prompt characters and spaces are skipped, lines end with CRLF and
    empty lines are ignored. Returns the complete lines and the unconsumed
    remainder.
    """
    lines = []
    while True:
        stripped = buffer.lstrip(PROMPT_CHARS).lstrip(" ")
        index = stripped.find(LINE_END)
        if index == -1:
            return lines, buffer
        if index > 0:
            lines.append(stripped[:index])
        buffer = stripped[index + len(LINE_END):]


class LineProducer:
    """Reads a device stream and enqueues one RawLineEvent per framed line."""

    def __init__(self, device: Device, reader):
        self.device = device
        self.reader = reader
        self.name = f"lines:{device.name}"

    async def start_producing(self, broker):
        buffer = ""
        try:
            while True:
                chunk = await self.reader.read(READ_CHUNK)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                lines, buffer = split_lines(buffer)
                for line in lines:
                    self.device.last_seen = time.time()
                    logger.debug(f"[{self.device.name}] line: {line}")
                    broker.enqueue(RawLineEvent(device=self.device, line=line))
        except OSError as e:
            logger.warning(f"[{self.device.name}] Read failed: {e}")

        logger.info(f"[{self.device.name}] Stream closed")
        if not self.device._connection_closed(self):
            return
        broker.enqueue(GenericEvent(device=self.device, name=DEVICE_DISCONNECTED,
                                    payload={"device_id": self.device.id}))
