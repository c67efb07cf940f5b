"""
Lutron Smart Bridge Pro extension.

Integration protocol (telnet, CRLF terminated lines):
  Set zone level   #OUTPUT,<zone>,1,<level>
  Press scene      #DEVICE,<bridge>,<scene>,3
  Zone report      ~OUTPUT,<zone>,1,<level>
  Button press     ~DEVICE,<device>,<button>,3
  Button release   ~DEVICE,<device>,<button>,4

The bridge prompts for login and password after connecting.
"""
import asyncio
import logging
from typing import Optional

from commands import SceneSet, ZoneSetLevel
from error_handler import ConnectError, TransmitError, with_retries
from events import BUTTON_RELEASE, FeatureReportingEvent, GenericEvent, RawLineEvent, button_press

from .base import (
    CommandBuilder,
    ExtEvents,
    Extension,
    FeatureReport,
    HardwareCommand,
    Network,
    register_extension,
)

logger = logging.getLogger("handlers.lutron")

MODEL_NUMBERS = {"l-bdgpro2-wh", "l-bdg2-wh"}
BRIDGE_INTEGRATION_ID = "1"
DEFAULT_PORT = 23
DEFAULT_SUPPRESS_DELAY_MS = 2000
LOGIN_TIMEOUT = 10.0

ACTION_PRESS = "3"
ACTION_RELEASE = "4"
ACTION_SET_LEVEL = "1"


def _host_port(address: str):
    host, _, port = address.partition(":")
    return host, int(port) if port else DEFAULT_PORT


class LutronNetwork(Network):
    """Opens a telnet connection and completes the login handshake."""

    async def connect(self, device):
        return await self._open(device)

    @with_retries(max_retries=2, backoff_base=2.0, timeout=LOGIN_TIMEOUT)
    async def _open(self, device):
        host, port = _host_port(device.address)
        logger.info(f"Attempting to connect to Device[{device.name}] {device.address}")
        reader, writer = await asyncio.open_connection(host, port)

        auth = device.auth
        try:
            await reader.readuntil(b":")
            writer.write(f"{auth.login if auth else ''}\r\n".encode())
            await writer.drain()

            await reader.readuntil(b":")
            writer.write(f"{auth.password if auth else ''}\r\n".encode())
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, OSError) as e:
            writer.close()
            raise ConnectError(f"authenticate failed for {device.name}: {e}") from e

        logger.info(f"Connected to Device[{device.name}] {device.address}")
        return reader, writer


class LutronCmdBuilder(CommandBuilder):
    """Builds integration protocol lines for a bridge device."""

    def __init__(self, system, device, suppress_delay: float):
        self.system = system
        self.device = device
        self.suppress_delay = suppress_delay

    def build(self, cmd) -> HardwareCommand:
        if isinstance(cmd, ZoneSetLevel):
            if not cmd.zone_address:
                raise TransmitError(f"Zone {cmd.zone_name} has no address")
            line = f"#OUTPUT,{cmd.zone_address},{ACTION_SET_LEVEL},{cmd.level:.2f}\r\n"
            return HardwareCommand(
                device=self.device,
                payload=line.encode(),
                desc=str(cmd),
                report=FeatureReport(cmd.feature_id, {"level": cmd.level}, self.suppress_delay),
            )

        if isinstance(cmd, SceneSet):
            if not cmd.scene_address:
                raise TransmitError(f"Scene {cmd.scene_name} has no address")
            line = f"#DEVICE,{BRIDGE_INTEGRATION_ID},{cmd.scene_address},{ACTION_PRESS}\r\n"
            return HardwareCommand(device=self.device, payload=line.encode(), desc=str(cmd))

        return super().build(cmd)


class LutronEventConsumer:
    """
    Translates raw bridge lines into reporting and button events and
    enqueues them back on the broker.
    """

    def __init__(self, system, device):
        self.system = system
        self.device = device
        self.name = f"lutron:{device.name}"

    def accepts(self, event) -> bool:
        return isinstance(event, RawLineEvent) and event.device is self.device

    def consume(self, event):
        translated = self.translate(event.line)
        if translated is not None:
            self.system.broker.enqueue(translated)

    def translate(self, line: str):
        parts = [p.strip() for p in line.strip().split(",")]
        if len(parts) < 3:
            return None

        command = parts[0]
        if command == "~OUTPUT" and len(parts) >= 4 and parts[2] == ACTION_SET_LEVEL:
            zone = self.device.zone_by_address(parts[1])
            if zone is None:
                logger.debug(f"[{self.device.name}] Report for unknown zone {parts[1]}")
                return None
            try:
                level = float(parts[3])
            except ValueError:
                logger.warning(f"[{self.device.name}] Bad level in line: {line}")
                return None
            return FeatureReportingEvent(device=self.device, feature_id=zone.feature_id,
                                         attrs={"level": level})

        if command == "~DEVICE" and len(parts) >= 4:
            button = self._find_button(parts[1], parts[2])
            if button is None:
                return None
            if parts[3] == ACTION_PRESS:
                return button_press(self.device, button.id)
            if parts[3] == ACTION_RELEASE:
                return GenericEvent(device=self.device, name=BUTTON_RELEASE,
                                    payload={"button_id": button.id})
        return None

    def _find_button(self, device_address: str, button_address: str):
        owner = None
        if device_address in (self.device.address, BRIDGE_INTEGRATION_ID):
            owner = self.device
        else:
            for child in self.device.devices.values():
                if child.address == device_address:
                    owner = child
                    break
        if owner is None:
            return None
        return owner.button_by_address(button_address)


@register_extension("lutron")
class LutronExtension(Extension):

    def _handles(self, device) -> bool:
        return (device.model_number or "").lower() in MODEL_NUMBERS

    @property
    def suppress_delay(self) -> float:
        return float(self.config.get("suppress_delay_ms", DEFAULT_SUPPRESS_DELAY_MS)) / 1000.0

    def builder_for_device(self, system, device) -> Optional[CommandBuilder]:
        if not self._handles(device):
            return None
        return LutronCmdBuilder(system, device, self.suppress_delay)

    def network_for_device(self, system, device) -> Optional[Network]:
        if not self._handles(device):
            return None
        return LutronNetwork()

    def events_for_device(self, system, device) -> Optional[ExtEvents]:
        if not self._handles(device):
            return None
        return ExtEvents(consumer=LutronEventConsumer(system, device))
