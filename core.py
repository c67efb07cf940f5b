"""
Home Service Core - Composition root.

Owns the broker, the loaded extensions, the command processor, the recipe
manager and the inventory (devices, zones, scenes, buttons, sensors).
IDs are assigned on registration and never reused within the process.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from command_queue import CommandProcessor
from device import Auth, Button, Device, IntegrityError, Scene, SceneCommand, Sensor, Zone
from event_bus import EventBroker
from events import DEVICE_DISCONNECTED, GenericEvent, clock_tick
from handlers import Extensions
from modules.recipes import RecipeManager
from yaml_loader import DEFAULT_CONFIG, get_conf

logger = logging.getLogger("core")


class ClockTicker:
    """
    Enqueues a clock tick at every minute boundary.
    Time based triggers evaluate these ticks.
    """

    def __init__(self, service, now: Callable[[], datetime] = datetime.now):
        self.service = service
        self._now = now
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.info("Clock ticker started")

    def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info("Clock ticker stopped")

    def seconds_to_next_minute(self) -> float:
        now = self._now()
        next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
        return max((next_minute - now).total_seconds(), 0.0)

    def tick(self):
        self.service.broker.enqueue(clock_tick(self._now()))

    async def _tick_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.seconds_to_next_minute())
                if not self._running:
                    break
                self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Clock tick error: {e}")
                await asyncio.sleep(1)


class ConnectionSupervisor:
    """
    Reopens device connections after their stream ends or a connect fails.

    Listens for device.disconnected events and retries device.connect()
    with exponential backoff until it succeeds or the service stops.
    """

    name = "connection-supervisor"

    def __init__(self, service, backoff: float = 5.0, backoff_max: float = 300.0):
        self.service = service
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

        self.stats = {
            'disconnects': 0,
            'reconnect_attempts': 0,
            'reconnects': 0,
        }

    def start(self):
        self._running = True

    def stop(self):
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

    def accepts(self, event) -> bool:
        return (isinstance(event, GenericEvent) and event.name == DEVICE_DISCONNECTED
                and event.device is not None)

    def consume(self, event):
        self.stats['disconnects'] += 1
        logger.warning(f"[{event.device.name}] Connection lost")
        self.schedule(event.device)

    def schedule(self, device: Device):
        """Start a reconnect loop for the device unless one is already running."""
        if not self._running or device.connected:
            return
        task = self._tasks.get(device.id)
        if task is not None and not task.done():
            return
        self._tasks[device.id] = asyncio.get_running_loop().create_task(self._reconnect(device))

    def delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** attempt), self.backoff_max)

    async def _reconnect(self, device: Device):
        attempt = 0
        try:
            while self._running and not device.connected:
                wait = self.delay(attempt)
                logger.info(f"[{device.name}] Reconnecting in {wait:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(wait)
                if not self._running:
                    break

                self.stats['reconnect_attempts'] += 1
                try:
                    await device.connect(self.service)
                except Exception as e:
                    logger.warning(f"[{device.name}] Reconnect failed: {e}")
                    attempt += 1
                    continue

                self.stats['reconnects'] += 1
                logger.info(f"[{device.name}] Reconnected after {attempt + 1} attempt(s)")
        except asyncio.CancelledError:
            pass
        finally:
            if self._tasks.get(device.id) is asyncio.current_task():
                del self._tasks[device.id]


class HomeService:
    """
    The system: every component reaches the others through this object.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 now: Callable[[], datetime] = datetime.now):
        self._config = config if config is not None else DEFAULT_CONFIG

        self.broker = EventBroker()
        self.extensions = Extensions()
        self.extensions.load_registered(get_conf(self._config, "extensions", {}))

        self.cmd_processor = CommandProcessor(
            self,
            max_queue_size=get_conf(self._config, "commands.max_queue_size", 1000),
            max_retries=get_conf(self._config, "commands.max_retries", 2),
            transmit_timeout=get_conf(self._config, "commands.transmit_timeout", 10.0),
        )
        self.recipe_manager = RecipeManager(self)
        self.clock = ClockTicker(self, now=now)
        self.connections = ConnectionSupervisor(
            self,
            backoff=get_conf(self._config, "devices.reconnect_backoff", 5.0),
            backoff_max=get_conf(self._config, "devices.reconnect_backoff_max", 300.0),
        )

        self.devices: Dict[str, Device] = {}
        self.zones: Dict[str, Zone] = {}
        self.scenes: Dict[str, Scene] = {}
        self.buttons: Dict[str, Button] = {}
        self.sensors: Dict[str, Sensor] = {}
        self._used_ids = set()
        self._event_consumers: Dict[str, Any] = {}

        self._running = False
        self._started_at: Optional[float] = None

    # =========================================================================
    # IDS / INVENTORY
    # =========================================================================

    def new_id(self) -> str:
        while True:
            new_id = uuid.uuid4().hex
            if new_id not in self._used_ids:
                self._used_ids.add(new_id)
                return new_id

    def _check_id(self, entity):
        if entity.id and entity.id in self._used_ids:
            raise IntegrityError(f"ID {entity.id} is already in use")

    def _claim_id(self, entity):
        if entity.id:
            self._used_ids.add(entity.id)
        else:
            entity.id = self.new_id()

    def add_device(self, device: Device, hub: Optional[Device] = None) -> Device:
        """Register a device, optionally as a child of a hub."""
        self._check_id(device)
        if hub is None and device.address and any(
                d.address == device.address and not d.hub_id for d in self.devices.values()):
            raise IntegrityError(f"Duplicate device address {device.address}")

        self._claim_id(device)
        try:
            if hub is not None:
                hub.add_device(device)
        except IntegrityError:
            self._used_ids.discard(device.id)
            raise
        self.devices[device.id] = device
        logger.info(f"Device added: {device.name} ({device.model_number}) @ {device.address}")
        return device

    def add_zone(self, device: Device, zone: Zone) -> Zone:
        return self._add_child(device, zone, device.add_zone, self.zones)

    def add_button(self, device: Device, button: Button) -> Button:
        return self._add_child(device, button, device.add_button, self.buttons)

    def add_sensor(self, device: Device, sensor: Sensor) -> Sensor:
        return self._add_child(device, sensor, device.add_sensor, self.sensors)

    def _add_child(self, device: Device, child, add: Callable, index: Dict[str, Any]):
        self._check_id(child)
        self._claim_id(child)
        try:
            add(child)
        except IntegrityError:
            self._used_ids.discard(child.id)
            raise
        index[child.id] = child
        return child

    def add_scene(self, scene: Scene) -> Scene:
        self._check_id(scene)
        if scene.device_id and scene.device_id not in self.devices:
            raise IntegrityError(f"Scene {scene.name} references unknown device {scene.device_id}")
        for cmd in scene.commands:
            if cmd.zone_id not in self.zones:
                raise IntegrityError(f"Scene {scene.name} references unknown zone {cmd.zone_id}")
        self._claim_id(scene)
        self.scenes[scene.id] = scene
        return scene

    def device_for(self, device_id: Optional[str]) -> Optional[Device]:
        if not device_id:
            return None
        return self.devices.get(device_id)

    def transport_device(self, device_id: Optional[str]) -> Optional[Device]:
        """The device whose connection carries commands for device_id."""
        device = self.device_for(device_id)
        if device is not None and device.hub_id:
            return self.devices.get(device.hub_id, device)
        return device

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, connect: bool = True):
        if self._running:
            return
        self._running = True
        self._started_at = time.time()

        for device in self.devices.values():
            self._attach_events(device)

        await self.cmd_processor.start()
        self.recipe_manager.init(self.broker,
                                 get_conf(self._config, "recipes.data_path", "./data/recipes"))
        self.clock.start()

        if connect:
            self.connections.start()
            self.broker.add_consumer(self.connections)
            for device in list(self.devices.values()):
                if device.hub_id:
                    continue
                try:
                    await device.connect(self)
                except Exception as e:
                    logger.error(f"[{device.name}] Connection failed: {e}")
                    self.connections.schedule(device)

        logger.info(f"Home service started: {len(self.devices)} device(s), "
                    f"{len(self.recipe_manager.recipes)} recipe(s), "
                    f"extensions={self.extensions.names}")

    def _attach_events(self, device: Device):
        if device.id in self._event_consumers:
            return
        ext_events = self.extensions.find_events(self, device)
        if ext_events is None:
            return
        if ext_events.consumer is not None:
            self.broker.add_consumer(ext_events.consumer)
            self._event_consumers[device.id] = ext_events.consumer
        if ext_events.producer is not None:
            self.broker.add_producer(ext_events.producer)

    async def stop(self):
        if not self._running:
            return
        self._running = False

        self.clock.stop()
        self.connections.stop()
        self.broker.remove_consumer(self.connections)
        for recipe in list(self.recipe_manager.recipes):
            self.recipe_manager.unregister_and_stop(recipe)
        await self.cmd_processor.stop()

        for device in self.devices.values():
            if device.connected:
                await device.disconnect(self)

        for consumer in self._event_consumers.values():
            self.broker.remove_consumer(consumer)
        self._event_consumers.clear()
        self.broker.close()
        logger.info("Home service stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "uptime": time.time() - self._started_at if self._started_at else 0,
            "devices": len(self.devices),
            "zones": len(self.zones),
            "scenes": len(self.scenes),
            "broker": self.broker.get_stats(),
            "commands": self.cmd_processor.get_stats(),
            "connections": self.connections.stats,
            "recipes": self.recipe_manager.get_stats(),
        }


# =============================================================================
# INVENTORY BOOTSTRAP
# =============================================================================

def load_inventory(service: HomeService, data: Optional[Dict[str, Any]]):
    """
    Register devices and scenes from the inventory config section:

        devices:
          - name: Bridge
            address: 192.168.0.10:23
            model_number: l-bdgpro2-wh
            login: lutron
            password: integration
            zones:   [{id, name, address, type}]
            buttons: [{id, name, address}]
            devices: [...]              # devices behind the bridge
        scenes:
          - {id, name, address, device_id}           # stored on the device
          - {id, name, commands: [{zone_id, level}]} # managed here
    """
    data = data or {}
    for entry in data.get("devices", []) or []:
        _load_device(service, entry, hub=None)

    for entry in data.get("scenes", []) or []:
        service.add_scene(Scene(
            id=str(entry.get("id", "")),
            name=entry.get("name", ""),
            description=entry.get("description", ""),
            address=str(entry.get("address", "")),
            device_id=entry.get("device_id"),
            commands=[SceneCommand(zone_id=str(c["zone_id"]), level=float(c["level"]))
                      for c in entry.get("commands", []) or []],
        ))
    logger.info(f"Inventory loaded: {len(service.devices)} device(s), "
                f"{len(service.zones)} zone(s), {len(service.scenes)} scene(s)")


def _load_device(service: HomeService, entry: Dict[str, Any], hub: Optional[Device]):
    auth = None
    if entry.get("login") or entry.get("password"):
        auth = Auth(login=entry.get("login", ""), password=entry.get("password", ""))

    device = service.add_device(Device(
        id=str(entry.get("id", "")),
        name=entry.get("name", ""),
        description=entry.get("description", ""),
        address=str(entry.get("address", "")),
        model_number=entry.get("model_number", ""),
        auth=auth,
    ), hub=hub)

    for z in entry.get("zones", []) or []:
        service.add_zone(device, Zone(id=str(z.get("id", "")), name=z.get("name", ""),
                                      address=str(z.get("address", "")),
                                      type=z.get("type", "light")))
    for b in entry.get("buttons", []) or []:
        service.add_button(device, Button(id=str(b.get("id", "")), name=b.get("name", ""),
                                          address=str(b.get("address", ""))))
    for s in entry.get("sensors", []) or []:
        service.add_sensor(device, Sensor(id=str(s.get("id", "")), name=s.get("name", ""),
                                          address=str(s.get("address", "")),
                                          attr=s.get("attr", "level")))
    for child in entry.get("devices", []) or []:
        _load_device(service, child, hub=device)
    return device
