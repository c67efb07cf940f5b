"""
Recipe Manager - Trigger + action pairs, persisted one file per recipe.

Lifecycle:
  submission -> unmarshal_new_recipe() (validate + bind, nothing stored)
             -> add_recipe() (save, append, register and start)
  delete     -> delete_recipe() (remove file, remove from list, stop)

Persistence: <data_path>/<recipe id>.json
  {"Identifiable": {"ID", "Name", "Description"},
   "enabled": bool,
   "Trigger": {"type": "<variant>", "fields": {...}},
   "Action":  {"type": "<variant>", "fields": {...}}}
Durations are stored as integer milliseconds.

Hook: trigger.on_fire -> action.execute(system) -> command processor
"""
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from device import Identifiable
from json_helpers import prepare_for_json

from .actions import Action
from .cookbook import COOKBOOKS, build_action_factory, build_trigger_factory, describe
from .ingredients import BindError
from .triggers import Trigger

logger = logging.getLogger("modules.recipes")

RECIPE_FILE_SUFFIX = ".json"


class RecipeError(Exception):
    """A recipe submission or persisted recipe is invalid."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class RecipeNotFoundError(KeyError):
    """No recipe with the given ID."""

    def __init__(self, recipe_id: str):
        super().__init__(recipe_id)
        self.recipe_id = recipe_id

    def __str__(self) -> str:
        return f"Recipe {self.recipe_id} not found"


@dataclass(eq=False)
class Recipe(Identifiable):
    trigger: Optional[Trigger] = None
    action: Optional[Action] = None

    @property
    def enabled(self) -> bool:
        return self.trigger.enabled

    def to_dict(self) -> Dict[str, Any]:
        """API representation."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "trigger": {"id": self.trigger.type(), "name": self.trigger.name(),
                        "ingredients": self.trigger.dump_ingredients()},
            "action": {"id": self.action.type(), "name": self.action.name(),
                       "ingredients": self.action.dump_ingredients()},
        }

    def to_persisted(self) -> Dict[str, Any]:
        return {
            "Identifiable": Identifiable.to_dict(self),
            "enabled": self.enabled,
            "Trigger": {"type": self.trigger.type(), "fields": self.trigger.dump_ingredients()},
            "Action": {"type": self.action.type(), "fields": self.action.dump_ingredients()},
        }

    def __str__(self) -> str:
        return f"Recipe[{self.id}] {self.name}"


class RecipeManager:

    def __init__(self, system):
        self.system = system
        self.broker = None
        self.data_path: Optional[str] = None
        self.cookbooks = list(COOKBOOKS)
        self.trigger_factory = build_trigger_factory(self.cookbooks)
        self.action_factory = build_action_factory(self.cookbooks)
        self.recipes: List[Recipe] = []
        self._lock = threading.RLock()

        self._stats = {
            "loaded": 0, "load_failures": 0, "saved": 0, "deleted": 0,
            "fired": 0, "execution_failures": 0,
        }

    # =========================================================================
    # INIT / LOAD
    # =========================================================================

    def init(self, broker, data_path: str):
        """Load every persisted recipe and start it."""
        self.broker = broker
        self.data_path = data_path
        os.makedirs(data_path, exist_ok=True)

        for filename in sorted(os.listdir(data_path)):
            if not filename.endswith(RECIPE_FILE_SUFFIX):
                continue
            path = os.path.join(data_path, filename)
            try:
                with open(path, "r") as f:
                    recipe = self.recipe_from_persisted(json.load(f))
                with self._lock:
                    self._append(recipe)
            except Exception as e:
                self._stats["load_failures"] += 1
                logger.warning(f"Skipping recipe file {path}: {e}")
                continue

            self.register_and_start(recipe)
            self._stats["loaded"] += 1

        logger.info(f"Recipe manager initialised with {len(self.recipes)} recipe(s) from {data_path}")

    def recipe_from_persisted(self, data: Dict[str, Any]) -> Recipe:
        if not isinstance(data, dict):
            raise RecipeError("recipe", "expected an object")

        ident = data.get("Identifiable")
        if not isinstance(ident, dict) or not ident.get("ID"):
            raise RecipeError("Identifiable", "missing recipe ID")

        trigger = self._bind_persisted("Trigger", data.get("Trigger"), self.trigger_factory)
        action = self._bind_persisted("Action", data.get("Action"), self.action_factory)
        trigger.set_enabled(bool(data.get("enabled", True)))

        base = Identifiable.from_dict(ident)
        return Recipe(id=base.id, name=base.name, description=base.description,
                      trigger=trigger, action=action)

    @staticmethod
    def _bind_persisted(key: str, section, factory):
        if not isinstance(section, dict):
            raise RecipeError(key, f"missing {key}")
        type_tag = section.get("type")
        variant = factory.get(type_tag) if isinstance(type_tag, str) else None
        if variant is None:
            raise RecipeError(key, f"unknown {key} type {type_tag!r}")
        fields = section.get("fields") or {}
        if not isinstance(fields, dict):
            raise RecipeError(f"{key}.fields", "expected an object")
        try:
            return variant.bind(fields)
        except BindError as e:
            raise RecipeError(f"{key}.{e.field}", e.message) from e

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def unmarshal_new_recipe(self, data: Dict[str, Any]) -> Recipe:
        """
        Validate a submitted recipe and bind its ingredients.

        Returns a new enabled recipe that is neither saved nor registered.

        Raises:
            RecipeError: for the first invalid field
        """
        if not isinstance(data, dict):
            raise RecipeError("recipe", "Invalid recipe")

        name = _require(data, "name", str, "Missing name key")
        description = _require(data, "description", str, "Missing description key")

        trigger_data = _require(data, "trigger", dict, "Missing trigger key")
        trigger_id = _require(trigger_data, "id", str, "Missing trigger id key", prefix="trigger")
        trigger_values = _require(trigger_data, "ingredients", dict,
                                  "Missing trigger ingredients key", prefix="trigger")
        trigger_cls = self.trigger_factory.get(trigger_id)
        if trigger_cls is None:
            raise RecipeError("trigger.id", f"Invalid trigger ID: {trigger_id}")

        action_data = _require(data, "action", dict, "Missing action key")
        action_id = _require(action_data, "id", str, "Missing action id key", prefix="action")
        action_values = _require(action_data, "ingredients", dict,
                                 "Missing action ingredients key", prefix="action")
        action_cls = self.action_factory.get(action_id)
        if action_cls is None:
            raise RecipeError("action.id", f"Invalid action ID: {action_id}")

        try:
            trigger = trigger_cls.bind(trigger_values)
        except BindError as e:
            raise RecipeError(f"trigger.ingredients.{e.field}", e.message) from e
        try:
            action = action_cls.bind(action_values)
        except BindError as e:
            raise RecipeError(f"action.ingredients.{e.field}", e.message) from e

        return Recipe(id=self._new_id(), name=name, description=description,
                      trigger=trigger, action=action)

    def _new_id(self) -> str:
        new_id = getattr(self.system, "new_id", None)
        return new_id() if new_id else uuid.uuid4().hex

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _path(self, recipe_id: str) -> str:
        if not self.data_path:
            raise RecipeError("data_path", "recipe manager is not initialised")
        return os.path.join(self.data_path, f"{recipe_id}{RECIPE_FILE_SUFFIX}")

    def save_recipe(self, recipe: Recipe, append_to: bool = False):
        """Persist a recipe, optionally adding it to the recipe list."""
        with self._lock:
            if append_to and self._find(recipe.id) is not None:
                raise RecipeError("id", f"Duplicate recipe ID {recipe.id}")

            path = self._path(recipe.id)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump(prepare_for_json(recipe.to_persisted()), f, indent=2)
            os.replace(tmp_path, path)
            self._stats["saved"] += 1

            if append_to:
                self._append(recipe)
        logger.debug(f"Saved {recipe} to {path}")

    def _append(self, recipe: Recipe):
        if self._find(recipe.id) is not None:
            raise RecipeError("id", f"Duplicate recipe ID {recipe.id}")
        self.recipes.append(recipe)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def add_recipe(self, recipe: Recipe):
        """Save, append and start a new recipe."""
        self.save_recipe(recipe, append_to=True)
        self.register_and_start(recipe)
        logger.info(f"Added {recipe} ({recipe.trigger.type()} -> {recipe.action.type()})")

    def delete_recipe(self, recipe: Recipe):
        self.delete_recipe_by_id(recipe.id)

    def delete_recipe_by_id(self, recipe_id: str) -> Recipe:
        """
        Remove the file, drop the recipe from the list and stop its trigger.

        Raises:
            RecipeNotFoundError: unknown ID, nothing changes
        """
        with self._lock:
            recipe = self._find(recipe_id)
            if recipe is None:
                raise RecipeNotFoundError(recipe_id)

            try:
                os.remove(self._path(recipe_id))
            except FileNotFoundError:
                logger.debug(f"No file for {recipe} to remove")

            self.recipes = [r for r in self.recipes if r.id != recipe_id]
            self._stats["deleted"] += 1

        self.unregister_and_stop(recipe)
        logger.info(f"Deleted {recipe}")
        return recipe

    def recipe_by_id(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            return self._find(recipe_id)

    def _find(self, recipe_id: str) -> Optional[Recipe]:
        for recipe in self.recipes:
            if recipe.id == recipe_id:
                return recipe
        return None

    def enable_recipe(self, recipe: Recipe, enabled: bool) -> bool:
        """
        Enable or disable a recipe and persist the change.

        Returns:
            False when the recipe already had the requested state
        """
        with self._lock:
            if recipe.enabled == enabled:
                return False

            recipe.trigger.set_enabled(enabled)
            try:
                self.save_recipe(recipe)
            except Exception:
                recipe.trigger.set_enabled(not enabled)
                raise
        logger.info(f"{recipe} {'enabled' if enabled else 'disabled'}")
        return True

    def register_and_start(self, recipe: Recipe):
        if self.broker is None:
            raise RecipeError("broker", "recipe manager is not initialised")
        recipe.trigger.on_fire = lambda trigger: self._fire(recipe)
        recipe.trigger.start(self.broker)

    def unregister_and_stop(self, recipe: Recipe):
        recipe.trigger.stop()
        recipe.trigger.on_fire = None

    def _fire(self, recipe: Recipe):
        with self._lock:
            self._stats["fired"] += 1
        logger.info(f"{recipe} triggered by {recipe.trigger.type()}")
        try:
            recipe.action.execute(self.system)
        except Exception as e:
            with self._lock:
                self._stats["execution_failures"] += 1
            logger.error(f"{recipe} action {recipe.action.type()} failed: {e}")

    # =========================================================================
    # CATALOG / STATS
    # =========================================================================

    def trigger_catalog(self) -> List[Dict[str, Any]]:
        return [describe(t) for t in self.trigger_factory.values()]

    def action_catalog(self) -> List[Dict[str, Any]]:
        return [describe(a) for a in self.action_factory.values()]

    def get_recipes(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self.recipes]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            enabled = sum(1 for r in self.recipes if r.enabled)
            return {**self._stats, "total_recipes": len(self.recipes), "enabled": enabled}


def _require(data: Dict[str, Any], key: str, kind, message: str, prefix: str = ""):
    field = f"{prefix}.{key}" if prefix else key
    if key not in data:
        raise RecipeError(field, message)
    value = data[key]
    if not isinstance(value, kind):
        raise RecipeError(field, f"Invalid {field} value")
    return value
