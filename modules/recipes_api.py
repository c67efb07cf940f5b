"""
Recipe API - FastAPI routes for recipes and cookbooks.
"""

import logging
from typing import Any, Callable, Dict, Union

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .recipes import RecipeError, RecipeNotFoundError
from .validation import ErrorResponse, error_json

logger = logging.getLogger(__name__)


# ============================================================================
# MODELS
# ============================================================================

class EnableRequest(BaseModel):
    enabled: bool


# ============================================================================
# HELPERS
# ============================================================================

def _bad_request(field: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content=error_json(field, message))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies use the same error format as recipe validation."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = first.get("loc", ())
    field = ".".join(str(part) for part in loc[1:] if isinstance(part, str)) or "recipe"
    message = first.get("msg", "Invalid request body")
    logger.info(f"Rejected request to {request.url.path}: {field}: {message}")
    return _bad_request(field, message)


# ============================================================================
# REGISTRATION
# ============================================================================

def register_recipe_routes(app: FastAPI,
                           manager_getter: Union[Any, Callable[[], Any]]):
    def get_manager():
        m = manager_getter() if callable(manager_getter) else manager_getter
        if m is None:
            raise HTTPException(status_code=503, detail="Recipe manager not ready")
        return m

    app.add_exception_handler(RequestValidationError, _validation_error)

    def get_recipe(recipe_id: str):
        recipe = get_manager().recipe_by_id(recipe_id)
        if recipe is None:
            raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
        return recipe

    @app.get("/api/recipes", tags=["recipes"])
    async def list_recipes():
        return get_manager().get_recipes()

    @app.get("/api/recipes/stats", tags=["recipes"])
    async def get_stats():
        return get_manager().get_stats()

    @app.get("/api/recipes/{recipe_id}", tags=["recipes"])
    async def get_single_recipe(recipe_id: str):
        return get_recipe(recipe_id).to_dict()

    @app.post("/api/recipes", tags=["recipes"],
              responses={400: {"model": ErrorResponse}})
    async def create_recipe(data: Dict[str, Any] = Body(...)):
        m = get_manager()
        try:
            recipe = m.unmarshal_new_recipe(data)
            m.add_recipe(recipe)
        except RecipeError as e:
            logger.info(f"Rejected recipe submission: {e.field}: {e.message}")
            return _bad_request(e.field, e.message)
        except OSError as e:
            logger.error(f"Failed to save recipe: {e}")
            raise HTTPException(status_code=500, detail="Failed to save recipe")
        return recipe.to_dict()

    @app.patch("/api/recipes/{recipe_id}/enabled", tags=["recipes"])
    async def set_enabled(recipe_id: str, request: EnableRequest):
        recipe = get_recipe(recipe_id)
        try:
            changed = get_manager().enable_recipe(recipe, request.enabled)
        except OSError as e:
            logger.error(f"Failed to persist {recipe}: {e}")
            raise HTTPException(status_code=500, detail="Failed to save recipe")
        return {"success": True, "changed": changed, "recipe": recipe.to_dict()}

    @app.delete("/api/recipes/{recipe_id}", tags=["recipes"])
    async def delete_recipe(recipe_id: str):
        try:
            get_manager().delete_recipe_by_id(recipe_id)
        except RecipeNotFoundError:
            raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
        return {"success": True, "id": recipe_id}

    @app.get("/api/cookbooks", tags=["recipes"])
    async def list_cookbooks():
        return [book.to_dict() for book in get_manager().cookbooks]

    @app.get("/api/cookbooks/{cookbook_id}", tags=["recipes"])
    async def get_cookbook(cookbook_id: str):
        for book in get_manager().cookbooks:
            if book.id == cookbook_id:
                return book.to_dict()
        raise HTTPException(status_code=404, detail=f"Cookbook {cookbook_id} not found")

    logger.info("Recipe API routes registered")
