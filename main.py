"""
Home Recipes - Main Application
FastAPI-based web server for the recipe controller.
"""
import logging
import os
import queue
from contextlib import asynccontextmanager
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

import uvicorn
from fastapi import FastAPI

# Import services
from core import HomeService, load_inventory
from error_handler import get_error_stats
from modules.recipes_api import register_recipe_routes
from yaml_loader import get_conf, load_config

CONFIG_PATH = Path(os.environ.get("HOME_RECIPES_CONFIG", "./config/config.yaml"))


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = load_config(CONFIG_PATH)


# ============================================================================
# LOGGING CONFIGURATION (NON-BLOCKING)
# ============================================================================

log_file = get_conf(CONFIG, "logging.file", "logs/controller.log")
os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)

# 1. Create a queue for logs
log_queue = queue.Queue(-1)  # Unlimited size

# 2. Setup the actual handlers (File & Console)
file_handler = RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=3)
console_handler = logging.StreamHandler()

formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')
file_handler.setFormatter(formatter)
console_handler.setFormatter(formatter)

# 3. Create the Listener (Runs in a separate thread)
log_listener = QueueListener(log_queue, file_handler, console_handler)

# 4. Configure the root logger to write to the Queue (Instant)
root_logger = logging.getLogger()
root_logger.setLevel(get_conf(CONFIG, "logging.level", "INFO"))
root_logger.handlers = []
root_logger.addHandler(QueueHandler(log_queue))

# Per-module levels, e.g. {"event_bus": "DEBUG"}
for name, level in (get_conf(CONFIG, "logging.loggers", {}) or {}).items():
    logging.getLogger(name).setLevel(level)

logger = logging.getLogger('main')


# ============================================================================
# SERVICE
# ============================================================================

home_service = HomeService(CONFIG)
load_inventory(home_service, get_conf(CONFIG, "inventory", {}))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown handling."""

    # 1. Start the Threaded Log Listener
    log_listener.start()
    logger.info("Starting Home Recipes (Threaded Logging Enabled)...")

    await home_service.start(connect=get_conf(CONFIG, "devices.connect", True))

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Home Recipes...")
    await home_service.stop()

    # Stop log listener
    log_listener.stop()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Home Recipes",
    description="Trigger/action recipes for home automation hardware",
    lifespan=lifespan
)

register_recipe_routes(app, lambda: home_service.recipe_manager)


@app.get("/api/system/stats")
async def get_system_stats():
    return {**home_service.get_stats(), "transport_errors": get_error_stats()}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=get_conf(CONFIG, "web.host", "0.0.0.0"),
        port=int(get_conf(CONFIG, "web.port", 8000)),
        log_level="info",
    )
