"""
Hardware Extensions Package
"""
import logging

logger = logging.getLogger("handlers")

# Import base infrastructure FIRST
from .base import (
    EXTENSION_REGISTRY,
    CommandBuilder,
    ExtEvents,
    Extension,
    Extensions,
    FeatureReport,
    HardwareCommand,
    Network,
    register_extension,
)

# Import extension modules to trigger registration decorators
from .lutron import LutronCmdBuilder, LutronEventConsumer, LutronExtension, LutronNetwork

# Public API
__all__ = [
    # Base
    "EXTENSION_REGISTRY",
    "CommandBuilder",
    "ExtEvents",
    "Extension",
    "Extensions",
    "FeatureReport",
    "HardwareCommand",
    "Network",
    "register_extension",

    # Lutron
    "LutronCmdBuilder",
    "LutronEventConsumer",
    "LutronExtension",
    "LutronNetwork",
]


# Log registered extensions at import time
logger.info(f"Loaded {len(EXTENSION_REGISTRY)} hardware extension(s)")
