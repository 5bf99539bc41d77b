"""Perseus Drive: a multi-agent crypto trading system."""

from perseus.config import SystemConfig
from perseus.system import PerseusSystem

__version__ = "0.1.0"

__all__ = ["PerseusSystem", "SystemConfig", "__version__"]
