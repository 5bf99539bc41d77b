"""Logging setup.

Modules log through ``logging.getLogger(__name__)``. Agents and services that
want their component/agent id in every line use the adapters below.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, MutableMapping, Optional

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] [%(component)s] [%(agent)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s component=%(component)s agent=%(agent)s %(message)s"


class _ContextDefaults(logging.Filter):
    """Fill ``component``/``agent`` for records not emitted through an adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "component"):
            record.component = record.name.split(".")[-1]
        if not hasattr(record, "agent"):
            record.agent = "-"
        return True


class ComponentLogger(logging.LoggerAdapter):
    """Adapter that tags records with a component and optional agent id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_component_logger(component: str) -> ComponentLogger:
    return ComponentLogger(logging.getLogger(f"perseus.{component}"), {"component": component, "agent": "-"})


def get_agent_logger(agent_id: str, component: str = "agent") -> ComponentLogger:
    return ComponentLogger(
        logging.getLogger(f"perseus.agents.{agent_id}"),
        {"component": component, "agent": agent_id},
    )


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = "logs") -> None:
    """Configure root logging for the process.

    Args:
        level: Log level name; defaults to ``LOG_LEVEL`` env var, then INFO
        log_dir: Directory for ``error.log`` and ``combined.log``; None disables file output
    """
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_perseus", False):
            root.removeHandler(handler)
            handler.close()

    context = _ContextDefaults()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console.addFilter(context)
    console._perseus = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        errors = logging.FileHandler(path / "error.log")
        errors.setLevel(logging.ERROR)
        errors.setFormatter(logging.Formatter(FILE_FORMAT))
        errors.addFilter(context)
        errors._perseus = True  # type: ignore[attr-defined]
        root.addHandler(errors)

        combined = logging.FileHandler(path / "combined.log")
        combined.setFormatter(logging.Formatter(FILE_FORMAT))
        combined.addFilter(context)
        combined._perseus = True  # type: ignore[attr-defined]
        root.addHandler(combined)

    logging.getLogger(__name__).debug("Logging configured (level=%s, log_dir=%s)", level_name, log_dir)
