"""Prompt template types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class PromptType(str, Enum):
    """Agent roles that own a prompt."""

    DATA = "data"
    STRATEGY = "strategy"
    RISK = "risk"
    EXECUTION = "execution"
    SYSTEM = "system"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PromptTemplate:
    """A versioned system/user prompt pair."""

    system: str
    user: str = ""
    version: str = "1.0.0"
    created: str = field(default_factory=_utcnow_iso)
    examples: tuple[dict[str, Any], ...] = ()

    def bump_version(self) -> "PromptTemplate":
        """Return a copy with the patch version incremented."""
        parts = self.version.split(".")
        try:
            major, minor, patch = (int(p) for p in parts)
        except ValueError:
            major, minor, patch = 1, 0, 0
        return replace(self, version=f"{major}.{minor}.{patch + 1}", created=_utcnow_iso())

    def to_dict(self) -> dict[str, Any]:
        return {
            "system": self.system,
            "user": self.user,
            "version": self.version,
            "created": self.created,
            "examples": [dict(e) for e in self.examples],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PromptTemplate":
        return cls(
            system=str(data.get("system", "")),
            user=str(data.get("user", "")),
            version=str(data.get("version", "1.0.0")),
            created=str(data.get("created") or _utcnow_iso()),
            examples=tuple(data.get("examples") or ()),
        )


def basic_prompt(prompt_type: str) -> PromptTemplate:
    """Generic prompt used when no template exists for ``prompt_type``."""
    return PromptTemplate(
        system=(
            f"You are the {prompt_type} agent for Perseus Drive. "
            f"Your role is to handle {prompt_type}-related tasks in the trading system."
        ),
        user=f"Perform your {prompt_type} duties based on the provided information.",
    )
