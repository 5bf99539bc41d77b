"""Prompt Engineering agent: owns and customises the prompts of every agent role."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Mapping, Optional

from perseus.agents.base import BaseAgent
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.prompts import DEFAULT_PROMPTS, PromptTemplate, basic_prompt
from perseus.types import Message

PROMPTS_CATEGORY = "prompts"
FEEDBACK_KEY = "feedback"


class PromptEngineeringAgent(BaseAgent):
    """Maintains the prompt library and adapts prompts to the current context.

    Lookup order for ``get_prompt``: knowledge base, in-memory library, then a
    generated basic prompt that is stored for next time.
    """

    def __init__(self, messenger: AgentMessenger, knowledge_base: KnowledgeBase) -> None:
        super().__init__("prompt-engineering", "core", messenger, knowledge_base)
        self.prompt_library: dict[str, PromptTemplate] = dict(DEFAULT_PROMPTS)
        self.latest_feedback: Optional[dict[str, Any]] = None

    async def on_initialize(self) -> None:
        for prompt_type, prompt in self.prompt_library.items():
            if self.get_knowledge(PROMPTS_CATEGORY, prompt_type) is None:
                self.store_knowledge(PROMPTS_CATEGORY, prompt_type, prompt.to_dict(), {"source": "default"})
        self.logger.info("Prompt library ready with %d prompts", len(self.prompt_library))

    def get_prompt(self, prompt_type: str) -> PromptTemplate:
        stored = self.get_knowledge(PROMPTS_CATEGORY, prompt_type)
        if isinstance(stored, Mapping):
            return PromptTemplate.from_dict(dict(stored))

        prompt = self.prompt_library.get(prompt_type)
        if prompt is not None:
            return prompt

        self.logger.info("No prompt for type %s, generating a basic one", prompt_type)
        prompt = basic_prompt(prompt_type)
        self.prompt_library[prompt_type] = prompt
        self.store_knowledge(PROMPTS_CATEGORY, prompt_type, prompt.to_dict(), {"source": "generated"})
        return prompt

    def customize_prompt(self, base: PromptTemplate, context: Optional[Mapping[str, Any]] = None) -> PromptTemplate:
        """Return a copy of ``base`` extended with context sections.

        Recognised context keys: ``market_conditions``, ``previous_outputs``,
        ``system_directives``, ``parameters`` (``{{name}}`` substitutions) and
        ``include_feedback``.
        """
        context = context or {}
        system = base.system
        user = base.user

        if context.get("market_conditions"):
            system += f"\n\nCurrent market conditions: {context['market_conditions']}"
        if context.get("previous_outputs"):
            system += f"\n\nPrevious outputs: {json.dumps(context['previous_outputs'], indent=2, default=str)}"
        if context.get("system_directives"):
            system += f"\n\nSystem directives: {context['system_directives']}"
        if context.get("include_feedback") and self.latest_feedback:
            system += f"\n\nRecent performance: {json.dumps(self.latest_feedback, indent=2, default=str)}"

        for name, value in (context.get("parameters") or {}).items():
            placeholder = "{{" + str(name) + "}}"
            system = system.replace(placeholder, str(value))
            user = user.replace(placeholder, str(value))

        return replace(base, system=system, user=user)

    def update_prompt(self, prompt_type: str, prompt: PromptTemplate | Mapping[str, Any]) -> PromptTemplate:
        if not prompt_type:
            raise ValueError("prompt_type is required")
        template = prompt if isinstance(prompt, PromptTemplate) else PromptTemplate.from_dict(dict(prompt))
        current = self.prompt_library.get(prompt_type)
        if current is not None:
            template = replace(template, version=current.version).bump_version()

        self.prompt_library[prompt_type] = template
        self.store_knowledge(PROMPTS_CATEGORY, prompt_type, template.to_dict(), {"source": "update"})
        self.logger.info("Updated %s prompt to v%s", prompt_type, template.version)
        return template

    def record_feedback(self, feedback: Mapping[str, Any]) -> None:
        """Keep the latest performance summary for prompt customisation."""
        self.latest_feedback = dict(feedback)
        self.store_knowledge(PROMPTS_CATEGORY, FEEDBACK_KEY, self.latest_feedback, {"source": "performance-monitor"})

    async def process(self, data: Any) -> PromptTemplate:
        """Build a customised prompt from ``{"type": ..., "context": {...}}``."""
        prompt_type = str(data.get("type", "system"))
        return self.customize_prompt(self.get_prompt(prompt_type), data.get("context"))

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def on_prompt_request(self, message: Message) -> None:
        content = message.content or {}
        prompt = await self.process({"type": content.get("prompt_type", "system"), "context": content.get("context")})
        await self.send_message(message.sender, {"prompt": prompt.to_dict()}, "prompt_response")

    async def on_prompt_update(self, message: Message) -> None:
        content = message.content or {}
        template = self.update_prompt(content["prompt_type"], content["prompt"])
        await self.send_message(
            message.sender,
            {"success": True, "prompt_type": content["prompt_type"], "version": template.version},
            "prompt_update_response",
        )

    async def on_performance_feedback(self, message: Message) -> None:
        self.record_feedback(message.content or {})
