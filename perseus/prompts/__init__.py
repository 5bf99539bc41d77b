from perseus.prompts.defaults import DEFAULT_PROMPTS
from perseus.prompts.templates import PromptTemplate, PromptType, basic_prompt

__all__ = ["DEFAULT_PROMPTS", "PromptTemplate", "PromptType", "basic_prompt"]
