"""Prompt templates."""

from dbcopilot.prompts.loader import PromptLoader

__all__ = ["PromptLoader"]
