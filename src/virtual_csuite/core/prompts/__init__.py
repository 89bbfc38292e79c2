"""
Prompt templates for the executive board.

This package provides:
1. PromptTemplate dataclass for defining structured prompts
2. PromptRegistry for registering and retrieving prompts by ID
3. The built-in templates:
    - executives: CFO, CMO and COO analyses plus the CEO synthesis
    - chat: consultation routing, consultant advice and the CEO chat reply

Example Usage:
    from virtual_csuite.core.prompts import get_prompt

    template = get_prompt("cfo_analysis")
    messages = template.to_messages({"content": document_text})
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from virtual_csuite.core.llm_provider import ChatMessage

logger = logging.getLogger(__name__)


# =============================================================================
# PromptTemplate Dataclass
# =============================================================================


@dataclass(frozen=True)
class PromptTemplate:
    """
    Structured prompt template.

    Attributes:
        id: Unique identifier for the template (e.g., "cfo_analysis")
        version: Template version for tracking changes (e.g., "1.0")
        system_prompt: System/instruction prompt (sent as system message)
        user_template: User message template with {variable} placeholders
        required_context: Context keys that must be supplied to render
        optional_context: Context keys rendered as "" when absent

    Literal braces in templates are written doubled (``{{`` and ``}}``).
    """

    id: str
    version: str
    system_prompt: str
    user_template: str
    required_context: List[str] = field(default_factory=list)
    optional_context: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Template id cannot be empty")
        if not self.version:
            raise ValueError("Template version cannot be empty")
        if not self.user_template:
            raise ValueError("Template user_template cannot be empty")

    def get_variables(self) -> Set[str]:
        """Variable names found in {variable} placeholders of the user template."""
        return set(re.findall(r"(?<!\{)\{([a-zA-Z_][a-zA-Z0-9_]*)\}(?!\})", self.user_template))

    def validate_context(self, context: Dict[str, Any]) -> List[str]:
        """Return the required keys missing from ``context``."""
        return [key for key in self.required_context if key not in context]

    def render(self, context: Dict[str, Any]) -> str:
        """
        Render the user template with context substitution.

        Raises:
            ValueError: If required keys are missing
        """
        missing = self.validate_context(context)
        if missing:
            raise ValueError(
                f"Missing required context keys for template '{self.id}': {missing}"
            )

        render_context = {key: "" for key in self.optional_context}
        render_context.update(context)

        try:
            return self.user_template.format(**render_context)
        except KeyError as exc:
            raise ValueError(
                f"Missing context key for template '{self.id}': {exc}"
            ) from exc

    def to_messages(
        self,
        context: Dict[str, Any],
        history: Sequence[ChatMessage] = (),
    ) -> List[ChatMessage]:
        """Build the message list: system prompt, prior turns, rendered user turn."""
        messages = [ChatMessage(role="system", content=self.system_prompt)]
        messages.extend(history)
        messages.append(ChatMessage(role="user", content=self.render(context)))
        return messages


# =============================================================================
# PromptRegistry
# =============================================================================


class PromptRegistry:
    """Registry of prompt templates by ID."""

    def __init__(self) -> None:
        self._templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate, *, replace: bool = False) -> None:
        """
        Register a template.

        Raises:
            ValueError: If the ID is taken and replace is False
        """
        if template.id in self._templates and not replace:
            raise ValueError(f"Template '{template.id}' is already registered")
        self._templates[template.id] = template
        logger.debug(f"Registered prompt template {template.id} v{template.version}")

    def get(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def get_required(self, template_id: str) -> PromptTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise KeyError(f"Unknown prompt template: {template_id}")
        return template

    def list_templates(self) -> List[str]:
        return sorted(self._templates)


_registry = PromptRegistry()


def _register_builtin() -> None:
    from virtual_csuite.core.prompts.chat import CHAT_TEMPLATES
    from virtual_csuite.core.prompts.executives import EXECUTIVE_TEMPLATES

    for template in (*EXECUTIVE_TEMPLATES, *CHAT_TEMPLATES):
        _registry.register(template)


_register_builtin()


def get_registry() -> PromptRegistry:
    """Get the registry holding the built-in templates."""
    return _registry


def get_prompt(template_id: str) -> PromptTemplate:
    """Look up a built-in template.

    Raises:
        KeyError: If no template has that ID
    """
    return _registry.get_required(template_id)


__all__ = [
    "PromptTemplate",
    "PromptRegistry",
    "get_registry",
    "get_prompt",
]
