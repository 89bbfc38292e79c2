"""
Tests for the prompt template registry and built-in templates.
"""

import pytest

from virtual_csuite.core.llm_provider import ChatMessage
from virtual_csuite.core.prompts import PromptRegistry, PromptTemplate, get_prompt, get_registry


class TestPromptTemplate:
    def test_requires_id_and_template(self):
        with pytest.raises(ValueError):
            PromptTemplate(id="", version="1.0", system_prompt="s", user_template="u")
        with pytest.raises(ValueError):
            PromptTemplate(id="t", version="1.0", system_prompt="s", user_template="")

    def test_get_variables_skips_literal_braces(self):
        template = PromptTemplate(
            id="t",
            version="1.0",
            system_prompt="",
            user_template='{message} then {{"executives": []}}',
        )
        assert template.get_variables() == {"message"}

    def test_render_missing_required(self):
        template = get_prompt("ceo_chat")
        with pytest.raises(ValueError, match="message"):
            template.render({})

    def test_render_optional_defaults_to_empty(self):
        template = PromptTemplate(
            id="t",
            version="1.0",
            system_prompt="",
            user_template="{message}|{extra}",
            required_context=["message"],
            optional_context=["extra"],
        )
        assert template.render({"message": "hi"}) == "hi|"

    def test_document_braces_are_not_reformatted(self):
        text = get_prompt("cfo_analysis").render({"content": "rows: {a} {b}"})
        assert "rows: {a} {b}" in text

    def test_to_messages_order(self):
        history = [ChatMessage(role="user", content="earlier")]
        messages = get_prompt("ceo_chat").to_messages({"message": "now"}, history)

        assert [m.role for m in messages] == ["system", "user", "user"]
        assert messages[1].content == "earlier"
        assert messages[2].content == "now"


class TestRegistry:
    def test_builtin_templates(self):
        assert get_registry().list_templates() == [
            "ceo_chat",
            "ceo_chat_informed",
            "ceo_synthesis",
            "cfo_analysis",
            "cmo_analysis",
            "consultant_advice",
            "consultation_routing",
            "coo_analysis",
        ]

    def test_duplicate_registration(self):
        registry = PromptRegistry()
        template = PromptTemplate(id="t", version="1.0", system_prompt="", user_template="x")
        registry.register(template)
        with pytest.raises(ValueError):
            registry.register(template)
        registry.register(template, replace=True)

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            get_prompt("cto_analysis")

    def test_system_prompts_are_distinct(self):
        registry = get_registry()
        prompts = [registry.get_required(t).system_prompt for t in registry.list_templates()]
        assert len(set(prompts)) == len(prompts)

    def test_routing_prompt_asks_for_json(self):
        assert '"executives"' in get_prompt("consultation_routing").system_prompt
