"""
Tests for prompt composition.
"""

import pytest

from kbchat.profiles import get_profile
from kbchat.utils.knowledge_base import KnowledgeEntry
from kbchat.utils.prompt import ENTRY_DELIMITER, PromptComposer


def _entry(**fields):
    data = {"title": "Entry", "embedding": [1.0, 0.0]}
    data.update(fields)
    return KnowledgeEntry.model_validate(data)


@pytest.fixture
def composer():
    return PromptComposer(get_profile("v2"))


class TestRenderEntry:

    def test_all_fields(self, composer):
        entry = _entry(
            title="Adding employees",
            summary="Create a profile.",
            steps=["Open Employees", "Tap Add"],
            examples=[{"title": "Server", "detail": "cannot void"}],
            notes=["PINs are four digits"],
            related=[{"title": "Permissions", "lastUpdated": "2024-03-11"}],
            url="https://support.example.com/a",
        )
        text = composer.render_entry(entry)
        assert text.splitlines() == [
            "## Adding employees",
            "Create a profile.",
            "Steps:",
            "1. Open Employees",
            "2. Tap Add",
            "Examples:",
            "- Server: cannot void",
            "Notes:",
            "- PINs are four digits",
            "Related topics:",
            "- Permissions (updated 2024-03-11)",
            "Source: https://support.example.com/a",
        ]

    def test_v1_profile_renders_summary_only(self):
        composer = PromptComposer(get_profile("v1"))
        text = composer.render_entry(_entry(summary="Body", steps=["hidden step"]))
        assert "Body" in text
        assert "hidden step" not in text

    def test_long_entries_truncated(self):
        composer = PromptComposer(get_profile("v2"), max_entry_chars=50)
        text = composer.render_entry(_entry(summary="x" * 500))
        assert text.endswith("[...]")
        assert len(text) < 70


class TestCompose:

    def test_context_in_relevance_order_with_delimiter(self, composer):
        entries = [_entry(title="Best", summary="a"), _entry(title="Second", summary="b")]
        context = composer.render_context(entries)
        assert context.index("## Best") < context.index("## Second")
        assert context.count(ENTRY_DELIMITER) == 1

    def test_compose_replaces_last_turn(self, composer):
        history = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "How do I reprint a receipt?"},
        ]
        out = composer.compose(history, [_entry(title="Receipts", summary="Use ticket history.")])

        assert out[0]["role"] == "system"
        assert out[0]["content"] == get_profile("v2").system_prompt
        assert out[1:3] == history[:2]
        assert out[-1]["role"] == "user"
        assert out[-1]["content"].startswith("Based on the following relevant information:")
        assert "Use ticket history." in out[-1]["content"]
        assert '"How do I reprint a receipt?"' in out[-1]["content"]
        assert "numbered list using Markdown" in out[-1]["content"]
        assert len(out) == 4

    def test_compose_without_entries(self, composer):
        out = composer.compose([{"role": "user", "content": "q"}], [])
        assert "(no relevant information found)" in out[-1]["content"]

    def test_compose_requires_messages(self, composer):
        with pytest.raises(ValueError):
            composer.compose([], [])

    def test_flatten(self):
        text = PromptComposer.flatten([{"role": "system", "content": "s"}, {"role": "user", "content": "u"}])
        assert text == "SYSTEM: s\n\nUSER: u\n\nASSISTANT:"
