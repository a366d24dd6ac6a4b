from typing import Dict, List, Sequence

from kbchat.profiles import ContentProfile
from kbchat.utils.knowledge_base import KnowledgeEntry

Message = Dict[str, str]

ENTRY_DELIMITER = "\n\n---\n\n"


class PromptComposer:
    """Renders retrieved entries and the conversation into completion messages."""

    def __init__(self, profile: ContentProfile, max_entry_chars: int = 4000):
        self.profile = profile
        self.max_entry_chars = max_entry_chars

    # ---------------- CONTEXT ----------------

    def render_entry(self, entry: KnowledgeEntry) -> str:
        lines = [f"## {entry.title}"]
        fields = self.profile.content_fields

        if "summary" in fields and entry.summary:
            lines.append(entry.summary)
        if "steps" in fields and entry.steps:
            lines.append("Steps:")
            lines.extend(entry.field_lines("steps"))
        if "examples" in fields and entry.examples:
            lines.append("Examples:")
            lines.extend(f"- {line}" for line in entry.field_lines("examples"))
        if "notes" in fields and entry.notes:
            lines.append("Notes:")
            lines.extend(f"- {note}" for note in entry.notes)
        if "related" in fields and entry.related:
            lines.append("Related topics:")
            for topic in entry.related:
                suffix = f" (updated {topic.last_updated})" if topic.last_updated else ""
                lines.append(f"- {topic.title}{suffix}")
        if entry.url:
            lines.append(f"Source: {entry.url}")

        text = "\n".join(lines)
        if self.max_entry_chars and len(text) > self.max_entry_chars:
            text = text[: self.max_entry_chars].rstrip() + "\n[...]"
        return text

    def render_context(self, entries: Sequence[KnowledgeEntry]) -> str:
        """Entries in the order given (most relevant first), visibly delimited."""
        return ENTRY_DELIMITER.join(self.render_entry(e) for e in entries)

    # ---------------- MESSAGES ----------------

    def build_instruction(self, question: str, entries: Sequence[KnowledgeEntry]) -> str:
        context = self.render_context(entries) or "(no relevant information found)"
        return (
            "Based on the following relevant information:\n"
            f"{context}\n\n"
            f"Please provide a concise and helpful response to the user's question: \"{question}\"\n"
            "If your response includes steps, format them as a numbered list using Markdown syntax."
        )

    def compose(self, messages: Sequence[Message], entries: Sequence[KnowledgeEntry]) -> List[Message]:
        """
        System prompt, then every earlier turn unchanged, then the latest user
        turn replaced by the context-bearing instruction.
        """
        if not messages:
            raise ValueError("compose() needs at least one message")
        *history, last = messages
        out: List[Message] = [{"role": "system", "content": self.profile.system_prompt}]
        out.extend({"role": m["role"], "content": m["content"]} for m in history)
        out.append({"role": "user", "content": self.build_instruction(last["content"], entries)})
        return out

    @staticmethod
    def flatten(messages: Sequence[Message]) -> str:
        """Single-string prompt for backends without chat roles."""
        parts = [f"{m['role'].upper()}: {m['content']}" for m in messages]
        parts.append("ASSISTANT:")
        return "\n\n".join(parts)
