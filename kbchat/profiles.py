"""
Versioned content/completion profiles.

A profile pins two things that used to drift between copies of the chat route:
which entry fields make up the text that gets embedded and shown to the model,
and which completion model/parameters answer with it. Precomputed embeddings
are only comparable with queries when both were built under the same profile.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from kbchat.errors import ConfigError

CONTENT_FIELDS = ("summary", "steps", "examples", "notes", "related")

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and professional AI support assistant. Provide brief, "
    "easy-to-understand responses for people with no technical knowledge. Use the "
    "given context to inform your answers, and when providing step-by-step "
    "instructions, format them as a numbered list using Markdown syntax."
)


@dataclass(frozen=True)
class ContentProfile:
    version: str
    content_fields: Tuple[str, ...]
    include_title: bool = True
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    completion_model: Optional[str] = None  # None -> provider default from settings
    temperature: float = 0.3
    max_tokens: Optional[int] = None

    def __post_init__(self):
        unknown = [f for f in self.content_fields if f not in CONTENT_FIELDS]
        if unknown or not self.content_fields:
            raise ConfigError(f"Profile {self.version!r} has invalid content fields: {unknown or '[]'}")


PROFILES: Dict[str, ContentProfile] = {
    # single free-text body, as the first knowledge files were written
    "v1": ContentProfile(version="v1", content_fields=("summary",), include_title=False, temperature=0.7),
    "v2": ContentProfile(version="v2", content_fields=CONTENT_FIELDS),
}


def get_profile(version: str) -> ContentProfile:
    try:
        return PROFILES[version]
    except KeyError:
        raise ConfigError(
            f"Unknown profile version {version!r}; expected one of {sorted(PROFILES)}"
        ) from None
