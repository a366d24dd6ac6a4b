from typing import Dict, Iterator, List, Optional, Sequence

from kbchat.config import Settings
from kbchat.errors import CompletionError, ConfigError
from kbchat.profiles import ContentProfile
from kbchat.utils.knowledge_base import KnowledgeEntry
from kbchat.utils.logger import get_logger
from kbchat.utils.prompt import PromptComposer
from kbchat.utils.text_processing import truncate

logger = get_logger(__name__)

Message = Dict[str, str]


class GeneratorMode:
    OPENAI = "openai"
    GEMINI = "gemini"
    HF = "hf"
    RULES = "rules"


class Completer:
    """Prompt messages -> stream of text chunks."""

    mode = ""

    def stream(self, messages: Sequence[Message], entries: Sequence[KnowledgeEntry] = ()) -> Iterator[str]:
        raise NotImplementedError

    def complete(self, messages: Sequence[Message], entries: Sequence[KnowledgeEntry] = ()) -> str:
        return "".join(self.stream(messages, entries))


# ---------------- OPENAI ----------------

class OpenAICompleter(Completer):
    mode = GeneratorMode.OPENAI

    def __init__(self, api_key: str, model: str, temperature: float = 0.3, max_tokens: Optional[int] = None):
        from openai import OpenAI

        if not api_key:
            raise ConfigError("OpenAI API key is not configured.")
        self._client = OpenAI(api_key=api_key)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def stream(self, messages, entries=()):
        kwargs = {"model": self.model, "messages": list(messages), "stream": True, "temperature": self.temperature}
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        try:
            response = self._client.chat.completions.create(**kwargs)
            for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as e:
            raise CompletionError(f"OpenAI completion failed: {e}", provider=self.mode) from e


# ---------------- GEMINI ----------------

class GeminiCompleter(Completer):
    mode = GeneratorMode.GEMINI

    def __init__(self, api_key: str, model: str, temperature: float = 0.3, max_tokens: Optional[int] = None):
        import google.generativeai as genai

        if not api_key:
            raise ConfigError("GEMINI_API_KEY is not set.")
        genai.configure(api_key=api_key)
        self._genai = genai
        self.model = model
        self.generation_config = {"temperature": temperature}
        if max_tokens:
            self.generation_config["max_output_tokens"] = max_tokens

    @staticmethod
    def _to_contents(messages: Sequence[Message]):
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [m["content"]]}
            for m in messages
            if m["role"] != "system"
        ]
        return system or None, contents

    def stream(self, messages, entries=()):
        system, contents = self._to_contents(messages)
        try:
            model = self._genai.GenerativeModel(self.model, system_instruction=system)
            for chunk in model.generate_content(contents, stream=True, generation_config=self.generation_config):
                text = getattr(chunk, "text", None)
                if text:
                    yield text
        except Exception as e:
            raise CompletionError(f"Gemini completion failed: {e}", provider=self.mode) from e


# ---------------- HF ----------------

class HFCompleter(Completer):
    """Local transformers pipeline; answers arrive as a single chunk."""

    mode = GeneratorMode.HF

    def __init__(self, model: str, max_new_tokens: int = 300):
        from transformers import pipeline

        self._generator = pipeline("text-generation", model=model)
        self.model = model
        self.max_new_tokens = max_new_tokens

    def stream(self, messages, entries=()):
        prompt = PromptComposer.flatten(messages)
        try:
            out = self._generator(
                prompt, max_new_tokens=self.max_new_tokens, do_sample=False, return_full_text=False
            )[0]["generated_text"]
        except Exception as e:
            raise CompletionError(f"Local generation failed: {e}", provider=self.mode) from e
        text = out.strip()[:2000]
        yield text or "I could not generate an answer."


# ---------------- RULES ----------------

class RulesCompleter(Completer):
    """Offline fallback: lists the retrieved entries instead of generating."""

    mode = GeneratorMode.RULES

    def stream(self, messages, entries=()):
        if not entries:
            yield "I could not find an answer in the current knowledge base."
            return
        yield "Here is what I found in the knowledge base:\n"
        for i, entry in enumerate(entries, 1):
            summary = truncate(entry.summary or entry.content_text(("steps", "notes")), 280)
            line = f"{i}. **{entry.title}**"
            if summary:
                line += f": {summary}"
            yield line + "\n"


def get_completer(settings: Settings, profile: ContentProfile, fallback: bool = True) -> Completer:
    """
    Build the configured completion backend.

    When the preferred backend cannot initialize (missing key or package) and
    ``fallback`` is set, falls back to the local HF model, then to rules.
    """
    provider = settings.COMPLETION_PROVIDER
    known = (GeneratorMode.OPENAI, GeneratorMode.GEMINI, GeneratorMode.HF, GeneratorMode.RULES)
    if provider not in known:
        raise ConfigError(f"Unknown completion provider {provider!r}; expected one of {list(known)}")
    order: List[str] = [provider]
    if fallback:
        order += [m for m in (GeneratorMode.HF, GeneratorMode.RULES) if m != provider]

    last_error: Optional[Exception] = None
    for mode in order:
        try:
            if mode == GeneratorMode.OPENAI:
                completer: Completer = OpenAICompleter(
                    settings.OPENAI_API_KEY.get_secret_value(),
                    profile.completion_model or settings.OPENAI_MODEL,
                    temperature=profile.temperature,
                    max_tokens=profile.max_tokens,
                )
            elif mode == GeneratorMode.GEMINI:
                completer = GeminiCompleter(
                    settings.GEMINI_API_KEY.get_secret_value(),
                    profile.completion_model or settings.GEMINI_MODEL,
                    temperature=profile.temperature,
                    max_tokens=profile.max_tokens,
                )
            elif mode == GeneratorMode.HF:
                completer = HFCompleter(settings.HF_MODEL)
            else:
                completer = RulesCompleter()
        except (ConfigError, ImportError, OSError) as e:
            if not fallback:
                raise
            last_error = e
            logger.warning("Completion backend %s unavailable: %s", mode, e)
            continue
        logger.info("Using completion backend: %s", completer.mode)
        return completer

    raise ConfigError(f"No completion backend available: {last_error}")
