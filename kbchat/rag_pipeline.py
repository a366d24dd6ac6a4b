from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence

from kbchat.errors import InvalidRequest
from kbchat.utils.embedding_utils import Embedder
from kbchat.utils.generation import Completer
from kbchat.utils.knowledge_base import KnowledgeBase, KnowledgeStore
from kbchat.utils.logger import get_logger
from kbchat.utils.prompt import Message, PromptComposer
from kbchat.utils.retriever import DEFAULT_TOP_K, ScoredEntry, rank

logger = get_logger(__name__)

ROLES = ("system", "user", "assistant")


class ChatPlan(NamedTuple):
    messages: List[Message]
    hits: List[ScoredEntry]
    prompt_messages: List[Message]


def validate_messages(raw: Any) -> List[Message]:
    """Check the conversation shape; the last turn must be the user's question."""
    if not isinstance(raw, list):
        raise InvalidRequest("Invalid messages format")
    if not raw:
        raise InvalidRequest("No messages provided")

    messages: List[Message] = []
    for i, msg in enumerate(raw):
        if not isinstance(msg, dict):
            raise InvalidRequest(f"Invalid message format at index {i}", index=i)
        role, content = msg.get("role"), msg.get("content")
        if not isinstance(role, str) or role not in ROLES:
            raise InvalidRequest(f"Invalid message format at index {i}: unknown role {role!r}", index=i)
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequest(f"Invalid message format at index {i}: empty content", index=i)
        messages.append({"role": role, "content": content})

    if messages[-1]["role"] != "user":
        raise InvalidRequest(
            f"Invalid message format at index {len(messages) - 1}: last message must come from the user",
            index=len(messages) - 1,
        )
    return messages


class RAGPipeline:
    """validate -> embed latest question -> rank -> compose -> complete."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Embedder,
        completer: Completer,
        composer: Optional[PromptComposer] = None,
        top_k: int = DEFAULT_TOP_K,
    ):
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.composer = composer or PromptComposer(store.profile)
        self.top_k = top_k

    @property
    def generator_mode(self) -> str:
        return self.completer.mode

    def knowledge_base(self) -> KnowledgeBase:
        return self.store.current()

    # ---------------- RETRIEVAL ----------------

    def retrieve(self, question: str, k: Optional[int] = None) -> List[ScoredEntry]:
        base = self.knowledge_base()
        query = self.embedder.embed(question)
        return rank(query, base, self.top_k if k is None else k)

    def prepare(self, raw_messages: Any, k: Optional[int] = None) -> ChatPlan:
        messages = validate_messages(raw_messages)
        question = messages[-1]["content"]
        hits = self.retrieve(question, k)
        logger.info(
            "Question %r matched %d entries: %s",
            question[:80], len(hits), [h.entry.title for h in hits],
        )
        prompt_messages = self.composer.compose(messages, [h.entry for h in hits])
        return ChatPlan(messages, hits, prompt_messages)

    # ---------------- ANSWERS ----------------

    def stream_plan(self, plan: ChatPlan) -> Iterator[str]:
        return self.completer.stream(plan.prompt_messages, [h.entry for h in plan.hits])

    def stream_answer(self, raw_messages: Any, k: Optional[int] = None) -> Iterator[str]:
        return self.stream_plan(self.prepare(raw_messages, k))

    @staticmethod
    def format_sources(hits: Sequence[ScoredEntry]) -> List[Dict[str, Any]]:
        return [
            {
                "rank": h.rank,
                "score": float(h.score),
                "title": h.entry.title,
                "url": h.entry.url,
                "last_updated": h.entry.last_updated,
                "version": h.entry.version,
            }
            for h in hits
        ]

    def answer(self, raw_messages: Any, k: Optional[int] = None) -> Dict[str, Any]:
        plan = self.prepare(raw_messages, k)
        text = "".join(self.stream_plan(plan))
        return {"answer": text, "mode": self.generator_mode, "sources": self.format_sources(plan.hits)}
