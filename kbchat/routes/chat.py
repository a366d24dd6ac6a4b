from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from kbchat.errors import CompletionError
from kbchat.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


class ChatRequest(BaseModel):
    # shape of each message is checked by validate_messages() so errors carry an index
    messages: List[Any] = Field(..., description="Conversation, oldest first; last turn is the user's question")
    top_k: Optional[int] = Field(None, le=50, description="Number of knowledge entries to retrieve")
    stream: bool = True


def _relay(first: str, rest: Iterator[str]) -> Iterator[str]:
    if first:
        yield first
    try:
        for chunk in rest:
            yield chunk
    except CompletionError as e:
        # status line is already sent; all we can do is end the body
        logger.error("CompletionError mid-stream (%s): %s", e.provider, e)


def _sources_header(titles: List[str]) -> str:
    return ",".join(quote(t, safe="") for t in titles)


@router.post("/chat")
def chat(req: Request, payload: ChatRequest):
    rag = req.app.state.rag
    if not payload.stream:
        return rag.answer(payload.messages, k=payload.top_k)

    plan = rag.prepare(payload.messages, k=payload.top_k)
    chunks = iter(rag.stream_plan(plan))
    # pull the first chunk here so a backend that fails to start becomes a 502
    first = next(chunks, "")
    return StreamingResponse(
        _relay(first, chunks),
        media_type="text/plain; charset=utf-8",
        headers={"X-KB-Sources": _sources_header([h.entry.title for h in plan.hits])},
    )


@router.get("/knowledge")
def knowledge(req: Request) -> Dict[str, Any]:
    rag = req.app.state.rag
    base = rag.knowledge_base()
    return {
        "count": len(base),
        "dropped": base.dropped,
        "dimensions": base.dimensions,
        "profile": base.profile_version,
        "loaded_at": base.loaded_at.isoformat(),
    }
