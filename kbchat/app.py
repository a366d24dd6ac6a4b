from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kbchat.config import Settings, get_settings
from kbchat.errors import (
    CompletionError,
    DimensionMismatch,
    EmbeddingError,
    EmptyKnowledgeBase,
    InvalidRequest,
    LoadError,
)
from kbchat.profiles import get_profile
from kbchat.rag_pipeline import RAGPipeline
from kbchat.routes.chat import router as chat_router
from kbchat.utils.embedding_utils import get_embedder
from kbchat.utils.generation import get_completer
from kbchat.utils.knowledge_base import KnowledgeStore
from kbchat.utils.logger import configure_logging, get_logger, resolve_level

logger = get_logger(__name__)

SERVICE_NAME = "Knowledge Base Chat (RAG)"

# exception class -> (status, public message); lookup follows the class MRO
ERROR_RESPONSES = (
    (EmptyKnowledgeBase, 500, "Knowledge base error"),
    (LoadError, 500, "Knowledge base unavailable"),
    (DimensionMismatch, 500, "Knowledge base configuration error"),
    (EmbeddingError, 502, "Embedding service error"),
    (CompletionError, 502, "Completion service error"),
)


def build_pipeline(settings: Settings) -> RAGPipeline:
    """Wire the pipeline from explicit settings; nothing reads os.environ here."""
    profile = get_profile(settings.PROFILE_VERSION)
    store = KnowledgeStore(settings.KB_PATH, profile, reload_mode=settings.KB_RELOAD_MODE)
    return RAGPipeline(
        store=store,
        embedder=get_embedder(settings),
        completer=get_completer(settings, profile),
        top_k=settings.TOP_K,
    )


def install_error_handlers(app: FastAPI) -> None:
    def _error_response(exc: Exception, status: int, message: str) -> JSONResponse:
        logger.error("%s -> %d: %s", type(exc).__name__, status, exc)
        return JSONResponse({"error": message}, status_code=status)

    for exc_class, status, message in ERROR_RESPONSES:
        async def handler(request: Request, exc: Exception, status=status, message=message):
            return _error_response(exc, status, message)

        app.add_exception_handler(exc_class, handler)

    @app.exception_handler(InvalidRequest)
    async def invalid_request(request: Request, exc: InvalidRequest):
        logger.warning("InvalidRequest: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        logger.warning("Invalid request body: %s", exc.errors())
        return JSONResponse({"error": "Invalid request body", "detail": jsonable_encoder(exc.errors())}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception("Error in chat API")
        return JSONResponse({"error": "An internal server error occurred."}, status_code=500)


def create_app(settings: Optional[Settings] = None, rag: Optional[RAGPipeline] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(resolve_level(settings.ENV, settings.LOG_LEVEL))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        pipeline = rag or build_pipeline(settings)
        try:
            base = pipeline.knowledge_base()
            logger.info("RAG pipeline initialized: %d entries, mode=%s", len(base), pipeline.generator_mode)
        except LoadError as e:
            # keep serving; each request retries the load and reports the failure
            logger.error("%s at startup: %s", type(e).__name__, e)
        app.state.rag = pipeline
        yield
        # Shutdown
        logger.info("Shutting down...")

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-KB-Sources"],
    )
    install_error_handlers(app)
    app.include_router(chat_router, prefix="/api")

    @app.get("/")
    def root():
        return {"status": "ok", "service": SERVICE_NAME}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("kbchat.app:create_app", factory=True, host="127.0.0.1", port=8000, reload=True)
