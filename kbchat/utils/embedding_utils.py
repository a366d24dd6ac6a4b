from typing import Callable, Iterator, List, Optional, Sequence

import numpy as np

from kbchat.config import Settings
from kbchat.errors import ConfigError, EmbeddingError
from kbchat.utils.logger import get_logger

logger = get_logger(__name__)


# Providers
class EmbeddingBackend:
    OPENAI = "openai"
    GOOGLE = "google"  # Gemini-based embeddings
    SENTENCE = "sentence-transformers"


# ---- helpers ---------------------------------------------------------------

def _batched(items: Sequence[str], batch_size: int) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), batch_size):
        yield items[i:i + batch_size]


class Embedder:
    """
    Text -> vector capability.

    Wraps a batch function ``List[str] -> List[List[float]]``; every failure,
    empty answer or ragged batch surfaces as ``EmbeddingError`` so nothing
    downstream ever ranks against a made-up vector.
    """

    def __init__(self, provider: str, model: str, embed_batch: Callable[[List[str]], List[List[float]]], batch_size: int = 32):
        self.provider = provider
        self.model = model
        self._embed_batch = embed_batch
        self.batch_size = batch_size

    def __repr__(self) -> str:
        return f"Embedder(provider={self.provider!r}, model={self.model!r})"

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            raise EmbeddingError("Nothing to embed", provider=self.provider)
        vectors: List[List[float]] = []
        for batch in _batched(list(texts), self.batch_size):
            try:
                out = self._embed_batch(list(batch))
            except EmbeddingError:
                raise
            except Exception as e:
                logger.error("Embedding call to %s failed: %s", self.provider, e)
                raise EmbeddingError(f"Failed to generate embedding: {e}", provider=self.provider) from e
            if out is None or len(out) != len(batch):
                raise EmbeddingError(
                    f"Failed to generate embedding: expected {len(batch)} vectors, got {0 if out is None else len(out)}",
                    provider=self.provider,
                )
            vectors.extend(out)

        try:
            arr = np.asarray(vectors, dtype=np.float64)
        except ValueError as e:
            raise EmbeddingError(f"Embedding provider returned ragged vectors: {e}", provider=self.provider) from e
        if arr.ndim != 2 or arr.shape[1] == 0:
            raise EmbeddingError(f"Embedding shape mismatch: got {arr.shape}", provider=self.provider)
        if not np.all(np.isfinite(arr)):
            raise EmbeddingError("Embedding contains non-finite values", provider=self.provider)
        return arr

    def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text", provider=self.provider)
        return self.embed_many([text])[0]


# ---- embedders -------------------------------------------------------------

def _openai_embedder(settings: Settings) -> Embedder:
    from openai import OpenAI

    api_key = settings.OPENAI_API_KEY.get_secret_value()
    if not api_key:
        raise ConfigError("OpenAI API key is not configured.")
    client = OpenAI(api_key=api_key)
    model = settings.OPENAI_EMBED_MODEL

    def embed_batch(texts: List[str]) -> List[List[float]]:
        resp = client.embeddings.create(model=model, input=texts)
        data = sorted(resp.data or [], key=lambda d: d.index)
        if not data:
            raise EmbeddingError("Failed to generate embedding: No data returned.", provider=EmbeddingBackend.OPENAI)
        return [d.embedding for d in data]

    # ada-002 accepts up to 2048 inputs per request
    return Embedder(EmbeddingBackend.OPENAI, model, embed_batch, batch_size=256)


def _google_embedder(settings: Settings) -> Embedder:
    import google.generativeai as genai

    api_key = settings.GEMINI_API_KEY.get_secret_value()
    if not api_key:
        raise ConfigError("GEMINI_API_KEY is not set. Add it to your environment or .env file.")
    genai.configure(api_key=api_key)
    model = settings.GEMINI_EMBED_MODEL
    if not model.startswith("models/"):
        model = f"models/{model}"

    def embed_batch(texts: List[str]) -> List[List[float]]:
        r = genai.embed_content(model=model, content=texts)
        vectors = r.get("embedding") if isinstance(r, dict) else None
        if not vectors:
            raise EmbeddingError("Failed to generate embedding: No data returned.", provider=EmbeddingBackend.GOOGLE)
        # a single input comes back as one flat vector
        if vectors and not isinstance(vectors[0], (list, tuple)):
            vectors = [vectors]
        return list(vectors)

    return Embedder(EmbeddingBackend.GOOGLE, model, embed_batch, batch_size=32)


def _sentence_embedder(settings: Settings) -> Embedder:
    from sentence_transformers import SentenceTransformer

    st_model = SentenceTransformer(settings.SENTENCE_MODEL)

    def embed_batch(texts: List[str]) -> List[List[float]]:
        emb = st_model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return emb.tolist()

    return Embedder(EmbeddingBackend.SENTENCE, settings.SENTENCE_MODEL, embed_batch, batch_size=64)


_FACTORIES = {
    EmbeddingBackend.OPENAI: _openai_embedder,
    EmbeddingBackend.GOOGLE: _google_embedder,
    EmbeddingBackend.SENTENCE: _sentence_embedder,
}


def get_embedder(settings: Settings, provider: Optional[str] = None) -> Embedder:
    """Build the configured embedder; credentials come from ``settings`` only."""
    provider = (provider or settings.EMBEDDING_PROVIDER).lower()
    try:
        factory = _FACTORIES[provider]
    except KeyError:
        raise ConfigError(f"Unknown embedding provider {provider!r}; expected one of {sorted(_FACTORIES)}") from None
    embedder = factory(settings)
    logger.info("Using embedding provider %s (%s)", embedder.provider, embedder.model)
    return embedder
