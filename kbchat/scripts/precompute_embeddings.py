"""
Offline embedding precomputation.

Reads the raw knowledge file (records without embeddings), embeds each
record's content under the selected profile and writes the enriched file the
API server loads. Records that cannot be embedded are logged and left out.

Usage:
    python -m kbchat.scripts.precompute_embeddings
    python -m kbchat.scripts.precompute_embeddings --input data/knowledgeBase.json --force
"""
import argparse
import json
import os
import sys
import tempfile
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from kbchat.config import Settings, get_settings
from kbchat.errors import EmbeddingError, KBChatError
from kbchat.profiles import ContentProfile, get_profile
from kbchat.utils.embedding_utils import Embedder, get_embedder
from kbchat.utils.knowledge_base import KnowledgeContent, read_records
from kbchat.utils.logger import configure_logging, get_logger, resolve_level

logger = get_logger("precompute")


class PrecomputeSummary(NamedTuple):
    written: int
    embedded: int
    reused: int
    skipped: int


def _has_embedding(record: Dict[str, Any]) -> bool:
    emb = record.get("embedding")
    return isinstance(emb, list) and len(emb) > 0


def precompute(
    records: Sequence[Any],
    embedder: Embedder,
    profile: ContentProfile,
    force: bool = False,
) -> Tuple[List[Dict[str, Any]], PrecomputeSummary]:
    out: List[Dict[str, Any]] = []
    embedded = reused = skipped = 0

    for idx, record in enumerate(records):
        try:
            content = KnowledgeContent.model_validate(record)
        except ValueError as e:
            skipped += 1
            logger.error("Skipping record #%d: invalid record: %s", idx, e)
            continue

        text = content.embedding_text(profile)
        if not text:
            skipped += 1
            logger.error("Skipping %r: no content in %s", content.title, list(profile.content_fields))
            continue

        if _has_embedding(record) and not force:
            out.append(dict(record))
            reused += 1
            continue

        try:
            vector = embedder.embed(text)
        except EmbeddingError as e:
            skipped += 1
            logger.error("Error generating embedding for %r: %s", content.title, e)
            continue

        out.append({**record, "embedding": vector.tolist()})
        embedded += 1
        logger.info("Generated embedding for: %s", content.title)

    return out, PrecomputeSummary(len(out), embedded, reused, skipped)


def write_atomic(path: str, records: List[Dict[str, Any]], profile_version: str) -> None:
    """Write via a temp file + rename so a running server never reads a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".kb-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"profile": profile_version, "entries": records}, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _parse_args(argv: Optional[Sequence[str]], settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="precompute_embeddings", description="Embed the raw knowledge base for the chat API.")
    parser.add_argument("--input", default=settings.KB_RAW_PATH, help="Raw knowledge JSON (default: %(default)s)")
    parser.add_argument("--output", default=settings.KB_PATH, help="Output JSON with embeddings (default: %(default)s)")
    parser.add_argument("--profile", default=settings.PROFILE_VERSION, help="Content profile version (default: %(default)s)")
    parser.add_argument("--provider", default=settings.EMBEDDING_PROVIDER, help="Embedding provider (default: %(default)s)")
    parser.add_argument("--force", action="store_true", help="Re-embed records that already carry an embedding")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None, embedder: Optional[Embedder] = None) -> int:
    settings = settings or get_settings()
    args = _parse_args(argv, settings)
    configure_logging(resolve_level(settings.ENV, settings.LOG_LEVEL))

    try:
        profile = get_profile(args.profile)
        records = read_records(args.input)
        embedder = embedder or get_embedder(settings, provider=args.provider)
    except KBChatError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1

    out, summary = precompute(records, embedder, profile, force=args.force)
    if not out:
        logger.error("No records could be embedded; %s left untouched", args.output)
        return 1

    write_atomic(args.output, out, profile.version)
    logger.info(
        "Precomputed embeddings and saved to %s (%d written: %d embedded, %d reused, %d skipped)",
        args.output, summary.written, summary.embedded, summary.reused, summary.skipped,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
