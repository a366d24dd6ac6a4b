"""
Knowledge entries and the store that loads them.

The knowledge file is produced offline by ``scripts/precompute_embeddings.py``:
a JSON array of records (or ``{"profile": "v2", "entries": [...]}``), each with a title, one or
more content fields and a precomputed ``embedding``. The store never embeds
anything itself; a record without an embedding is invalid.

Loaded bases are immutable snapshots. A reload builds a complete new snapshot
and swaps the reference, so concurrent requests see either the old base or the
new one, never a half-built one.
"""
import json
import math
import os
import threading
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, PrivateAttr, field_validator, model_validator

from kbchat.errors import EmptyKnowledgeBase, LoadError
from kbchat.profiles import ContentProfile
from kbchat.utils.logger import get_logger
from kbchat.utils.text_processing import clean_lines, clean_text

logger = get_logger(__name__)

# legacy spellings of the free-text body, first non-empty wins
SUMMARY_KEYS = ("summary", "contentSummary", "content")
METADATA_KEYS = {
    "last_updated": ("last_updated", "lastUpdated"),
    "version": ("version", "compatibleVersion", "compatible_version"),
    "url": ("url", "sourceUrl", "source_url"),
}


def _first_present(record: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_marker(value: Any) -> Optional[str]:
    """Metadata markers are kept as text; numbers (e.g. epoch stamps) are stringified."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return value


# ---- models ----------------------------------------------------------------

class WorkedExample(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    detail: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_description(cls, data: Any) -> Any:
        if isinstance(data, dict) and "detail" not in data and "description" in data:
            data = {**data, "detail": data["description"]}
        return data


class RelatedTopic(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    last_updated: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"title": data}
        if isinstance(data, dict) and "last_updated" not in data:
            data = {**data, "last_updated": _as_marker(data.get("lastUpdated"))}
        return data


class KnowledgeContent(BaseModel):
    """Title, body fields and metadata of an entry, without its embedding."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str
    summary: Optional[str] = None
    steps: Tuple[str, ...] = ()
    examples: Tuple[WorkedExample, ...] = ()
    notes: Tuple[str, ...] = ()
    related: Tuple[RelatedTopic, ...] = ()

    last_updated: Optional[str] = None
    version: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError(f"record must be an object, got {type(data).__name__}")
        data = dict(data)
        summary = _first_present(data, SUMMARY_KEYS)
        for key in SUMMARY_KEYS[1:]:
            data.pop(key, None)
        data["summary"] = summary
        for name, keys in METADATA_KEYS.items():
            data[name] = _as_marker(_first_present(data, keys))
        return data

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        v = clean_text(v)
        if not v:
            raise ValueError("title is empty")
        return v

    @field_validator("summary")
    @classmethod
    def _clean_summary(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("steps", "notes", mode="before")
    @classmethod
    def _clean_items(cls, v: Any) -> Any:
        if v is None:
            return ()
        if not isinstance(v, (list, tuple)):
            raise ValueError("expected a list of strings")
        return tuple(clean_lines(v))

    @field_validator("examples", "related", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return () if v is None else v

    # -- text rendering ------------------------------------------------------

    def field_lines(self, field_name: str) -> List[str]:
        """Plain-text lines for one content field (empty when unset)."""
        if field_name == "summary":
            return [self.summary] if self.summary else []
        if field_name == "steps":
            return [f"{i}. {step}" for i, step in enumerate(self.steps, 1)]
        if field_name == "examples":
            return [f"{ex.title}: {ex.detail}" if ex.detail else ex.title for ex in self.examples]
        if field_name == "notes":
            return list(self.notes)
        if field_name == "related":
            return [f"Related: {topic.title}" for topic in self.related]
        raise KeyError(field_name)

    def content_text(self, fields: Sequence[str]) -> str:
        """Concatenated textual content of ``fields``; title excluded."""
        lines: List[str] = []
        for field_name in fields:
            lines.extend(self.field_lines(field_name))
        return "\n".join(lines).strip()

    def embedding_text(self, profile: ContentProfile) -> str:
        """The exact text the precompute step embeds for this entry."""
        body = self.content_text(profile.content_fields)
        if not body:
            return ""
        if profile.include_title:
            return f"{self.title}\n{body}"
        return body


class KnowledgeEntry(KnowledgeContent):
    """A retrievable entry: content plus its precomputed embedding."""

    embedding: Tuple[float, ...]

    _vector: np.ndarray = PrivateAttr()

    @field_validator("embedding", mode="before")
    @classmethod
    def _numeric_embedding(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("embedding is missing")
        if isinstance(v, (str, bytes, dict)) or not isinstance(v, Sequence):
            raise ValueError("embedding must be an array of numbers")
        if len(v) == 0:
            raise ValueError("embedding is empty")
        for i, x in enumerate(v):
            if isinstance(x, bool) or not isinstance(x, Real):
                raise ValueError(f"embedding[{i}] is not a number")
            try:
                value = float(x)
            except OverflowError:
                raise ValueError(f"embedding[{i}] is out of range") from None
            if not math.isfinite(value):
                raise ValueError(f"embedding[{i}] is not finite")
        return tuple(float(x) for x in v)

    def model_post_init(self, __context: Any) -> None:
        vec = np.asarray(self.embedding, dtype=np.float64)
        vec.setflags(write=False)
        self._vector = vec

    @property
    def vector(self) -> np.ndarray:
        return self._vector

    @property
    def dimension(self) -> int:
        return len(self.embedding)


class KnowledgeBase:
    """Ordered, read-only collection of entries; safe to share across requests."""

    __slots__ = ("_entries", "source", "loaded_at", "dropped", "profile_version")

    def __init__(
        self,
        entries: Sequence[KnowledgeEntry],
        source: Optional[str] = None,
        loaded_at: Optional[datetime] = None,
        dropped: int = 0,
        profile_version: Optional[str] = None,
    ):
        self._entries: Tuple[KnowledgeEntry, ...] = tuple(entries)
        self.source = source
        self.loaded_at = loaded_at or datetime.now(timezone.utc)
        self.dropped = dropped
        self.profile_version = profile_version

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[KnowledgeEntry]:
        return iter(self._entries)

    def __getitem__(self, idx: int) -> KnowledgeEntry:
        return self._entries[idx]

    def __repr__(self) -> str:
        return f"KnowledgeBase(entries={len(self)}, source={self.source!r})"

    @property
    def dimensions(self) -> List[int]:
        return sorted({e.dimension for e in self._entries})


# ---- loading ---------------------------------------------------------------

def read_document(path: str) -> Tuple[List[Any], Optional[str]]:
    """
    Read ``path`` and return ``(records, profile_version)``.

    ``profile_version`` is the profile the embeddings were built with when the
    file is an ``{"profile": ..., "entries": [...]}`` object, else ``None``.
    Any failure is a ``LoadError``.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise LoadError(f"Knowledge base file not found: {path}", source=path) from e
    except (OSError, UnicodeDecodeError) as e:
        raise LoadError(f"Knowledge base file unreadable: {path}: {e}", source=path) from e
    except ValueError as e:
        # JSONDecodeError, and int literals past the interpreter's digit limit
        raise LoadError(f"Knowledge base file is not valid JSON: {path}: {e}", source=path) from e

    built_with = None
    if isinstance(data, dict) and isinstance(data.get("entries"), list):
        built_with = data.get("profile") if isinstance(data.get("profile"), str) else None
        data = data["entries"]
    if not isinstance(data, list):
        raise LoadError(
            f"Knowledge base must be a JSON array of records, got {type(data).__name__}",
            source=path,
        )
    return data, built_with


def read_records(path: str) -> List[Any]:
    """Read the raw record list from ``path``; any failure is a ``LoadError``."""
    return read_document(path)[0]


def parse_entries(
    records: Sequence[Any], profile: ContentProfile, source: Optional[str] = None
) -> KnowledgeBase:
    """Validate raw records, dropping the invalid ones with a warning."""
    entries: List[KnowledgeEntry] = []
    dropped = 0
    for idx, record in enumerate(records):
        try:
            entry = KnowledgeEntry.model_validate(record)
        except ValueError as e:
            dropped += 1
            title = record.get("title") if isinstance(record, dict) else None
            reason = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
                for err in getattr(e, "errors", lambda: [])()
            ) or str(e)
            logger.warning("Dropping knowledge record #%d (%r): %s", idx, title, reason)
            continue
        if not entry.content_text(profile.content_fields):
            dropped += 1
            logger.warning(
                "Dropping knowledge record #%d (%r): no textual content in %s",
                idx, entry.title, list(profile.content_fields),
            )
            continue
        entries.append(entry)

    if not entries:
        raise EmptyKnowledgeBase(
            f"Knowledge base has no valid entries ({dropped} dropped)",
            source=source,
            dropped=dropped,
        )

    base = KnowledgeBase(entries, source=source, dropped=dropped, profile_version=profile.version)
    if len(base.dimensions) > 1:
        logger.warning("Knowledge base mixes embedding dimensions %s", base.dimensions)
    return base


class KnowledgeStore:
    """
    Loads the precomputed knowledge file and hands out immutable snapshots.

    ``reload_mode`` decides what :meth:`current` does:
      - ``"startup"``: load once, reuse forever
      - ``"request"``: load a fresh snapshot on every call
      - ``"on_change"``: reload when the file's mtime moves
    """

    def __init__(self, path: str, profile: ContentProfile, reload_mode: str = "startup"):
        if reload_mode not in ("startup", "request", "on_change"):
            raise ValueError(f"Unknown reload mode: {reload_mode!r}")
        self.path = path
        self.profile = profile
        self.reload_mode = reload_mode
        self._base: Optional[KnowledgeBase] = None
        self._mtime: Optional[float] = None
        self._lock = threading.Lock()

    def load(self) -> KnowledgeBase:
        """Read and validate the source; does not touch the cached snapshot."""
        records, built_with = read_document(self.path)
        if built_with is not None and built_with != self.profile.version:
            logger.warning(
                "Knowledge base %s was embedded with profile %r but profile %r is active; "
                "re-run precompute_embeddings", self.path, built_with, self.profile.version,
            )
        base = parse_entries(records, self.profile, source=self.path)
        logger.info(
            "Loaded knowledge base %s: %d entries, %d dropped, dims=%s",
            self.path, len(base), base.dropped, base.dimensions,
        )
        return base

    def reload(self) -> KnowledgeBase:
        """Load a new snapshot and swap it in; failures keep the old one cached."""
        with self._lock:
            mtime = self._file_mtime()
            base = self.load()
            self._base = base
            self._mtime = mtime
            return base

    def snapshot(self) -> KnowledgeBase:
        """The cached snapshot, loading it on first use."""
        base = self._base
        if base is None:
            base = self.reload()
        return base

    def refresh_if_changed(self) -> KnowledgeBase:
        base = self._base
        if base is None or self._file_mtime() != self._mtime:
            return self.reload()
        return base

    def current(self) -> KnowledgeBase:
        if self.reload_mode == "request":
            return self.load()
        if self.reload_mode == "on_change":
            return self.refresh_if_changed()
        return self.snapshot()

    def _file_mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.path)
        except OSError:
            return None
