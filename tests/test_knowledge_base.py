"""
Tests for knowledge entry validation and KnowledgeStore loading.
"""

import json
import logging
import os

import pytest

from conftest import make_record
from kbchat.errors import EmptyKnowledgeBase, LoadError
from kbchat.profiles import get_profile
from kbchat.utils.knowledge_base import KnowledgeContent, KnowledgeEntry, KnowledgeStore, parse_entries


class TestKnowledgeEntry:
    """Entry model and text rendering."""

    def test_legacy_content_key_becomes_summary(self):
        entry = KnowledgeEntry.model_validate({"title": "T", "content": "body", "embedding": [1, 0]})
        assert entry.summary == "body"

    def test_content_summary_alias(self):
        entry = KnowledgeEntry.model_validate({"title": "T", "contentSummary": "short", "embedding": [1.0]})
        assert entry.summary == "short"

    def test_summary_preferred_over_aliases(self):
        entry = KnowledgeEntry.model_validate(
            {"title": "T", "summary": "main", "content": "legacy", "embedding": [1.0]}
        )
        assert entry.summary == "main"

    def test_metadata_carried_through(self):
        entry = KnowledgeEntry.model_validate({
            "title": "T", "summary": "s", "embedding": [1.0],
            "lastUpdated": "2024-01-01", "version": 6, "url": "https://x",
        })
        assert entry.last_updated == "2024-01-01"
        assert entry.version == "6"
        assert entry.url == "https://x"

    def test_structured_content_text(self):
        entry = KnowledgeEntry.model_validate({
            "title": "T",
            "steps": ["  Open  it ", "Close it"],
            "examples": [{"title": "Ex", "detail": "does things"}],
            "notes": ["note one", ""],
            "related": [{"title": "Other", "lastUpdated": "2024-02-02"}],
            "embedding": [0.5, 0.5],
        })
        text = entry.content_text(("summary", "steps", "examples", "notes", "related"))
        assert text == "1. Open it\n2. Close it\nEx: does things\nnote one\nRelated: Other"
        assert entry.related[0].last_updated == "2024-02-02"

    def test_embedding_text_includes_title_for_v2(self):
        content = KnowledgeContent.model_validate({"title": "Title", "summary": "Body"})
        assert content.embedding_text(get_profile("v2")) == "Title\nBody"
        assert content.embedding_text(get_profile("v1")) == "Body"

    def test_vector_is_read_only(self):
        entry = KnowledgeEntry.model_validate({"title": "T", "summary": "s", "embedding": [1, 2, 3]})
        assert entry.dimension == 3
        assert entry.vector.tolist() == [1.0, 2.0, 3.0]
        with pytest.raises(ValueError):
            entry.vector[0] = 9.0

    def test_entry_is_frozen(self):
        entry = KnowledgeEntry.model_validate({"title": "T", "summary": "s", "embedding": [1.0]})
        with pytest.raises(Exception):
            entry.title = "changed"

    @pytest.mark.parametrize("embedding", [None, [], "1,2", [1, "2"], [True, False], [1.0, float("nan")], {"a": 1}])
    def test_bad_embeddings_rejected(self, embedding):
        with pytest.raises(ValueError):
            KnowledgeEntry.model_validate({"title": "T", "summary": "s", "embedding": embedding})

    def test_missing_embedding_rejected(self):
        with pytest.raises(ValueError):
            KnowledgeEntry.model_validate({"title": "T", "summary": "s"})

    @pytest.mark.parametrize("title", ["", "   ", None, 5])
    def test_bad_titles_rejected(self, title):
        with pytest.raises(ValueError):
            KnowledgeEntry.model_validate({"title": title, "summary": "s", "embedding": [1.0]})


class TestParseEntries:
    """Per-record validation while building a base."""

    def test_invalid_records_dropped(self, profile):
        records = [
            make_record("Good", [1.0, 0.0]),
            make_record("No embedding", None),
            {"summary": "no title", "embedding": [1.0, 0.0]},
            "not an object",
            {"title": "No content", "embedding": [1.0, 0.0]},
        ]
        base = parse_entries(records, profile)
        assert [e.title for e in base] == ["Good"]
        assert base.dropped == 4

    def test_only_entry_without_embedding_is_empty_base(self, profile):
        with pytest.raises(EmptyKnowledgeBase) as exc_info:
            parse_entries([make_record("Lonely", None)], profile)
        assert exc_info.value.dropped == 1

    def test_oversized_embedding_value_dropped(self, profile):
        records = [make_record("good", [1.0, 0.0]), make_record("huge", [10 ** 400, 0.0])]
        base = parse_entries(records, profile)
        assert [e.title for e in base] == ["good"]
        assert base.dropped == 1

    def test_empty_list_is_empty_base(self, profile):
        with pytest.raises(EmptyKnowledgeBase):
            parse_entries([], profile)

    def test_profile_decides_content_fields(self):
        records = [{"title": "Steps only", "steps": ["do it"], "embedding": [1.0]}]
        assert len(parse_entries(records, get_profile("v2"))) == 1
        with pytest.raises(EmptyKnowledgeBase):
            parse_entries(records, get_profile("v1"))

    def test_order_preserved(self, profile, sample_records):
        base = parse_entries(sample_records, profile)
        assert [e.title for e in base] == ["Printing receipts", "Adding employees", "End of day report"]
        assert base.dimensions == [2]


class TestKnowledgeStore:
    """Loading, failure modes and snapshot swapping."""

    def test_load(self, write_kb, profile, sample_records):
        store = KnowledgeStore(write_kb(sample_records), profile)
        base = store.load()
        assert len(base) == 3
        assert base.profile_version == "v2"

    def test_entries_wrapper_object(self, write_kb, profile, sample_records):
        store = KnowledgeStore(write_kb({"entries": sample_records}), profile)
        assert len(store.load()) == 3

    def test_missing_file_is_load_error(self, tmp_path, profile):
        store = KnowledgeStore(str(tmp_path / "nope.json"), profile)
        with pytest.raises(LoadError) as exc_info:
            store.load()
        assert not isinstance(exc_info.value, EmptyKnowledgeBase)

    def test_malformed_json_is_load_error(self, write_kb, profile):
        store = KnowledgeStore(write_kb("[{not json"), profile)
        with pytest.raises(LoadError):
            store.load()

    def test_overlong_integer_literal_is_load_error(self, write_kb, profile):
        text = '[{"title": "t", "summary": "s", "embedding": [%s]}]' % ("9" * 5000)
        store = KnowledgeStore(write_kb(text), profile)
        with pytest.raises(LoadError):
            store.load()

    def test_profile_mismatch_warns(self, write_kb, sample_records, caplog):
        path = write_kb({"profile": "v2", "entries": sample_records})
        with caplog.at_level(logging.WARNING, logger="kbchat"):
            base = KnowledgeStore(path, get_profile("v1")).load()
        assert len(base) == 3
        assert "embedded with profile 'v2'" in caplog.text

    def test_matching_profile_does_not_warn(self, write_kb, profile, sample_records, caplog):
        path = write_kb({"profile": "v2", "entries": sample_records})
        with caplog.at_level(logging.WARNING, logger="kbchat"):
            KnowledgeStore(path, profile).load()
        assert "embedded with profile" not in caplog.text

    def test_wrong_top_level_shape_is_load_error(self, write_kb, profile):
        store = KnowledgeStore(write_kb({"title": "x"}), profile)
        with pytest.raises(LoadError):
            store.load()

    def test_all_invalid_is_empty_knowledge_base(self, write_kb, profile):
        store = KnowledgeStore(write_kb([make_record("a", None), make_record("b", [])]), profile)
        with pytest.raises(EmptyKnowledgeBase):
            store.load()

    def test_snapshot_is_cached(self, write_kb, profile, sample_records):
        store = KnowledgeStore(write_kb(sample_records), profile)
        assert store.snapshot() is store.snapshot()
        assert store.current() is store.snapshot()

    def test_request_mode_loads_fresh(self, write_kb, profile, sample_records):
        store = KnowledgeStore(write_kb(sample_records), profile, reload_mode="request")
        assert store.current() is not store.current()

    def test_failed_reload_keeps_previous_snapshot(self, write_kb, profile, sample_records):
        path = write_kb(sample_records)
        store = KnowledgeStore(path, profile)
        first = store.snapshot()
        with open(path, "w", encoding="utf-8") as f:
            f.write("garbage")
        with pytest.raises(LoadError):
            store.reload()
        assert store.snapshot() is first

    def test_on_change_mode_reloads_after_write(self, write_kb, profile, sample_records):
        path = write_kb(sample_records)
        store = KnowledgeStore(path, profile, reload_mode="on_change")
        first = store.current()
        assert store.current() is first

        with open(path, "w", encoding="utf-8") as f:
            json.dump(sample_records[:1], f)
        stat = os.stat(path)
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        second = store.current()
        assert second is not first
        assert len(second) == 1
        assert len(first) == 3

    def test_unknown_reload_mode(self, write_kb, profile, sample_records):
        with pytest.raises(ValueError):
            KnowledgeStore(write_kb(sample_records), profile, reload_mode="sometimes")
