import uuid
from datetime import datetime, timedelta, timezone

import pytest

from nullspace.errors import IndexCorruptError, NotFoundError, QueryParseError, SearchError, WriterLockedError
from nullspace.storage import search_index
from nullspace.storage.search_index import SearchEngine

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def engine(tmp_path):
    return SearchEngine(tmp_path / "index")


def _add(engine, writer, note_id, title, content="", tags=(), updated=T0):
    engine.index_note(writer, note_id, title, content, list(tags), T0, updated)


@pytest.fixture()
def populated(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean Notes", "waves and tides", ["nature/sea"], T0 + timedelta(hours=1))
        _add(engine, w, "n2", "Mountain trip", "the ocean was far away", ["nature/land"], T0 + timedelta(hours=2))
        _add(engine, w, "n3", "Groceries", "milk, eggs, bread", ["home"], T0 + timedelta(hours=3))
        _add(engine, w, "n4", "Draft ocean essay", "tides again", ["drafts"], T0)
        engine.commit(w)
    return engine


def _ids(hits):
    return [note_id for _, note_id in hits]


def test_search_finds_indexed_note(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean Notes", "waves and tides")
        engine.commit(w)
    hits = engine.search("ocean", 10)
    assert "n1" in _ids(hits)


def test_scores_non_increasing(populated):
    hits = populated.search("ocean tides", 10)
    scores = [s for s, _ in hits]
    assert scores == sorted(scores, reverse=True)
    assert set(_ids(hits)) == {"n1", "n2", "n4"}


def test_title_match_ranks_above_content_match(populated):
    hits = populated.search("ocean", 10)
    ids = _ids(hits)
    assert ids.index("n1") < ids.index("n2")


def test_limit_truncates(populated):
    assert len(populated.search("ocean", 1)) == 1
    with pytest.raises(ValueError):
        populated.search("ocean", 0)


def test_default_limit_from_env(populated, monkeypatch):
    monkeypatch.setenv("NULLSPACE_SEARCH_LIMIT", "2")
    assert len(populated.search("ocean")) == 2


def test_empty_query_returns_nothing(populated):
    assert populated.search("", 10) == []
    assert populated.search("   ", 10) == []


def test_malformed_query_raises(populated):
    with pytest.raises(QueryParseError) as ei:
        populated.search("(ocean", 10)
    assert ei.value.position == 0


def test_reindex_does_not_duplicate(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean", "first")
        engine.commit(w)
        _add(engine, w, "n1", "Ocean", "second version")
        engine.commit(w)
    assert _ids(engine.search("ocean", 10)) == ["n1"]
    assert engine.doc_count() == 1
    assert _ids(engine.search("second", 10)) == ["n1"]
    assert engine.search("first", 10) == []


def test_uncommitted_changes_are_invisible(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean", "")
        assert engine.search("ocean", 10) == []
        engine.commit(w)
        assert _ids(engine.search("ocean", 10)) == ["n1"]


def test_close_without_commit_rolls_back(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean", "")
    assert engine.search("ocean", 10) == []
    assert engine.doc_count() == 0


def test_second_writer_is_rejected(engine):
    w1 = engine.writer()
    try:
        with pytest.raises(WriterLockedError) as ei:
            engine.writer()
        assert ei.value.details.get("lock_id") == str(w1.lock.lock_id)
        other = SearchEngine(engine.index_dir)
        with pytest.raises(WriterLockedError):
            other.writer()
    finally:
        w1.close()
    with engine.writer() as w2:
        assert not w2.closed


def test_readers_work_while_writer_open(populated):
    with populated.writer() as w:
        _add(populated, w, "n5", "Ocean again", "")
        reader = SearchEngine(populated.index_dir)
        assert "n1" in _ids(reader.search("ocean", 10))
        assert "n5" not in _ids(reader.search("ocean", 10))


def test_boolean_operators(populated):
    assert _ids(populated.search("+ocean -tides", 10)) == ["n2"]
    assert set(_ids(populated.search("ocean AND tides", 10))) == {"n1", "n4"}
    assert _ids(populated.search("-ocean", 10)) == []
    assert set(_ids(populated.search("milk OR waves", 10))) == {"n1", "n3"}


def test_phrase_and_prefix(populated):
    assert _ids(populated.search('"waves and tides"', 10)) == ["n1"]
    assert populated.search('"tides and waves"', 10) == []
    assert set(_ids(populated.search("groc*", 10))) == {"n3"}


def test_field_restriction(populated):
    assert set(_ids(populated.search("title:ocean", 10))) == {"n1", "n4"}
    assert _ids(populated.search("content:ocean", 10)) == ["n2"]


def test_tags_are_whole_keywords(populated):
    assert _ids(populated.search("tags:nature/sea", 10)) == ["n1"]
    assert _ids(populated.search("tags:NATURE/SEA", 10)) == ["n1"]
    assert populated.search("tags:nature", 10) == []
    assert set(_ids(populated.search("tags:nature*", 10))) == {"n1", "n2"}
    # unqualified terms also match whole tags
    assert _ids(populated.search("home", 10)) == ["n3"]


def test_punctuation_only_term_matches_nothing(populated):
    assert populated.search("!!!", 10) == []


def test_equal_scores_ordered_by_id(engine):
    with engine.writer() as w:
        for note_id in ["b", "a", "c"]:
            _add(engine, w, note_id, "same", "")
        engine.commit(w)
    assert _ids(engine.search("same", 10)) == ["a", "b", "c"]


def test_delete_and_clear(populated):
    with populated.writer() as w:
        assert populated.delete_note(w, "n1") is True
        assert populated.delete_note(w, "missing") is False
        populated.commit(w)
    assert "n1" not in _ids(populated.search("ocean", 10))
    with populated.writer() as w:
        populated.clear(w)
        populated.commit(w)
    assert populated.doc_count() == 0
    assert populated.all_tags() == []


def test_search_by_tag_hierarchy(populated):
    assert populated.search_by_tag("nature") == ["n2", "n1"]
    assert populated.search_by_tag("nature", include_descendants=False) == []
    assert populated.search_by_tag("nature/sea") == ["n1"]


def test_all_tags_and_recent(populated):
    assert populated.all_tags() == ["drafts", "home", "nature/land", "nature/sea"]
    assert populated.recent(2) == ["n3", "n2"]


def test_uuid_ids_and_epoch_timestamps(engine):
    nid = uuid.uuid4()
    with engine.writer() as w:
        engine.index_note(w, nid, "Title", "", [], 1_700_000_000, 1_700_000_100)
        engine.commit(w)
    assert _ids(engine.search("title", 10)) == [str(nid)]


def test_writer_from_other_engine_is_refused(engine, tmp_path):
    other = SearchEngine(tmp_path / "other")
    with other.writer() as w:
        with pytest.raises(ValueError):
            engine.index_note(w, "x", "t", "", [], T0, T0)


def test_garbage_index_file_is_corrupt(tmp_path):
    index_dir = tmp_path / "broken"
    index_dir.mkdir()
    (index_dir / "index.sqlite3").write_bytes(b"this is not a database" * 100)
    with pytest.raises(IndexCorruptError):
        SearchEngine(index_dir)


def test_ephemeral_index_is_removed_on_close():
    engine = SearchEngine.ephemeral()
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean", "")
        engine.commit(w)
    assert engine.index_dir.exists()
    engine.close()
    assert not engine.index_dir.exists()


def test_rejected_reindex_keeps_previous_document(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean Notes", "waves")
        engine.commit(w)
    with engine.writer() as w:
        with pytest.raises(TypeError):
            engine.index_note(w, "n1", "Ocean Notes", "changed", [], "bad", T0)
        _add(engine, w, "n2", "Groceries", "milk")
        engine.commit(w)
    assert _ids(engine.search("ocean", 10)) == ["n1"]
    assert engine.doc_count() == 2


def test_failed_insert_rolls_back_only_that_note(engine):
    with engine.writer() as w:
        _add(engine, w, "n1", "Ocean Notes", "waves")
        engine.commit(w)
    with engine.writer() as w:
        _add(engine, w, "n2", "Groceries", "milk")
        # the old row is removed before the insert hits NOT NULL
        with pytest.raises(SearchError):
            engine.index_note(w, "n1", None, "changed", [], T0, T0)
        engine.commit(w)
    assert _ids(engine.search("ocean", 10)) == ["n1"]
    assert _ids(engine.search("milk", 10)) == ["n2"]


def test_parsed_terms_remember_their_position(populated, monkeypatch):
    monkeypatch.setattr(search_index, "_fts_string", lambda text: ")")
    with pytest.raises(QueryParseError) as ei:
        populated.search("+ocean +tides", 10)
    assert ei.value.position == 1
    assert ei.value.fragment == "ocean"


def test_open_without_create(tmp_path):
    with pytest.raises(NotFoundError):
        SearchEngine(tmp_path / "missing", create=False)
    assert not (tmp_path / "missing").exists()
    SearchEngine(tmp_path / "index")
    assert SearchEngine(tmp_path / "index", create=False).doc_count() == 0
