"""Unit tests for kg.store."""

import textwrap
from datetime import date
from pathlib import Path

import pytest

from kg.errors import (
    ConflictError,
    InvalidMetadata,
    MalformedDocument,
    PerFileError,
    UnknownNote,
    ValidationError,
)
from kg.note import Note, NoteMeta
from kg.parser import parse_frontmatter
from kg.store import Corpus, NoteStore, load_corpus


def _write_note(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def _valid(title: str, *, tags: str = "[]", extra: str = "") -> str:
    return f"---\ntitle: {title}\ndate: 2024-01-05\ntags: {tags}\n{extra}---\n\nBody of {title}.\n"


@pytest.fixture()
def notes_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "notes"
    directory.mkdir()
    return directory


@pytest.fixture()
def store(notes_dir: Path) -> NoteStore:
    return NoteStore(notes_dir)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadCorpus:
    def test_bad_file_is_collected_not_fatal(self, notes_dir: Path):
        for name in ("a", "b", "c", "d", "e"):
            _write_note(notes_dir, f"{name}.md", _valid(name.upper()))
        bad = _write_note(notes_dir, "broken.md", "no frontmatter here\n")

        result = load_corpus(notes_dir)
        assert len(result.corpus) == 5
        assert len(result.errors) == 1
        assert not result.ok
        error = result.errors[0]
        assert isinstance(error, PerFileError)
        assert error.path == bad
        assert isinstance(error.cause, MalformedDocument)

    def test_missing_title_is_per_file_error(self, notes_dir: Path):
        _write_note(notes_dir, "untitled.md", "---\ndate: 2024-01-05\n---\nBody\n")
        result = load_corpus(notes_dir)
        assert len(result.corpus) == 0
        assert isinstance(result.errors[0].cause, ValidationError)

    def test_corpus_order_is_sorted(self, notes_dir: Path):
        for name in ("gamma", "alpha", "beta"):
            _write_note(notes_dir, f"{name}.md", _valid(name))
        assert list(load_corpus(notes_dir).corpus.notes) == ["alpha", "beta", "gamma"]

    def test_hidden_directories_skipped(self, notes_dir: Path):
        _write_note(notes_dir, "alpha.md", _valid("Alpha"))
        _write_note(notes_dir, ".trash/old.md", _valid("Old"))
        assert list(load_corpus(notes_dir).corpus.notes) == ["alpha"]

    def test_subdirectories_loaded(self, notes_dir: Path):
        _write_note(notes_dir, "projects/plan.md", _valid("Plan"))
        assert "plan" in load_corpus(notes_dir).corpus

    def test_duplicate_id_first_wins(self, notes_dir: Path):
        _write_note(notes_dir, "alpha.md", _valid("Top"))
        dup = _write_note(notes_dir, "sub/alpha.md", _valid("Nested"))
        result = load_corpus(notes_dir)
        assert result.corpus.get("alpha").title == "Top"
        assert result.errors[0].path == dup
        assert isinstance(result.errors[0].cause, ConflictError)

    def test_parallel_load_matches_serial(self, notes_dir: Path):
        for i in range(12):
            _write_note(notes_dir, f"n{i:02d}.md", _valid(f"Note {i}"))
        _write_note(notes_dir, "broken.md", "nope\n")
        serial = load_corpus(notes_dir)
        parallel = load_corpus(notes_dir, workers=4)
        assert list(parallel.corpus.notes) == list(serial.corpus.notes)
        assert [e.path for e in parallel.errors] == [e.path for e in serial.errors]

    def test_out_of_range_date_is_per_file_error(self, notes_dir: Path):
        for name in ("a", "b", "c", "d", "e"):
            _write_note(notes_dir, f"{name}.md", _valid(name.upper()))
        bad = _write_note(notes_dir, "bad.md", "---\ntitle: Bad\ndate: 2024-13-45\n---\nBody\n")

        result = load_corpus(notes_dir)
        assert len(result.corpus) == 5
        assert [e.path for e in result.errors] == [bad]
        cause = result.errors[0].cause
        assert isinstance(cause, InvalidMetadata)
        assert isinstance(cause.cause, ValueError)

    def test_missing_directory_raises(self, tmp_path: Path):
        with pytest.raises(NotADirectoryError):
            load_corpus(tmp_path / "nowhere")

    def test_empty_directory(self, notes_dir: Path):
        result = load_corpus(notes_dir)
        assert len(result.corpus) == 0
        assert result.ok


class TestCorpus:
    def test_get_unknown_raises(self, notes_dir: Path):
        corpus = load_corpus(notes_dir).corpus
        with pytest.raises(UnknownNote):
            corpus.get("ghost")

    def test_with_tag(self, notes_dir: Path):
        _write_note(notes_dir, "a.md", _valid("A", tags="[x]"))
        _write_note(notes_dir, "b.md", _valid("B", tags="[y]"))
        corpus = load_corpus(notes_dir).corpus
        assert [n.id for n in corpus.with_tag("x")] == ["a"]


class TestCorpusSorting:
    @pytest.fixture()
    def corpus(self) -> Corpus:
        def note(note_id: str, title: str, created=None, modified=None) -> Note:
            return Note(path=Path(f"{note_id}.md"), meta=NoteMeta(title=title, date=created, lastmod=modified))

        return Corpus(
            Path("notes"),
            [
                note("a", "Zeta", date(2024, 3, 1), date(2024, 3, 2)),
                note("b", "Alpha", None, date(2024, 1, 1)),
                note("c", "Mid", date(2024, 1, 10), None),
                note("d", "Alpha", date(2024, 3, 1), date(2024, 2, 1)),
            ],
        )

    @staticmethod
    def _ids(notes: list[Note]) -> list[str]:
        return [n.id for n in notes]

    def test_default_is_title(self, corpus: Corpus):
        assert self._ids(corpus.sorted_by()) == ["b", "d", "c", "a"]

    def test_title_reverse_keeps_ties_in_load_order(self, corpus: Corpus):
        assert self._ids(corpus.sorted_by("title", reverse=True)) == ["a", "c", "b", "d"]

    def test_date(self, corpus: Corpus):
        assert self._ids(corpus.sorted_by("date")) == ["c", "a", "d", "b"]

    def test_date_reverse_keeps_undated_last(self, corpus: Corpus):
        assert self._ids(corpus.sorted_by("date", reverse=True)) == ["a", "d", "c", "b"]

    def test_lastmod(self, corpus: Corpus):
        assert self._ids(corpus.sorted_by("lastmod")) == ["b", "d", "a", "c"]
        assert self._ids(corpus.sorted_by("lastmod", reverse=True)) == ["a", "d", "b", "c"]

    def test_unknown_key(self, corpus: Corpus):
        with pytest.raises(ValidationError):
            corpus.sorted_by("size")

    def test_load_order_untouched(self, corpus: Corpus):
        corpus.sorted_by("title")
        assert list(corpus.notes) == ["a", "b", "c", "d"]


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    def test_creates_note_with_generated_frontmatter(self, store: NoteStore):
        note_id = store.create("My First Note", tags=["a", "b"], body="Hello", today=date(2024, 1, 5))
        assert note_id == "my-first-note"
        note = store.read(note_id)
        assert note.title == "My First Note"
        assert note.tags == ["a", "b"]
        assert note.date == date(2024, 1, 5)
        assert note.last_modified == date(2024, 1, 5)
        assert note.meta.draft is False
        assert note.body == "Hello"

    def test_comma_separated_tags(self, store: NoteStore):
        note_id = store.create("Tagged", tags="x, y")
        assert store.read(note_id).tags == ["x", "y"]

    def test_conflict_leaves_existing_file(self, store: NoteStore):
        note_id = store.create("Same", body="original")
        before = store.path_for(note_id).read_text(encoding="utf-8")
        with pytest.raises(ConflictError):
            store.create("Same", body="replacement")
        assert store.path_for(note_id).read_text(encoding="utf-8") == before

    @pytest.mark.parametrize("title", ["", "   ", "a/b", "two\nlines", ".."])
    def test_rejects_unusable_titles(self, store: NoteStore, title: str):
        with pytest.raises(ValidationError):
            store.create(title)

    def test_extra_fields_written(self, store: NoteStore):
        note_id = store.create("Linked", extra={"connects": ["a", "b"]})
        assert store.read(note_id).meta.extra == {"connects": ["a", "b"]}


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    def test_missing_date_writes_nothing(self, store: NoteStore, notes_dir: Path, tmp_path: Path):
        source = _write_note(tmp_path / "inbox", "draft.md", "---\ntitle: Draft\n---\nBody\n")
        with pytest.raises(ValidationError) as exc_info:
            store.import_external(source)
        assert exc_info.value.field == "date"
        assert list(notes_dir.iterdir()) == []

    def test_imports_and_rewrites_wikilinks(self, store: NoteStore, notes_dir: Path, tmp_path: Path):
        source = _write_note(
            tmp_path / "inbox",
            "external.md",
            """\
            ---
            title: External Note
            date: 2024-03-01
            ---

            See [[Other Note]] for more.
            """,
        )
        note_id = store.import_external(source)
        assert note_id == "external-note"
        text = store.path_for(note_id).read_text(encoding="utf-8")
        assert f"[Other Note]({(notes_dir / 'other-note.md').as_posix()})" in text
        assert "[[" not in text
        meta, _ = parse_frontmatter(text)
        assert meta["title"] == "External Note"

    def test_conflict(self, store: NoteStore, tmp_path: Path):
        store.create("External Note")
        source = _write_note(tmp_path / "inbox", "x.md", "---\ntitle: External Note\ndate: 2024-03-01\n---\n")
        with pytest.raises(ConflictError):
            store.import_external(source)

    def test_malformed_source(self, store: NoteStore, tmp_path: Path):
        source = _write_note(tmp_path / "inbox", "x.md", "plain text\n")
        with pytest.raises(MalformedDocument):
            store.import_external(source)


# ---------------------------------------------------------------------------
# Edit and field updates
# ---------------------------------------------------------------------------


class TestEdit:
    def test_title_change_keeps_id(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "alpha.md", _valid("Alpha"))
        new_text = _valid("Renamed")
        note = store.edit("alpha", new_text)
        assert note.id == "alpha"
        assert note.title == "Renamed"
        assert store.path_for("alpha").read_text(encoding="utf-8") == new_text
        assert not store.exists("renamed")

    def test_invalid_edit_leaves_file(self, store: NoteStore, notes_dir: Path):
        path = _write_note(notes_dir, "alpha.md", _valid("Alpha"))
        before = path.read_text(encoding="utf-8")
        with pytest.raises(ValidationError):
            store.edit("alpha", "---\ntitle: Alpha\n---\nno date\n")
        assert path.read_text(encoding="utf-8") == before

    def test_unknown_note(self, store: NoteStore):
        with pytest.raises(UnknownNote):
            store.edit("ghost", _valid("Ghost"))

    def test_update_field_appends(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "alpha.md", _valid("Alpha", extra="connected_to: [beta]\n"))
        store.update_field("alpha", "connected_to", "gamma")
        assert store.read("alpha").connections == ["beta", "gamma"]

    def test_set_field(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "alpha.md", _valid("Alpha"))
        store.set_field("alpha", "draft", True)
        assert store.read("alpha").meta.draft is True

    def test_resolve_by_title(self, store: NoteStore):
        note_id = store.create("Some Title")
        assert store.resolve("Some Title") == note_id
        assert store.resolve(note_id) == note_id
        with pytest.raises(UnknownNote):
            store.resolve("Nothing Here")


class TestSubdirectoryNotes:
    @pytest.fixture()
    def nested(self, notes_dir: Path) -> Path:
        return _write_note(notes_dir, "sub/alpha.md", _valid("Alpha"))

    def test_create_conflicts_with_nested_note(self, store: NoteStore, notes_dir: Path, nested: Path):
        with pytest.raises(ConflictError) as exc_info:
            store.create("Alpha")
        assert exc_info.value.path == nested
        assert not (notes_dir / "alpha.md").exists()

    def test_import_conflicts_with_nested_note(self, store: NoteStore, tmp_path: Path, nested: Path):
        source = _write_note(tmp_path / "inbox", "alpha.md", _valid("Alpha"))
        with pytest.raises(ConflictError):
            store.import_external(source)

    def test_lookup_finds_nested_note(self, store: NoteStore, nested: Path):
        assert store.exists("alpha")
        assert store.path_for("alpha") == nested
        assert store.resolve("Alpha") == "alpha"
        assert store.read("alpha").title == "Alpha"

    def test_update_field_rewrites_nested_file(self, store: NoteStore, notes_dir: Path, nested: Path):
        store.update_field("alpha", "connected_to", "beta")
        assert store.read("alpha").connections == ["beta"]
        assert not (notes_dir / "alpha.md").exists()

    def test_edit_nested_note(self, store: NoteStore, nested: Path):
        store.edit("alpha", _valid("Renamed"))
        assert nested.read_text(encoding="utf-8") == _valid("Renamed")


class TestBulk:
    def test_normalize_all_is_idempotent(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "a.md", "---\ntitle: A\ndate: '2024-01-05'\ntags: [Python, python]\n---\nBody\n")
        _write_note(notes_dir, "b.md", "---\ntitle: B\ndate: 2024-01-06\ntags:\n- rust\n---\nBody\n")
        first = store.normalize_all()
        assert [p.name for p in first.changed] == ["a.md"]
        assert store.read("a").tags == ["python"]
        second = store.normalize_all()
        assert second.changed == []

    def test_bad_file_collected(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "a.md", "---\ntitle: A\ntags: [X]\n---\n")
        _write_note(notes_dir, "broken.md", "nope\n")
        result = store.normalize_all()
        assert len(result.changed) == 1
        assert len(result.errors) == 1
        assert isinstance(result.errors[0].cause, MalformedDocument)

    def test_out_of_range_date_collected(self, store: NoteStore, notes_dir: Path):
        _write_note(notes_dir, "a.md", "---\ntitle: A\ntags: [X]\n---\n")
        _write_note(notes_dir, "bad.md", "---\ntitle: Bad\ndate: 2024-13-45\n---\n")
        result = store.normalize_all()
        assert [p.name for p in result.changed] == ["a.md"]
        assert isinstance(result.errors[0].cause, InvalidMetadata)

    def test_set_field_all(self, store: NoteStore, notes_dir: Path):
        for name in ("a", "b"):
            _write_note(notes_dir, f"{name}.md", _valid(name))
        result = store.set_field_all("draft", True)
        assert len(result.changed) == 2
        assert all(note.meta.draft for note in store.load().corpus)
