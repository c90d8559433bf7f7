import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from langchain_core.documents import Document

from sectionforge import storage as storage_module
from sectionforge.chunk_store import SectionChunkStore
from sectionforge.errors import StorageError
from sectionforge.models import NormalizedSection
from sectionforge.outline_store import OutlineStore, generate_file_hash
from sectionforge.sectioning import tag_chunks


def _section(section_id, title, start, end, filename="a.pdf", page=None):
    return NormalizedSection(
        id=section_id,
        title=title,
        level=1,
        page_number=page,
        start_index=start,
        end_index=end,
        filename=filename,
        original_id=section_id,
    )


def _chunks(texts, filename="a.pdf"):
    return [Document(page_content=text, metadata={"filename": filename, "page": 1}) for text in texts]


class TestMigrations(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "store.sqlite"

    def tearDown(self):
        self.tmp.cleanup()

    def test_versions_recorded_once_per_component(self):
        OutlineStore(self.db_path).close()
        OutlineStore(self.db_path).close()
        SectionChunkStore(self.db_path).close()

        conn = sqlite3.connect(str(self.db_path))
        try:
            rows = conn.execute(
                "SELECT component, version FROM schema_migrations ORDER BY component, version"
            ).fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [("outlines", 1), ("outlines", 2), ("section_chunks", 1)])



class PragmaRejectingConnection:
    """Wraps a real connection but refuses PRAGMA statements, like a read-only or locked file."""

    def __init__(self, inner):
        self.inner = inner

    def execute(self, sql, *args):
        if sql.lstrip().upper().startswith("PRAGMA"):
            raise sqlite3.OperationalError("database is locked")
        return self.inner.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class PragmaRejectingChunkStore(SectionChunkStore):
    def _connect(self):
        return PragmaRejectingConnection(super()._connect())


class TestStoreStartup(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "store.sqlite"

    def tearDown(self):
        self.tmp.cleanup()

    def test_rejected_pragma_is_logged_and_store_still_works(self):
        with patch.object(storage_module, "logger") as logger:
            store = PragmaRejectingChunkStore(self.db_path)
        self.addCleanup(store.close)

        events = [call.args[0] for call in logger.warning.call_args_list]
        self.assertIn("storage_pragma_failed", events)
        self.assertEqual(store.session_ids(), set())

class TestSectionChunkStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SectionChunkStore(Path(self.tmp.name) / "chunks.sqlite")
        chunks = _chunks(["alpha one", "alpha two", "beta three"])
        sections = [_section("a:1", "Alpha", 0, 1), _section("a:2", "Beta", 2, 2)]
        self.tagged = tag_chunks(chunks, sections, session_id="s1")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_replace_is_not_append(self):
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)
        self.assertEqual(self.store.count_chunks("s1"), 3)

    def test_section_scoped_reads(self):
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)

        docs = self.store.get_session_chunks("s1", ["a:2"])

        self.assertEqual([d.page_content for d in docs], ["beta three"])
        self.assertEqual(docs[0].metadata["section_title"], "Beta")
        self.assertEqual(self.store.get_section_content("s1", "a:1"), "alpha one\nalpha two")
        self.assertEqual(self.store.get_section_content("s1", "missing"), "")

    def test_sessions_are_isolated(self):
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)
        self.assertEqual(self.store.get_session_chunks("s2"), [])
        self.assertEqual(self.store.get_session_chunks("s2", ["a:1"]), [])
        self.assertEqual(self.store.session_ids(), {"s1"})

    def test_untagged_chunk_rejected(self):
        with self.assertRaises(ValueError):
            self.store.replace_document_chunks("s1", "a.pdf", [Document(page_content="x", metadata={})])
        self.assertEqual(self.store.count_chunks("s1"), 0)

    def test_delete_document_and_session(self):
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)
        self.assertEqual(self.store.delete_document("s1", "a.pdf"), 3)
        self.store.replace_document_chunks("s1", "a.pdf", self.tagged)
        self.assertEqual(self.store.delete_session("s1"), 3)
        self.assertEqual(self.store.delete_session("s1"), 0)

    def test_closed_store_raises_storage_error(self):
        self.store.close()
        with self.assertRaises(StorageError):
            self.store.get_session_chunks("s1")


class TestOutlineStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = OutlineStore(Path(self.tmp.name) / "outlines.sqlite", similarity_threshold=0.8)
        self.a_chunks = _chunks(["intro text", "more text"], "a.pdf")
        self.a_sections = [_section("a:1", "Overview", 0, 0, "a.pdf", page=1), _section("a:2", "Details", 1, 1, "a.pdf", page=2)]
        self.b_chunks = _chunks(["other intro"], "b.pdf")
        self.b_sections = [_section("b:1", "Overview", 0, 0, "b.pdf", page=1)]

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_reingesting_same_content_keeps_one_record(self):
        first = self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        second = self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)

        self.assertEqual(first.content_fingerprint, second.content_fingerprint)
        self.assertEqual(len(self.store.list_document_outlines("s1")), 1)
        self.assertEqual(first.created_at, second.created_at)

    def test_changed_content_replaces_previous_outline(self):
        self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        changed = _chunks(["rewritten text", "more text"], "a.pdf")
        self.store.upsert_document_outline("s1", "a.pdf", changed, self.a_sections[:1])

        outlines = self.store.list_document_outlines("s1")

        self.assertEqual(len(outlines), 1)
        self.assertEqual(len(outlines[0].sections), 1)

    def test_fingerprint_is_content_plus_filename(self):
        outline = self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        self.assertEqual(outline.content_fingerprint, generate_file_hash("intro text\nmore text", "a.pdf"))

    def test_session_outline_unifies_all_documents(self):
        self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        self.store.upsert_document_outline("s1", "b.pdf", self.b_chunks, self.b_sections)

        outline = self.store.refresh_session_outline("s1")

        self.assertEqual(self.store.get_session_outline("s1").unified_sections, outline.unified_sections)
        overview = outline.find_section("b:1")
        self.assertTrue(overview.is_grouped)
        self.assertEqual(overview.id, "a:1")

    def test_delete_document_triggers_recompute(self):
        self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        self.store.upsert_document_outline("s1", "b.pdf", self.b_chunks, self.b_sections)
        self.store.refresh_session_outline("s1")

        self.assertTrue(self.store.delete_document_outline("s1", "a.pdf"))

        outline = self.store.get_session_outline("s1")
        self.assertEqual([s.id for s in outline.unified_sections], ["b:1"])
        self.assertFalse(outline.unified_sections[0].is_grouped)

    def test_delete_missing_document_still_recomputes(self):
        self.assertFalse(self.store.delete_document_outline("s1", "ghost.pdf"))
        self.assertEqual(self.store.get_session_outline("s1").unified_sections, [])

    def test_not_found_is_none(self):
        self.assertIsNone(self.store.get_session_outline("nobody"))
        self.assertIsNone(self.store.get_document_outline("nobody", "a.pdf"))
        self.assertEqual(self.store.list_document_outlines("nobody"), [])

    def test_delete_session_removes_both_outline_kinds(self):
        self.store.upsert_document_outline("s1", "a.pdf", self.a_chunks, self.a_sections)
        self.store.refresh_session_outline("s1")

        self.assertEqual(self.store.delete_session("s1"), 2)
        self.assertIsNone(self.store.get_session_outline("s1"))
        self.assertEqual(self.store.session_ids(), set())


if __name__ == "__main__":
    unittest.main()
