import tempfile
import unittest
from pathlib import Path

from langchain_core.documents import Document

from sectionforge.chunk_store import SectionChunkStore
from sectionforge.content_filter import SectionScopedRetriever, section_content
from sectionforge.errors import StorageError
from sectionforge.models import NormalizedSection
from sectionforge.sectioning import tag_chunks


def _section(section_id, start, end):
    return NormalizedSection(
        id=section_id,
        title=section_id.upper(),
        level=1,
        start_index=start,
        end_index=end,
        filename="a.pdf",
        original_id=section_id,
    )


class _ScopedFailureStore:
    """Chunk store whose section-scoped query is broken."""

    def __init__(self, docs):
        self.docs = docs
        self.calls = []

    def get_session_chunks(self, session_id, section_ids=None, limit=None):
        self.calls.append(section_ids)
        if section_ids:
            raise StorageError("index unavailable")
        return [doc for doc in self.docs if doc.metadata.get("session_id") == session_id]


class _LeakyStore:
    def __init__(self, docs):
        self.docs = docs

    def get_session_chunks(self, session_id, section_ids=None, limit=None):
        return list(self.docs)


class TestSectionScopedRetriever(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SectionChunkStore(Path(self.tmp.name) / "chunks.sqlite")
        texts = ["photosynthesis converts light", "chlorophyll absorbs light", "mitochondria produce energy", "cell membranes"]
        chunks = [Document(page_content=text, metadata={"filename": "a.pdf"}) for text in texts]
        sections = [_section("bio:plants", 0, 1), _section("bio:cells", 2, 3)]
        for session_id in ("s1", "s2"):
            self.store.replace_document_chunks(session_id, "a.pdf", tag_chunks(chunks, sections, session_id=session_id))

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_unscoped_returns_whole_session_in_chunk_order(self):
        retriever = SectionScopedRetriever(chunk_store=self.store, session_id="s1")

        docs = retriever.invoke("")

        self.assertEqual([d.metadata["chunk_index"] for d in docs], [0, 1, 2, 3])
        self.assertTrue(all(d.metadata["session_id"] == "s1" for d in docs))

    def test_scoped_returns_only_selected_sections(self):
        retriever = SectionScopedRetriever(chunk_store=self.store, session_id="s2", section_ids=["bio:cells"])

        docs = retriever.invoke("energy")

        self.assertEqual({d.metadata["section_id"] for d in docs}, {"bio:cells"})
        self.assertEqual(docs[0].page_content, "mitochondria produce energy")
        self.assertTrue(all(d.metadata["session_id"] == "s2" for d in docs))

    def test_ranking_is_stable_and_capped(self):
        retriever = SectionScopedRetriever(chunk_store=self.store, session_id="s1", k=2)

        docs = retriever.invoke("light chlorophyll")

        self.assertEqual([d.page_content for d in docs], ["chlorophyll absorbs light", "photosynthesis converts light"])

    def test_unknown_session_gets_nothing(self):
        retriever = SectionScopedRetriever(chunk_store=self.store, session_id="intruder", section_ids=["bio:plants"])
        self.assertEqual(retriever.invoke("light"), [])

    def test_storage_failure_falls_back_to_session_for_chat(self):
        docs = self.store.get_session_chunks("s1")
        failing = _ScopedFailureStore(docs)
        retriever = SectionScopedRetriever(chunk_store=failing, session_id="s1", section_ids=["bio:plants"])

        result = retriever.invoke("light")

        self.assertEqual(len(result), 4)
        self.assertEqual(failing.calls, [["bio:plants"], None])

    def test_storage_failure_is_empty_for_quiz(self):
        failing = _ScopedFailureStore(self.store.get_session_chunks("s1"))
        retriever = SectionScopedRetriever(chunk_store=failing, session_id="s1", section_ids=["bio:plants"], strict=True)

        self.assertEqual(retriever.invoke("light"), [])

    def test_foreign_chunks_are_filtered_out(self):
        leaked = self.store.get_session_chunks("s1") + self.store.get_session_chunks("s2")
        retriever = SectionScopedRetriever(chunk_store=_LeakyStore(leaked), session_id="s2")

        docs = retriever.invoke("")

        self.assertEqual(len(docs), 4)
        self.assertTrue(all(d.metadata["session_id"] == "s2" for d in docs))

    def test_section_content_joins_non_empty_text(self):
        docs = [Document(page_content="one"), Document(page_content="  "), Document(page_content="two")]
        self.assertEqual(section_content(docs), "one\n\ntwo")


if __name__ == "__main__":
    unittest.main()
