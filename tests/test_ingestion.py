import tempfile
import unittest
from pathlib import Path

from langchain_core.documents import Document

from sectionforge.chunk_store import SectionChunkStore
from sectionforge.errors import CapabilityError, InputValidationError
from sectionforge.ingestion import DocumentIngestor, validate_upload
from sectionforge.metrics import MetricsCollector
from sectionforge.models import RawSectionProposal
from sectionforge.outline_store import OutlineStore
from sectionforge.quiz_ledger import QuizLedger
from sectionforge.sectioning import document_key
from sectionforge.sessions import SessionLifecycleManager, SessionRegistry


def _pages(*texts):
    return [Document(page_content=text, metadata={"page": index + 1}) for index, text in enumerate(texts)]


class FakeExtractor:
    def __init__(self, proposals=None, error=None):
        self.proposals = proposals or []
        self.error = error
        self.calls = []

    def extract(self, document_text, chunk_count):
        self.calls.append((document_text, chunk_count))
        if self.error is not None:
            raise self.error
        return list(self.proposals)


class FakeSummarizer:
    def summarize(self, title, content):
        if title == "Broken":
            raise CapabilityError("summary failed")
        if title == "Unreachable":
            raise ConnectionError("connection refused")
        return f"{title}: {len(content)} chars"


class IngestionTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        db_path = Path(self.tmp.name) / "ingest.sqlite"
        self.chunk_store = SectionChunkStore(db_path)
        self.outline_store = OutlineStore(db_path)
        self.extractor = FakeExtractor(
            [
                RawSectionProposal(id="intro", title="Introduction", start_index=0, end_index=1),
                RawSectionProposal(id="body", title="Body", start_index=2, end_index=3),
            ]
        )
        self.ingestor = DocumentIngestor(self.chunk_store, self.outline_store, self.extractor)

    def tearDown(self):
        self.chunk_store.close()
        self.outline_store.close()
        self.tmp.cleanup()


class TestDocumentIngestor(IngestionTestCase):
    def test_extracted_outline_is_stored_and_chunks_tagged(self):
        result = self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b", "c", "d"))

        key = document_key("notes.pdf")
        self.assertTrue(result.toc_generated)
        self.assertFalse(result.used_fallback)
        self.assertEqual([s.id for s in result.sections], [f"{key}:intro", f"{key}:body"])
        self.assertEqual(self.extractor.calls[0][1], 4)
        self.assertIn("[chunk 0, page 1]", self.extractor.calls[0][0])

        body = self.chunk_store.get_session_chunks("s1", [f"{key}:body"])
        self.assertEqual([d.page_content for d in body], ["c", "d"])
        outline = self.outline_store.get_session_outline("s1")
        self.assertEqual(len(outline.unified_sections), 2)

    def test_extractor_failure_falls_back_to_pages(self):
        self.ingestor.extractor = FakeExtractor(error=CapabilityError("extractor timed out"))

        result = self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b", "c"))

        self.assertTrue(result.used_fallback)
        self.assertFalse(result.toc_generated)
        self.assertEqual([s.page_number for s in result.sections], [1, 2, 3])
        self.assertEqual(self.chunk_store.count_chunks("s1"), 3)

    def test_unexpected_extractor_error_falls_back_to_pages(self):
        self.ingestor.extractor = FakeExtractor(error=TimeoutError("read timed out"))

        result = self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b"))

        self.assertTrue(result.used_fallback)
        self.assertEqual([s.page_number for s in result.sections], [1, 2])
        self.assertEqual(self.chunk_store.count_chunks("s1"), 2)

    def test_empty_proposal_falls_back_to_pages(self):
        self.ingestor.extractor = FakeExtractor([])

        result = self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b"))

        self.assertTrue(result.used_fallback)
        self.assertEqual(len(result.sections), 2)

    def test_reingest_replaces_rather_than_appends(self):
        self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b", "c", "d"))
        self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b", "c", "d"))

        self.assertEqual(self.chunk_store.count_chunks("s1"), 4)
        self.assertEqual(len(self.outline_store.list_document_outlines("s1")), 1)

    def test_empty_document_rejected(self):
        with self.assertRaises(InputValidationError):
            self.ingestor.ingest_document("s1", "notes.pdf", [])

    def test_remove_document_recomputes_session_outline(self):
        self.ingestor.ingest_document("s1", "one.pdf", _pages("a", "b", "c", "d"))
        self.ingestor.ingest_document("s1", "two.pdf", _pages("e", "f", "g", "h"))

        removed = self.ingestor.remove_document("s1", "one.pdf")

        self.assertEqual(removed, 4)
        outline = self.outline_store.get_session_outline("s1")
        self.assertEqual(outline.filenames(), {"two.pdf"})
        self.assertEqual(self.chunk_store.count_chunks("s1"), 4)

    def test_summaries_are_optional_and_tolerate_failures(self):
        self.ingestor.summarizer = FakeSummarizer()
        self.ingestor.generate_summaries = True
        self.ingestor.extractor = FakeExtractor(
            [
                RawSectionProposal(title="Working", start_index=0, end_index=0),
                RawSectionProposal(title="Broken", start_index=1, end_index=1),
                RawSectionProposal(title="Unreachable", start_index=2, end_index=2),
            ]
        )

        result = self.ingestor.ingest_document("s1", "notes.pdf", _pages("alpha", "beta", "gamma"))

        self.assertEqual([s.summary for s in result.sections], ["Working: 5 chars", None, None])


class TestBatchIngestion(IngestionTestCase):
    def test_one_bad_document_does_not_abort_siblings(self):
        results = self.ingestor.ingest_batch(
            "s1",
            [("good.pdf", _pages("a", "b", "c", "d")), ("bad.txt", _pages("x")), ("empty.pdf", [])],
        )

        self.assertIsNone(results[0].error)
        self.assertIn("only PDF files", results[1].error)
        self.assertIsNotNone(results[2].error)
        self.assertEqual(self.chunk_store.count_chunks("s1"), 4)

    def test_batch_size_limit(self):
        documents = [(f"doc{index}.pdf", _pages("a")) for index in range(6)]
        with self.assertRaises(InputValidationError):
            self.ingestor.ingest_batch("s1", documents)
        self.assertEqual(self.chunk_store.count_chunks("s1"), 0)


class TestUploadValidation(unittest.TestCase):
    def test_accepts_pdf(self):
        validate_upload("s1", "paper.PDF", content_type="application/pdf", size=1024)

    def test_rejections(self):
        cases = [
            ("", "paper.pdf", {}),
            ("s1", "", {}),
            ("s1", "paper.docx", {}),
            ("s1", "paper.pdf", {"content_type": "text/plain"}),
            ("s1", "paper.pdf", {"size": 10**10}),
        ]
        for session_id, filename, kwargs in cases:
            with self.subTest(filename=filename, kwargs=kwargs), self.assertRaises(InputValidationError):
                validate_upload(session_id, filename, **kwargs)


class TestIngestionSideEffects(IngestionTestCase):
    def test_ingest_registers_the_session(self):
        registry = SessionRegistry(Path(self.tmp.name) / "ingest.sqlite")
        ledger = QuizLedger(Path(self.tmp.name) / "ingest.sqlite")
        self.addCleanup(registry.close)
        self.addCleanup(ledger.close)
        lifecycle = SessionLifecycleManager(registry, self.chunk_store, self.outline_store, ledger, clock=lambda: 1000.0)
        self.ingestor.lifecycle = lifecycle

        self.ingestor.ingest_document("s1", "notes.pdf", _pages("a", "b", "c", "d"))

        self.assertEqual(registry.get("s1").created_at, 1000.0)
        self.assertEqual(lifecycle.status("s1"), "active")

    def test_metrics_track_success_and_failure(self):
        metrics = MetricsCollector(log_dir=Path(self.tmp.name) / "metrics")

        with metrics.track("ingest", filename="a.pdf"):
            pass
        with self.assertRaises(RuntimeError):
            with metrics.track("ingest"):
                raise RuntimeError("boom")

        summary = metrics.get_summary()["operations"]["ingest"]
        self.assertEqual(summary["count"], 2)
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(len(metrics.log_path.read_text(encoding="utf-8").splitlines()), 2)


if __name__ == "__main__":
    unittest.main()
