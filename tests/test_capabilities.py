import json
import os
import unittest
from unittest.mock import patch

from langchain_core.documents import Document
from langchain_core.runnables import RunnableLambda

from sectionforge import capabilities as capabilities_module
from sectionforge.capabilities import (
    BoundaryExtractor,
    LLMAnswerExplainer,
    LLMBoundaryExtractor,
    LLMQuestionGenerator,
    LLMSectionSummarizer,
    LLMTopicQuestionGenerator,
    QuestionGenerator,
    build_llm_capabilities,
    clean_llm_text,
    extract_json_object,
    render_chunks_for_extraction,
)
from sectionforge.errors import CapabilityError
from sectionforge.models import QuizQuestion


def _canned(text):
    """A runnable standing in for a chat model that always answers ``text``."""
    return RunnableLambda(lambda _prompt: text)


def _quiz_payload(count):
    return json.dumps(
        {
            "questions": [
                {
                    "id": f"q{index}",
                    "question": f"Question {index}?",
                    "options": ["a", "b", "c", "d"],
                    "correctAnswer": index % 4,
                    "explanation": "see text",
                }
                for index in range(count)
            ]
        }
    )


class TestResponseParsing(unittest.TestCase):
    def test_reasoning_and_fences_are_stripped(self):
        raw = "<think>let me see</think>\n```json\n{\"sections\": []}\n```"
        self.assertEqual(clean_llm_text(raw), "{\"sections\": []}")

    def test_json_object_is_found_inside_prose(self):
        self.assertEqual(extract_json_object("Sure! {\"a\": 1} Hope that helps."), {"a": 1})

    def test_missing_or_broken_json_raises(self):
        for raw in ("no json here", "{not json}", "[1, 2]"):
            with self.subTest(raw=raw), self.assertRaises(CapabilityError):
                extract_json_object(raw)

    def test_chunks_are_labelled_and_capped(self):
        chunks = [Document(page_content="x" * 50, metadata={"page": 3}), Document(page_content="tail")]

        rendered = render_chunks_for_extraction(chunks, char_limit=40)

        self.assertTrue(rendered.startswith("[chunk 0, page 3]\n"))
        self.assertNotIn("[chunk 1]", rendered)
        self.assertIn("[chunk 1]", render_chunks_for_extraction(chunks))


class TestLLMCapabilities(unittest.TestCase):
    def test_boundary_extractor_validates_proposals(self):
        payload = {"sections": [{"id": "s1", "title": "Intro", "startIndex": 0, "endIndex": 3, "pageNumber": 1}]}
        extractor = LLMBoundaryExtractor(_canned(json.dumps(payload)))

        proposals = extractor.extract("[chunk 0]\ntext", 4)

        self.assertEqual(len(proposals), 1)
        self.assertEqual((proposals[0].start_index, proposals[0].end_index), (0, 3))
        self.assertIsInstance(extractor, BoundaryExtractor)

    def test_boundary_extractor_rejects_wrong_shape(self):
        extractor = LLMBoundaryExtractor(_canned("{\"sections\": [{\"startIndex\": \"soon\"}]}"))
        with self.assertRaises(CapabilityError):
            extractor.extract("text", 2)

    def test_question_generator_caps_and_marks_origin(self):
        generator = LLMQuestionGenerator(_canned(_quiz_payload(5)))

        questions = generator.generate("some content", 3, "easy")

        self.assertEqual(len(questions), 3)
        self.assertTrue(all(q.origin == "document" for q in questions))
        self.assertEqual(questions[1].correct_answer, 1)
        self.assertIsInstance(generator, QuestionGenerator)

    def test_question_generator_skips_model_for_nothing_to_do(self):
        generator = LLMQuestionGenerator(None)
        self.assertEqual(generator.generate("", 3, "easy"), [])
        self.assertEqual(generator.generate("content", 0, "easy"), [])

    def test_topic_generator_rejects_bad_options(self):
        payload = json.dumps({"questions": [{"question": "Q?", "options": ["only", "two"], "correctAnswer": 0}]})
        with self.assertRaises(CapabilityError):
            LLMTopicQuestionGenerator(_canned(payload)).generate("history", 1, "hard")

    def test_topic_generator_marks_external(self):
        questions = LLMTopicQuestionGenerator(_canned(_quiz_payload(2))).generate("history", 2, "hard")
        self.assertEqual([q.origin for q in questions], ["external", "external"])

    def test_summarizer_and_explainer(self):
        self.assertEqual(LLMSectionSummarizer(_canned("  A short summary. ")).summarize("T", "body"), "A short summary.")
        with self.assertRaises(CapabilityError):
            LLMSectionSummarizer(_canned("<think>hmm</think>")).summarize("T", "body")

        question = QuizQuestion(question="Q?", options=["a", "b", "c", "d"], correct_answer=2)
        self.assertEqual(LLMAnswerExplainer(_canned("Because c.")).explain(question, 0), "Because c.")

    def test_model_errors_become_capability_errors(self):
        def explode(_prompt):
            raise ConnectionError("ollama is not running")

        with self.assertRaises(CapabilityError):
            LLMTopicQuestionGenerator(RunnableLambda(explode)).generate("history", 1, "easy")

    def test_missing_model_raises_capability_error(self):
        with self.assertRaises(CapabilityError):
            LLMBoundaryExtractor(None).extract("text", 1)
        with self.assertRaises(CapabilityError):
            LLMTopicQuestionGenerator(None).generate("history", 1, "easy")

    def test_api_model_without_key_disables_llm(self):
        with patch.object(capabilities_module, "USE_API_LLM", True), patch.dict(os.environ, {"GROQ_API_KEY": ""}):
            self.assertIsNone(capabilities_module.initialize_llm())

    def test_build_with_explicit_model(self):
        capabilities = build_llm_capabilities(_canned(_quiz_payload(1)))
        self.assertEqual(len(capabilities.topic_generator.generate("x", 1, "easy")), 1)


if __name__ == "__main__":
    unittest.main()
