# /sectionforge/prompts.py
"""
Prompt templates for the LLM-backed capabilities.
Every structured prompt asks for a single JSON object; literal braces are doubled.
"""
from langchain_core.prompts import ChatPromptTemplate

BOUNDARY_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            """You analyze documents and propose a high-level table of contents.
The document has been split into numbered chunks. Propose sections as ranges of chunk indices.
Keep the outline readable: chapters and major sections, optional subsections, no formatting headers.

Return ONLY a JSON object of this shape:
{{
  "sections": [
    {{"id": "section_1", "title": "Introduction", "level": 1, "pageNumber": 1, "startIndex": 0, "endIndex": 2, "parentId": null}},
    {{"id": "section_1_1", "title": "Scope", "level": 2, "pageNumber": 2, "startIndex": 1, "endIndex": 2, "parentId": "section_1"}}
  ]
}}

Rules:
- startIndex and endIndex are 0-based chunk indices between 0 and {max_index}.
- Sections may have uneven lengths.
- Use at most {max_sections} sections and at most {max_depth} levels.""",
        ),
        (
            "human",
            "This document has {chunk_count} chunks (indices 0 to {max_index}).\n\nDocument content:\n{document_content}",
        ),
    ]
)

SECTION_QUIZ_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            """You write multiple-choice quiz questions grounded strictly in the provided content.
Generate exactly {num_questions} {difficulty} questions.
Each question has exactly 4 options and exactly one correct option (0-based index in "correctAnswer").
Prefer specific facts, processes, definitions and examples over broad "main topic" questions.

Return ONLY a JSON object of this shape:
{{
  "questions": [
    {{"id": "q1", "question": "...", "options": ["...", "...", "...", "..."], "correctAnswer": 0, "explanation": "...", "source": "..."}}
  ]
}}""",
        ),
        (
            "human",
            "Content:\n{content}\n\nGenerate {num_questions} {difficulty} questions.",
        ),
    ]
)

EXTERNAL_QUIZ_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            """You write multiple-choice quiz questions about a topic from general knowledge.
Generate exactly {num_questions} {difficulty} questions about: {topic}.
Each question has exactly 4 options and exactly one correct option (0-based index in "correctAnswer").
Favour practical, real-world scenarios that stay specific to the topic.

Return ONLY a JSON object of this shape:
{{
  "questions": [
    {{"id": "ext_q1", "question": "...", "options": ["...", "...", "...", "..."], "correctAnswer": 0, "explanation": "...", "source": "General knowledge"}}
  ]
}}""",
        ),
        ("human", "Generate {num_questions} {difficulty} questions about {topic}."),
    ]
)

SECTION_SUMMARY_PROMPT = ChatPromptTemplate.from_template(
    """Summarize one section of a document in 3 to 6 sentences.
Cover its key themes and takeaways in plain language. Do not repeat yourself.
Return only the summary text.

SECTION TITLE: {section_title}

SECTION CONTENT:
{section_content}
"""
)

ANSWER_EXPLANATION_PROMPT = ChatPromptTemplate.from_template(
    """You are a patient tutor reviewing a quiz answer.
Explain why the selected answer is right or wrong, why the correct answer is correct,
and add a short piece of context that helps the learner remember it.

QUESTION: {question}
OPTIONS:
{options}
LEARNER SELECTED: {user_answer}
CORRECT ANSWER: {correct_answer}
REFERENCE EXPLANATION: {reference_explanation}
"""
)
