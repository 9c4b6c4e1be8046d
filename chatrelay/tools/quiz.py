"""``save_quiz``: persist a quiz the model generated during a chat turn."""

from __future__ import annotations

import logging

import aiosqlite

from chatrelay.errors import ToolExecutionError
from chatrelay.session.quizzes import QuizStore
from chatrelay.tools.base import Tool
from chatrelay.types import ToolResult

logger = logging.getLogger(__name__)


QUESTION_SCHEMA = {
    "type": "object",
    "properties": {
        "question_text": {"type": "string", "description": "The question text"},
        "options": {
            "type": "array",
            "description": "List of possible answers",
            "items": {"type": "string"},
            "minItems": 2,
        },
        "correct_answer": {
            "type": ["string", "integer"],
            "description": "The correct option, or its 0-based index",
        },
        "explanation": {
            "type": "string",
            "description": "Explanation of the correct answer",
        },
    },
    "required": ["question_text", "options", "correct_answer"],
}


class SaveQuizTool(Tool):
    def __init__(self, store: QuizStore, user_id: str | None = None) -> None:
        self.store = store
        self.user_id = user_id

    @property
    def name(self) -> str:
        return "save_quiz"

    @property
    def description(self) -> str:
        return "Save a generated quiz with its questions and answers"

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Title of the quiz"},
                "description": {"type": "string"},
                "difficulty": {"type": "string", "enum": ["easy", "medium", "hard"]},
                "questions": {
                    "type": "array",
                    "description": "List of questions for the quiz",
                    "items": QUESTION_SCHEMA,
                    "minItems": 1,
                },
            },
            "required": ["title", "questions"],
        }

    async def execute(self, arguments: dict) -> ToolResult:
        try:
            quiz_id = await self.store.create_quiz(arguments, user_id=self.user_id)
        except (aiosqlite.Error, KeyError) as e:
            raise ToolExecutionError(f"Failed to save quiz: {e}") from e

        logger.info("Saved quiz %d (%s)", quiz_id, arguments["title"])
        return ToolResult.ok(
            payload={
                "status": "success",
                "message": "Quiz saved successfully",
                "quiz": {"id": quiz_id, "title": arguments["title"]},
                "question_count": len(arguments["questions"]),
            },
            user_message="Quiz saved successfully",
        )

    def confirmation(self, arguments: dict, result: ToolResult) -> str:
        quiz = result.payload["quiz"]
        return (
            "\n\n**Quiz Created Successfully!**\n"
            f"- Title: {quiz['title']}\n"
            f"- Questions: {result.payload['question_count']}\n"
            f"- Quiz ID: {quiz['id']}\n\n"
        )
