"""
Quiz store used by the ``save_quiz`` tool.

A quiz and its questions are written in a single transaction so a failed
insert never leaves a quiz without questions.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS quizzes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        difficulty TEXT NOT NULL DEFAULT 'medium',
        settings TEXT NOT NULL DEFAULT '{}',
        is_published INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS questions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        quiz_id INTEGER NOT NULL,
        question_text TEXT NOT NULL,
        question_type TEXT NOT NULL DEFAULT 'multiple_choice',
        options TEXT NOT NULL,
        correct_answer TEXT NOT NULL,
        explanation TEXT NOT NULL DEFAULT '',
        position INTEGER NOT NULL,
        FOREIGN KEY (quiz_id) REFERENCES quizzes(id) ON DELETE CASCADE
    )""",
]

DEFAULT_SETTINGS = {
    "time_limit": None,
    "shuffle_questions": False,
    "show_correct_answers": True,
    "allow_retake": True,
}


class QuizStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        for stmt in _SCHEMA:
            await self._db.execute(stmt)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def create_quiz(self, quiz: dict, user_id: str | None = None) -> int:
        """
        Insert *quiz* (``title``, ``description``, ``difficulty``,
        ``questions``) and return the new quiz id.
        """
        assert self._db is not None
        now = datetime.now(timezone.utc).isoformat()
        settings = dict(DEFAULT_SETTINGS)
        settings["question_count"] = len(quiz["questions"])

        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    """INSERT INTO quizzes
                       (user_id, title, description, difficulty, settings, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        user_id,
                        quiz["title"],
                        quiz.get("description", ""),
                        quiz.get("difficulty", "medium"),
                        json.dumps(settings),
                        now,
                    ),
                )
                quiz_id = cursor.lastrowid
                for position, question in enumerate(quiz["questions"], start=1):
                    await self._db.execute(
                        """INSERT INTO questions
                           (quiz_id, question_text, options, correct_answer, explanation, position)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (
                            quiz_id,
                            question["question_text"],
                            json.dumps(question["options"]),
                            str(question["correct_answer"]),
                            question.get("explanation", ""),
                            position,
                        ),
                    )
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise
        return int(quiz_id)

    async def get_quiz(self, quiz_id: int) -> dict | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, title, description, difficulty, settings FROM quizzes WHERE id = ?",
            (quiz_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        cursor = await self._db.execute(
            """SELECT question_text, options, correct_answer, explanation
               FROM questions WHERE quiz_id = ? ORDER BY position ASC""",
            (quiz_id,),
        )
        questions = [
            {
                "question_text": q[0],
                "options": json.loads(q[1]),
                "correct_answer": q[2],
                "explanation": q[3],
            }
            for q in await cursor.fetchall()
        ]
        return {
            "id": row[0],
            "title": row[1],
            "description": row[2],
            "difficulty": row[3],
            "settings": json.loads(row[4]),
            "questions": questions,
        }

    async def count_quizzes(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute("SELECT COUNT(*) FROM quizzes")
        row = await cursor.fetchone()
        return int(row[0])
