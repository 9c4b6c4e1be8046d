"""Persistence: conversation history and quizzes."""

from chatrelay.session.quizzes import QuizStore
from chatrelay.session.store import ConversationStore, make_title

__all__ = [
    "ConversationStore",
    "QuizStore",
    "make_title",
]
