"""Default system prompts and fixed user-facing texts."""

from __future__ import annotations


SYSTEM_PROMPT = "You are a helpful assistant that can help generate responses."

EXTRACTED_TEXT_PROMPT = (
    "You are a helpful assistant that can help generate responses. The user may "
    "have uploaded images, and the text has been extracted from them. The "
    "extracted text is provided in a separate message. If the user asks about "
    "the text in the image, refer to the extracted text in your response."
)

EXTRACTED_TEXT_PREFIX = "Here is the text extracted from the images:\n"

ERROR_APOLOGY = (
    "\n\nI apologize, but there was an error processing your request. "
    "Please try again."
)

TOOL_APOLOGY = "\n\nI apologize, but I couldn't complete that action.\n\n"

EMPTY_REPLY = (
    "I apologize, but I couldn't process your request. "
    "Please try again with a different wording."
)


def select_system_prompt(
    has_extracted_text: bool,
    system_prompt: str = SYSTEM_PROMPT,
    extracted_text_prompt: str = EXTRACTED_TEXT_PROMPT,
) -> str:
    """Pick the system prompt for a turn."""
    return extracted_text_prompt if has_extracted_text else system_prompt
