"""Prompt builders."""

from __future__ import annotations


def build_system_prompt() -> str:
    return (
        "You are a helpful assistant that turns dense study materials into concise flashcards. "
        "Each flashcard has a short question or term on the front and a precise answer on the back. "
        "Reply with JSON only."
    )


def build_flashcard_prompt(source_text: str, max_proposals: int) -> str:
    return (
        f"Create at most {max_proposals} flashcards from the study material below. "
        "Cover the most important facts, keep each front under 200 characters and each back "
        "under 500 characters, and do not invent details.\n"
        'Respond as {"flashcards": [{"front": "...", "back": "..."}]}.\n\n'
        f"Study material:\n{source_text}"
    )
