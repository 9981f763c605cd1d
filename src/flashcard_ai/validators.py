"""Request payload validation for generations and flashcards."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, model_validator

SOURCE_TEXT_MIN_LENGTH = 1000
SOURCE_TEXT_MAX_LENGTH = 10000
FLASHCARD_FRONT_MAX_LENGTH = 200
FLASHCARD_BACK_MAX_LENGTH = 500
MAX_FLASHCARDS_PER_REQUEST = 50

FlashcardSource = Literal["ai-full", "ai-edited", "manual"]


class RequestValidationError(ValueError):
    """Caller payload failed validation; ``issues`` lists every problem found."""

    def __init__(self, message: str, issues: List[str] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or [message]


class FlashcardPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    front: str = Field(min_length=1, max_length=FLASHCARD_FRONT_MAX_LENGTH)
    back: str = Field(min_length=1, max_length=FLASHCARD_BACK_MAX_LENGTH)
    source: FlashcardSource
    generation_id: Optional[Annotated[StrictInt, Field(gt=0)]] = None

    @model_validator(mode="after")
    def _check_generation_link(self) -> "FlashcardPayload":
        if self.source == "manual" and self.generation_id is not None:
            raise ValueError("generation_id must be null for manual flashcards")
        if self.source != "manual" and self.generation_id is None:
            raise ValueError("generation_id is required for ai-full and ai-edited flashcards")
        return self


class FlashcardsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    flashcards: List[FlashcardPayload] = Field(min_length=1, max_length=MAX_FLASHCARDS_PER_REQUEST)


def _issues(exc: ValidationError, prefix: str = "") -> List[str]:
    issues = []
    for err in exc.errors():
        path = prefix
        for part in err["loc"]:
            if isinstance(part, int):
                path += f"[{part}]"
            else:
                path = f"{path}.{part}" if path else str(part)
        issues.append(f"{path or 'body'}: {err['msg']}")
    return issues


def validate_source_text(
    text: Any,
    min_length: int = SOURCE_TEXT_MIN_LENGTH,
    max_length: int = SOURCE_TEXT_MAX_LENGTH,
) -> str:
    if not isinstance(text, str):
        raise RequestValidationError("`source_text` must be a string.")
    cleaned = text.strip()
    if len(cleaned) < min_length:
        raise RequestValidationError(f"source_text must be at least {min_length} characters.")
    if len(cleaned) > max_length:
        raise RequestValidationError(f"source_text must be at most {max_length} characters.")
    return cleaned


def validate_flashcard_payload(item: Any) -> Dict[str, Any]:
    try:
        card = FlashcardPayload.model_validate(item)
    except ValidationError as exc:
        raise RequestValidationError("Invalid flashcard payload.", _issues(exc, "flashcard")) from exc
    return card.model_dump()


def validate_flashcards_request(payload: Any) -> List[Dict[str, Any]]:
    try:
        request = FlashcardsRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError("Invalid request payload.", _issues(exc)) from exc
    return [card.model_dump() for card in request.flashcards]
