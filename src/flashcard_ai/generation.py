"""Flashcard generation service: source text -> AI proposals -> persisted metadata."""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Dict, List

from .llm.client import ChatCompletionClient
from .llm.types import ChatResult, ErrorKind, ServiceError
from .models import (
    create_flashcards,
    create_generation,
    get_generation,
    log_generation_error,
    log_llm_usage,
    update_generation_acceptance,
)
from .prompts import build_flashcard_prompt, build_system_prompt
from .utils import hash_source_text
from .validators import (
    SOURCE_TEXT_MAX_LENGTH,
    SOURCE_TEXT_MIN_LENGTH,
    RequestValidationError,
    validate_flashcards_request,
    validate_source_text,
)

FLASHCARD_PROPOSALS_SCHEMA: Dict[str, Any] = {
    "title": "flashcard_proposals",
    "type": "object",
    "required": ["flashcards"],
    "additionalProperties": False,
    "properties": {
        "flashcards": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["front", "back"],
                "additionalProperties": False,
                "properties": {
                    "front": {"type": "string", "minLength": 1, "maxLength": 200},
                    "back": {"type": "string", "minLength": 1, "maxLength": 500},
                },
            },
        }
    },
}

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.CONFIGURATION_ERROR: 400,
    ErrorKind.NETWORK_ERROR: 503,
    ErrorKind.API_ERROR: 502,
}


class GenerationServiceError(RuntimeError):
    """Generation failed; ``code`` is AI_FAILURE or DB_FAILURE."""

    def __init__(self, message: str, code: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause


def http_status_for(error: BaseException) -> int:
    """Maps a failure to the HTTP status the surrounding application should answer with."""
    if isinstance(error, RequestValidationError):
        return 400
    if isinstance(error, GenerationServiceError):
        if isinstance(error.__cause__, ServiceError):
            return _STATUS_BY_KIND[error.__cause__.kind]
        return 500
    if isinstance(error, ServiceError):
        return _STATUS_BY_KIND[error.kind]
    return 500


class GenerationService:
    def __init__(
        self,
        conn: sqlite3.Connection,
        client: ChatCompletionClient,
        config: Dict[str, Any] | None = None,
    ) -> None:
        self.conn = conn
        self.client = client
        gen_cfg = (config or {}).get("generation", {})
        self.max_proposals = int(gen_cfg.get("max_proposals", 10))
        self.min_length = int(gen_cfg.get("source_text_min_length", SOURCE_TEXT_MIN_LENGTH))
        self.max_length = int(gen_cfg.get("source_text_max_length", SOURCE_TEXT_MAX_LENGTH))
        self.logger = logging.getLogger(__name__)

    def create_generation(self, source_text: str, user_id: str) -> Dict[str, Any]:
        cleaned = validate_source_text(source_text, self.min_length, self.max_length)
        source_hash = hash_source_text(cleaned)

        started = time.perf_counter()
        result = self._request_proposals(cleaned, user_id, source_hash)
        duration_ms = int((time.perf_counter() - started) * 1000)
        proposals = self._to_proposals(result)

        try:
            with self.conn:
                generation = create_generation(
                    self.conn,
                    user_id=user_id,
                    model=result.model,
                    generated_count=len(proposals),
                    source_text_hash=source_hash,
                    source_text_length=len(cleaned),
                    generation_duration=duration_ms,
                )
                log_llm_usage(
                    self.conn,
                    user_id=user_id,
                    generation_id=generation["id"],
                    model=result.model,
                    prompt_tokens=result.usage.prompt_tokens,
                    completion_tokens=result.usage.completion_tokens,
                    total_tokens=result.usage.total_tokens,
                    latency_ms=duration_ms,
                    meta={"response_id": result.id, "finish_reason": result.finish_reason},
                )
        except sqlite3.Error as exc:
            self.logger.error("Database error while persisting generation for user %s: %s", user_id, exc)
            raise GenerationServiceError("Unable to persist generation metadata.", "DB_FAILURE", exc) from exc

        self.logger.info(
            "Generation %s stored: %d proposal(s) in %dms (model=%s).",
            generation["id"],
            len(proposals),
            duration_ms,
            result.model,
        )
        return {
            "generation_id": generation["id"],
            "flashcards_proposals": proposals,
            "generated_count": generation["generated_count"],
        }

    def _request_proposals(self, source_text: str, user_id: str, source_hash: str) -> ChatResult:
        self.client.set_system_message(build_system_prompt())
        self.client.set_response_format(FLASHCARD_PROPOSALS_SCHEMA)
        try:
            return self.client.send_chat_message(build_flashcard_prompt(source_text, self.max_proposals))
        except ServiceError as exc:
            self._log_error(user_id, source_text, source_hash, exc)
            raise GenerationServiceError("Unable to generate flashcard proposals.", "AI_FAILURE", exc) from exc

    def _log_error(self, user_id: str, source_text: str, source_hash: str, exc: ServiceError) -> None:
        self.logger.error("AI generation failed for user %s (%s): %s", user_id, exc.kind.value, exc)
        try:
            log_generation_error(
                self.conn,
                user_id=user_id,
                model=self.client.model_name,
                source_text_hash=source_hash,
                source_text_length=len(source_text),
                error_code=exc.kind.value,
                error_message=str(exc),
            )
        except sqlite3.Error as db_exc:
            self.logger.error("Failed to log generation error: %s", db_exc)

    def _to_proposals(self, result: ChatResult) -> List[Dict[str, str]]:
        cards = result.parsed["flashcards"]
        return [
            {"front": card["front"].strip(), "back": card["back"].strip(), "source": "ai-full"}
            for card in cards[: self.max_proposals]
        ]

    def save_flashcards(self, user_id: str, payload: Any) -> Dict[str, Any]:
        """Validates and stores accepted proposals or manual flashcards."""
        cards = validate_flashcards_request(payload)

        acceptance: Dict[int, List[int]] = {}
        for card in cards:
            generation_id = card["generation_id"]
            if generation_id is None:
                continue
            if generation_id not in acceptance:
                if get_generation(self.conn, user_id, generation_id) is None:
                    raise RequestValidationError(f"Generation {generation_id} not found.")
                acceptance[generation_id] = [0, 0]
            acceptance[generation_id][0 if card["source"] == "ai-full" else 1] += 1

        try:
            with self.conn:
                created = create_flashcards(self.conn, user_id, cards)
                for generation_id, (unedited, edited) in acceptance.items():
                    update_generation_acceptance(self.conn, generation_id, unedited, edited)
        except sqlite3.Error as exc:
            self.logger.error("Database error while saving flashcards for user %s: %s", user_id, exc)
            raise GenerationServiceError("Unable to save flashcards.", "DB_FAILURE", exc) from exc
        return {"flashcards": created}
