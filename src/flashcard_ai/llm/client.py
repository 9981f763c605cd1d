"""OpenRouter chat-completions client with retries and structured output."""

from __future__ import annotations

import copy
import json
import logging
import math
import os
import time
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping

import requests
from dotenv import dotenv_values

from .schema import parse_schema, parse_structured_content, validate
from .types import (
    ChatResult,
    ChatUsage,
    ErrorKind,
    ModelParameters,
    ResponseFormatConfig,
    ServiceError,
)

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL_NAME = "mistralai/mistral-7b-instruct:free"
DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_MS = 1_000
DEFAULT_BACKOFF_MULTIPLIER = 2
DEFAULT_SYSTEM_MESSAGE = (
    "You are a helpful assistant that turns dense study materials into concise flashcards."
)
API_KEY_ENV = "OPENROUTER_API_KEY"

RETRIABLE_STATUS_CODES = frozenset({0, 408, 409, 425, 429, 500, 502, 503, 504, 524})


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def resolve_api_key(explicit: str | None = None, env_file: str | Path | None = None) -> str | None:
    """Explicit key, then the process environment, then the project .env file."""
    if explicit:
        return explicit
    from_env = os.getenv(API_KEY_ENV)
    if from_env:
        return from_env
    path = Path(env_file) if env_file else Path.cwd() / ".env"
    if path.exists():
        return dotenv_values(path).get(API_KEY_ENV) or None
    return None


def should_retry(status: int) -> bool:
    return status in RETRIABLE_STATUS_CODES or status >= 500


def extract_error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    if isinstance(body.get("message"), str):
        return body["message"]
    error = body.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def _parse_usage(raw: Any) -> ChatUsage:
    if not isinstance(raw, dict):
        return ChatUsage()

    def count(key: str) -> int | None:
        value = raw.get(key)
        return int(value) if _is_finite_number(value) else None

    return ChatUsage(
        prompt_tokens=count("prompt_tokens"),
        completion_tokens=count("completion_tokens"),
        total_tokens=count("total_tokens"),
    )


class ChatCompletionClient:
    """Sends one user message per call to an OpenRouter-compatible endpoint.

    System message, default user message, response format and model settings
    are held on the instance and read when ``send_chat_message`` runs, so one
    instance should serve one conversation flow at a time.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        model: str | None = None,
        model_parameters: Mapping[str, Any] | None = None,
        timeout_ms: float | None = None,
        max_retries: int | None = None,
        retry_delay_ms: float | None = None,
        backoff_multiplier: float | None = None,
        referer: str | None = None,
        app_title: str | None = None,
        logger: Any = None,
        system_message: str | None = DEFAULT_SYSTEM_MESSAGE,
        env_file: str | Path | None = None,
    ) -> None:
        self.api_url = api_url or DEFAULT_API_URL
        self.timeout_ms = timeout_ms if _is_finite_number(timeout_ms) and timeout_ms > 0 else DEFAULT_TIMEOUT_MS
        self.max_retries = max(0, int(max_retries)) if _is_finite_number(max_retries) else DEFAULT_MAX_RETRIES
        self.retry_delay_ms = (
            retry_delay_ms if _is_finite_number(retry_delay_ms) and retry_delay_ms >= 0 else DEFAULT_RETRY_DELAY_MS
        )
        self.backoff_multiplier = (
            backoff_multiplier
            if _is_finite_number(backoff_multiplier) and backoff_multiplier > 0
            else DEFAULT_BACKOFF_MULTIPLIER
        )
        self.referer = referer
        self.app_title = app_title
        self.logger = logger or logging.getLogger(__name__)
        self._warn = getattr(self.logger, "warning", None) or self.logger.warn

        self._api_key = resolve_api_key(api_key, env_file)
        self._model_name = (model or "").strip() or DEFAULT_MODEL_NAME
        self._model_parameters = self._merge_parameters(ModelParameters(), model_parameters)
        self._system_message = (system_message or "").strip()
        self._user_message = ""
        self._response_format: ResponseFormatConfig | None = None
        self._schema_counter = 0

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **overrides: Any) -> "ChatCompletionClient":
        cfg = settings.get("openrouter", {})
        options: Dict[str, Any] = {
            "api_url": cfg.get("api_url"),
            "model": cfg.get("model"),
            "model_parameters": cfg.get("parameters"),
            "timeout_ms": cfg.get("timeout_ms"),
            "max_retries": cfg.get("max_retries"),
            "retry_delay_ms": cfg.get("retry_delay_ms"),
            "backoff_multiplier": cfg.get("backoff_multiplier"),
            "referer": cfg.get("referer"),
            "app_title": cfg.get("app_title"),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def model_parameters(self) -> ModelParameters:
        return replace(self._model_parameters)

    @property
    def system_message(self) -> str:
        return self._system_message

    @property
    def user_message(self) -> str:
        return self._user_message

    @property
    def response_format(self) -> ResponseFormatConfig | None:
        return self._response_format

    # -- configuration setters -------------------------------------------

    def set_system_message(self, message: str) -> None:
        self._system_message = self._ensure_non_empty(message, "System message")

    def clear_system_message(self) -> None:
        self._system_message = ""

    def set_user_message(self, message: str) -> None:
        self._user_message = self._ensure_non_empty(message, "User message")

    def clear_user_message(self) -> None:
        self._user_message = ""

    def set_response_format(
        self,
        schema: Mapping[str, Any],
        name: str | None = None,
        strict: bool = True,
    ) -> None:
        if not isinstance(schema, Mapping):
            raise ServiceError("Response schema must be a JSON object.", ErrorKind.VALIDATION_ERROR, detail=schema)
        if name is not None and not isinstance(name, str):
            raise ServiceError("Response schema name must be a string.", ErrorKind.VALIDATION_ERROR, detail=name)

        schema = copy.deepcopy(dict(schema))
        parsed = parse_schema(schema)
        title = schema.get("title")
        schema_name = (
            (name or "").strip()
            or (title.strip() if isinstance(title, str) else "")
            or self._generate_schema_name()
        )
        if not schema_name:
            raise ServiceError("Response schema name could not be determined.", ErrorKind.VALIDATION_ERROR)

        self._response_format = ResponseFormatConfig(
            schema=schema,
            parsed_schema=parsed,
            name=schema_name,
            strict=bool(strict),
        )

    def clear_response_format(self) -> None:
        self._response_format = None

    def set_model(self, name: str, parameters: Mapping[str, Any] | None = None) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ServiceError("Model name must be a non-empty string.", ErrorKind.VALIDATION_ERROR, detail=name)
        merged = self._merge_parameters(self._model_parameters, parameters)
        self._model_name = name.strip()
        self._model_parameters = merged

    # -- sending -----------------------------------------------------------

    def send_chat_message(self, user_message: str | None = None) -> ChatResult:
        """Sends one chat completion and returns the normalized result.

        Raises ServiceError for every failure; the ``kind`` tells callers
        whether the problem was setup, input/schema, transport or the API.
        """
        try:
            return self._send(user_message)
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error("Unexpected failure while processing OpenRouter response: %s", exc)
            raise ServiceError(
                "Unexpected error while processing the chat completion.",
                ErrorKind.API_ERROR,
                cause=exc,
            ) from exc

    def _send(self, user_message: str | None) -> ChatResult:
        if isinstance(user_message, str) and user_message.strip():
            resolved = user_message.strip()
        else:
            resolved = self._user_message
        if not resolved:
            raise ServiceError(
                "User message is required before sending a chat request.",
                ErrorKind.VALIDATION_ERROR,
            )
        self._user_message = resolved

        response_format = self._response_format
        payload = self.build_payload(resolved)
        body = self._execute_request(payload)

        choices = body.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            raise ServiceError(
                "The OpenRouter response did not include any choices.",
                ErrorKind.API_ERROR,
                detail=body,
            )

        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        content = self._extract_assistant_content(message)

        parsed = None
        if response_format is not None:
            parsed = message.get("parsed")
            if not isinstance(parsed, (dict, list)):
                parsed = parse_structured_content(content)
            validate(response_format.parsed_schema, parsed)

        finish_reason = choice.get("finish_reason")
        return ChatResult(
            id=str(body.get("id")),
            model=str(body.get("model") or payload["model"]),
            content=content,
            parsed=parsed,
            usage=_parse_usage(body.get("usage")),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
            raw=body,
        )

    def build_payload(self, user_message: str) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if self._system_message:
            messages.append({"role": "system", "content": self._system_message})
        messages.append({"role": "user", "content": user_message})

        payload: Dict[str, Any] = {"model": self._model_name, "messages": messages}
        for key, value in asdict(self._model_parameters).items():
            if _is_finite_number(value):
                payload[key] = value

        if self._response_format is not None:
            payload["response_format"] = self._response_format.to_payload()
        return payload

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.app_title:
            headers["X-Title"] = self.app_title
        return headers

    def _execute_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._api_key:
            raise ServiceError(
                f"OpenRouter API key is missing. Provide it via the constructor or {API_KEY_ENV}.",
                ErrorKind.CONFIGURATION_ERROR,
            )

        attempts = self.max_retries + 1
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            self.logger.info(
                "Dispatching OpenRouter request (attempt %d/%d, model=%s).",
                attempt,
                attempts,
                payload["model"],
            )
            try:
                response = requests.post(
                    self.api_url,
                    headers=self._headers(),
                    json=payload,
                    timeout=self.timeout_ms / 1000.0,
                )
            except requests.Timeout as exc:
                last_error = exc
                self._warn(
                    "OpenRouter request attempt %d timed out after %sms.", attempt, self.timeout_ms
                )
                if attempt < attempts:
                    self._delay_for_attempt(attempt)
                continue
            except requests.ConnectionError as exc:
                last_error = exc
                if attempt >= attempts:
                    break
                self._warn(
                    "OpenRouter request attempt %d failed due to network error: %s. Retrying...", attempt, exc
                )
                self._delay_for_attempt(attempt)
                continue
            except requests.RequestException as exc:
                self.logger.error("OpenRouter request attempt %d failed: %s", attempt, exc)
                raise ServiceError(
                    "Unexpected error while communicating with OpenRouter.",
                    ErrorKind.NETWORK_ERROR,
                    cause=exc,
                ) from exc

            status = response.status_code
            body = self._parse_body(response)
            if 200 <= status < 300:
                return self._normalize_response(body)

            if should_retry(status) and attempt < attempts:
                self._warn(
                    "OpenRouter request attempt %d failed with status %d. Retrying...", attempt, status
                )
                self._delay_for_attempt(attempt)
                continue

            self.logger.error(
                "OpenRouter request returned error status %d after %d attempt(s).", status, attempt
            )
            raise ServiceError(
                extract_error_message(body) or f"OpenRouter request failed with status {status}.",
                ErrorKind.CONFIGURATION_ERROR if status == 401 else ErrorKind.API_ERROR,
                status=status,
                detail=body,
            )

        self.logger.error("OpenRouter request exhausted all %d attempt(s): %s", attempts, last_error)
        raise ServiceError(
            "OpenRouter request failed after all retry attempts.",
            ErrorKind.NETWORK_ERROR,
            cause=last_error,
        )

    def _parse_body(self, response: requests.Response) -> Any:
        text = response.text or ""
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError as exc:
            if 200 <= response.status_code < 300:
                raise ServiceError(
                    "Unable to parse OpenRouter JSON response.",
                    ErrorKind.API_ERROR,
                    status=response.status_code,
                    detail=text,
                ) from exc
            return {"message": text}

    @staticmethod
    def _normalize_response(body: Any) -> Dict[str, Any]:
        if not isinstance(body, dict) or body.get("id") is None or "choices" not in body:
            raise ServiceError("Unexpected OpenRouter response shape.", ErrorKind.API_ERROR, detail=body)
        return body

    @staticmethod
    def _extract_assistant_content(message: Dict[str, Any]) -> str:
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()

        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, dict) and isinstance(part.get("text"), str):
                    parts.append(part["text"])
            text = "\n".join(p for p in parts if p).strip()
            if text:
                return text

        raise ServiceError(
            "Assistant response did not include textual content.",
            ErrorKind.API_ERROR,
            detail=message,
        )

    def _delay_for_attempt(self, attempt: int) -> None:
        delay_ms = self.retry_delay_ms * self.backoff_multiplier ** (attempt - 1)
        time.sleep(delay_ms / 1000.0)

    @staticmethod
    def _merge_parameters(base: ModelParameters, overrides: Mapping[str, Any] | None) -> ModelParameters:
        if not overrides:
            return base
        known = {f.name for f in fields(ModelParameters)}
        unknown = sorted(str(key) for key in overrides if key not in known)
        if unknown:
            raise ServiceError(
                f"Unsupported model parameters: {', '.join(unknown)}.",
                ErrorKind.VALIDATION_ERROR,
                detail=unknown,
            )
        return replace(base, **dict(overrides))

    @staticmethod
    def _ensure_non_empty(value: Any, label: str) -> str:
        if not isinstance(value, str):
            raise ServiceError(f"{label} must be a string.", ErrorKind.VALIDATION_ERROR, detail=value)
        trimmed = value.strip()
        if not trimmed:
            raise ServiceError(f"{label} cannot be empty.", ErrorKind.VALIDATION_ERROR)
        return trimmed

    def _generate_schema_name(self) -> str:
        self._schema_counter += 1
        return f"structured_output_{self._schema_counter}"
