import pytest

from flashcard_ai.llm.schema import parse_structured_content, strip_code_fences
from flashcard_ai.llm.types import ErrorKind, ServiceError


PLAIN = '{"flashcards": [{"front": "Q", "back": "A"}]}'


@pytest.mark.parametrize(
    "wrapped",
    [
        f"```json\n{PLAIN}\n```",
        f"```JSON {PLAIN}```",
        f"```\n{PLAIN}\n```",
        f"  \n```json\n{PLAIN}\n```\n  ",
    ],
)
def test_fenced_json_parses_like_plain_json(wrapped):
    assert parse_structured_content(wrapped) == parse_structured_content(PLAIN)


def test_strip_code_fences_leaves_plain_text_alone():
    assert strip_code_fences("  plain answer ") == "plain answer"


def test_unparseable_content_is_a_validation_error():
    with pytest.raises(ServiceError) as exc_info:
        parse_structured_content("```json\n{not json}\n```")
    err = exc_info.value
    assert err.kind is ErrorKind.VALIDATION_ERROR
    assert err.detail == "{not json}"
    assert err.cause is not None
