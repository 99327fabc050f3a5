"""Encode/decode of the quiz question set and answer map.

Both backends store ``quiz_data`` and ``user_answers`` as JSON text and go
through these helpers, so the column format can change in one place.

A question set is a list of JSON objects. An answer map goes from question
index to the answer string; anything else is refused on write and reported
as a :class:`SerializationError` on read.
"""

import json
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from .errors import SerializationError


def _restore_key(key: str) -> Any:
    # JSON object keys are always strings; question indexes come back as ints
    try:
        index = int(key)
    except ValueError:
        return key
    return index if str(index) == key else key


def _answer_index(key: Any) -> int:
    if isinstance(key, bool):
        raise SerializationError(f"user_answers keys must be question indexes, got {key!r}")
    if isinstance(key, int):
        return key
    if isinstance(key, str):
        restored = _restore_key(key)
        if isinstance(restored, int):
            return restored
    raise SerializationError(f"user_answers keys must be question indexes, got {key!r}")


def _check_questions(questions: Sequence[Any]) -> None:
    for position, question in enumerate(questions):
        if not isinstance(question, Mapping):
            raise SerializationError(
                f"quiz_data[{position}] must be a question object, got {type(question).__name__}"
            )


def _check_answer_values(answers: Mapping[Any, Any]) -> None:
    for key, value in answers.items():
        if not isinstance(value, str):
            raise SerializationError(f"user_answers[{key!r}] must be a string, got {type(value).__name__}")


def encode_questions(questions: Sequence[Mapping[str, Any]]) -> str:
    if isinstance(questions, (str, bytes)) or not isinstance(questions, Sequence):
        raise SerializationError(f"quiz_data must be a list of questions, got {type(questions).__name__}")
    _check_questions(questions)
    try:
        return json.dumps([dict(question) for question in questions], ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to encode quiz_data: {e}") from e


def encode_answers(answers: Mapping[Any, Any]) -> str:
    if not isinstance(answers, Mapping):
        raise SerializationError(f"user_answers must be a mapping, got {type(answers).__name__}")
    _check_answer_values(answers)
    encoded = {}
    for key, value in answers.items():
        index = str(_answer_index(key))
        if index in encoded:
            raise SerializationError(f"user_answers has more than one answer for question {index}")
        encoded[index] = value
    return json.dumps(encoded, ensure_ascii=False)


def decode_questions(text: str) -> List[Dict[str, Any]]:
    try:
        questions = json.loads(text)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Malformed quiz_data: {e}") from e
    if not isinstance(questions, list):
        raise SerializationError(f"quiz_data must decode to a list, got {type(questions).__name__}")
    _check_questions(questions)
    return questions


def decode_answers(text: str) -> Dict[Any, Any]:
    try:
        answers = json.loads(text)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Malformed user_answers: {e}") from e
    if not isinstance(answers, dict):
        raise SerializationError(f"user_answers must decode to an object, got {type(answers).__name__}")
    _check_answer_values(answers)
    return {_restore_key(key): value for key, value in answers.items()}


def encode_quiz_payload(
    questions: Sequence[Mapping[str, Any]], answers: Mapping[Any, Any]
) -> Tuple[str, str]:
    return encode_questions(questions), encode_answers(answers)


def decode_quiz_payload(quiz_data: str, user_answers: str) -> Tuple[List[Dict[str, Any]], Dict[Any, Any]]:
    return decode_questions(quiz_data), decode_answers(user_answers)
