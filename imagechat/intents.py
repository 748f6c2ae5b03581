"""Concurrent intent classification and queries over the merged results."""

import asyncio
import logging
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Sequence, Union

from pydantic import ValidationError

import config

from .errors import InputValidationError, IntentTypeError, ResponseParseError, UpstreamServiceError
from .llm import CompletionService, ensure_success
from .prompts import PromptLibrary
from .schemas import CompletionParams, CompletionResult, IntentResult

LOGGER = logging.getLogger(__name__)


class ImageIntentId(str, Enum):
    """Intents classified on every image assistant turn."""

    IS_TEXT_WANTED_ON_IMAGE = "is_text_wanted_on_image"
    START_NEW_IMAGE = "start_new_image"
    NATURE_OF_USER_REQUEST = "nature_of_user_request"
    USER_COMPLAINT_IMAGE_QUALITY_OR_WRONG_CONTENT = "user_complaint_image_quality_or_wrong_content"
    USER_COMPLAINT_IMAGE_GENERATION_SPEED = "user_complaint_image_generation_speed"


EXTENDED_WRONG_CONTENT_ID = "extended_wrong_content"

# Property names and values emitted by the image intents
PROP_IS_TEXT_WANTED_ON_IMAGE = "is_text_wanted_on_image"
PROP_START_NEW_IMAGE = "start_new_image"
PROP_NATURE_OF_USER_REQUEST = "nature_of_user_request"
PROP_COMPLAINT_TYPE = "complaint_type"
PROP_COMPLAINT_TEXT = "complaint_text"

CREATE_NEW_IMAGE_REQUEST = "create_new_image_request"
COMPLAINT_BLURRY = "blurry"
COMPLAINT_WRONG_CONTENT = "wrong_content"
COMPLAINT_PROBLEMS_WITH_TEXT = "problems_with_text"
COMPLAINT_BORING = "boring"
COMPLAINT_TOO_SLOW = "generate_image_too_slow"

IntentKey = Union[str, Enum]


def _key(intent_id: IntentKey) -> str:
    return intent_id.value if isinstance(intent_id, Enum) else intent_id


def _coerce_linked(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise IntentTypeError(f"Linked property value cannot be read as text: {value!r}")


class IntentDetections:
    """The merged intent results of one turn, queried by intent and property."""

    def __init__(self, results: Optional[Iterable[IntentResult]] = None):
        self.results: list[IntentResult] = list(results or [])

    def __iter__(self) -> Iterator[IntentResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def add(self, result: IntentResult) -> None:
        self.results.append(result)

    def _records_with(self, intent_id: IntentKey, prop: str) -> Iterator[dict[str, Any]]:
        key = _key(intent_id)
        if not key or not prop:
            raise ValueError("intent_id and property name must not be empty")
        for result in self.results:
            if result.intent_id != key:
                continue
            for record in result.child_objects:
                if prop in record:
                    yield record

    def get_boolean(self, intent_id: IntentKey, prop: str) -> Optional[bool]:
        """Value of the first record carrying ``prop``, or None if there is none.

        Raises:
            IntentTypeError: If the value is not a boolean.
        """
        for record in self._records_with(intent_id, prop):
            value = record[prop]
            if not isinstance(value, bool):
                raise IntentTypeError(
                    f"{_key(intent_id)}.{prop} should be a boolean, got {type(value).__name__}"
                )
            return value
        return None

    def get_string(
        self,
        intent_id: IntentKey,
        prop: str,
        linked_prop: Optional[str] = None,
        equals: Optional[str] = None,
    ) -> Optional[str]:
        """Look up a string property, optionally redirecting to a linked one.

        Args:
            intent_id: Intent to search.
            prop: Property that must hold a string.
            linked_prop: If given, return this property from the same record
                instead. Booleans and numbers are returned as text.
            equals: If given, only records whose ``prop`` has this value match.

        Returns:
            The value found, or None.

        Raises:
            IntentTypeError: If ``prop`` holds a non-string value.
        """
        for record in self._records_with(intent_id, prop):
            value = record[prop]
            if not isinstance(value, str):
                raise IntentTypeError(
                    f"{_key(intent_id)}.{prop} should be a string, got {type(value).__name__}"
                )
            if equals is not None and value != equals:
                continue
            if linked_prop is None:
                return value
            linked = record.get(linked_prop)
            return None if linked is None else _coerce_linked(linked)
        return None

    def contains(self, intent_id: IntentKey, prop: str, value: str) -> bool:
        """Whether any record for the intent has ``prop`` equal to ``value``."""
        for record in self._records_with(intent_id, prop):
            found = record[prop]
            if not isinstance(found, str):
                raise IntentTypeError(
                    f"{_key(intent_id)}.{prop} should be a string, got {type(found).__name__}"
                )
            if found == value:
                return True
        return False


def _to_intent_result(intent_id: str, result: CompletionResult) -> IntentResult:
    try:
        return IntentResult(intent_id=intent_id, child_objects=result.json_response)
    except ValidationError as e:
        raise ResponseParseError(
            f"Intent '{intent_id}' returned an unexpected shape: {result.text_response[:200]!r}"
        ) from e


class IntentAggregator:
    """Fans intent classification out to one completion call per intent."""

    def __init__(self, completions: CompletionService, prompts: PromptLibrary):
        self.completions = completions
        self.prompts = prompts

    async def _classify_one(self, intent_id: str, user_input: str) -> CompletionResult:
        return await self.completions.complete(
            intent_id,
            self.prompts.get(intent_id),
            user_input,
            CompletionParams(temperature=config.INTENT_TEMPERATURE),
            expect_json=True,
        )

    async def classify(self, intent_ids: Sequence[IntentKey], user_input: str) -> IntentDetections:
        """Classify ``user_input`` against every intent concurrently.

        All calls run to completion before failures are examined. Any failed
        call fails the whole classification.

        Raises:
            InputValidationError: If there are no intents or the input is blank.
            UpstreamServiceError: If one or more calls failed.
            ConsistencyError: If a call could not be built, e.g. its template is missing.
        """
        keys = [_key(i) for i in intent_ids]
        if not keys:
            raise InputValidationError("At least one intent id is required")
        if not user_input or not user_input.strip():
            raise InputValidationError("user_input must not be blank")

        outcomes = await asyncio.gather(
            *(self._classify_one(key, user_input) for key in keys),
            return_exceptions=True,
        )

        failed = []
        defects = []
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, UpstreamServiceError):
                LOGGER.error("Intent '%s' raised: %s", key, outcome)
                failed.append(key)
            elif isinstance(outcome, BaseException):
                LOGGER.error("Intent '%s' raised: %r", key, outcome)
                defects.append(outcome)
            elif outcome.is_error:
                failed.append(key)
        # Local defects surface as themselves, not as upstream failures
        if defects:
            raise defects[0]
        if failed:
            raise UpstreamServiceError(
                f"Intent classification failed for: {', '.join(failed)}",
                intent_ids=tuple(failed),
            )

        detections = IntentDetections(
            _to_intent_result(key, outcome) for key, outcome in zip(keys, outcomes)
        )
        for result in detections:
            LOGGER.debug("Intent %s -> %s", result.intent_id, result.child_objects)
        return detections

    async def detect_extended_wrong_content(self, previous_prompt: str, user_input: str) -> IntentResult:
        """Find wrong-content complaints by comparing feedback with the previous prompt.

        Records are returned under the quality/wrong-content intent id so they
        merge with the regular complaint results.
        """
        result = ensure_success(
            await self.completions.complete(
                EXTENDED_WRONG_CONTENT_ID,
                self.prompts.render(EXTENDED_WRONG_CONTENT_ID, previous_prompt=previous_prompt),
                user_input,
                CompletionParams(temperature=config.INTENT_TEMPERATURE),
                expect_json=True,
            )
        )
        return _to_intent_result(
            ImageIntentId.USER_COMPLAINT_IMAGE_QUALITY_OR_WRONG_CONTENT.value, result
        )
