"""Rules that evolve generation parameters from one turn to the next."""

import logging
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

import config

from .intents import (
    COMPLAINT_BLURRY,
    COMPLAINT_BORING,
    COMPLAINT_PROBLEMS_WITH_TEXT,
    COMPLAINT_TOO_SLOW,
    COMPLAINT_WRONG_CONTENT,
    CREATE_NEW_IMAGE_REQUEST,
    PROP_COMPLAINT_TEXT,
    PROP_COMPLAINT_TYPE,
    PROP_IS_TEXT_WANTED_ON_IMAGE,
    PROP_NATURE_OF_USER_REQUEST,
    PROP_START_NEW_IMAGE,
    ImageIntentId,
    IntentDetections,
)
from .schemas import TEXT_CAPABLE_IMAGE_MODEL, ParameterState, ProcessingMode

LOGGER = logging.getLogger(__name__)

_PHOTOREALISTIC = re.compile(config.PHOTOREALISTIC_PATTERN, re.IGNORECASE)


class ChangeDescription(str, Enum):
    """Human-readable descriptions of parameter changes, shown to the user."""

    NEW_IMAGE = "Starting a new image with default settings."
    USE_TEXT_ENGINE = "Switching to an image model that is better at rendering text."
    MORE_STEPS = "Increasing the number of steps for a sharper image."
    LESS_STEPS = "Decreasing the number of steps to generate faster."
    A_LOT_MORE_STEPS = "Greatly increasing the number of steps to get the content right."
    BE_LESS_CREATIVE = "Following your prompt more closely."
    BE_MORE_CREATIVE = "Taking more creative liberties with your prompt."
    BE_CREATIVE_LATER = "Fixing the content first. Ask again for a more interesting image once it is right."


class ParameterAdjustment(BaseModel):
    """Outcome of applying the rules to one turn."""

    is_new_session: bool = False
    wrong_content_text: Optional[str] = None
    change_descriptions: list[str] = Field(default_factory=list)

    def describe(self, change: ChangeDescription) -> None:
        if change.value not in self.change_descriptions:
            self.change_descriptions.append(change.value)


def is_photorealistic(prompt_text: str) -> bool:
    return bool(_PHOTOREALISTIC.search(prompt_text or ""))


class ParameterAdjuster:
    """Applies the turn's intents to a parameter state.

    Rules run in a fixed order and mutate the state in place. Descriptions
    accumulate across rules even when a later rule overrides an earlier
    numeric effect.
    """

    def __init__(
        self,
        enable_speed_rule: bool = False,
        steps_delta: int = config.NUM_STEPS_ADJUSTMENT_VALUE,
        guidance_delta: float = config.NUM_GUIDANCE_SCALE_ADJUSTMENT_VALUE,
        temperature_delta: float = config.NUM_TEMPERATURE_ADJUSTMENT_VALUE,
    ):
        self.enable_speed_rule = enable_speed_rule
        self.steps_delta = steps_delta
        self.guidance_delta = guidance_delta
        self.temperature_delta = temperature_delta

    def is_start_new_image(self, detections: IntentDetections, mode: ProcessingMode) -> bool:
        """Whether the turn opens a new session, explicitly or implicitly."""
        if mode == ProcessingMode.NEW:
            return True
        if detections.get_boolean(ImageIntentId.START_NEW_IMAGE, PROP_START_NEW_IMAGE):
            return True
        return detections.contains(
            ImageIntentId.NATURE_OF_USER_REQUEST,
            PROP_NATURE_OF_USER_REQUEST,
            CREATE_NEW_IMAGE_REQUEST,
        )

    def apply(
        self,
        detections: IntentDetections,
        mode: ProcessingMode,
        state: ParameterState,
    ) -> ParameterAdjustment:
        """Mutate ``state`` according to the turn's intents.

        Args:
            detections: Merged intent results of the turn.
            mode: Processing mode of the turn.
            state: Current parameter snapshot, modified in place.

        Returns:
            Session flag, captured wrong-content text and change descriptions.
        """
        mode = ProcessingMode(mode)
        adjustment = ParameterAdjustment()
        quality = ImageIntentId.USER_COMPLAINT_IMAGE_QUALITY_OR_WRONG_CONTENT

        if self.is_start_new_image(detections, mode):
            state.reset_generation_parameters()
            adjustment.is_new_session = True
            adjustment.describe(ChangeDescription.NEW_IMAGE)
            LOGGER.info("New session: generation parameters reset")

        if detections.get_boolean(ImageIntentId.IS_TEXT_WANTED_ON_IMAGE, PROP_IS_TEXT_WANTED_ON_IMAGE):
            state.model_id = TEXT_CAPABLE_IMAGE_MODEL
            state.steps = max(state.steps, config.MIN_STEPS_FOR_TEXT)
            state.guidance_scale = max(state.guidance_scale, config.MIN_GUIDANCE_SCALE_FOR_TEXT)
            adjustment.describe(ChangeDescription.USE_TEXT_ENGINE)
            LOGGER.info("Text wanted on image: model=%s", state.model_id.value)

        if detections.contains(quality, PROP_COMPLAINT_TYPE, COMPLAINT_BLURRY):
            state.steps += self.steps_delta
            adjustment.describe(ChangeDescription.MORE_STEPS)
            LOGGER.info("Blurry complaint: steps=%d", state.steps)

        if self.enable_speed_rule and detections.contains(
            ImageIntentId.USER_COMPLAINT_IMAGE_GENERATION_SPEED, PROP_COMPLAINT_TYPE, COMPLAINT_TOO_SLOW
        ):
            state.steps = max(state.steps - self.steps_delta, config.MIN_STEPS)
            adjustment.describe(ChangeDescription.LESS_STEPS)
            LOGGER.info("Speed complaint: steps=%d", state.steps)

        is_wrong_content = detections.contains(quality, PROP_COMPLAINT_TYPE, COMPLAINT_WRONG_CONTENT)
        is_misspelling = detections.contains(quality, PROP_COMPLAINT_TYPE, COMPLAINT_PROBLEMS_WITH_TEXT)
        is_boring = detections.contains(quality, PROP_COMPLAINT_TYPE, COMPLAINT_BORING)

        if is_wrong_content or is_misspelling:
            state.steps += 3 * self.steps_delta
            state.guidance_scale += self.guidance_delta
            state.temperature -= self.temperature_delta
            adjustment.describe(ChangeDescription.A_LOT_MORE_STEPS)
            adjustment.describe(ChangeDescription.BE_LESS_CREATIVE)
            if is_wrong_content:
                adjustment.wrong_content_text = detections.get_string(
                    quality, PROP_COMPLAINT_TYPE, PROP_COMPLAINT_TEXT, equals=COMPLAINT_WRONG_CONTENT
                )
            if is_misspelling:
                state.model_id = TEXT_CAPABLE_IMAGE_MODEL
                adjustment.describe(ChangeDescription.USE_TEXT_ENGINE)
            if is_boring:
                adjustment.describe(ChangeDescription.BE_CREATIVE_LATER)
                LOGGER.info("Boring complaint deferred until content is fixed")
            LOGGER.info(
                "Content complaint: steps=%d guidance=%g temperature=%g",
                state.steps, state.guidance_scale, state.temperature,
            )
        elif is_boring:
            if mode == ProcessingMode.NEW:
                LOGGER.info("Ignoring boring complaint on a new image turn")
            else:
                state.guidance_scale -= self.guidance_delta
                state.temperature += self.temperature_delta
                state.steps = max(state.steps, config.MIN_STEPS)
                adjustment.describe(ChangeDescription.BE_MORE_CREATIVE)
                LOGGER.info(
                    "Boring complaint: guidance=%g temperature=%g",
                    state.guidance_scale, state.temperature,
                )

        state.temperature = _clamp(state.temperature, config.MIN_TEMPERATURE, config.MAX_TEMPERATURE)
        state.guidance_scale = max(state.guidance_scale, 0.0)
        state.steps = max(state.steps, 0)
        return adjustment

    def clamp(self, state: ParameterState, prompt_text: str) -> list[str]:
        """Clamp the state to its ceilings once the final prompt is known.

        Idempotent. The photorealistic guidance ceiling applies when the
        prompt mentions realism.

        Returns:
            One message per value that was changed.
        """
        messages = []
        ceiling = (
            config.MAX_GUIDANCE_SCALE_PHOTOREALISTIC
            if is_photorealistic(prompt_text)
            else config.MAX_GUIDANCE_SCALE
        )

        temperature = _clamp(state.temperature, config.MIN_TEMPERATURE, config.MAX_TEMPERATURE)
        if temperature != state.temperature:
            messages.append(f"temperature {state.temperature:g} -> {temperature:g}")
            state.temperature = temperature

        guidance = _clamp(state.guidance_scale, 0.0, ceiling)
        if guidance != state.guidance_scale:
            messages.append(f"guidance_scale {state.guidance_scale:g} -> {guidance:g}")
            state.guidance_scale = guidance

        steps = int(_clamp(state.steps, 1, config.MAX_STEPS))
        if steps != state.steps:
            messages.append(f"steps {state.steps} -> {steps}")
            state.steps = steps

        for message in messages:
            LOGGER.info("Clamped %s", message)
        return messages


def _clamp(value, low, high):
    return max(low, min(value, high))
