"""Tests for the parameter rules and clamps."""

from __future__ import annotations

from typing import Any, Optional

import pytest

import config
from conftest import QUALITY, SPEED
from imagechat.intents import IntentDetections
from imagechat.parameters import ChangeDescription, ParameterAdjuster, is_photorealistic
from imagechat.schemas import ImageModelId, IntentResult, ParameterState, ProcessingMode

NEW = ProcessingMode.NEW
REFINE = ProcessingMode.REFINE
ENHANCE = ProcessingMode.ENHANCE


def detections(
    complaints: Optional[list[dict[str, Any]]] = None,
    text_wanted: Optional[bool] = None,
    start_new: Optional[bool] = None,
    nature: Optional[str] = None,
    too_slow: bool = False,
) -> IntentDetections:
    results = [IntentResult(intent_id=QUALITY, child_objects=complaints or [])]
    if text_wanted is not None:
        results.append(IntentResult(intent_id="is_text_wanted_on_image", child_objects={"is_text_wanted_on_image": text_wanted}))
    if start_new is not None:
        results.append(IntentResult(intent_id="start_new_image", child_objects={"start_new_image": start_new}))
    if nature is not None:
        results.append(IntentResult(intent_id="nature_of_user_request", child_objects={"nature_of_user_request": nature}))
    if too_slow:
        results.append(IntentResult(intent_id=SPEED, child_objects={"complaint_type": "generate_image_too_slow"}))
    return IntentDetections(results)


def complaint(kind: str, text: str = "") -> dict[str, Any]:
    return {"complaint_type": kind, "complaint_text": text}


class TestSessionReset:
    def test_new_mode_resets_generation_parameters(self) -> None:
        state = ParameterState(model_id=ImageModelId.FLUX, guidance_scale=6.0, steps=21, loras={"x": "1"})
        adjustment = ParameterAdjuster().apply(detections(), NEW, state)

        assert adjustment.is_new_session
        assert state.model_id == ImageModelId.BYTEDANCE_LIGHTNING
        assert state.guidance_scale == config.DEFAULT_GUIDANCE_SCALE
        assert state.steps == config.DEFAULT_STEPS
        assert state.loras == {}

    def test_explicit_start_new_image(self) -> None:
        state = ParameterState(steps=21)
        adjustment = ParameterAdjuster().apply(detections(start_new=True), ENHANCE, state)
        assert adjustment.is_new_session
        assert state.steps == config.DEFAULT_STEPS

    def test_implicit_new_image_request(self) -> None:
        adjustment = ParameterAdjuster().apply(
            detections(nature="create_new_image_request"), ENHANCE, ParameterState()
        )
        assert adjustment.is_new_session

    def test_modification_is_not_a_new_session(self) -> None:
        state = ParameterState(steps=21)
        adjustment = ParameterAdjuster().apply(
            detections(start_new=False, nature="modify_existing_image_request"), ENHANCE, state
        )
        assert not adjustment.is_new_session
        assert state.steps == 21


class TestTextOnImage:
    def test_switches_model_and_raises_floors(self) -> None:
        state = ParameterState(steps=10, guidance_scale=2.0)
        adjustment = ParameterAdjuster().apply(detections(text_wanted=True), ENHANCE, state)

        assert state.model_id == ImageModelId.FLUX
        assert state.steps == config.MIN_STEPS_FOR_TEXT
        assert state.guidance_scale == config.MIN_GUIDANCE_SCALE_FOR_TEXT
        assert ChangeDescription.USE_TEXT_ENGINE.value in adjustment.change_descriptions

    def test_never_lowers_values_above_floor(self) -> None:
        state = ParameterState(steps=20, guidance_scale=5.0)
        ParameterAdjuster().apply(detections(text_wanted=True), ENHANCE, state)
        assert state.steps == 20
        assert state.guidance_scale == 5.0


class TestComplaints:
    def test_blurry_adds_steps(self) -> None:
        state = ParameterState(steps=12)
        ParameterAdjuster().apply(detections([complaint("blurry")]), ENHANCE, state)
        assert state.steps == 12 + config.NUM_STEPS_ADJUSTMENT_VALUE

    def test_wrong_content(self) -> None:
        state = ParameterState(steps=10, guidance_scale=2.0, temperature=0.7)
        adjustment = ParameterAdjuster().apply(
            detections([complaint("wrong_content", "the fox's face")]), REFINE, state
        )

        assert state.steps == 10 + 3 * config.NUM_STEPS_ADJUSTMENT_VALUE
        assert state.guidance_scale == 2.0 + config.NUM_GUIDANCE_SCALE_ADJUSTMENT_VALUE
        assert state.temperature == pytest.approx(0.6)
        assert state.model_id == ImageModelId.BYTEDANCE_LIGHTNING
        assert adjustment.wrong_content_text == "the fox's face"

    def test_misspelling_forces_text_model(self) -> None:
        state = ParameterState()
        adjustment = ParameterAdjuster().apply(detections([complaint("problems_with_text")]), ENHANCE, state)
        assert state.model_id == ImageModelId.FLUX
        assert adjustment.wrong_content_text is None

    def test_boring_is_suppressed_by_wrong_content(self) -> None:
        state = ParameterState(guidance_scale=4.0, temperature=0.7)
        adjustment = ParameterAdjuster().apply(
            detections([complaint("boring"), complaint("wrong_content", "the tree")]), ENHANCE, state
        )

        assert state.guidance_scale == 5.0
        assert state.temperature == pytest.approx(0.6)
        assert ChangeDescription.BE_CREATIVE_LATER.value in adjustment.change_descriptions
        assert ChangeDescription.BE_MORE_CREATIVE.value not in adjustment.change_descriptions

    def test_boring_alone(self) -> None:
        state = ParameterState(guidance_scale=4.0, temperature=0.6, steps=4)
        adjustment = ParameterAdjuster().apply(detections([complaint("boring")]), ENHANCE, state)

        assert state.guidance_scale == 3.0
        assert state.temperature == pytest.approx(0.7)
        assert state.steps == config.MIN_STEPS
        assert ChangeDescription.BE_MORE_CREATIVE.value in adjustment.change_descriptions

    def test_boring_is_ignored_on_new_image_turn(self) -> None:
        state = ParameterState(temperature=0.6)
        adjustment = ParameterAdjuster().apply(detections([complaint("boring")]), NEW, state)

        assert state.guidance_scale == config.DEFAULT_GUIDANCE_SCALE
        assert state.temperature == pytest.approx(0.6)
        assert ChangeDescription.BE_MORE_CREATIVE.value not in adjustment.change_descriptions

    def test_speed_rule_is_inert_by_default(self) -> None:
        state = ParameterState(steps=20)
        ParameterAdjuster().apply(detections(too_slow=True), ENHANCE, state)
        assert state.steps == 20

    def test_speed_rule_when_enabled(self) -> None:
        adjuster = ParameterAdjuster(enable_speed_rule=True)
        state = ParameterState(steps=20)
        adjuster.apply(detections(too_slow=True), ENHANCE, state)
        assert state.steps == 20 - config.NUM_STEPS_ADJUSTMENT_VALUE

        state = ParameterState(steps=config.MIN_STEPS)
        adjuster.apply(detections(too_slow=True), ENHANCE, state)
        assert state.steps == config.MIN_STEPS

    def test_descriptions_are_deduplicated_in_order(self) -> None:
        adjustment = ParameterAdjuster().apply(
            detections([complaint("problems_with_text"), complaint("blurry")], text_wanted=True),
            ENHANCE,
            ParameterState(),
        )
        assert adjustment.change_descriptions == [
            ChangeDescription.USE_TEXT_ENGINE.value,
            ChangeDescription.MORE_STEPS.value,
            ChangeDescription.A_LOT_MORE_STEPS.value,
            ChangeDescription.BE_LESS_CREATIVE.value,
        ]

    def test_temperature_is_clamped(self) -> None:
        state = ParameterState(temperature=0.1)
        ParameterAdjuster().apply(detections(), ENHANCE, state)
        assert state.temperature == config.MIN_TEMPERATURE

        state = ParameterState(temperature=1.0)
        ParameterAdjuster().apply(detections([complaint("boring")]), ENHANCE, state)
        assert state.temperature == config.MAX_TEMPERATURE

    def test_guidance_never_goes_negative(self) -> None:
        state = ParameterState(guidance_scale=0.5)
        ParameterAdjuster().apply(detections([complaint("boring")]), ENHANCE, state)
        assert state.guidance_scale == 0.0


class TestClamp:
    def test_photorealistic_pattern(self) -> None:
        assert is_photorealistic("A REALISTIC portrait")
        assert is_photorealistic("photo realism, studio light")
        assert is_photorealistic("make it look real")
        assert not is_photorealistic("an unreal landscape")

    def test_photorealistic_ceiling(self) -> None:
        state = ParameterState(guidance_scale=8.5, temperature=0.5)
        messages = ParameterAdjuster().clamp(state, "a realistic portrait of a fox")
        assert state.guidance_scale == config.MAX_GUIDANCE_SCALE_PHOTOREALISTIC
        assert len(messages) == 1

    def test_general_ceiling(self) -> None:
        state = ParameterState(guidance_scale=12.0)
        ParameterAdjuster().clamp(state, "a watercolor fox")
        assert state.guidance_scale == config.MAX_GUIDANCE_SCALE

        state = ParameterState(guidance_scale=8.5)
        ParameterAdjuster().clamp(state, "a watercolor fox")
        assert state.guidance_scale == 8.5

    def test_steps_and_temperature(self) -> None:
        state = ParameterState(steps=40, temperature=0.1)
        ParameterAdjuster().clamp(state, "a fox")
        assert state.steps == config.MAX_STEPS
        assert state.temperature == config.MIN_TEMPERATURE

        state = ParameterState(steps=0, guidance_scale=-1.0)
        ParameterAdjuster().clamp(state, "a fox")
        assert state.steps == 1
        assert state.guidance_scale == 0.0

    def test_clamp_is_idempotent(self) -> None:
        adjuster = ParameterAdjuster()
        state = ParameterState(steps=40, guidance_scale=15.0, temperature=3.0)
        adjuster.clamp(state, "real photo")
        once = state.model_copy()

        assert adjuster.clamp(state, "real photo") == []
        assert state == once
