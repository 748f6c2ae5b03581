"""Tests for intent fan-out and the merged result queries."""

from __future__ import annotations

import pytest

from conftest import QUALITY, SPEED, ScriptedCompletionService
from imagechat.errors import ConsistencyError, InputValidationError, IntentTypeError, UpstreamServiceError
from imagechat.intents import ImageIntentId, IntentAggregator, IntentDetections
from imagechat.prompts import PromptLibrary
from imagechat.schemas import IntentResult

ALL_IMAGE_INTENTS = list(ImageIntentId)


def aggregator_for(completions: ScriptedCompletionService) -> IntentAggregator:
    return IntentAggregator(completions, PromptLibrary())


class TestClassify:
    @pytest.mark.asyncio
    async def test_calls_are_concurrent(self) -> None:
        completions = ScriptedCompletionService(delays={i.value: 0.05 for i in ALL_IMAGE_INTENTS})
        detections = await aggregator_for(completions).classify(ALL_IMAGE_INTENTS, "a red fox")

        assert completions.max_active == len(ALL_IMAGE_INTENTS)
        assert sorted(completions.calls) == sorted(i.value for i in ALL_IMAGE_INTENTS)
        assert len(detections) == len(ALL_IMAGE_INTENTS)

    @pytest.mark.asyncio
    async def test_results_keep_request_order(self) -> None:
        completions = ScriptedCompletionService(delays={ImageIntentId.IS_TEXT_WANTED_ON_IMAGE.value: 0.05})
        detections = await aggregator_for(completions).classify(ALL_IMAGE_INTENTS, "a red fox")

        assert [r.intent_id for r in detections] == [i.value for i in ALL_IMAGE_INTENTS]

    @pytest.mark.asyncio
    async def test_single_object_is_normalized_to_list(self) -> None:
        completions = ScriptedCompletionService()
        detections = await aggregator_for(completions).classify([ImageIntentId.START_NEW_IMAGE], "new one")

        assert detections.results[0].child_objects == [{"start_new_image": False}]

    @pytest.mark.asyncio
    async def test_one_failure_fails_everything(self) -> None:
        completions = ScriptedCompletionService(responses={SPEED: RuntimeError("upstream down")})

        with pytest.raises(UpstreamServiceError) as excinfo:
            await aggregator_for(completions).classify(ALL_IMAGE_INTENTS, "a red fox")

        assert excinfo.value.intent_ids == (SPEED,)
        # Every call still ran before the failure was reported
        assert len(completions.calls) == len(ALL_IMAGE_INTENTS)

    @pytest.mark.asyncio
    async def test_unparseable_output_is_a_failure(self) -> None:
        completions = ScriptedCompletionService(responses={QUALITY: "I am not sure what you mean."})

        with pytest.raises(UpstreamServiceError) as excinfo:
            await aggregator_for(completions).classify(ALL_IMAGE_INTENTS, "hmm")

        assert QUALITY in excinfo.value.intent_ids

    @pytest.mark.asyncio
    async def test_missing_template_is_not_an_upstream_failure(self) -> None:
        completions = ScriptedCompletionService()
        prompts = PromptLibrary()
        del prompts.templates[ImageIntentId.START_NEW_IMAGE.value]

        with pytest.raises(ConsistencyError) as excinfo:
            await IntentAggregator(completions, prompts).classify(ALL_IMAGE_INTENTS, "a red fox")

        assert not isinstance(excinfo.value, UpstreamServiceError)
        assert ImageIntentId.START_NEW_IMAGE.value not in completions.calls

    @pytest.mark.asyncio
    async def test_input_is_validated_before_any_call(self) -> None:
        completions = ScriptedCompletionService()
        aggregator = aggregator_for(completions)

        with pytest.raises(InputValidationError):
            await aggregator.classify(ALL_IMAGE_INTENTS, "   ")
        with pytest.raises(InputValidationError):
            await aggregator.classify([], "a fox")
        assert completions.calls == []

    @pytest.mark.asyncio
    async def test_extended_wrong_content_merges_under_quality_intent(self) -> None:
        completions = ScriptedCompletionService(
            responses={"extended_wrong_content": '[{"complaint_type": "wrong_content", "complaint_text": "the moon"}]'}
        )
        result = await aggregator_for(completions).detect_extended_wrong_content(
            "a fox under a moon", "where is the moon?"
        )

        assert result.intent_id == QUALITY
        assert result.child_objects == [{"complaint_type": "wrong_content", "complaint_text": "the moon"}]
        system_prompt = completions.messages["extended_wrong_content"][0].content
        assert "a fox under a moon" in system_prompt


def detections_with(*results: IntentResult) -> IntentDetections:
    return IntentDetections(results)


class TestQueries:
    def test_boolean_lookup(self) -> None:
        detections = detections_with(IntentResult(intent_id="start_new_image", child_objects={"start_new_image": True}))
        assert detections.get_boolean(ImageIntentId.START_NEW_IMAGE, "start_new_image") is True

    def test_boolean_lookup_wrong_type(self) -> None:
        detections = detections_with(IntentResult(intent_id="start_new_image", child_objects={"start_new_image": "yes"}))
        with pytest.raises(IntentTypeError):
            detections.get_boolean("start_new_image", "start_new_image")

    def test_missing_intent_is_not_found(self) -> None:
        detections = detections_with()
        assert detections.get_boolean("start_new_image", "start_new_image") is None
        assert detections.get_string(QUALITY, "complaint_type") is None
        assert detections.contains(QUALITY, "complaint_type", "blurry") is False

    def test_string_lookup_wrong_type(self) -> None:
        detections = detections_with(IntentResult(intent_id=QUALITY, child_objects=[{"complaint_type": 3}]))
        with pytest.raises(IntentTypeError):
            detections.get_string(QUALITY, "complaint_type")
        with pytest.raises(IntentTypeError):
            detections.contains(QUALITY, "complaint_type", "blurry")

    def test_linked_lookup_coerces_to_text(self) -> None:
        detections = detections_with(
            IntentResult(
                intent_id=QUALITY,
                child_objects=[
                    {"complaint_type": "blurry", "complaint_text": True},
                    {"complaint_type": "wrong_content", "complaint_text": 42},
                ],
            )
        )
        assert detections.get_string(QUALITY, "complaint_type", "complaint_text") == "true"
        assert detections.get_string(
            QUALITY, "complaint_type", "complaint_text", equals="wrong_content"
        ) == "42"

    def test_linked_lookup_missing_link(self) -> None:
        detections = detections_with(IntentResult(intent_id=QUALITY, child_objects=[{"complaint_type": "boring"}]))
        assert detections.get_string(QUALITY, "complaint_type", "complaint_text") is None

    def test_contains_searches_every_record(self) -> None:
        detections = detections_with(
            IntentResult(intent_id=QUALITY, child_objects=[{"complaint_type": "blurry"}]),
            IntentResult(intent_id=QUALITY, child_objects=[{"complaint_type": "boring"}]),
        )
        assert detections.contains(QUALITY, "complaint_type", "boring")
        assert not detections.contains(QUALITY, "complaint_type", "wrong_content")

    def test_empty_names_are_rejected(self) -> None:
        detections = detections_with()
        with pytest.raises(ValueError):
            detections.get_boolean("", "start_new_image")
        with pytest.raises(ValueError):
            detections.contains(QUALITY, "", "x")
