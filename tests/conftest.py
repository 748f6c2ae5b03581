"""Shared fixtures: scripted completions, local storage and a fake image generator."""

from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import Path
from typing import Any, Sequence

import pytest
from langchain_core.messages import BaseMessage
from PIL import Image

from config import Settings
from imagechat.history import ConversationStore
from imagechat.llm import CompletionService
from imagechat.schemas import CompletionParams, ParameterState, ProcessingMode, Volley
from imagechat.storage import LocalObjectStore
from imagechat.volley import ChatVolleyProcessor

QUALITY = "user_complaint_image_quality_or_wrong_content"
SPEED = "user_complaint_image_generation_speed"

REFINEMENT_STAGES = [
    "describe_image",
    "image_discrepancies",
    "suggested_user_feedback",
    "rewrite_prompt",
    "reconcile_prompt",
]

DEFAULT_RESPONSES: dict[str, Any] = {
    "is_text_wanted_on_image": '{"is_text_wanted_on_image": false, "text": ""}',
    "start_new_image": '{"start_new_image": false}',
    "nature_of_user_request": '{"nature_of_user_request": "modify_existing_image_request"}',
    QUALITY: "[]",
    SPEED: '{"complaint_type": "none"}',
    "extended_wrong_content": "[]",
    "describe_image": "A red fox with a smeared face standing among dark trees.",
    "image_discrepancies": "- The fox's face is distorted\n- The forest is too dark",
    "suggested_user_feedback": "The fox's face is wrong and the forest is too dark.",
    "rewrite_prompt": "A red fox with a clearly detailed face in a bright forest",
    "reconcile_prompt": (
        "```json\n"
        '{"prompt": "A red fox with a detailed face in a sunlit forest", '
        '"negative_prompt": "distorted face"}\n'
        "```"
    ),
    "decompose_scene_logic": "A red fox standing in a dense green forest, soft daylight",
    "main_image_generation_prompt": (
        'Here you go: {"prompt": "A red fox in a forest at night under a full moon, detailed fur", '
        '"negative_prompt": "blurry", "prompt_summary": "fox, forest, night", '
        '"user_input_has_complaints": false}'
    ),
}


class ScriptedCompletionService(CompletionService):
    """Completion service whose model call returns canned text per intent id.

    A response that is an exception instance is raised instead of returned.
    """

    def __init__(self, responses: dict[str, Any] | None = None, delays: dict[str, float] | None = None):
        super().__init__(Settings())
        self.responses = dict(DEFAULT_RESPONSES)
        self.responses.update(responses or {})
        self.delays = delays or {}
        self.calls: list[str] = []
        self.messages: dict[str, list[BaseMessage]] = {}
        self.params: dict[str, CompletionParams] = {}
        self.active = 0
        self.max_active = 0

    async def _invoke(
        self,
        intent_id: str,
        messages: Sequence[BaseMessage],
        params: CompletionParams,
        vision: bool = False,
    ) -> str:
        self.calls.append(intent_id)
        self.messages[intent_id] = list(messages)
        self.params[intent_id] = params
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(intent_id)
            if delay:
                await asyncio.sleep(delay)
            response = self.responses[intent_id]
            if isinstance(response, BaseException):
                raise response
            return response
        finally:
            self.active -= 1


class FakeImageGenerator:
    """Stores a small PNG per call and records what it was asked to generate."""

    def __init__(self, store: LocalObjectStore):
        self.store = store
        self.calls: list[tuple[str, str, ParameterState]] = []

    async def generate(self, prompt: str, negative_prompt: str, state: ParameterState) -> list[str]:
        self.calls.append((prompt, negative_prompt, state.model_copy(deep=True)))
        data = make_png(color=(len(self.calls) * 40 % 256, 80, 40))
        return [self.store.put_content_addressed(data, "generated-images", "png")]


def make_png(color: tuple[int, int, int] = (200, 80, 40), size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_volley(
    user_input: str,
    is_new_session: bool = False,
    prompt: str = "",
    negative_prompt: str = "",
    iteration: int = 0,
    mode: ProcessingMode = ProcessingMode.ENHANCE,
) -> Volley:
    state = ParameterState(refinement_iteration_count=iteration)
    return Volley(
        is_new_session=is_new_session,
        user_input=user_input,
        prompt=prompt,
        negative_prompt=negative_prompt,
        response_to_user=f"Here is: {prompt}",
        processing_mode=mode,
        state_before=ParameterState(),
        state_after=state,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / "data")


@pytest.fixture
def object_store(settings: Settings) -> LocalObjectStore:
    return LocalObjectStore(settings.object_store_dir)


@pytest.fixture
def conversations(settings: Settings) -> ConversationStore:
    return ConversationStore(settings.chat_history_dir)


@pytest.fixture
def completions() -> ScriptedCompletionService:
    return ScriptedCompletionService()


@pytest.fixture
def generator(object_store: LocalObjectStore) -> FakeImageGenerator:
    return FakeImageGenerator(object_store)


@pytest.fixture
def processor(
    settings: Settings,
    conversations: ConversationStore,
    completions: ScriptedCompletionService,
    generator: FakeImageGenerator,
    object_store: LocalObjectStore,
) -> ChatVolleyProcessor:
    return ChatVolleyProcessor(settings, conversations, completions, generator, object_store)
