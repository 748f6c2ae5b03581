"""Processing of one image assistant turn, from user input to persisted volley."""

import logging
from typing import NamedTuple, Optional, Protocol

import config
from config import Settings

from .assembly import (
    append_eos_char,
    build_dual_encoder_prompt,
    build_image_assistant_prompts,
    build_response_to_user,
)
from .critic import ImageCritic
from .errors import ConsistencyError, InputValidationError, ResponseParseError, UpstreamServiceError
from .history import ConversationHistory, ConversationStore
from .intents import ImageIntentId, IntentAggregator
from .llm import CompletionService, ensure_success
from .parameters import ParameterAdjuster, ParameterAdjustment
from .parsing import MAIN_IMAGE_PROMPT_PROPERTIES
from .pipeline import RefinementPipeline
from .prompts import PromptLibrary
from .refiner import PromptRefiner
from .schemas import (
    DEFAULT_IMAGE_MODEL,
    AssistantKind,
    BaseLevelPrompt,
    CompletionParams,
    ParameterState,
    ProcessingMode,
    RefinementResult,
    TurnResult,
    Volley,
)
from .storage import LocalObjectStore, ObjectStore

LOGGER = logging.getLogger(__name__)

IMAGE_INTENT_IDS = tuple(ImageIntentId)


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, negative_prompt: str, state: ParameterState) -> list[str]: ...


class _ComposedPrompt(NamedTuple):
    prompt: str
    negative_prompt: str
    system_prompt: str = ""
    user_prompt: str = ""
    completion_text: str = ""


class ChatVolleyProcessor:
    """Runs image assistant turns and persists one volley per successful turn.

    Turns for the same user must not run concurrently; callers serialize them.
    """

    def __init__(
        self,
        settings: Settings,
        conversations: ConversationStore,
        completions: CompletionService,
        generator: ImageGenerator,
        object_store: ObjectStore,
        prompts: Optional[PromptLibrary] = None,
        adjuster: Optional[ParameterAdjuster] = None,
        pipeline: Optional[RefinementPipeline] = None,
    ):
        """Initialize the processor.

        Args:
            settings: Runtime settings.
            conversations: Store for chat histories.
            completions: Text and vision completion service.
            generator: Image generation service.
            object_store: Store holding active and generated images.
            prompts: Template library. Loaded from settings if None.
            adjuster: Parameter rules. Built from settings if None.
            pipeline: Refinement pipeline. Built from the other collaborators if None.
        """
        self.settings = settings
        self.conversations = conversations
        self.completions = completions
        self.generator = generator
        self.prompts = prompts or PromptLibrary.load(settings.prompts_dir)
        self.aggregator = IntentAggregator(completions, self.prompts)
        self.adjuster = adjuster or ParameterAdjuster(
            enable_speed_rule=settings.enable_speed_complaint_rule
        )
        self.pipeline = pipeline or RefinementPipeline(
            ImageCritic(completions, self.prompts),
            PromptRefiner(completions, self.prompts),
            object_store,
            settings.refinement_log_dir,
        )

    @staticmethod
    def _validate(
        user_id: str,
        user_input: str,
        mode: ProcessingMode,
        active_image_url: Optional[str],
    ) -> ProcessingMode:
        if not user_id or not user_id.strip():
            raise InputValidationError("user_id must not be blank")
        if not user_input or not user_input.strip():
            raise InputValidationError("user_input must not be blank")
        try:
            mode = ProcessingMode(mode)
        except ValueError:
            raise InputValidationError(f"Unknown processing mode: {mode!r}") from None
        if mode == ProcessingMode.REFINE and not (active_image_url and active_image_url.strip()):
            raise InputValidationError("Refine mode requires the active image URL")
        return mode

    async def process_image_turn(
        self,
        user_id: str,
        user_input: str,
        mode: ProcessingMode,
        active_image_url: Optional[str] = None,
    ) -> TurnResult:
        """Process one image assistant turn.

        Args:
            user_id: Owner of the conversation.
            user_input: Raw input text.
            mode: new, refine or enhance.
            active_image_url: Image being refined. Required in refine mode.

        Returns:
            The persisted volley, generated image URLs and change descriptions.

        Raises:
            InputValidationError: If the input is rejected.
            UpstreamServiceError: If a completion or generation call fails.
            ResponseParseError: If structured output cannot be parsed.
            ConsistencyError: If refine mode has nothing to refine.
        """
        mode = self._validate(user_id, user_input, mode, active_image_url)
        history = self.conversations.load(user_id, AssistantKind.IMAGE)
        previous = history.get_last_volley()

        state_before = previous.state_after.clone() if previous else ParameterState.create_default()
        state = state_before.clone()

        base_level: Optional[BaseLevelPrompt] = None
        if mode != ProcessingMode.NEW:
            base_level = history.get_last_base_level_prompt()

        if mode == ProcessingMode.REFINE:
            state.refinement_iteration_count = state_before.refinement_iteration_count + 1
        else:
            state.refinement_iteration_count = 0

        refinement: Optional[RefinementResult] = None
        intent_input = user_input
        if mode == ProcessingMode.REFINE:
            if base_level is None:
                raise ConsistencyError("Refine mode requires a previous base-level prompt")
            refinement = await self.pipeline.run(
                user_input,
                self._merge_base_level_prompt(base_level, user_input),
                active_image_url,
                history,
            )
            state.suggested_feedback = refinement.suggested_feedback
            state.num_prompt_errors = refinement.num_discrepancies
            if refinement.suggested_feedback:
                intent_input = refinement.suggested_feedback

        if self.settings.give_chat_history_to_intents and not history.is_empty():
            session_text = history.get_last_session_start(intent_input)
            if session_text:
                intent_input = session_text

        detections = await self.aggregator.classify(IMAGE_INTENT_IDS, intent_input)
        if not self.adjuster.is_start_new_image(detections, mode) and previous and previous.prompt:
            detections.add(
                await self.aggregator.detect_extended_wrong_content(previous.prompt, intent_input)
            )
        adjustment = self.adjuster.apply(detections, mode, state)

        composed = await self._compose_prompt(
            mode, user_input, history, adjustment, state, base_level, refinement
        )

        self.adjuster.clamp(state, composed.prompt)
        if self.settings.lock_generation_model and state.model_id != DEFAULT_IMAGE_MODEL:
            LOGGER.info("Generation model locked, ignoring switch to %s", state.model_id.value)
            state.model_id = DEFAULT_IMAGE_MODEL

        response = build_response_to_user(
            composed.prompt,
            state,
            adjustment.change_descriptions,
            refinement.suggested_feedback if refinement else "",
        )

        try:
            image_urls = await self.generator.generate(composed.prompt, composed.negative_prompt, state)
        except Exception as e:
            raise UpstreamServiceError(f"Image generation failed: {e}") from e

        volley = Volley(
            is_new_session=adjustment.is_new_session,
            user_input=user_input,
            prompt=composed.prompt,
            negative_prompt=composed.negative_prompt,
            response_to_user=response,
            processing_mode=mode,
            intent_detections=list(detections),
            state_before=state_before,
            state_after=state,
            generated_image_urls=image_urls,
            full_system_prompt=composed.system_prompt,
            full_user_prompt=composed.user_prompt,
            completion_text=composed.completion_text,
        )
        self.conversations.append(user_id, AssistantKind.IMAGE, volley)
        LOGGER.info(
            "Turn for %s done: mode=%s new_session=%s iteration=%d",
            user_id, mode.value, volley.is_new_session, state.refinement_iteration_count,
        )
        return TurnResult(
            volley=volley,
            image_urls=image_urls,
            change_descriptions=adjustment.change_descriptions,
        )

    @staticmethod
    def _merge_base_level_prompt(base_level: BaseLevelPrompt, user_input: str) -> BaseLevelPrompt:
        if base_level.prompt.strip() == user_input.strip():
            return base_level
        return BaseLevelPrompt(
            prompt=f"{append_eos_char(base_level.prompt)} {user_input.strip()}",
            negative_prompt=base_level.negative_prompt,
        )

    async def _compose_prompt(
        self,
        mode: ProcessingMode,
        user_input: str,
        history: ConversationHistory,
        adjustment: ParameterAdjustment,
        state: ParameterState,
        base_level: Optional[BaseLevelPrompt],
        refinement: Optional[RefinementResult],
    ) -> _ComposedPrompt:
        if mode == ProcessingMode.REFINE:
            return _ComposedPrompt(
                refinement.prompt,
                refinement.negative_prompt,
                completion_text=refinement.record.entries[-1].content,
            )

        base_negative = base_level.negative_prompt if base_level else ""

        if mode == ProcessingMode.NEW:
            system_prompt, user_prompt = build_image_assistant_prompts(
                user_input,
                adjustment.wrong_content_text,
                history,
                adjustment.is_new_session,
                self.prompts,
                template_name="decompose_scene_logic",
                chat_history_volleys=self.settings.chat_history_volleys,
            )
            result = ensure_success(
                await self.completions.complete(
                    "decompose_scene_logic",
                    system_prompt,
                    user_prompt,
                    CompletionParams(temperature=config.SCENE_LOGIC_TEMPERATURE),
                )
            )
            prompt = result.text_response.strip()
            if not prompt:
                raise ResponseParseError("Scene decomposition returned an empty prompt")
            return _ComposedPrompt(
                prompt,
                base_negative or config.DEFAULT_NEGATIVE_PROMPT,
                system_prompt,
                user_prompt,
                result.text_response,
            )

        system_prompt, user_prompt = build_image_assistant_prompts(
            user_input,
            adjustment.wrong_content_text,
            history,
            adjustment.is_new_session,
            self.prompts,
            chat_history_volleys=self.settings.chat_history_volleys,
        )
        result = ensure_success(
            await self.completions.complete(
                "main_image_generation_prompt",
                system_prompt,
                user_prompt,
                CompletionParams(temperature=state.temperature),
                property_details=MAIN_IMAGE_PROMPT_PROPERTIES,
            )
        )
        fields = result.json_response
        if not fields.get("prompt"):
            raise ResponseParseError("Image prompt response has no prompt")
        summary = fields.get("prompt_summary")
        prompt = fields["prompt"]
        if summary and summary.strip():
            prompt = build_dual_encoder_prompt(prompt, summary)
        return _ComposedPrompt(
            prompt,
            fields.get("negative_prompt") or base_negative or config.DEFAULT_NEGATIVE_PROMPT,
            system_prompt,
            user_prompt,
            result.text_response,
        )


def create_processor(settings: Settings, generator: Optional[ImageGenerator] = None) -> ChatVolleyProcessor:
    """Build a processor wired to local storage and LangChain chat models.

    Args:
        settings: Runtime settings, from ``Settings.from_env``.
        generator: Image generator. A diffusers generator if None.

    Returns:
        Ready-to-use processor.
    """
    object_store = LocalObjectStore(settings.object_store_dir, settings.object_store_base_url)
    if generator is None:
        # Deferred so torch is only imported when generating locally
        from .generator import DiffusersImageGenerator

        generator = DiffusersImageGenerator(object_store)
    return ChatVolleyProcessor(
        settings,
        ConversationStore(settings.chat_history_dir),
        CompletionService(settings),
        generator,
        object_store,
    )
