"""Pydantic schemas for structured data flow between turns."""

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

import config


class ImageModelId(str, Enum):
    """Supported image generation models."""

    BYTEDANCE_LIGHTNING = "ByteDance/SDXL-Lightning"
    REALVIS_LIGHTNING = "SG161222/RealVisXL_V4.0_Lightning"
    FLUX = "black-forest-labs/FLUX.1-dev"


DEFAULT_IMAGE_MODEL = ImageModelId(config.DEFAULT_MODEL_ID)
TEXT_CAPABLE_IMAGE_MODEL = ImageModelId(config.TEXT_CAPABLE_MODEL_ID)


class ProcessingMode(str, Enum):
    """How a turn's input should be processed."""

    NEW = "new"
    REFINE = "refine"
    ENHANCE = "enhance"


class AssistantKind(str, Enum):
    """Which assistant a conversation belongs to."""

    IMAGE = "image_assistant"
    LICENSE = "license_assistant"


class RefinementStage(str, Enum):
    """Stages of the auto-refinement pipeline, in execution order."""

    DESCRIBE = "describe"
    COMPARE = "compare"
    SYNTHESIZE_FEEDBACK = "synthesize_feedback"
    REWRITE_PROMPT = "rewrite_prompt"
    RECONCILE = "reconcile"
    DONE = "done"


class ParameterState(BaseModel):
    """Generation parameters carried from one turn to the next."""

    model_id: ImageModelId = Field(
        default=DEFAULT_IMAGE_MODEL,
        description="Image generation model",
    )
    loras: dict[str, str] = Field(
        default_factory=dict,
        description="Auxiliary model id to version",
    )
    guidance_scale: float = Field(
        default=config.DEFAULT_GUIDANCE_SCALE,
        description="Classifier-free guidance scale",
    )
    steps: int = Field(
        default=config.DEFAULT_STEPS,
        description="Number of denoising steps",
    )
    temperature: float = Field(
        default=config.DEFAULT_TEMPERATURE,
        description="Temperature for the prompt-composing completion",
    )
    refinement_iteration_count: int = Field(
        default=0,
        ge=0,
        description="Contiguous auto-refinement turns since the last manual input",
    )
    num_prompt_errors: int = Field(
        default=0,
        ge=0,
        description="Discrepancies found by the last refinement pass",
    )
    suggested_feedback: str = Field(
        default="",
        description="Feedback synthesized by the last refinement pass",
    )
    created_at: int = Field(
        default_factory=lambda: int(time.time()),
        description="Unix timestamp of this snapshot",
    )

    @classmethod
    def create_default(cls) -> "ParameterState":
        return cls()

    def clone(self) -> "ParameterState":
        """Deep copy with a fresh creation timestamp."""
        copied = self.model_copy(deep=True)
        copied.created_at = int(time.time())
        return copied

    def reset_generation_parameters(self) -> None:
        self.model_id = DEFAULT_IMAGE_MODEL
        self.loras = {}
        self.guidance_scale = config.DEFAULT_GUIDANCE_SCALE
        self.steps = config.DEFAULT_STEPS

    def describe_generation_parameters(self) -> str:
        loras = ", ".join(f"{k}@{v}" for k, v in self.loras.items()) or "none"
        return (
            f"Model: {self.model_id.value}\n"
            f"LoRAs: {loras}\n"
            f"Guidance scale: {self.guidance_scale:g}\n"
            f"Steps: {self.steps}\n"
            f"Temperature: {self.temperature:g}"
        )


class IntentResult(BaseModel):
    """Records emitted by one intent classification call."""

    intent_id: str = Field(..., description="Intent the records belong to")
    child_objects: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Key/value records, always a list even if the model returned one object",
    )

    @field_validator("child_objects", mode="before")
    @classmethod
    def _normalize_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


class Volley(BaseModel):
    """One user/system exchange."""

    timestamp: float = Field(default_factory=time.time)
    is_new_session: bool = False
    user_input: str
    prompt: str = ""
    negative_prompt: str = ""
    response_to_user: str = ""
    processing_mode: ProcessingMode
    intent_detections: list[IntentResult] = Field(default_factory=list)
    state_before: ParameterState
    state_after: ParameterState
    generated_image_urls: list[str] = Field(default_factory=list)
    full_system_prompt: str = ""
    full_user_prompt: str = ""
    completion_text: str = Field(
        default="",
        description="Raw text of the completion that produced the final prompt",
    )

    def summary_text(self) -> str:
        return f"USER INPUT: {self.user_input}\nSYSTEM RESPONSE: {self.response_to_user}"


class BaseLevelPrompt(BaseModel):
    """The most recent human-originated scene description and its negative prompt."""

    prompt: str
    negative_prompt: str = ""


class CompletionParams(BaseModel):
    """Per-call completion settings."""

    model: Optional[str] = None
    temperature: float = config.INTENT_TEMPERATURE
    max_tokens: int = 2000
    top_p: Optional[float] = None


class CompletionResult(BaseModel):
    """Outcome of a single completion call. Errors are carried, not raised."""

    intent_id: str
    is_error: bool = False
    error_message: str = ""
    text_response: str = ""
    json_response: Any = None
    responded_at: float = Field(default_factory=time.time)


class RefinementLogEntry(BaseModel):
    stage: RefinementStage
    label: str
    content: str


class RefinementRecord(BaseModel):
    """Append-only log of one refinement pass."""

    image_url: str
    entries: list[RefinementLogEntry] = Field(default_factory=list)
    completed: bool = False

    def add(self, stage: RefinementStage, label: str, content: str) -> None:
        self.entries.append(RefinementLogEntry(stage=stage, label=label, content=content))


class RefinementResult(BaseModel):
    """Output of a completed refinement pass."""

    suggested_feedback: str
    prompt: str
    negative_prompt: str
    num_discrepancies: int = Field(default=0, ge=0)
    record: RefinementRecord


class TurnResult(BaseModel):
    """What a processed turn hands back to the caller."""

    volley: Volley
    image_urls: list[str] = Field(default_factory=list)
    change_descriptions: list[str] = Field(default_factory=list)


class RefinedPrompt(BaseModel):
    """Prompt pair produced by the reconcile stage."""

    prompt: str = Field(..., description="Final generation prompt")
    negative_prompt: str = Field(default="", description="Things the image should avoid")

    @field_validator("negative_prompt", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value
