"""Conversational image generation assistant core."""

from .schemas import (
    AssistantKind,
    ImageModelId,
    IntentResult,
    ParameterState,
    ProcessingMode,
    RefinementResult,
    TurnResult,
    Volley,
)
from .errors import (
    ConsistencyError,
    ImageChatError,
    InputValidationError,
    IntentTypeError,
    ResponseParseError,
    UpstreamServiceError,
)
from .history import ConversationHistory, ConversationStore
from .intents import IntentAggregator, IntentDetections
from .parameters import ParameterAdjuster
from .pipeline import RefinementPipeline
from .llm import CompletionService, get_chat_model, get_vision_model
from .volley import ChatVolleyProcessor, create_processor

__all__ = [
    "AssistantKind",
    "ImageModelId",
    "IntentResult",
    "ParameterState",
    "ProcessingMode",
    "RefinementResult",
    "TurnResult",
    "Volley",
    "ConsistencyError",
    "ImageChatError",
    "InputValidationError",
    "IntentTypeError",
    "ResponseParseError",
    "UpstreamServiceError",
    "ConversationHistory",
    "ConversationStore",
    "IntentAggregator",
    "IntentDetections",
    "ParameterAdjuster",
    "RefinementPipeline",
    "CompletionService",
    "get_chat_model",
    "get_vision_model",
    "ChatVolleyProcessor",
    "create_processor",
]
