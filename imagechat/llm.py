"""LLM provider abstraction and completion service using LangChain."""

import logging
from typing import Any, Optional, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from config import Settings

from .errors import ResponseParseError, UpstreamServiceError
from .parsing import PropertyDetails, parse_llm_json
from .schemas import CompletionParams, CompletionResult
from .storage import ImagePackage

LOGGER = logging.getLogger(__name__)

DEFAULT_TEXT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "sambanova": "Meta-Llama-3.3-70B-Instruct",
}
DEFAULT_VISION_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "sambanova": "Llama-3.2-90B-Vision-Instruct",
}


def get_chat_model(
    settings: Settings,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs,
) -> BaseChatModel:
    """Get a chat model instance based on provider.

    Args:
        settings: Runtime settings holding API keys and defaults.
        provider: "openai", "anthropic" or "sambanova". Uses settings if None.
        model: Model name. Uses settings, then provider default, if None.
        **kwargs: Additional arguments passed to the model constructor.

    Returns:
        LangChain chat model instance.
    """
    provider = provider or settings.llm_provider
    model = model or settings.text_model or DEFAULT_TEXT_MODELS.get(provider)
    return _build_model(settings, provider, model, **kwargs)


def get_vision_model(
    settings: Settings,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs,
) -> BaseChatModel:
    """Get a vision-capable chat model.

    Args:
        settings: Runtime settings holding API keys and defaults.
        provider: LLM provider. Uses settings if None.
        model: Model name. Uses settings, then provider default, if None.
        **kwargs: Additional arguments passed to the model constructor.

    Returns:
        LangChain chat model with vision capabilities.
    """
    provider = provider or settings.llm_provider
    model = model or settings.vision_model or DEFAULT_VISION_MODELS.get(provider)
    return _build_model(settings, provider, model, **kwargs)


def _build_model(settings: Settings, provider: str, model: Optional[str], **kwargs) -> BaseChatModel:
    if provider == "openai":
        return ChatOpenAI(model=model, api_key=settings.openai_api_key, **kwargs)
    elif provider == "anthropic":
        return ChatAnthropic(model=model, api_key=settings.anthropic_api_key, **kwargs)
    elif provider == "sambanova":
        # OpenAI-compatible endpoint
        return ChatOpenAI(
            model=model,
            api_key=settings.sambanova_api_key,
            base_url=settings.sambanova_base_url,
            **kwargs,
        )
    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic' or 'sambanova'.")


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def ensure_success(result: CompletionResult) -> CompletionResult:
    """Raise if a completion result carries an error."""
    if result.is_error:
        raise UpstreamServiceError(
            f"Completion '{result.intent_id}' failed: {result.error_message}",
            intent_ids=(result.intent_id,),
        )
    return result


class CompletionService:
    """Runs text and vision completions, capturing failures in the result."""

    def __init__(self, settings: Settings):
        """Initialize the service.

        Args:
            settings: Runtime settings used to build chat models.
        """
        self.settings = settings

    async def _invoke(
        self,
        intent_id: str,
        messages: Sequence[BaseMessage],
        params: CompletionParams,
        vision: bool = False,
    ) -> str:
        kwargs = {"temperature": params.temperature, "max_tokens": params.max_tokens}
        if params.top_p is not None:
            kwargs["top_p"] = params.top_p
        factory = get_vision_model if vision else get_chat_model
        model = factory(self.settings, model=params.model, **kwargs)
        response = await model.ainvoke(list(messages))
        return _content_to_text(response.content)

    async def _run(
        self,
        intent_id: str,
        messages: Sequence[BaseMessage],
        params: Optional[CompletionParams],
        expect_json: bool,
        property_details: Optional[Sequence[PropertyDetails]],
        vision: bool = False,
    ) -> CompletionResult:
        params = params or CompletionParams()
        try:
            text = await self._invoke(intent_id, messages, params, vision=vision)
        except Exception as e:
            LOGGER.error("Completion '%s' failed: %s", intent_id, e)
            return CompletionResult(intent_id=intent_id, is_error=True, error_message=str(e))

        result = CompletionResult(intent_id=intent_id, text_response=text)
        if expect_json or property_details:
            try:
                result.json_response = parse_llm_json(text, property_details)
            except ResponseParseError as e:
                LOGGER.error("Completion '%s' returned unparseable output: %s", intent_id, e)
                result.is_error = True
                result.error_message = str(e)
        return result

    async def complete(
        self,
        intent_id: str,
        system_prompt: str,
        user_input: str,
        params: Optional[CompletionParams] = None,
        expect_json: bool = False,
        property_details: Optional[Sequence[PropertyDetails]] = None,
    ) -> CompletionResult:
        """Run a text completion.

        Args:
            intent_id: Identifies the call in logs and results.
            system_prompt: System message text.
            user_input: Human message text.
            params: Completion settings. Defaults if None.
            expect_json: Parse the response as (possibly malformed) JSON.
            property_details: Extract these flat fields tolerantly instead.

        Returns:
            Completion result. Upstream and parse failures set ``is_error``.
        """
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_input)]
        return await self._run(intent_id, messages, params, expect_json, property_details)

    async def recognize(
        self,
        intent_id: str,
        system_prompt: str,
        image: ImagePackage,
        params: Optional[CompletionParams] = None,
        expect_json: bool = False,
        user_text: str = "Analyze this image.",
    ) -> CompletionResult:
        """Run a vision completion over one image."""
        user_content = [
            {"type": "text", "text": user_text},
            {"type": "image_url", "image_url": {"url": image.to_data_uri()}},
        ]
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_content)]
        return await self._run(intent_id, messages, params, expect_json, None, vision=True)
