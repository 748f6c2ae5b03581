"""Prompt refinement based on a discrepancy report."""

import logging
from typing import Optional

from pydantic import ValidationError

import config

from .errors import ResponseParseError
from .llm import CompletionService, ensure_success
from .prompts import PromptLibrary
from .schemas import CompletionParams, RefinedPrompt, RefinementRecord, RefinementStage

LOGGER = logging.getLogger(__name__)


class PromptRefiner:
    """Turns discrepancies into user-style feedback and a corrected prompt."""

    def __init__(self, completions: CompletionService, prompts: PromptLibrary):
        """Initialize the refiner.

        Args:
            completions: Service used for text completions.
            prompts: Template library.
        """
        self.completions = completions
        self.prompts = prompts

    async def suggest_feedback(self, discrepancies: str, record: Optional[RefinementRecord] = None) -> str:
        """Phrase the discrepancy report as if the user had written it."""
        system_prompt = self.prompts.render("suggested_user_feedback", discrepancies=discrepancies)
        result = ensure_success(
            await self.completions.complete(
                "suggested_user_feedback",
                system_prompt,
                "Write the feedback.",
                CompletionParams(temperature=config.CREATIVE_TEMPERATURE),
            )
        )
        feedback = result.text_response.strip()
        if record is not None:
            record.add(RefinementStage.SYNTHESIZE_FEEDBACK, "prompt", system_prompt)
            record.add(RefinementStage.SYNTHESIZE_FEEDBACK, "suggested feedback", feedback)
        return feedback

    async def rewrite(
        self,
        intended_scene: str,
        discrepancies: str,
        user_input: str,
        record: Optional[RefinementRecord] = None,
    ) -> str:
        """Propose a new prompt that addresses the discrepancies.

        Args:
            intended_scene: Prompt the current image was generated from.
            discrepancies: Discrepancy report.
            user_input: The user's input for this turn.
            record: Refinement log to append to.

        Returns:
            Rewritten prompt.
        """
        system_prompt = self.prompts.render(
            "rewrite_prompt",
            intended_scene=intended_scene,
            discrepancies=discrepancies,
            user_input=user_input,
        )
        result = ensure_success(
            await self.completions.complete(
                "rewrite_prompt",
                system_prompt,
                user_input,
                CompletionParams(temperature=config.CREATIVE_TEMPERATURE),
            )
        )
        rewritten = result.text_response.strip()
        if record is not None:
            record.add(RefinementStage.REWRITE_PROMPT, "prompt", system_prompt)
            record.add(RefinementStage.REWRITE_PROMPT, "rewritten prompt", rewritten)
        return rewritten

    async def reconcile(
        self,
        intended_scene: str,
        rewritten_prompt: str,
        user_input: str,
        record: Optional[RefinementRecord] = None,
    ) -> RefinedPrompt:
        """Fix scene-logic drift introduced by the rewrite.

        Returns:
            Final prompt and negative prompt.

        Raises:
            ResponseParseError: If the response lacks a usable ``prompt``.
        """
        system_prompt = self.prompts.render(
            "reconcile_prompt",
            intended_scene=intended_scene,
            rewritten_prompt=rewritten_prompt,
            user_input=user_input,
        )
        result = ensure_success(
            await self.completions.complete(
                "reconcile_prompt",
                system_prompt,
                rewritten_prompt,
                CompletionParams(temperature=config.SCENE_LOGIC_TEMPERATURE),
                expect_json=True,
            )
        )
        if record is not None:
            record.add(RefinementStage.RECONCILE, "prompt", system_prompt)
            record.add(RefinementStage.RECONCILE, "reconciled prompt", result.text_response)

        data = result.json_response
        if not isinstance(data, dict):
            raise ResponseParseError(f"Reconciled prompt is not an object: {result.text_response[:200]!r}")
        try:
            refined = RefinedPrompt.model_validate(data)
        except ValidationError as e:
            raise ResponseParseError(f"Reconciled prompt is missing fields: {e}") from e
        if not refined.prompt.strip():
            raise ResponseParseError("Reconciled prompt is empty")
        return refined
