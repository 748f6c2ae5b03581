"""Vision critic that describes the active image and diagnoses what it got wrong."""

import logging
import re
from typing import Optional

import config

from .llm import CompletionService, ensure_success
from .prompts import PromptLibrary
from .schemas import CompletionParams, RefinementRecord, RefinementStage
from .storage import ImagePackage

LOGGER = logging.getLogger(__name__)

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+\S", re.MULTILINE)


def count_reported_discrepancies(report: str) -> int:
    """Number of bullet or numbered lines in a discrepancy report."""
    return len(_BULLET.findall(report or ""))


class ImageCritic:
    """Inspects images using vision-capable LLMs."""

    def __init__(self, completions: CompletionService, prompts: PromptLibrary):
        """Initialize the critic.

        Args:
            completions: Service used for vision calls.
            prompts: Template library.
        """
        self.completions = completions
        self.prompts = prompts

    async def describe(self, image: ImagePackage, record: Optional[RefinementRecord] = None) -> str:
        """Describe everything visible in the image.

        Args:
            image: The image to describe.
            record: Refinement log to append the prompt and output to.

        Returns:
            Free-text description.
        """
        system_prompt = self.prompts.get("describe_image")
        result = ensure_success(
            await self.completions.recognize(
                "describe_image",
                system_prompt,
                image,
                CompletionParams(temperature=config.INTENT_TEMPERATURE),
                user_text="Describe this image.",
            )
        )
        if record is not None:
            record.add(RefinementStage.DESCRIBE, "prompt", system_prompt)
            record.add(RefinementStage.DESCRIBE, "image description", result.text_response)
        return result.text_response

    async def find_discrepancies(
        self,
        image: ImagePackage,
        intended_scene: str,
        description: str,
        record: Optional[RefinementRecord] = None,
    ) -> str:
        """Compare the image with the scene it was supposed to depict.

        Args:
            image: The generated image.
            intended_scene: Prompt the image was generated from.
            description: Output of ``describe`` for the same image.
            record: Refinement log to append the prompt and output to.

        Returns:
            Discrepancy report, one bullet per discrepancy.
        """
        system_prompt = self.prompts.render(
            "image_discrepancies",
            intended_scene=intended_scene,
            image_description=description,
        )
        result = ensure_success(
            await self.completions.recognize(
                "image_discrepancies",
                system_prompt,
                image,
                CompletionParams(temperature=config.INTENT_TEMPERATURE),
                user_text="List the discrepancies.",
            )
        )
        if record is not None:
            record.add(RefinementStage.COMPARE, "prompt", system_prompt)
            record.add(RefinementStage.COMPARE, "discrepancy report", result.text_response)
        LOGGER.info("Found %d discrepancies", count_reported_discrepancies(result.text_response))
        return result.text_response
