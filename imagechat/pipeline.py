"""Auto-refinement pipeline: inspect the active image and correct its prompt."""

import json
import logging
from pathlib import Path

from .critic import ImageCritic, count_reported_discrepancies
from .errors import ConsistencyError
from .history import ConversationHistory
from .refiner import PromptRefiner
from .schemas import BaseLevelPrompt, RefinementRecord, RefinementResult, RefinementStage
from .storage import ObjectStore, fetch_image_package, safe_filename_from_url

LOGGER = logging.getLogger(__name__)


class RefinementPipeline:
    """Runs DESCRIBE, COMPARE, SYNTHESIZE_FEEDBACK, REWRITE_PROMPT and RECONCILE once, in order."""

    def __init__(
        self,
        critic: ImageCritic,
        refiner: PromptRefiner,
        store: ObjectStore,
        log_dir: Path,
    ):
        """Initialize the pipeline.

        Args:
            critic: Vision critic for the describe and compare stages.
            refiner: Prompt refiner for the remaining stages.
            store: Object store holding the active image.
            log_dir: Directory for refinement log files.
        """
        self.critic = critic
        self.refiner = refiner
        self.store = store
        self.log_dir = Path(log_dir)

    def log_path_for(self, image_url: str) -> Path:
        return self.log_dir / f"{safe_filename_from_url(image_url)}-refinement-log.json"

    def _save_record(self, record: RefinementRecord) -> Path:
        """Save the refinement log to JSON."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_path_for(record.image_url)
        with open(path, "w") as f:
            json.dump(record.model_dump(mode="json"), f, indent=2, default=str)
        return path

    async def run(
        self,
        user_input: str,
        base_level_prompt: BaseLevelPrompt,
        active_image_url: str,
        history: ConversationHistory,
    ) -> RefinementResult:
        """Run one refinement pass over the active image.

        The scene the image was supposed to show is the previous volley's
        prompt. The log is written whether or not the pass completes.

        Args:
            user_input: The user's input for this turn.
            base_level_prompt: Latest human-originated scene description.
            active_image_url: URL of the image being refined.
            history: Conversation so far, without the current turn.

        Returns:
            Suggested feedback and the reconciled prompt pair.

        Raises:
            ConsistencyError: If there is no previous volley to refine.
            InputValidationError: If the active image is not in the object store.
        """
        previous = history.get_last_volley()
        if previous is None:
            raise ConsistencyError("Refinement requires a previous volley")
        intended_scene = previous.prompt or base_level_prompt.prompt

        record = RefinementRecord(image_url=active_image_url)
        record.add(RefinementStage.DESCRIBE, "base-level prompt", base_level_prompt.prompt)
        try:
            LOGGER.info("Refinement stage %s", RefinementStage.DESCRIBE.value)
            image = fetch_image_package(self.store, active_image_url)
            description = await self.critic.describe(image, record)

            LOGGER.info("Refinement stage %s", RefinementStage.COMPARE.value)
            discrepancies = await self.critic.find_discrepancies(
                image, intended_scene, description, record
            )

            LOGGER.info("Refinement stage %s", RefinementStage.SYNTHESIZE_FEEDBACK.value)
            feedback = await self.refiner.suggest_feedback(discrepancies, record)

            LOGGER.info("Refinement stage %s", RefinementStage.REWRITE_PROMPT.value)
            rewritten = await self.refiner.rewrite(intended_scene, discrepancies, user_input, record)

            LOGGER.info("Refinement stage %s", RefinementStage.RECONCILE.value)
            refined = await self.refiner.reconcile(intended_scene, rewritten, user_input, record)

            record.completed = True
            LOGGER.info("Refinement stage %s", RefinementStage.DONE.value)
        finally:
            path = self._save_record(record)
            LOGGER.debug("Refinement log written to %s", path)

        return RefinementResult(
            suggested_feedback=feedback,
            prompt=refined.prompt,
            negative_prompt=refined.negative_prompt or base_level_prompt.negative_prompt,
            num_discrepancies=count_reported_discrepancies(discrepancies),
            record=record,
        )
