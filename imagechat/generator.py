"""Image generation via Diffusers."""

import asyncio
import inspect
import logging
import random
from io import BytesIO
from typing import Optional

import torch
from diffusers import AutoPipelineForText2Image, DiffusionPipeline
from PIL import Image

import config

from .assembly import split_dual_encoder_prompt
from .schemas import ImageModelId, ParameterState
from .storage import LocalObjectStore

LOGGER = logging.getLogger(__name__)

# SDXL-Lightning ships as LoRA weights on top of the SDXL base model
SDXL_BASE_MODEL_ID = "stabilityai/stable-diffusion-xl-base-1.0"
LIGHTNING_LORA_WEIGHTS = "sdxl_lightning_8step_lora.safetensors"

GENERATED_IMAGES_PREFIX = "generated-images"


class DiffusersImageGenerator:
    """Generates images locally and uploads them to the object store."""

    def __init__(
        self,
        store: LocalObjectStore,
        device: str = "cuda",
        dtype: torch.dtype = torch.float16,
        width: int = config.IMAGE_SIZE,
        height: int = config.IMAGE_SIZE,
    ):
        """Initialize the generator.

        Args:
            store: Object store receiving generated images.
            device: Device to run inference on.
            dtype: Torch dtype for model weights.
            width: Output image width.
            height: Output image height.
        """
        self.store = store
        self.device = device
        self.dtype = dtype
        self.width = width
        self.height = height
        self._pipelines: dict[ImageModelId, DiffusionPipeline] = {}

    def pipeline_for(self, model_id: ImageModelId) -> DiffusionPipeline:
        """Lazy-load the pipeline for a model on first use."""
        if model_id not in self._pipelines:
            LOGGER.info("Loading diffusers pipeline for %s", model_id.value)
            if model_id == ImageModelId.BYTEDANCE_LIGHTNING:
                pipeline = AutoPipelineForText2Image.from_pretrained(
                    SDXL_BASE_MODEL_ID, torch_dtype=self.dtype
                )
                pipeline.load_lora_weights(model_id.value, weight_name=LIGHTNING_LORA_WEIGHTS)
                pipeline.fuse_lora()
            else:
                pipeline = AutoPipelineForText2Image.from_pretrained(
                    model_id.value, torch_dtype=self.dtype
                )
            pipeline.to(self.device)
            # Enable memory optimizations
            pipeline.enable_attention_slicing()
            self._pipelines[model_id] = pipeline
        return self._pipelines[model_id]

    def _generate_sync(
        self,
        prompt: str,
        negative_prompt: str,
        state: ParameterState,
        seed: Optional[int],
    ) -> Image.Image:
        pipeline = self.pipeline_for(state.model_id)
        accepted = inspect.signature(pipeline.__call__).parameters

        if seed is None:
            seed = random.randint(0, 2**32 - 1)
        generator = torch.Generator(device=self.device).manual_seed(seed)

        short_prompt, long_prompt = split_dual_encoder_prompt(prompt)
        kwargs = {
            "prompt": short_prompt,
            "num_inference_steps": state.steps,
            "guidance_scale": state.guidance_scale,
            "width": self.width,
            "height": self.height,
            "generator": generator,
        }
        if long_prompt and "prompt_2" in accepted:
            kwargs["prompt_2"] = long_prompt
        if negative_prompt and "negative_prompt" in accepted:
            kwargs["negative_prompt"] = negative_prompt

        LOGGER.info(
            "Generating with %s: steps=%d guidance=%g seed=%d",
            state.model_id.value, state.steps, state.guidance_scale, seed,
        )
        return pipeline(**kwargs).images[0]

    async def generate(
        self,
        prompt: str,
        negative_prompt: str,
        state: ParameterState,
        seed: Optional[int] = None,
    ) -> list[str]:
        """Generate an image and upload it.

        Args:
            prompt: Generation prompt, optionally in ``short | long`` form.
            negative_prompt: Things to avoid in the image.
            state: Parameters selecting the model, steps and guidance.
            seed: Random seed for reproducibility. Random if None.

        Returns:
            URLs of the uploaded images.
        """
        image = await asyncio.to_thread(self._generate_sync, prompt, negative_prompt, state, seed)
        buffer = BytesIO()
        image.convert("RGB").save(buffer, format="JPEG", quality=92)
        url = self.store.put_content_addressed(buffer.getvalue(), GENERATED_IMAGES_PREFIX, "jpg")
        self.clear_cache()
        return [url]

    def clear_cache(self) -> None:
        """Clear CUDA cache to free memory."""
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
