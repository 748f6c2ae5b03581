"""Configuration settings for the conversational image assistant."""

import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Paths
PROJECT_ROOT = Path(__file__).parent
DATA_DIR = PROJECT_ROOT / "data"

# Generation models
DEFAULT_MODEL_ID = "ByteDance/SDXL-Lightning"
TEXT_CAPABLE_MODEL_ID = "black-forest-labs/FLUX.1-dev"
IMAGE_SIZE = 1024

# Generation parameter defaults
DEFAULT_GUIDANCE_SCALE = 2.0
DEFAULT_STEPS = 20
DEFAULT_TEMPERATURE = 0.1  # Accuracy first; clamped up to MIN_TEMPERATURE at turn end

# Ceilings
MAX_GUIDANCE_SCALE = 9.0
MAX_GUIDANCE_SCALE_PHOTOREALISTIC = 7.0
MAX_STEPS = 22

# Floors
MIN_STEPS = 8
MIN_STEPS_FOR_TEXT = 15
MIN_GUIDANCE_SCALE_FOR_TEXT = 3.5
MIN_TEMPERATURE = 0.4
MAX_TEMPERATURE = 1.0

# Adjustment deltas
NUM_STEPS_ADJUSTMENT_VALUE = 2
NUM_GUIDANCE_SCALE_ADJUSTMENT_VALUE = 1.0
NUM_TEMPERATURE_ADJUSTMENT_VALUE = 0.1

# Prompts that match this pattern get the photorealistic guidance ceiling
PHOTOREALISTIC_PATTERN = r"\breal\b|realism|realistic"

# Chat history
CHAT_HISTORY_VOLLEYS = 4

# Completion temperatures for fixed-purpose calls
INTENT_TEMPERATURE = 0.1
CREATIVE_TEMPERATURE = 0.5
SCENE_LOGIC_TEMPERATURE = 0.3

# Default negative prompt
DEFAULT_NEGATIVE_PROMPT = (
    "blurry, low quality, distorted, deformed, ugly, bad anatomy, "
    "bad proportions, extra limbs, cloned face, disfigured, "
    "out of frame, watermark, signature"
)

ENV_PREFIX = "IMAGECHAT_"
DEV_PREFIX = "DEV_"


class MissingSecretError(KeyError):
    """A required secret was found neither in the secrets mapping nor the environment."""


class Settings(BaseModel):
    """Runtime configuration handed explicitly to every component that needs it."""

    llm_provider: Literal["openai", "anthropic", "sambanova"] = Field(
        default="openai",
        description="Provider for text and vision completions",
    )
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    sambanova_api_key: Optional[str] = None
    sambanova_base_url: str = "https://api.sambanova.ai/v1"
    text_model: Optional[str] = Field(
        default=None,
        description="Text completion model name, provider default if None",
    )
    vision_model: Optional[str] = Field(
        default=None,
        description="Vision completion model name, provider default if None",
    )
    data_dir: Path = DATA_DIR
    prompts_dir: Optional[Path] = Field(
        default=None,
        description="Directory of <template>.txt files overriding built-in prompts",
    )
    object_store_base_url: Optional[str] = Field(
        default=None,
        description="Prefix for URLs handed out by the object store, file URI of its root if None",
    )
    chat_history_volleys: int = CHAT_HISTORY_VOLLEYS
    give_chat_history_to_intents: bool = False
    enable_speed_complaint_rule: bool = False
    lock_generation_model: bool = False
    is_development: bool = False

    @property
    def chat_history_dir(self) -> Path:
        return self.data_dir / "chat-history"

    @property
    def refinement_log_dir(self) -> Path:
        return self.data_dir / "refinement-logs"

    @property
    def object_store_dir(self) -> Path:
        return self.data_dir / "objects"

    def api_key_for(self, provider: str) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "sambanova": self.sambanova_api_key,
        }.get(provider)

    @classmethod
    def from_env(
        cls,
        secrets: Optional[Mapping[str, str]] = None,
        env_file: Optional[Path] = None,
        **overrides,
    ) -> "Settings":
        """Build settings from a secrets mapping and the process environment.

        This is the initialization step callers run once before building
        components. ``.env`` is loaded first, then each value is resolved
        through ``resolve_secret``.

        Args:
            secrets: Values from a secret manager, consulted before the environment.
            env_file: Optional path to a dotenv file. Uses ``.env`` lookup if None.
            **overrides: Field values that win over anything resolved.

        Returns:
            Populated settings instance.
        """
        load_dotenv(env_file)
        secrets = secrets or {}
        is_development = (
            resolve_secret("ENV", secrets, prefixed=True) or "production"
        ).lower() == "development"

        def get(name: str, prefixed: bool = False) -> Optional[str]:
            return resolve_secret(name, secrets, dev=is_development, prefixed=prefixed)

        values = {
            "openai_api_key": get("OPENAI_API_KEY"),
            "anthropic_api_key": get("ANTHROPIC_API_KEY"),
            "sambanova_api_key": get("SAMBANOVA_API_KEY"),
            "is_development": is_development,
        }
        optional = {
            "llm_provider": get("LLM_PROVIDER"),
            "sambanova_base_url": get("SAMBANOVA_BASE_URL"),
            "text_model": get("TEXT_MODEL", prefixed=True),
            "vision_model": get("VISION_MODEL", prefixed=True),
            "data_dir": get("DATA_DIR", prefixed=True),
            "prompts_dir": get("PROMPTS_DIR", prefixed=True),
            "object_store_base_url": get("OBJECT_STORE_BASE_URL", prefixed=True),
            "chat_history_volleys": get("CHAT_HISTORY_VOLLEYS", prefixed=True),
            "give_chat_history_to_intents": get("GIVE_CHAT_HISTORY_TO_INTENTS", prefixed=True),
            "enable_speed_complaint_rule": get("ENABLE_SPEED_COMPLAINT_RULE", prefixed=True),
            "lock_generation_model": get("LOCK_GENERATION_MODEL", prefixed=True),
        }
        values.update({k: v for k, v in optional.items() if v is not None})
        values.update(overrides)
        return cls(**values)

    def require(self, name: str) -> str:
        """Return a configured string field or raise if it is unset."""
        value = getattr(self, name, None)
        if not value:
            raise MissingSecretError(f"Required setting is not configured: {name}")
        return value


def resolve_secret(
    name: str,
    secrets: Mapping[str, str],
    dev: bool = False,
    prefixed: bool = False,
) -> Optional[str]:
    """Look a value up in the secrets mapping, then the environment.

    In development a ``DEV_`` prefixed variant wins over the plain name.

    Args:
        name: Variable name without prefixes.
        secrets: Secret-manager values.
        dev: Whether development overrides apply.
        prefixed: Whether the variable carries the ``IMAGECHAT_`` prefix.

    Returns:
        The resolved value, or None if nothing is set.
    """
    key = f"{ENV_PREFIX}{name}" if prefixed else name
    candidates = [f"{DEV_PREFIX}{key}", key] if dev else [key]
    for candidate in candidates:
        if secrets.get(candidate):
            return secrets[candidate]
    for candidate in candidates:
        value = os.getenv(candidate)
        if value:
            return value
    return None
