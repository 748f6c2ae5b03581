"""Prompt templates and the substitution function that fills them."""

import logging
import re
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConsistencyError

LOGGER = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute(template: str, variables: Mapping[str, object]) -> str:
    """Replace every ``${name}`` in ``template`` with ``variables[name]``.

    Raises:
        ConsistencyError: If the template references a name not in ``variables``.
    """
    missing = sorted({m.group(1) for m in _PLACEHOLDER.finditer(template)} - set(variables))
    if missing:
        raise ConsistencyError(f"Template variables not provided: {', '.join(missing)}")
    return _PLACEHOLDER.sub(lambda m: str(variables[m.group(1)]), template)


INTENT_PREAMBLE = """You are an intent detector for an image generation assistant. Read the user input and answer ONLY with a JSON object, no commentary.

"""

INTENT_TEMPLATES = {
    "is_text_wanted_on_image": INTENT_PREAMBLE + """Does the user want readable text (letters, words, signs, captions, logos) rendered inside the image?

Answer with: {"is_text_wanted_on_image": true|false, "text": "<the requested text or empty>"}""",

    "start_new_image": INTENT_PREAMBLE + """Is the user explicitly asking to abandon the current image and start over with a brand new one?

Answer with: {"start_new_image": true|false}""",

    "nature_of_user_request": INTENT_PREAMBLE + """Classify the request. Use "create_new_image_request" if the input describes a completely new scene unrelated to modifying an existing image, otherwise "modify_existing_image_request".

Answer with: {"nature_of_user_request": "create_new_image_request"|"modify_existing_image_request"}""",

    "user_complaint_image_quality_or_wrong_content": INTENT_PREAMBLE + """List every complaint the user makes about the image. Allowed complaint types:
- blurry: the image is blurry, fuzzy or lacks detail
- wrong_content: something in the image is missing, wrong or different from what was asked
- problems_with_text: text in the image is misspelled or garbled
- boring: the image is dull, plain or uninteresting

Answer with a JSON array, one object per complaint, or [] if there are none:
[{"complaint_type": "<type>", "complaint_text": "<the user's words for it>"}]""",

    "user_complaint_image_generation_speed": INTENT_PREAMBLE + """Is the user complaining that image generation takes too long?

Answer with: {"complaint_type": "generate_image_too_slow"} if so, otherwise {"complaint_type": "none"}""",
}

EXTENDED_WRONG_CONTENT_TEMPLATE = INTENT_PREAMBLE + """The previous image was generated from this prompt:

${previous_prompt}

Compare the user's feedback with that prompt. List every element the user says is wrong or missing from the image.

Answer with a JSON array: [{"complaint_type": "wrong_content", "complaint_text": "<the element>"}] or []"""

DESCRIBE_IMAGE_TEMPLATE = """You are an expert at describing images precisely. Describe everything visible in the image: subjects, their attributes and poses, setting, composition, lighting, style and any text. Do not speculate about intent."""

IMAGE_DISCREPANCIES_TEMPLATE = """You compare generated images against the scene they were supposed to depict.

INTENDED SCENE:
${intended_scene}

DESCRIPTION OF THE GENERATED IMAGE:
${image_description}

Look at the image and list every discrepancy between the intended scene and what was actually generated. Write one discrepancy per line, each starting with "- ". If there are none, answer "NONE"."""

SUGGESTED_FEEDBACK_TEMPLATE = """You turn a discrepancy report into the feedback a user would give after looking at the image. Write it in the first person, briefly, the way a user would type it in a chat. Mention every discrepancy.

DISCREPANCY REPORT:
${discrepancies}"""

REWRITE_PROMPT_TEMPLATE = """You are an expert prompt engineer for diffusion image models. Rewrite the generation prompt so that the next image fixes every discrepancy listed below while keeping everything else from the intended scene.

INTENDED SCENE:
${intended_scene}

DISCREPANCIES:
${discrepancies}

USER FEEDBACK:
${user_input}

Answer with the new prompt only."""

RECONCILE_PROMPT_TEMPLATE = """You check image generation prompts for scene-logic problems: contradictions, elements that cannot coexist, or details that drifted away from the intended scene. Fix them with minimal changes.

INTENDED SCENE:
${intended_scene}

USER FEEDBACK:
${user_input}

PROPOSED PROMPT:
${rewritten_prompt}

Answer ONLY with a JSON object: {"prompt": "<fixed prompt>", "negative_prompt": "<things to avoid>"}"""

DECOMPOSE_SCENE_LOGIC_TEMPLATE = """You turn a user's image request into a precise prompt for a diffusion model. Decompose the scene into its subjects, their attributes and relations, the setting, the style and the lighting, resolve any contradictions, then write a single descriptive prompt. Answer with the prompt only."""

MAIN_IMAGE_GENERATION_TEMPLATE = """You are an image generation assistant that writes prompts for diffusion models.

Frequently asked questions about this assistant:
${faq}

${chat_history}

From the user input write a detailed prompt, a negative prompt listing what to avoid, and a short summary of the prompt of at most 60 words. Answer ONLY with a JSON object:
{"prompt": "<detailed prompt>", "negative_prompt": "<things to avoid>", "prompt_summary": "<short summary>", "user_input_has_complaints": true|false}"""

FAQ_TEXT = """Q: Can I change an image I already made? A: Yes, describe what to change and the assistant will modify the current image.
Q: How do I start over? A: Ask for a new image.
Q: Can images contain text? A: Yes, ask for the text explicitly and a text-capable model is used."""

WRONG_CONTENT_DIRECTIVE = """<complaint>${complaint_text}</complaint> Make the element described in the complaint the main focus of the image while keeping all other elements."""

DEFAULT_TEMPLATES = {
    **INTENT_TEMPLATES,
    "extended_wrong_content": EXTENDED_WRONG_CONTENT_TEMPLATE,
    "describe_image": DESCRIBE_IMAGE_TEMPLATE,
    "image_discrepancies": IMAGE_DISCREPANCIES_TEMPLATE,
    "suggested_user_feedback": SUGGESTED_FEEDBACK_TEMPLATE,
    "rewrite_prompt": REWRITE_PROMPT_TEMPLATE,
    "reconcile_prompt": RECONCILE_PROMPT_TEMPLATE,
    "decompose_scene_logic": DECOMPOSE_SCENE_LOGIC_TEMPLATE,
    "main_image_generation_prompt": MAIN_IMAGE_GENERATION_TEMPLATE,
    "faq": FAQ_TEXT,
    "wrong_content_directive": WRONG_CONTENT_DIRECTIVE,
}


class PromptLibrary:
    """Named prompt templates, optionally overridden by files on disk."""

    def __init__(self, templates: Optional[Mapping[str, str]] = None):
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)

    @classmethod
    def load(cls, prompts_dir: Optional[Path] = None) -> "PromptLibrary":
        """Build a library, overriding any template that has a ``<name>.txt`` in ``prompts_dir``."""
        overrides = {}
        if prompts_dir is not None:
            for path in sorted(Path(prompts_dir).glob("*.txt")):
                if path.stem not in DEFAULT_TEMPLATES:
                    LOGGER.warning("Ignoring unknown prompt template file %s", path)
                    continue
                overrides[path.stem] = path.read_text(encoding="utf-8").strip()
        return cls(overrides)

    def get(self, name: str) -> str:
        try:
            return self.templates[name]
        except KeyError:
            raise ConsistencyError(f"Unknown prompt template: {name}") from None

    def render(self, name: str, **variables) -> str:
        return substitute(self.get(name), variables)
