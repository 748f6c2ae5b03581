"""Assembly of the prompts sent to completion and image models."""

import re
from typing import NamedTuple, Optional, Sequence

from .errors import InputValidationError
from .history import ConversationHistory
from .prompts import PromptLibrary
from .schemas import ParameterState

DUAL_ENCODER_SEPARATOR = " | "
_EOS_CHARS = (".", "!", "?")


class AssistantPrompts(NamedTuple):
    system_prompt: str
    user_prompt: str


def append_eos_char(text: str) -> str:
    """Terminate ``text`` with a period unless it already ends a sentence."""
    text = text.rstrip()
    if not text or text.endswith(_EOS_CHARS):
        return text
    return text + "."


def strip_first_occurrence(text: str, fragment: str) -> str:
    """Remove the first case-insensitive occurrence of ``fragment`` from ``text``."""
    if not fragment:
        return text
    return re.sub(re.escape(fragment), "", text, count=1, flags=re.IGNORECASE)


def adorn_user_input(user_input: str, wrong_content_text: Optional[str], prompts: PromptLibrary) -> str:
    """Add the focus directive for a wrong-content complaint.

    The complaint text is removed from the input so it is not repeated, and
    whatever remains is kept only if it says something meaningful.
    """
    if not wrong_content_text:
        return user_input
    directive = prompts.render("wrong_content_directive", complaint_text=wrong_content_text)
    remainder = strip_first_occurrence(user_input, wrong_content_text).strip()
    if len(remainder) > 5:
        return f"{directive} {remainder}"
    return directive


def build_image_assistant_prompts(
    user_input: str,
    wrong_content_text: Optional[str],
    history: ConversationHistory,
    is_new_session: bool,
    prompts: PromptLibrary,
    template_name: str = "main_image_generation_prompt",
    chat_history_volleys: int = 4,
) -> AssistantPrompts:
    """Build the system and user prompts for a prompt-composing completion.

    Args:
        user_input: The turn's input.
        wrong_content_text: Complaint text captured by the wrong-content rule.
            Only continuing sessions get the focus directive.
        history: Conversation so far, without the current turn.
        is_new_session: Whether this turn starts a new image.
        prompts: Template library.
        template_name: System prompt template.
        chat_history_volleys: Volleys of history offered to the template.

    Returns:
        System and user prompt pair.
    """
    system_prompt = prompts.render(
        template_name,
        faq=prompts.get("faq"),
        chat_history=history.build_chat_history_prompt(chat_history_volleys),
    )
    previous = history.get_last_volley()
    if is_new_session or previous is None or not previous.prompt:
        return AssistantPrompts(system_prompt, user_input)

    adorned = adorn_user_input(user_input, wrong_content_text, prompts)
    parts = [f"ORIGINAL IMAGE DESCRIPTION: {previous.prompt}"]
    if previous.negative_prompt:
        parts.append(f"THINGS TO AVOID: {previous.negative_prompt}")
    parts.append(f"USER FEEDBACK: {adorned}")
    return AssistantPrompts(system_prompt, "\n".join(parts))


def build_dual_encoder_prompt(prompt: str, summary: str) -> str:
    """Join a prompt and its summary as ``shorter | longer``.

    The short-context encoder reads the first segment, so the more concise
    text always goes first regardless of which field held it.
    """
    if not prompt or not prompt.strip() or not summary or not summary.strip():
        raise InputValidationError("Both prompt and summary are required for a dual-encoder prompt")
    prompt, summary = prompt.strip(), summary.strip()
    shorter, longer = (summary, prompt) if len(summary) <= len(prompt) else (prompt, summary)
    return f"{shorter}{DUAL_ENCODER_SEPARATOR}{longer}"


def split_dual_encoder_prompt(text: str) -> tuple[str, Optional[str]]:
    """Inverse of ``build_dual_encoder_prompt``; the second part is None for plain prompts."""
    if DUAL_ENCODER_SEPARATOR not in text:
        return text, None
    first, second = text.split(DUAL_ENCODER_SEPARATOR, 1)
    return first, second


def build_response_to_user(
    prompt: str,
    state: ParameterState,
    change_descriptions: Sequence[str] = (),
    suggested_feedback: str = "",
) -> str:
    lines = []
    if suggested_feedback:
        lines.append(f"I reviewed the last image and noticed: {suggested_feedback}")
    lines.extend(change_descriptions)
    lines.append(f"Prompt: {prompt}")
    lines.append(state.describe_generation_parameters())
    return "\n".join(lines)
