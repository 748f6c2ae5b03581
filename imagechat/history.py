"""Per-user conversation history and its file-backed store."""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import InputValidationError
from .schemas import AssistantKind, BaseLevelPrompt, Volley

LOGGER = logging.getLogger(__name__)

_INVALID_USER_ID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F]')

CHAT_HISTORY_PREAMBLE = (
    "Below is the recent history of this conversation, oldest first. "
    "Use it to resolve references to earlier requests."
)


class ConversationHistory(BaseModel):
    """Ordered volleys for one user and assistant kind. Insertion order is chronological."""

    assistant_kind: AssistantKind = AssistantKind.IMAGE
    volleys: list[Volley] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.volleys

    def add_volley(self, volley: Volley) -> None:
        self.volleys.append(volley)

    def get_last_volley(self) -> Optional[Volley]:
        return self.volleys[-1] if self.volleys else None

    def build_chat_history_prompt(self, num_volleys: int = 4) -> str:
        """Summarize the most recent volleys for inclusion in a prompt.

        Args:
            num_volleys: How many volleys to include. -1 includes all of them.

        Returns:
            Preamble followed by one block per volley, or an empty string if
            there is no history.
        """
        if isinstance(num_volleys, bool) or not isinstance(num_volleys, int):
            raise InputValidationError(f"num_volleys must be an integer, got {num_volleys!r}")
        if num_volleys != -1 and num_volleys < 1:
            raise InputValidationError(f"num_volleys must be -1 or at least 1, got {num_volleys}")
        if not self.volleys:
            return ""

        selected = self.volleys if num_volleys == -1 else self.volleys[-num_volleys:]
        blocks = "\n\n".join(v.summary_text() for v in selected)
        return f"{CHAT_HISTORY_PREAMBLE}\n\n{blocks}"

    def get_last_session_start(self, user_input: str) -> Optional[str]:
        """Concatenate every user input since the most recent session start.

        The result holds the session-opening input, every intervening input
        in chronological order, and finally ``user_input``.

        Returns:
            The combined text, or None if no volley opens a session.
        """
        if not user_input or not user_input.strip():
            raise InputValidationError("user_input must not be blank")

        for index in range(len(self.volleys) - 1, -1, -1):
            if self.volleys[index].is_new_session:
                inputs = [v.user_input for v in self.volleys[index:]]
                inputs.append(user_input)
                return "\n".join(inputs)

        LOGGER.error("No session start found in %d volleys", len(self.volleys))
        return None

    def get_last_zero_iteration_volley(self) -> Optional[Volley]:
        for volley in reversed(self.volleys):
            if volley.state_after.refinement_iteration_count == 0:
                return volley
        return None

    def get_last_base_level_prompt(self) -> Optional[BaseLevelPrompt]:
        """The latest human-originated scene description.

        A session-opening volley contributes its raw user input; any other
        manually authored volley contributes its composed prompt.
        """
        volley = self.get_last_zero_iteration_volley()
        if volley is None:
            return None
        prompt = volley.user_input if volley.is_new_session else volley.prompt
        return BaseLevelPrompt(prompt=prompt, negative_prompt=volley.negative_prompt)


class ConversationStore:
    """JSON file per (user, assistant kind), replaced in full on every write."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, user_id: str, kind: AssistantKind) -> Path:
        if not user_id or not user_id.strip():
            raise InputValidationError("user_id must not be blank")
        if _INVALID_USER_ID_CHARS.search(user_id):
            raise InputValidationError(f"user_id contains invalid characters: {user_id!r}")
        kind = AssistantKind(kind)
        return self.directory / f"{user_id}--{kind.value}-chat-history.json"

    def load(self, user_id: str, kind: AssistantKind) -> ConversationHistory:
        """Load a history, degrading to an empty one if it is missing or unreadable."""
        path = self.path_for(user_id, kind)
        empty = ConversationHistory(assistant_kind=kind)
        if not path.exists():
            return empty
        try:
            return ConversationHistory.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            LOGGER.warning("Ignoring unreadable chat history %s: %s", path, e)
            return empty

    def save(self, user_id: str, kind: AssistantKind, history: ConversationHistory) -> Path:
        path = self.path_for(user_id, kind)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(history.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path

    def append(self, user_id: str, kind: AssistantKind, volley: Volley) -> ConversationHistory:
        """Append one volley and persist the whole history."""
        history = self.load(user_id, kind)
        history.add_volley(volley)
        self.save(user_id, kind, history)
        return history
