"""Exception types raised by the image assistant core."""


class ImageChatError(Exception):
    """Base class for all errors raised by this package."""


class InputValidationError(ImageChatError, ValueError):
    """Caller input was rejected before any external call was made."""


class UpstreamServiceError(ImageChatError):
    """A completion, vision, generation or storage call failed."""

    def __init__(self, message: str, intent_ids: tuple[str, ...] = ()):
        super().__init__(message)
        self.intent_ids = intent_ids


class ResponseParseError(ImageChatError):
    """Structured output could not be coerced into the expected shape, even after repair."""


class ConsistencyError(ImageChatError):
    """Internal state contradicts what the caller asserted; treated as a defect."""


class IntentTypeError(ConsistencyError, TypeError):
    """An intent property was present but not of the requested type."""
