"""Error types raised by pubsubkit."""


class PubSubError(Exception):
    """Base class for pubsubkit errors."""


class SerializationError(PubSubError):
    """Payload could not be encoded. Nothing was sent."""


class InvalidMessageError(PubSubError):
    """Message cannot be published as given. Nothing was sent."""


class PreconditionError(PubSubError):
    """A resource required by the operation does not exist."""

    def __init__(self, topic_id: str) -> None:
        super().__init__(f"topic {topic_id!r} does not exist")
        self.topic_id = topic_id


class TransportError(PubSubError):
    """Failure reported by the Pub/Sub service or its client library.

    The message is the original failure's message, untouched. The original
    exception, when there is one, is kept on ``cause`` and chained as
    ``__cause__``.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    @classmethod
    def from_exception(cls, exc: BaseException) -> "TransportError":
        error = cls(str(exc), cause=exc)
        error.__cause__ = exc
        return error
