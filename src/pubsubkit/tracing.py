"""Trace context propagation via message attributes."""

from collections.abc import Mapping

from opentelemetry import propagate
from opentelemetry.context import Context

from pubsubkit.message import ReceivedMessage

TRACER_NAME = "pubsubkit"
MESSAGING_SYSTEM = "gcp_pubsub"


def inject_context(attributes: Mapping[str, str]) -> dict[str, str]:
    """Return attributes with the current trace context added.

    Keys already present in ``attributes`` are kept as they are.
    """
    carrier: dict[str, str] = {}
    propagate.inject(carrier)
    return {**carrier, **attributes}


def extract_context(message: ReceivedMessage) -> Context:
    """Extract trace context from message attributes.

    Returns the extracted Context, or the current context if none found.
    """
    return propagate.extract(message.attributes)
