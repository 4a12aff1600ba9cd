import html
import re
from typing import Any, Callable, Dict, Optional

# DOM events a variation may bind with an {{event}} placeholder
VALID_EVENTS = (
    "click",
    "submit",
    "focus",
    "blur",
    "change",
    "mouseover",
    "mouseout",
    "mousedown",
    "mouseup",
    "keypress",
    "keydown",
    "keyup",
)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z]+)\s*\}\}")


def event_payload(test_id: str, variation_id: str, event: str) -> Dict[str, Any]:
    """The payload an event submission for this binding must carry (and be signed over)."""
    return {"test_id": test_id, "variation_id": variation_id, "event": event}


def normalize_event(event: Optional[str]) -> Optional[str]:
    """Lowercased, trimmed event type, or None if it is not a bindable DOM event."""
    if not isinstance(event, str):
        return None
    event = event.strip().lower()
    return event if event in VALID_EVENTS else None


def event_attributes(
    test_id: str,
    variation_id: str,
    event: Optional[str],
    sign: Callable[[Dict[str, Any]], str],
) -> str:
    """
    Signed data attributes binding ``event`` on any element to a win for the
    variation. Empty for event types that cannot be bound.
    """
    event = normalize_event(event)
    if event is None:
        return ""

    code = sign(event_payload(test_id, variation_id, event))
    attributes = {
        "data-ab-test": test_id,
        "data-ab-variation": variation_id,
        "data-ab-event": event,
        "data-ab-code": code,
    }
    return " ".join(f'{name}="{html.escape(value)}"' for name, value in attributes.items())


def bind_events(
    text: str,
    test_id: str,
    variation_id: str,
    sign: Callable[[Dict[str, Any]], str],
) -> str:
    """
    Replaces ``{{event}}`` placeholders with data attributes the page script
    uses to submit a signed win. Unknown placeholders are left as written.
    """

    def replace(match: re.Match) -> str:
        binding = event_attributes(test_id, variation_id, match.group(1), sign)
        return binding or match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)
