"""Short progress phrases shown while the agent works.

Phrases are looked up by tool name. Waiting messages for the turn-level
fallback depend on how long the customer has been waiting.
"""

import random

FEEDBACK_CONTEXTS: dict[str, str] = {
    "get_services": "checking the available services",
    "get_specialists": "looking up our specialists",
    "get_available_slots": "checking the schedule",
    "get_appointments_by_phone": "looking up your appointments",
    "create_appointment": "booking your appointment",
    "cancel_appointment": "cancelling the appointment",
    "reschedule_appointment": "rescheduling the appointment",
}

QUICK_FEEDBACK: dict[str, list[str]] = {
    "get_services": ["Checking services...", "One moment..."],
    "get_specialists": ["Looking up specialists...", "Checking the team..."],
    "get_available_slots": ["Checking times...", "Looking at the schedule..."],
    "get_appointments_by_phone": ["Looking up your appointments...", "Checking history..."],
    "create_appointment": ["Booking...", "Confirming your appointment..."],
    "cancel_appointment": ["Processing the cancellation..."],
    "reschedule_appointment": ["Rescheduling..."],
}

# Elapsed-seconds thresholds for progress wording
WORKING_AFTER = 45.0
PATIENCE_AFTER = 60.0
APOLOGY_AFTER = 90.0


def feedback_context(tool_name: str) -> str:
    return FEEDBACK_CONTEXTS.get(tool_name, "working on your request")


def quick_feedback(tool_name: str, rng: random.Random | None = None) -> str:
    """Pick a short phrase announcing a tool call."""
    choices = QUICK_FEEDBACK.get(tool_name) or [f"I'm {feedback_context(tool_name)}..."]
    return (rng or random).choice(choices)


def progress_message(tool_name: str, elapsed_seconds: float) -> str:
    """Progress wording for a long-running tool, escalating with elapsed time."""
    context = feedback_context(tool_name)
    if elapsed_seconds >= APOLOGY_AFTER:
        return f"Sorry for the wait, I'm {context}. Almost done..."
    if elapsed_seconds >= PATIENCE_AFTER:
        return f"Thanks for your patience, still {context}..."
    return f"I'm {context}, one moment..."


def waiting_message(elapsed_seconds: float, assistant_name: str) -> str:
    """Fallback spoken to the customer when no text has arrived yet."""
    if elapsed_seconds <= 5:
        return "One moment, I'm on it..."
    return f"Thanks for your patience, {assistant_name} is almost done..."
