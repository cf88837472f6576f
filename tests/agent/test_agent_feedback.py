"""Tests for progress and waiting phrases."""

import random

from agentdesk.agent.feedback import (
    QUICK_FEEDBACK,
    feedback_context,
    progress_message,
    quick_feedback,
    waiting_message,
)


class TestQuickFeedback:
    def test_known_tool_uses_table(self):
        phrase = quick_feedback("create_appointment", rng=random.Random(1))
        assert phrase in QUICK_FEEDBACK["create_appointment"]

    def test_unknown_tool_uses_generic_context(self):
        assert quick_feedback("get_business_info") == "I'm working on your request..."


class TestProgressMessage:
    def test_escalates_with_elapsed_time(self):
        assert progress_message("get_available_slots", 45) == (
            "I'm checking the schedule, one moment..."
        )
        assert progress_message("get_available_slots", 60) == (
            "Thanks for your patience, still checking the schedule..."
        )
        assert progress_message("get_available_slots", 95) == (
            "Sorry for the wait, I'm checking the schedule. Almost done..."
        )

    def test_context_default(self):
        assert feedback_context("unknown") == "working on your request"


class TestWaitingMessage:
    def test_short_wait(self):
        assert waiting_message(5, "Ana") == "One moment, I'm on it..."

    def test_long_wait_names_assistant(self):
        assert waiting_message(35, "Ana") == "Thanks for your patience, Ana is almost done..."
