"""Tests for the client connection state machine."""

import pytest

from agentdesk.transport.client_state import (
    ClientState,
    ClientStateMachine,
    InvalidTransition,
)


@pytest.fixture
def machine() -> ClientStateMachine:
    return ClientStateMachine()


class TestTransitions:
    def test_happy_path(self, machine):
        machine.begin_connect()
        assert machine.state is ClientState.connecting
        machine.mark_connected()
        assert machine.is_connected and not machine.is_processing
        machine.begin_turn()
        assert machine.is_processing
        machine.end_turn()
        assert machine.state is ClientState.connected

    def test_turn_requires_connection(self, machine):
        with pytest.raises(InvalidTransition, match="Cannot begin_turn while idle"):
            machine.begin_turn()

    def test_no_overlapping_turns(self, machine):
        machine.begin_connect()
        machine.mark_connected()
        machine.begin_turn()
        with pytest.raises(InvalidTransition):
            machine.begin_turn()

    def test_fail_and_reconnect(self, machine):
        machine.begin_connect()
        machine.fail("refused")
        assert machine.state is ClientState.error
        assert machine.last_error == "refused"

        machine.begin_connect()
        assert machine.last_error is None

    def test_reset_from_anywhere(self, machine):
        machine.begin_connect()
        machine.mark_connected()
        machine.begin_turn()
        machine.reset()
        assert machine.state is ClientState.idle


class TestListeners:
    def test_listener_sees_changes(self, machine):
        changes = []
        machine.add_listener(lambda prev, cur: changes.append((prev, cur)))
        machine.begin_connect()
        machine.reset()
        machine.reset()

        assert changes == [
            (ClientState.idle, ClientState.connecting),
            (ClientState.connecting, ClientState.idle),
        ]

    def test_failing_listener_does_not_block(self, machine):
        def broken(prev, cur):
            raise RuntimeError("ui gone")

        machine.add_listener(broken)
        machine.begin_connect()
        assert machine.state is ClientState.connecting

        machine.remove_listener(broken)
        machine.remove_listener(broken)
