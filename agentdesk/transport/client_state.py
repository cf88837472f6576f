"""Connection state machine shared by the transport clients.

States: ``idle -> connecting -> connected <-> processing``; any state can
fail into ``error`` and ``reset`` returns to ``idle``. Illegal transitions
raise InvalidTransition instead of silently corrupting state.
"""

import logging
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    idle = "idle"
    connecting = "connecting"
    connected = "connected"
    processing = "processing"
    error = "error"


class InvalidTransition(RuntimeError):
    """A transition was requested from a state that does not allow it."""

    def __init__(self, transition: str, state: ClientState):
        self.transition = transition
        self.state = state
        super().__init__(f"Cannot {transition} while {state.value}")


StateListener = Callable[[ClientState, ClientState], None]


class ClientStateMachine:
    """Explicit client state with named transitions.

    Listeners are called as ``listener(previous, current)`` after every
    change. A listener that raises is logged and does not block the
    transition.
    """

    _ALLOWED: dict[str, tuple[ClientState, ...]] = {
        "begin_connect": (ClientState.idle, ClientState.error),
        "mark_connected": (ClientState.connecting,),
        "begin_turn": (ClientState.connected,),
        "end_turn": (ClientState.processing,),
    }

    def __init__(self) -> None:
        self._state = ClientState.idle
        self._listeners: list[StateListener] = []
        self.last_error: str | None = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (ClientState.connected, ClientState.processing)

    @property
    def is_processing(self) -> bool:
        return self._state == ClientState.processing

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def begin_connect(self) -> None:
        self._transition("begin_connect", ClientState.connecting)
        self.last_error = None

    def mark_connected(self) -> None:
        self._transition("mark_connected", ClientState.connected)

    def begin_turn(self) -> None:
        self._transition("begin_turn", ClientState.processing)

    def end_turn(self) -> None:
        self._transition("end_turn", ClientState.connected)

    def fail(self, error: str) -> None:
        """Enter the error state from anywhere."""
        self.last_error = error
        self._set(ClientState.error)

    def reset(self) -> None:
        """Return to idle from anywhere (disconnect)."""
        self._set(ClientState.idle)

    def _transition(self, name: str, target: ClientState) -> None:
        if self._state not in self._ALLOWED[name]:
            raise InvalidTransition(name, self._state)
        self._set(target)

    def _set(self, target: ClientState) -> None:
        previous = self._state
        if previous == target:
            return
        self._state = target
        logger.debug("Client state %s -> %s", previous.value, target.value)
        for listener in list(self._listeners):
            try:
                listener(previous, target)
            except Exception as e:
                logger.warning("Client state listener failed: %s", e)
