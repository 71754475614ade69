"""State machine for incremental stream fetching."""

from enum import Enum

import structlog


logger = structlog.get_logger()


class StreamState(str, Enum):
    """State of an incremental stream fetch.

    - STREAM_POLLING: Waiting for or issuing the next range request
    - STREAM_DRAINING: Reading a 206 partial body line by line
    - STREAM_DONE: Terminal; end sentinel, one-shot 200, error or cancel
    """

    STREAM_POLLING = "STREAM_POLLING"
    STREAM_DRAINING = "STREAM_DRAINING"
    STREAM_DONE = "STREAM_DONE"


# Valid state transitions
_VALID_TRANSITIONS: dict[StreamState, set[StreamState]] = {
    StreamState.STREAM_POLLING: {
        StreamState.STREAM_DRAINING,
        StreamState.STREAM_DONE,
    },
    StreamState.STREAM_DRAINING: {
        StreamState.STREAM_POLLING,
        StreamState.STREAM_DONE,
    },
    StreamState.STREAM_DONE: set(),  # Terminal state
}


class StreamStateTransitionError(Exception):
    """Raised when an illegal state transition is attempted."""

    def __init__(
        self,
        url: str,
        from_state: StreamState,
        to_state: StreamState,
    ) -> None:
        """Initialize the transition error.

        Args:
            url: Stream URL.
            from_state: Current state.
            to_state: Attempted target state.
        """
        self.url = url
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal stream state transition for '{url}': "
            f"{from_state.value} -> {to_state.value}"
        )


class StreamStateMachine:
    """Manages state transitions for one stream.

    Enforces valid transitions and logs all state changes.
    """

    def __init__(
        self,
        url: str,
        initial_state: StreamState = StreamState.STREAM_POLLING,
    ) -> None:
        """Initialize the state machine.

        Args:
            url: Stream URL (for logging).
            initial_state: Starting state.
        """
        self._url = url
        self._state = initial_state
        self._log = logger.bind(component="stream", url=url)

    @property
    def state(self) -> StreamState:
        """Get the current state."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state == StreamState.STREAM_DONE

    def can_transition_to(self, target: StreamState) -> bool:
        """Check if a transition to the target state is valid.

        Args:
            target: The target state.

        Returns:
            True if the transition is valid.
        """
        return target in _VALID_TRANSITIONS.get(self._state, set())

    def transition_to(self, target: StreamState) -> None:
        """Transition to a new state.

        Args:
            target: The target state.

        Raises:
            StreamStateTransitionError: If the transition is invalid.
        """
        if not self.can_transition_to(target):
            self._log.error(
                "illegal_state_transition",
                from_state=self._state.value,
                to_state=target.value,
            )
            raise StreamStateTransitionError(self._url, self._state, target)

        old_state = self._state
        self._state = target
        self._log.debug(
            "state_transition",
            from_state=old_state.value,
            to_state=target.value,
        )

    def to_polling(self) -> None:
        """Transition to STREAM_POLLING state."""
        self.transition_to(StreamState.STREAM_POLLING)

    def to_draining(self) -> None:
        """Transition to STREAM_DRAINING state."""
        self.transition_to(StreamState.STREAM_DRAINING)

    def to_done(self) -> None:
        """Transition to STREAM_DONE state (no-op when already done)."""
        if not self.is_terminal:
            self.transition_to(StreamState.STREAM_DONE)
