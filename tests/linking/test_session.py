"""Tests for linking session state machine."""

import time
from unittest.mock import patch

import pytest

from devlink.linking.session import (
    TERMINAL_STATES,
    InvalidTransitionError,
    LinkingMethod,
    LinkSession,
    LinkState,
)

NUMBER = "15551234567"


def new_session(window: float = 120.0) -> LinkSession:
    return LinkSession.create(NUMBER, LinkingMethod.PAIRING_CODE, window)


class TestLinkSessionCreate:
    """Tests for LinkSession creation."""

    def test_starts_initializing(self):
        """Created session starts in INITIALIZING."""
        assert new_session().state == LinkState.INITIALIZING

    def test_session_id_derived_from_number(self):
        """Same number gives the same session ID."""
        assert new_session().session_id == new_session().session_id
        assert len(new_session().session_id) == 16

    def test_expiry_from_window(self):
        """expires_at = created_at + window."""
        before = time.time()
        session = new_session(window=120.0)
        after = time.time()

        assert before <= session.created_at <= after
        assert session.expires_at == session.created_at + 120.0

    def test_no_resources_yet(self):
        """Handles are attached later by the orchestrator."""
        session = new_session()
        assert session.credential_handle is None
        assert session.protocol_handle is None
        assert session.artifact is None


class TestLinkSessionTransition:
    """Tests for state transitions."""

    def test_happy_path(self):
        """Initializing -> AwaitingArtifact -> Linked -> Delivering -> Completed."""
        session = new_session()
        for state in (
            LinkState.AWAITING_ARTIFACT,
            LinkState.LINKED,
            LinkState.DELIVERING,
            LinkState.COMPLETED,
        ):
            session.transition_to(state)
        assert session.state == LinkState.COMPLETED
        assert session.is_terminal

    def test_already_registered_short_circuit(self):
        """Initializing can complete directly."""
        session = new_session()
        session.transition_to(LinkState.COMPLETED)
        assert session.state == LinkState.COMPLETED

    def test_linked_cannot_return_to_awaiting(self):
        """Transitions are monotonic."""
        session = new_session()
        session.transition_to(LinkState.AWAITING_ARTIFACT)
        session.transition_to(LinkState.LINKED)

        with pytest.raises(InvalidTransitionError):
            session.transition_to(LinkState.AWAITING_ARTIFACT)
        assert session.state == LinkState.LINKED

    def test_awaiting_cannot_skip_to_completed(self):
        """Completion requires linking and delivery first."""
        session = new_session()
        session.transition_to(LinkState.AWAITING_ARTIFACT)

        with pytest.raises(InvalidTransitionError):
            session.transition_to(LinkState.COMPLETED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, terminal):
        """No transitions out of a terminal state."""
        session = new_session()
        session.state = terminal

        for target in LinkState:
            with pytest.raises(InvalidTransitionError):
                session.transition_to(target)

    @pytest.mark.parametrize(
        "state",
        [
            LinkState.INITIALIZING,
            LinkState.AWAITING_ARTIFACT,
            LinkState.LINKED,
            LinkState.DELIVERING,
        ],
    )
    def test_expiry_allowed_from_any_live_state(self, state):
        """The window can end a session in any non-terminal state."""
        session = new_session()
        session.state = state
        session.transition_to(LinkState.EXPIRED)
        assert session.state == LinkState.EXPIRED

    def test_invalid_transition_is_value_error(self):
        """InvalidTransitionError is a ValueError."""
        assert issubclass(InvalidTransitionError, ValueError)


class TestLinkSessionExpiry:
    """Tests for window checks."""

    def test_not_expired_inside_window(self):
        """Fresh session is inside its window."""
        assert not new_session().is_expired()

    def test_expired_after_window(self):
        """Session past expires_at reports expired."""
        session = new_session(window=120.0)
        with patch("devlink.linking.session.time.time", return_value=session.expires_at + 1):
            assert session.is_expired()
