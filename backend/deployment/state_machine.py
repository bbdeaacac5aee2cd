"""
Pipeline state machine for Shipgate

Enforces the order a deployment run moves through and stamps the run's
start/end timestamps.

State Flow:
    pending -> validating -> building -> scanning -> gating -> pushing -> cleanup -> completed
       |            |            |           |          |          |          |
       +------------+------------+-----------+----------+----------+----------+-> failed

No state may be skipped on the way to completed, and failed is reachable from
every non-terminal state. completed and failed are terminal.

Usage:
    sm = PipelineStateMachine()

    if sm.can_transition(run.state, PipelineState.BUILDING):
        sm.transition(run, PipelineState.BUILDING)
"""

from datetime import datetime, timezone
from typing import List, Union
import logging

from .types import PipelineState

logger = logging.getLogger(__name__)

StateLike = Union[PipelineState, str]


def _coerce(state: StateLike):
    """Accept enum members or their string values; None for unknown names."""
    if isinstance(state, PipelineState):
        return state
    try:
        return PipelineState(state)
    except ValueError:
        return None


class PipelineStateMachine:
    """
    State machine for pipeline run lifecycle management.

    Only knows about states; the pipeline decides *when* to move.
    """

    # Valid state transitions (from_state -> to_states)
    VALID_TRANSITIONS = {
        PipelineState.PENDING: [PipelineState.VALIDATING, PipelineState.FAILED],
        PipelineState.VALIDATING: [PipelineState.BUILDING, PipelineState.FAILED],
        PipelineState.BUILDING: [PipelineState.SCANNING, PipelineState.FAILED],
        PipelineState.SCANNING: [PipelineState.GATING, PipelineState.FAILED],
        PipelineState.GATING: [PipelineState.PUSHING, PipelineState.FAILED],
        PipelineState.PUSHING: [PipelineState.CLEANUP, PipelineState.FAILED],
        PipelineState.CLEANUP: [PipelineState.COMPLETED, PipelineState.FAILED],
        PipelineState.COMPLETED: [],  # Terminal state
        PipelineState.FAILED: [],  # Terminal state
    }

    TERMINAL_STATES = {PipelineState.COMPLETED, PipelineState.FAILED}

    def can_transition(self, from_state: StateLike, to_state: StateLike) -> bool:
        """
        Check if a state transition is valid.

        Args:
            from_state: Current run state
            to_state: Desired target state

        Returns:
            True if transition is allowed, False otherwise

        Examples:
            >>> sm = PipelineStateMachine()
            >>> sm.can_transition('pending', 'validating')
            True
            >>> sm.can_transition('building', 'pushing')
            False
            >>> sm.can_transition('completed', 'failed')
            False  # Terminal state
        """
        source = _coerce(from_state)
        target = _coerce(to_state)

        if source is None:
            logger.warning(f"Invalid from_state: {from_state}")
            return False

        if target is None:
            logger.warning(f"Invalid to_state: {to_state}")
            return False

        return target in self.VALID_TRANSITIONS.get(source, [])

    def transition(self, run, to_state: StateLike) -> bool:
        """
        Transition a run to a new state with validation.

        Args:
            run: PipelineRun instance
            to_state: Target state

        Returns:
            True if transition succeeded, False if invalid

        Side Effects:
            - Updates run.state
            - Sets started_at when leaving pending
            - Sets ended_at when entering a terminal state
        """
        from_state = _coerce(run.state)

        if not self.can_transition(run.state, to_state):
            logger.error(
                f"Invalid state transition for run {run.run_id}: "
                f"{run.state} -> {to_state}"
            )
            return False

        target = _coerce(to_state)
        run.state = target

        utcnow = datetime.now(timezone.utc)

        if from_state == PipelineState.PENDING and not run.started_at:
            run.started_at = utcnow

        if target in self.TERMINAL_STATES and not run.ended_at:
            run.ended_at = utcnow

        logger.info(f"Run {run.run_id} transitioned: {from_state.value} -> {target.value}")

        return True

    def is_terminal(self, state: StateLike) -> bool:
        return _coerce(state) in self.TERMINAL_STATES

    def validate_state(self, state: StateLike) -> bool:
        """Validate that a state is a recognized pipeline state."""
        return _coerce(state) is not None

    def get_valid_next_states(self, current_state: StateLike) -> List[PipelineState]:
        """
        Get list of states reachable from current state.

        Examples:
            >>> sm = PipelineStateMachine()
            >>> sm.get_valid_next_states('gating')
            [PipelineState.PUSHING, PipelineState.FAILED]
            >>> sm.get_valid_next_states('completed')
            []  # Terminal state
        """
        state = _coerce(current_state)
        if state is None:
            return []
        return list(self.VALID_TRANSITIONS.get(state, []))
