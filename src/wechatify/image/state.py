"""Pipeline lifecycle state machine.

Tracks one image through acquire, validate, compress, and upload and
enforces valid transitions.  Compression may be skipped; every
non-terminal step may fail.
"""

from __future__ import annotations

from wechatify.models import PipelineStep


class PipelineStateMachine:
    """Finite state machine for a single pipeline run.

    Valid transitions::

        START     -> ACQUIRE | FAILED
        ACQUIRE   -> VALIDATE | FAILED
        VALIDATE  -> COMPRESS | UPLOAD | FAILED
        COMPRESS  -> UPLOAD | FAILED
        UPLOAD    -> DONE | FAILED
        DONE      -> (terminal)
        FAILED    -> (terminal)

    Parameters
    ----------
    label:
        Identifies the run in error messages (usually the source).
    """

    VALID_TRANSITIONS: dict[PipelineStep, set[PipelineStep]] = {
        PipelineStep.START: {PipelineStep.ACQUIRE, PipelineStep.FAILED},
        PipelineStep.ACQUIRE: {PipelineStep.VALIDATE, PipelineStep.FAILED},
        PipelineStep.VALIDATE: {
            PipelineStep.COMPRESS,
            PipelineStep.UPLOAD,
            PipelineStep.FAILED,
        },
        PipelineStep.COMPRESS: {PipelineStep.UPLOAD, PipelineStep.FAILED},
        PipelineStep.UPLOAD: {PipelineStep.DONE, PipelineStep.FAILED},
        PipelineStep.DONE: set(),
        PipelineStep.FAILED: set(),
    }

    def __init__(self, label: str = "") -> None:
        self.label: str = label
        self.state: PipelineStep = PipelineStep.START
        self.history: list[PipelineStep] = [PipelineStep.START]

    @property
    def is_terminal(self) -> bool:
        return not self.VALID_TRANSITIONS[self.state]

    def transition(self, new_state: PipelineStep) -> None:
        """Attempt to transition to *new_state*.

        Raises
        ------
        ValueError
            If the transition from the current state to *new_state* is
            not valid.
        """
        allowed = self.VALID_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid state transition: {self.state.value} -> {new_state.value} "
                f"for {self.label or 'pipeline run'}. "
                f"Allowed transitions from {self.state.value}: "
                f"{{{', '.join(sorted(s.value for s in allowed))}}}"
            )
        self.state = new_state
        self.history.append(new_state)

    def fail(self) -> PipelineStep:
        """Move to ``FAILED`` and return the step that was running."""
        step = self.state
        if step is not PipelineStep.FAILED:
            self.transition(PipelineStep.FAILED)
        return step
