"""
Transition table for the registration state machine.

This is the only place that says which command may run from which status
and where it may lead. Commands look up their row here before touching the
store.
"""

from pydantic import BaseModel, Field

from enrolment.core.errors import PreconditionFailed
from enrolment.core.models import RegistrationStatus as S


class Transition(BaseModel):
    """
    One row of the transition table.

    Attributes:
        command: Command name
        sources: Statuses the command may run from
        targets: Statuses the command may leave the record in
        mismatch_status_code: Status code reported when the source status is wrong
    """

    command: str
    sources: frozenset[S]
    targets: frozenset[S]
    mismatch_status_code: int = Field(409, ge=400, le=499)

    class Config:
        frozen = True


_PRE_ISSUANCE = frozenset(s for s in S if not s.is_terminal)

TRANSITIONS: dict[str, Transition] = {
    t.command: t
    for t in (
        Transition(
            command="approve_for_biometric",
            sources={S.PENDING_VERIFICATION},
            targets={S.APPROVED_FOR_BIOMETRIC},
        ),
        Transition(
            command="request_correction",
            sources={S.PENDING_VERIFICATION, S.APPROVED_FOR_BIOMETRIC},
            targets={S.CORRECTION_REQUESTED},
        ),
        Transition(
            command="submit_correction",
            sources={S.CORRECTION_REQUESTED},
            # Back to wherever the correction was requested from
            targets={S.PENDING_VERIFICATION, S.APPROVED_FOR_BIOMETRIC},
        ),
        Transition(
            command="reject",
            sources=_PRE_ISSUANCE,
            targets={S.REJECTED},
        ),
        Transition(
            command="schedule_biometric",
            sources={S.APPROVED_FOR_BIOMETRIC},
            targets={S.APPROVED_FOR_BIOMETRIC},
            mismatch_status_code=400,
        ),
        Transition(
            command="submit_capture",
            sources={S.APPROVED_FOR_BIOMETRIC},
            # Quality failure and partial capture leave the status unchanged
            targets={S.APPROVED_FOR_BIOMETRIC, S.BIOMETRICS_VERIFIED, S.FLAGGED_DUPLICATE},
        ),
        Transition(
            command="resolve_duplicate",
            sources={S.FLAGGED_DUPLICATE},
            targets={S.BIOMETRICS_VERIFIED, S.REJECTED},
            mismatch_status_code=400,
        ),
        Transition(
            command="issue_identity",
            sources={S.BIOMETRICS_VERIFIED},
            targets={S.ACTIVE_VERIFIED},
        ),
    )
}

COMMANDS: tuple[str, ...] = tuple(TRANSITIONS)


def get_transition(command: str) -> Transition:
    """
    Look up a command's row.

    Raises:
        KeyError: If the command is not in the table
    """
    try:
        return TRANSITIONS[command]
    except KeyError:
        raise KeyError(f"Unknown command '{command}'") from None


def is_allowed(command: str, status: S) -> bool:
    return status in get_transition(command).sources


def require_transition(command: str, status: S) -> Transition:
    """
    Check that ``command`` may run from ``status``.

    Returns:
        The command's Transition row

    Raises:
        PreconditionFailed: With the row's mismatch status code
    """
    transition = get_transition(command)
    if status not in transition.sources:
        expected = ", ".join(sorted(s.value for s in transition.sources))
        raise PreconditionFailed(
            f"Cannot {command} a registration in status {status.value} (requires {expected})",
            current_status=status.value,
            status_code=transition.mismatch_status_code,
            command=command,
        )
    return transition


def check_target(transition: Transition, target: S) -> S:
    """
    Guard against a command writing a status outside its row.

    Raises:
        RuntimeError: If ``target`` is not one of the row's targets
    """
    if target not in transition.targets:
        raise RuntimeError(f"{transition.command} cannot lead to {target.value}")
    return target
