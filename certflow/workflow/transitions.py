"""
The stage transition table.

| From            | To              | Role          | Artifact                   |
|-----------------|-----------------|---------------|----------------------------|
| drafted         | issued_unsigned | issuer        | rendered from the template |
| issued_unsigned | first_signed    | first_signer  | signature 1 stamped        |
| first_signed    | second_signed   | second_signer | signature 2 stamped        |
| second_signed   | delivered       | issuer        | none, hands back the last  |
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .enums import Role, Stage


@dataclass(frozen=True)
class Transition:
    from_stage: Stage
    to_stage: Stage
    required_role: Role
    produces_artifact: bool


TRANSITIONS: Dict[Stage, Transition] = {
    Stage.DRAFTED: Transition(Stage.DRAFTED, Stage.ISSUED_UNSIGNED, Role.ISSUER, True),
    Stage.ISSUED_UNSIGNED: Transition(
        Stage.ISSUED_UNSIGNED, Stage.FIRST_SIGNED, Role.FIRST_SIGNER, True
    ),
    Stage.FIRST_SIGNED: Transition(
        Stage.FIRST_SIGNED, Stage.SECOND_SIGNED, Role.SECOND_SIGNER, True
    ),
    Stage.SECOND_SIGNED: Transition(
        Stage.SECOND_SIGNED, Stage.DELIVERED, Role.ISSUER, False
    ),
}


def transition_from(stage: Stage) -> Optional[Transition]:
    """The transition out of ``stage``; None for the terminal stage."""
    return TRANSITIONS.get(stage)


def transitions_for_role(role: Role) -> List[Transition]:
    """Transitions owned by ``role``, in stage order."""
    return [t for t in TRANSITIONS.values() if t.required_role == role]


def next_role(stage: Stage) -> Optional[Role]:
    """Role expected to act on a certificate sitting at ``stage``."""
    transition = transition_from(stage)
    return transition.required_role if transition else None
