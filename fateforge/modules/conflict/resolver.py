from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum

from pydantic import Field

from fateforge.modules.fate.economy import award_concession_point
from fateforge.modules.narrative.story_log import push_entry
from fateforge.modules.rules.constants import CONSEQUENCE_CAPACITY, SEVERITY_ORDER
from fateforge.modules.rules.schemas import (
    Aspect,
    Character,
    Consequence,
    ConsequenceSeverity,
    FateModel,
    GameState,
    StressType,
)

logger = logging.getLogger(__name__)

DEFAULT_ATTACK_DESCRIPTION = "An unexpected blow lands!"
TAKEN_OUT_MESSAGE = "You have been Taken Out! All stress and consequences have been cleared."
CONCESSION_MESSAGE = "You concede the conflict, clearing all stress and consequences and gaining 1 Fate Point."


class HitPhase(str, Enum):
    RESOLVING = "RESOLVING"
    TAKEN_OUT = "TAKEN_OUT"


class HitOutcome(str, Enum):
    ABSORBED = "ABSORBED"
    TAKEN_OUT = "TAKEN_OUT"
    CONCEDED = "CONCEDED"


class InvalidResolutionError(ValueError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class Hit(FateModel):
    shifts: int = Field(gt=0)
    attack_description: str = Field(min_length=1)
    type: StressType = "physical"


class ConsequenceProposal(FateModel):
    severity: ConsequenceSeverity
    name: str = ""


class HitAbsorption(FateModel):
    stress_type: StressType
    marked_stress_indices: list[int] = Field(default_factory=list)
    new_consequence: ConsequenceProposal | None = None


@dataclass(frozen=True, slots=True)
class HitAssessment:
    phase: HitPhase
    shifts: int
    max_absorption: int


def normalize_hit(raw: object) -> Hit | None:
    """Coerce a generator-reported hit into a valid one, logging when anything had to be replaced."""
    if raw is None:
        return None
    data = raw if isinstance(raw, dict) else {}

    shifts_raw = data.get("shifts")
    numeric = isinstance(shifts_raw, (int, float)) and not isinstance(shifts_raw, bool) and math.isfinite(shifts_raw)
    shifts = int(shifts_raw) if numeric and shifts_raw >= 1 else 1
    description = " ".join(str(data.get("attackDescription") or data.get("attack_description") or "").split())
    hit_type = data.get("type") if data.get("type") in ("physical", "mental") else "physical"

    hit = Hit(
        shifts=shifts,
        attack_description=description or DEFAULT_ATTACK_DESCRIPTION,
        type=hit_type,
    )
    if shifts != shifts_raw or not description or hit_type != data.get("type"):
        logger.warning("invalid hit from generator repaired: original=%r repaired=%r", raw, hit.to_json())
    return hit


def empty_severities(character: Character) -> list[str]:
    taken = {consequence.severity for consequence in character.consequences}
    return [severity for severity in SEVERITY_ORDER if severity not in taken]


def max_possible_absorption(character: Character, stress_type: StressType) -> int:
    track = character.stress_track(stress_type)
    open_slots = sum(CONSEQUENCE_CAPACITY[severity] for severity in empty_severities(character))
    return len(track.unmarked_indices()) + open_slots


def assess_hit(character: Character, hit: Hit) -> HitAssessment:
    capacity = max_possible_absorption(character, hit.type)
    phase = HitPhase.TAKEN_OUT if hit.shifts > capacity else HitPhase.RESOLVING
    return HitAssessment(phase=phase, shifts=hit.shifts, max_absorption=capacity)


def validate_absorption(character: Character, hit: Hit, absorption: HitAbsorption) -> int:
    """Return the shifts the proposal absorbs, or raise InvalidResolutionError. Never mutates."""
    if assess_hit(character, hit).phase is HitPhase.TAKEN_OUT:
        raise InvalidResolutionError("TAKEN_OUT_ONLY", "this hit cannot be absorbed; acknowledge being taken out")
    if absorption.stress_type != hit.type:
        raise InvalidResolutionError(
            "STRESS_TYPE_MISMATCH",
            f"a {hit.type} hit must be absorbed with {hit.type} stress",
        )

    track = character.stress_track(absorption.stress_type)
    indices = absorption.marked_stress_indices
    if len(set(indices)) != len(indices):
        raise InvalidResolutionError("STRESS_BOX_DUPLICATE", "a stress box was selected twice")
    for idx in indices:
        if idx < 0 or idx >= len(track.boxes):
            raise InvalidResolutionError("STRESS_BOX_OUT_OF_RANGE", f"stress box {idx} does not exist")
        if track.marked[idx]:
            raise InvalidResolutionError("STRESS_BOX_ALREADY_MARKED", f"stress box {idx} is already marked")

    absorbed = len(indices)
    proposal = absorption.new_consequence
    if proposal is not None:
        if character.consequence_for(proposal.severity) is not None:
            raise InvalidResolutionError("CONSEQUENCE_SLOT_TAKEN", f"the {proposal.severity} consequence slot is taken")
        if not proposal.name.strip():
            raise InvalidResolutionError("CONSEQUENCE_NAME_REQUIRED", "a consequence needs a name")
        absorbed += CONSEQUENCE_CAPACITY[proposal.severity]

    if absorbed < hit.shifts:
        raise InvalidResolutionError(
            "UNDER_ABSORBED",
            f"the proposal absorbs {absorbed} of {hit.shifts} shifts",
        )
    return absorbed


def apply_absorption(state: GameState, hit: Hit, absorption: HitAbsorption) -> GameState:
    validate_absorption(state.character, hit, absorption)

    working = state.model_copy(deep=True)
    character = working.character
    track = character.stress_track(absorption.stress_type)
    for idx in absorption.marked_stress_indices:
        track.marked[idx] = True

    if absorption.marked_stress_indices:
        boxes = ", ".join(str(track.boxes[idx]) for idx in absorption.marked_stress_indices)
        push_entry(
            working.story_log,
            "system",
            f"You took {len(absorption.marked_stress_indices)} {absorption.stress_type} stress (boxes {boxes}).",
        )

    proposal = absorption.new_consequence
    if proposal is not None:
        name = " ".join(proposal.name.split())
        character.consequences.append(
            Consequence(
                severity=proposal.severity,
                aspect=Aspect(
                    name=name,
                    description=f"A {proposal.severity} consequence taken from: {hit.attack_description}",
                    has_free_invoke=True,
                ),
            )
        )
        push_entry(working.story_log, "system", f'You\'ve gained a {proposal.severity} consequence: "{name}".')
    return working


def clear_conflict_tracks(character: Character) -> Character:
    return character.model_copy(
        update={
            "physical_stress": character.physical_stress.cleared(),
            "mental_stress": character.mental_stress.cleared(),
            "consequences": [],
        }
    )


def apply_taken_out(character: Character) -> Character:
    return clear_conflict_tracks(character)


def apply_concession(character: Character) -> Character:
    return award_concession_point(clear_conflict_tracks(character))
