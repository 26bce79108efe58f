from __future__ import annotations

import random

from fateforge.modules.rules.constants import FATE_DICE_COUNT, FATE_DIE_FACES


def roll_fate_dice(rng: random.Random | None = None) -> list[int]:
    source = rng or random
    return [source.choice(FATE_DIE_FACES) for _ in range(FATE_DICE_COUNT)]


def check_dice(dice: list[int]) -> list[int]:
    if len(dice) != FATE_DICE_COUNT or any(int(face) not in FATE_DIE_FACES for face in dice):
        raise ValueError(f"expected {FATE_DICE_COUNT} fate dice with faces -1, 0 or +1")
    return [int(face) for face in dice]


def action_total(*, dice: list[int], skill_level: int, invocation_bonus: int) -> int:
    return sum(dice) + int(skill_level) + int(invocation_bonus)


def format_roll(*, dice: list[int], skill_level: int, invocation_bonus: int) -> str:
    roll = sum(dice)
    sign = "+" if roll > 0 else ""
    total = action_total(dice=dice, skill_level=skill_level, invocation_bonus=invocation_bonus)
    parts = [f"Roll: {sign}{roll}", f"Skill: {skill_level}"]
    if invocation_bonus > 0:
        parts.append(f"Invokes: {invocation_bonus}")
    return f"{' + '.join(parts)} = Total: {total}"
