from __future__ import annotations

SKILL_LADDER: dict[int, str] = {
    8: "Legendary",
    7: "Epic",
    6: "Fantastic",
    5: "Superb",
    4: "Great",
    3: "Good",
    2: "Fair",
    1: "Average",
    0: "Mediocre",
}

DEFAULT_SKILL_NAMES: tuple[str, ...] = (
    "Athletics",
    "Burglary",
    "Contacts",
    "Crafts",
    "Deceive",
    "Drive",
    "Empathy",
    "Fight",
    "Investigate",
    "Lore",
    "Notice",
    "Physique",
    "Provoke",
    "Rapport",
    "Resources",
    "Shoot",
    "Stealth",
    "Will",
)

# level -> how many skills may sit at that rung; Mediocre is unbounded
PYRAMID_SLOTS: dict[int, int] = {4: 1, 3: 2, 2: 3, 1: 4}
PYRAMID_TOTAL_POINTS = sum(level * count for level, count in PYRAMID_SLOTS.items())

DEFAULT_FATE_POINTS = 3
DEFAULT_STRESS_BOXES: tuple[int, ...] = (1, 2)
OTHER_ASPECT_COUNT = 3
STUNT_COUNT = 2

CONSEQUENCE_CAPACITY: dict[str, int] = {
    "mild": 2,
    "moderate": 4,
    "severe": 6,
}
SEVERITY_ORDER: tuple[str, ...] = ("mild", "moderate", "severe")

INVOKE_BONUS = 2
FATE_DIE_FACES: tuple[int, ...] = (-1, 0, 1)
FATE_DICE_COUNT = 4


def ladder_label(level: int) -> str:
    clamped = max(min(SKILL_LADDER), min(max(SKILL_LADDER), int(level)))
    return SKILL_LADDER[clamped]
