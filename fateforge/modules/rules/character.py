from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping

from fateforge.modules.rules.constants import (
    DEFAULT_FATE_POINTS,
    DEFAULT_SKILL_NAMES,
    OTHER_ASPECT_COUNT,
    PYRAMID_SLOTS,
    PYRAMID_TOTAL_POINTS,
    STUNT_COUNT,
    ladder_label,
)
from fateforge.modules.rules.schemas import Aspect, Character, CharacterAspects, Skill, StressTrack, Stunt


class CharacterValidationError(ValueError):
    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = list(problems)


def default_skills() -> list[Skill]:
    return [Skill(name=name, level=0, level_name=ladder_label(0)) for name in DEFAULT_SKILL_NAMES]


def pyramid_problems(levels: Mapping[str, int]) -> list[str]:
    problems: list[str] = []
    unknown = sorted(name for name in levels if name not in DEFAULT_SKILL_NAMES)
    if unknown:
        problems.append(f"unknown skills: {', '.join(unknown)}")

    counts = Counter(level for level in levels.values() if level > 0)
    for level, count in sorted(counts.items(), reverse=True):
        allowed = PYRAMID_SLOTS.get(level, 0)
        if count > allowed:
            problems.append(f"too many skills at +{level} ({count} > {allowed})")

    negative = sorted(name for name, level in levels.items() if level < 0)
    if negative:
        problems.append(f"negative skill levels: {', '.join(negative)}")

    total = sum(level for level in levels.values() if level > 0)
    if total != PYRAMID_TOTAL_POINTS:
        problems.append(f"skill pyramid must spend exactly {PYRAMID_TOTAL_POINTS} points (got {total})")
    return problems


def build_character(
    *,
    name: str,
    high_concept: Aspect,
    trouble: Aspect,
    others: Iterable[Aspect],
    stunts: Iterable[Stunt],
    skill_levels: Mapping[str, int],
) -> Character:
    """Assemble a starting character, rejecting anything that breaks the creation rules.

    Every default skill is present on the sheet; skills not named in ``skill_levels`` sit at Mediocre.
    The character starts with a full refresh of fate points, empty stress tracks and no consequences.
    """
    other_list = list(others)
    stunt_list = list(stunts)
    clean_name = " ".join(str(name or "").split())

    problems: list[str] = []
    if not clean_name:
        problems.append("name is required")
    if len(other_list) != OTHER_ASPECT_COUNT:
        problems.append(f"exactly {OTHER_ASPECT_COUNT} other aspects are required (got {len(other_list)})")
    if len(stunt_list) != STUNT_COUNT:
        problems.append(f"exactly {STUNT_COUNT} stunts are required (got {len(stunt_list)})")
    aspect_names = [high_concept.name, trouble.name, *(a.name for a in other_list)]
    duplicates = sorted(n for n, c in Counter(aspect_names).items() if c > 1)
    if duplicates:
        problems.append(f"aspect names must be unique: {', '.join(duplicates)}")
    problems.extend(pyramid_problems(skill_levels))
    if problems:
        raise CharacterValidationError(problems)

    skills = [
        Skill(name=name_, level=int(skill_levels.get(name_, 0)), level_name=ladder_label(int(skill_levels.get(name_, 0))))
        for name_ in DEFAULT_SKILL_NAMES
    ]
    skills.sort(key=lambda s: (-s.level, s.name))
    return Character(
        name=clean_name,
        aspects=CharacterAspects(
            high_concept=high_concept.model_copy(update={"has_free_invoke": False}),
            trouble=trouble.model_copy(update={"has_free_invoke": False}),
            others=[a.model_copy(update={"has_free_invoke": False}) for a in other_list],
        ),
        skills=skills,
        stunts=stunt_list,
        fate_points=DEFAULT_FATE_POINTS,
        physical_stress=StressTrack.default(),
        mental_stress=StressTrack.default(),
        consequences=[],
    )


def skill_levels_from_pairs(pairs: Iterable[tuple[str, int]]) -> dict[str, int]:
    """Map generator skill picks onto the default list; names outside it are ignored, case-insensitively matched."""
    by_lower = {name.lower(): name for name in DEFAULT_SKILL_NAMES}
    levels: dict[str, int] = {}
    for raw_name, level in pairs:
        canonical = by_lower.get(" ".join(str(raw_name or "").split()).lower())
        if canonical is None or int(level) <= 0:
            continue
        levels[canonical] = int(level)
    return levels
