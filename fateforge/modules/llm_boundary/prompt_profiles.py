from __future__ import annotations

from dataclasses import dataclass

from fateforge.modules.game.settings import GameSettings
from fateforge.modules.rules.constants import DEFAULT_SKILL_NAMES
from fateforge.modules.rules.schemas import Character, Scene


@dataclass(frozen=True)
class PromptProfile:
    profile_id: str
    system_template: str
    user_template: str


_GM_SYSTEM = (
    "You are a creative Game Master for a Fate Core RPG. Return a single valid JSON object and nothing else. "
    "All string values must be properly escaped single-line strings. {language_instruction}"
)

_OPPONENT_SHAPE = (
    "Every opponent MUST have a unique id, a name, aspects, isTakenOut, consequences as an array ([] if none) "
    'and stress tracks shaped like {"boxes": [1, 2], "marked": [false, false]} with equal-length arrays.'
)

PROFILES: dict[str, PromptProfile] = {
    "character_options_v1": PromptProfile(
        profile_id="character_options_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            'The player wants to play a "{genre}" game. Generate thematic options for character creation. '
            "Provide {high_concept_count} unique high concepts, {trouble_count} unique troubles, "
            "{other_count} other unique aspects and {stunt_count} unique stunts. "
            "Stunts give a clear mechanical benefit such as +2 to a skill in specific circumstances. "
            'Shape: {{"aspects": {{"highConcepts": [{{"name": "", "description": ""}}], '
            '"troubles": [{{"name": "", "description": ""}}], "others": [{{"name": "", "description": ""}}]}}, '
            '"stunts": [{{"name": "", "description": ""}}]}}. '
            "Every object inside an array MUST be wrapped in curly braces."
        ),
    ),
    "generated_character_v1": PromptProfile(
        profile_id="generated_character_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            'The player wants to play a "{genre}" game. Generate one complete, thematic character. '
            "Exactly 1 high concept, 1 trouble, 3 other aspects and 2 stunts. "
            "Skill levels follow the Fate Core pyramid: one skill at 4, two at 3, three at 2, four at 1. "
            "Skill names MUST come from this list: {skill_names}. "
            'Shape: {{"name": "", "aspects": {{"highConcept": {{"name": "", "description": ""}}, '
            '"trouble": {{"name": "", "description": ""}}, "others": [{{"name": "", "description": ""}}]}}, '
            '"stunts": [{{"name": "", "description": ""}}], "skills": [{{"name": "", "level": 4}}]}}.'
        ),
    ),
    "opening_scene_v1": PromptProfile(
        profile_id="opening_scene_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            'A player has created a character for a "{genre}" game. Character sheet: {character_brief}. '
            "Game difficulty: {difficulty}. {difficulty_guidance} "
            "Create a compelling opening scene that places the character directly into an interesting predicament. "
            'Shape: {{"scene": {{"description": "", "aspects": [{{"name": "", "description": ""}}], "opponents": []}}, '
            '"imagePrompt": ""}}. {opponent_shape} {image_instruction}'
        ),
    ),
    "turn_resolution_v1": PromptProfile(
        profile_id="turn_resolution_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "Character: {character_brief}. Consequences: {consequences_brief}. Fate points: {fate_points}. "
            "Scene: {scene_description}. Scene aspects: {scene_aspects}. Opponents: {opponents_brief}. "
            "Compel offered in this scene: {compel_offered}. Game difficulty: {difficulty}. {difficulty_guidance} "
            'Player action: "{action_description}" using {skill_name} (+{skill_level}). {target_line} {invoked_line} '
            "Total roll result: {total}. "
            "Decide which Fate action this is (overcome, create an advantage, attack, defend), set a difficulty and "
            "resolve it against the total. A successful create-an-advantage MUST add newSceneAspect. "
            "A successful attack marks the target's stress or adds consequences; set isTakenOut when it cannot absorb, "
            "and return ALL opponents in updatedOpponents. {opponent_shape} "
            "Then let active opponents react. If an NPC hits the player report "
            '"hit": {{"shifts": <positive number>, "attackDescription": "", "type": "physical" or "mental"}}. '
            "If no compel has been offered this scene, look for one, usually on the trouble aspect, and fill "
            '"compel": {{"aspect": "", "reason": "", "acceptNarration": "", "rejectNarration": ""}}. '
            "If the scene's central challenge resolves or all opponents are taken out, return newScene "
            "(description, aspects) and list stale aspects in removedSceneAspects; otherwise newScene is null. "
            'Consequences marked "(Free GM Invoke)" may be spent once for +2; list each spent one in usedFreeInvokes. '
            "Narration covers both the player's action and the NPC reactions. {image_instruction} "
            'Shape: {{"narration": "", "imagePrompt": null, "newSceneAspect": null, "removedSceneAspects": [], '
            '"hit": null, "compel": null, "newScene": null, "usedFreeInvokes": [], "updatedOpponents": null}}.'
        ),
    ),
    "taken_out_v1": PromptProfile(
        profile_id="taken_out_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "The player's character has been defeated. Character: {character_name}; aspects: {aspect_names}. "
            'They were hit for {shifts} shifts of {hit_type} damage from "{attack_description}" and could not '
            "absorb it, so they are Taken Out. Taken out is not necessarily dead: captured, unconscious, left for "
            "dead or forced to flee. Narrate the outcome and bridge into a new scene that follows from it. "
            'Shape: {{"narration": "", "newScene": {{"description": "", "aspects": [{{"name": "", "description": ""}}]}}, '
            '"imagePrompt": ""}}. Do not include hit, compel or updatedCharacter. {image_instruction}'
        ),
    ),
    "concession_v1": PromptProfile(
        profile_id="concession_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "The player's character concedes the conflict. Character: {character_name}; aspects: {aspect_names}. "
            'They were about to take {shifts} shifts of {hit_type} damage from "{attack_description}". '
            "By conceding they accept defeat on their own terms and have already gained a Fate Point. "
            "Narrate a controlled exit that reflects their agency, then bridge into a new scene. "
            'Shape: {{"narration": "", "newScene": {{"description": "", "aspects": [{{"name": "", "description": ""}}]}}, '
            '"imagePrompt": ""}}. Do not include hit, compel or updatedCharacter. {image_instruction}'
        ),
    ),
}

_DEFAULT_SLOT_LIMIT = 400
_SLOT_LIMITS = {
    "character_brief": 1600,
    "consequences_brief": 600,
    "scene_description": 2000,
    "scene_aspects": 800,
    "opponents_brief": 2400,
    "action_description": 600,
    "skill_names": 600,
    "image_instruction": 600,
    "difficulty_guidance": 400,
    "language_instruction": 300,
    "opponent_shape": 400,
}

_DIFFICULTY_GUIDANCE = {
    "easy": "Keep difficulties low (+0 to +2) and opponents at around Average (+1).",
    "medium": "Use standard difficulties (+2 to +4) and opponents at around Fair (+2).",
    "hard": "Use high difficulties (+4 and up); opponents are Good (+3) or better and work together.",
}

_IMAGE_INSTRUCTIONS = {
    "none": "You MUST NOT provide an imagePrompt. Set it to null.",
    "rarely": (
        "Be extremely selective with imagePrompt: only for a truly monumental, once-per-session event. "
        "Otherwise imagePrompt MUST be null."
    ),
    "sometimes": (
        "Only provide an imagePrompt when a visually distinct new scene begins, an important opponent appears, "
        "or the outcome is highly dramatic. Otherwise imagePrompt MUST be null."
    ),
    "always": "Always provide a single-sentence imagePrompt describing the character, the setting and the mood.",
}


def language_instruction(game_settings: GameSettings) -> str:
    if game_settings.language == "es":
        return "The entire response, including all JSON string values for names and descriptions, MUST be in Spanish."
    return "The entire response MUST be in English."


def image_instruction(game_settings: GameSettings) -> str:
    return _IMAGE_INSTRUCTIONS[game_settings.image_generation_frequency]


def difficulty_guidance(game_settings: GameSettings) -> str:
    return _DIFFICULTY_GUIDANCE[game_settings.difficulty]


def skill_names_slot() -> str:
    return ", ".join(f'"{name}"' for name in DEFAULT_SKILL_NAMES)


def character_brief(character: Character) -> str:
    aspects = character.aspects
    others = ", ".join(f'"{a.name} ({a.description})"' for a in aspects.others) or "none"
    top_skills = ", ".join(f"{s.name} (+{s.level})" for s in character.skills if s.level > 1) or "none"
    stunts = ", ".join(f'"{s.name}"' for s in character.stunts) or "none"
    return (
        f"name {character.name}; high concept \"{aspects.high_concept.name} ({aspects.high_concept.description})\"; "
        f"trouble \"{aspects.trouble.name} ({aspects.trouble.description})\"; other aspects {others}; "
        f"top skills {top_skills}; stunts {stunts}"
    )


def consequences_brief(character: Character) -> str:
    parts = []
    for consequence in character.consequences:
        tag = " (Free GM Invoke)" if consequence.aspect.has_free_invoke else ""
        parts.append(f'"{consequence.aspect.name}" ({consequence.severity}){tag}')
    return ", ".join(parts) or "None"


def opponents_brief(scene: Scene) -> str:
    if not scene.opponents:
        return "None"
    lines = []
    for opponent in scene.opponents:
        physical = f"{sum(opponent.physical_stress.marked)}/{len(opponent.physical_stress.boxes)}"
        mental = f"{sum(opponent.mental_stress.marked)}/{len(opponent.mental_stress.boxes)}"
        consequences = ", ".join(c.aspect.name for c in opponent.consequences) or "None"
        status = "Taken Out" if opponent.is_taken_out else "Active"
        lines.append(
            f"ID {opponent.id}, Name {opponent.name}, Status {status}, Physical Stress {physical}, "
            f"Mental Stress {mental}, Consequences {consequences}"
        )
    return " | ".join(lines)


def render_prompt(profile_id: str, *, slots: dict[str, object], game_settings: GameSettings) -> tuple[str, str]:
    profile = PROFILES.get(profile_id)
    if profile is None:
        raise ValueError(f"unknown prompt profile: {profile_id}")

    merged: dict[str, object] = {
        "language_instruction": language_instruction(game_settings),
        "image_instruction": image_instruction(game_settings),
        "difficulty": game_settings.difficulty.upper(),
        "difficulty_guidance": difficulty_guidance(game_settings),
        "opponent_shape": _OPPONENT_SHAPE,
        **slots,
    }
    safe_slots = {}
    for key, value in merged.items():
        limit = _SLOT_LIMITS.get(key, _DEFAULT_SLOT_LIMIT)
        safe_slots[key] = " ".join(str(value if value is not None else "").split())[:limit]
    try:
        system_prompt = profile.system_template.format(**safe_slots)
        user_prompt = profile.user_template.format(**safe_slots)
    except KeyError as exc:
        missing = str(exc).strip("'")
        raise ValueError(f"missing prompt slot: {missing}") from exc
    return system_prompt, user_prompt
