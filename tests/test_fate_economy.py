from __future__ import annotations

import pytest

from fateforge.modules.fate import economy
from fateforge.modules.fate.economy import StagedInvoke
from fateforge.modules.rules.schemas import Aspect, Compel, Consequence
from tests.support.fate_factory import make_state


def test_paid_invoke_costs_a_fate_point_and_refunds_on_unstage() -> None:
    state = make_state()
    paid, staged = economy.toggle_invoke(state, (), "Knee-Deep Water")

    assert paid.character.fate_points == 2
    assert staged == (StagedInvoke(aspect_name="Knee-Deep Water", is_free=False),)
    assert economy.invocation_bonus(staged) == 2
    assert state.character.fate_points == 3

    refunded, remaining = economy.toggle_invoke(paid, staged, "Knee-Deep Water")
    assert refunded.character.fate_points == 3
    assert remaining == ()


def test_free_invoke_is_staged_without_spending_the_flag() -> None:
    state = make_state(scene_aspects=[{"name": "Off Balance", "hasFreeInvoke": True}])
    after, staged = economy.toggle_invoke(state, (), "Off Balance")

    assert after.character.fate_points == 3
    assert staged[0].is_free is True
    assert after.scene.aspect("Off Balance").has_free_invoke is True

    unstaged, remaining = economy.toggle_invoke(after, staged, "Off Balance")
    assert unstaged.character.fate_points == 3
    assert remaining == ()


def test_character_aspects_can_be_invoked() -> None:
    state = make_state()
    _, staged = economy.toggle_invoke(state, (), "Disgraced Lantern Knight")
    assert staged[0].aspect_name == "Disgraced Lantern Knight"


def test_unknown_aspect_is_rejected() -> None:
    with pytest.raises(economy.UnknownAspectError) as exc:
        economy.toggle_invoke(make_state(), (), "Nowhere")
    assert exc.value.code == "UNKNOWN_ASPECT"


def test_paid_invoke_needs_a_fate_point() -> None:
    state = make_state(fate_points=0)
    with pytest.raises(economy.InsufficientFatePointsError):
        economy.toggle_invoke(state, (), "Knee-Deep Water")


def test_staged_invokes_json_round_trip_skips_junk() -> None:
    raw = [{"aspectName": "A", "isFree": True}, {"aspectName": ""}, "junk", {"aspectName": "B"}]
    staged = economy.staged_from_json(raw)
    assert staged == (StagedInvoke("A", True), StagedInvoke("B", False))
    assert economy.staged_to_json(staged) == [
        {"aspectName": "A", "isFree": True},
        {"aspectName": "B", "isFree": False},
    ]
    assert economy.staged_from_json(None) == ()


def test_accepting_a_compel_pays_and_narrates() -> None:
    compel = Compel(aspect="Owes the Salt Syndicate", reason="Collectors arrive", accept_narration="You pay up.")
    after = economy.resolve_compel(make_state(), compel, accept=True)

    assert after.character.fate_points == 4
    assert [e.type for e in after.story_log[-2:]] == ["system", "narration"]
    assert "gained 1 Fate Point" in after.story_log[-2].content
    assert after.story_log[-1].content == "You pay up."


def test_rejecting_a_compel_costs_a_point() -> None:
    compel = Compel(aspect="Owes the Salt Syndicate")
    after = economy.resolve_compel(make_state(), compel, accept=False)
    assert after.character.fate_points == 2
    assert after.story_log[-1].type == "system"


def test_rejecting_a_compel_without_points_is_refused() -> None:
    compel = Compel(aspect="Owes the Salt Syndicate")
    with pytest.raises(economy.CompelRejectNotAllowedError):
        economy.resolve_compel(make_state(fate_points=0), compel, accept=False)


def test_consume_free_invokes_by_scope() -> None:
    state = make_state(scene_aspects=[{"name": "Off Balance", "hasFreeInvoke": True}])
    state.character.consequences = [
        Consequence(severity="mild", aspect=Aspect(name="Bruised Ribs", has_free_invoke=True)),
    ]

    scene_spent = economy.consume_free_invokes(state, ["Off Balance", "Bruised Ribs"], scope="scene")
    assert scene_spent.scene.aspect("Off Balance").has_free_invoke is False
    assert scene_spent.character.consequences[0].aspect.has_free_invoke is True

    both_spent = economy.consume_free_invokes(scene_spent, ["Bruised Ribs"], scope="consequences")
    assert both_spent.character.consequences[0].aspect.has_free_invoke is False

    with pytest.raises(ValueError):
        economy.consume_free_invokes(state, ["Off Balance"], scope="everything")


def test_concession_point() -> None:
    character = make_state().character
    assert economy.award_concession_point(character).fate_points == 4
