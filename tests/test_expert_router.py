"""Tests for expert selection and ordering."""

import pytest

from analysis_room.models.core import ExpertId
from analysis_room.services import expert_router
from analysis_room.services.context_scout import should_trigger
from analysis_room.services.personas import EXPERTS

ONT, REN, CRISIS, OPS = ExpertId.ONTOLOGICAL, ExpertId.RENAISSANCE, ExpertId.CRISIS, ExpertId.OPERATIONAL


def test_only_phrase_selects_single_expert():
    """'Only the crisis manager' yields exactly that expert."""
    decision = expert_router.select_experts('רק את מנהל המשברים')

    assert decision.experts == [CRISIS]
    assert decision.override_applied is True
    assert decision.summary_mode is False
    assert decision.direct_calls == [CRISIS]
    assert decision.clears_history is True


def test_dont_activate_excludes_expert():
    decision = expert_router.select_experts("don't activate the fox")

    assert decision.experts == [ONT, REN, CRISIS]
    assert decision.override_applied is True


def test_single_direct_call_clears_history():
    decision = expert_router.select_experts('מה דעתו של איש הרנסנס על זה')

    assert decision.experts == [REN]
    assert decision.direct_calls == [REN]
    assert decision.clears_history is True


def test_multiple_direct_calls_keep_history():
    decision = expert_router.select_experts('איש הרנסנס והשועל המבצעי')

    assert decision.experts == [REN, OPS]
    assert decision.clears_history is False


def test_safety_forces_safety_pair():
    decision = expert_router.select_experts('I want to kill myself, what is the plan')

    assert decision.safety_triggered is True
    assert decision.experts == [CRISIS, OPS]
    assert decision.clears_history is False


def test_override_beats_safety():
    decision = expert_router.select_experts('only the renaissance man please, I keep thinking about suicide')

    assert decision.experts == [REN]
    assert decision.safety_triggered is True
    assert decision.override_applied is True
    assert decision.clears_history is True


def test_hard_trigger_forces_crisis_and_pads():
    decision = expert_router.select_experts('saas pricing')

    assert decision.experts == [CRISIS, OPS]


def test_single_operational_hit_is_padded_with_ontological():
    decision = expert_router.select_experts('execute')

    assert decision.experts == [ONT, OPS]


def test_small_talk_gets_default_pair_and_no_scout():
    message = 'hello there, nice weather today'
    decision = expert_router.select_experts(message)

    assert decision.experts == [ONT, OPS]
    assert decision.routing_hits == 0
    assert should_trigger(message, decision.routing_hits, decision.safety_triggered) is False


def test_four_categories_enable_summary_mode():
    decision = expert_router.select_experts('crisis risk, creative new idea, practical steps plan, why analysis data')

    assert decision.experts == [ONT, REN, CRISIS, OPS]
    assert decision.summary_mode is True


def test_higher_score_does_not_change_canonical_order():
    decision = expert_router.select_experts('practical action plan steps execute, why?')

    assert decision.experts == [ONT, CRISIS, OPS]


@pytest.mark.parametrize('message', [
    'רק את מנהל המשברים',
    'השועל המבצעי ואיש הרנסנס',
    'I feel like cutting myself',
    'crisis risk, creative new idea, practical steps plan, why analysis data',
    'hello there',
    'execute',
])
def test_output_is_always_canonically_ordered(message):
    decision = expert_router.select_experts(message)
    ranks = [EXPERTS[expert].rank for expert in decision.experts]

    assert decision.experts
    assert ranks == sorted(ranks)
    assert len(set(decision.experts)) == len(decision.experts)
    assert decision.summary_mode == (len(decision.experts) > 3)


def test_score_keywords_counts_distinct_hits():
    scores = expert_router.score_keywords('why why why data')

    assert scores == {ONT: 2}


def test_exclusion_naming_one_expert_also_clears_history():
    decision = expert_router.select_experts("don't activate the fox")

    assert decision.direct_calls == [OPS]
    assert decision.clears_history is True


def test_safety_naming_one_expert_clears_history():
    decision = expert_router.select_experts('crisis manager, I want to kill myself')

    assert decision.experts == [CRISIS, OPS]
    assert decision.direct_calls == [CRISIS]
    assert decision.clears_history is True
