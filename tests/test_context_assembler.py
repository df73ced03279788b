"""Tests for prompt context assembly."""

import pytest

from analysis_room.models.core import ExpertId, Message, RouterDecision, UserProfile
from analysis_room.services.context_assembler import format_ledger, format_profile, sanitize_living_summary, sanitize_user_message

from .fakes import run

HISTORY = [
    Message(id='1', role='user', content='I want to open an ice cream shop', timestamp='2026-01-01T00:00:00+00:00'),
    Message(id='2', role='operational', content='Start with a permit checklist.', timestamp='2026-01-01T00:00:01+00:00'),
]


def _decision(*experts, direct=False):
    experts = list(experts)
    return RouterDecision(experts=experts, summary_mode=False, direct_calls=experts if direct else [])


def test_sanitize_user_message_strips_meta_language():
    cleaned = sanitize_user_message('מצב מערכת: תסביר לי על גלידה, system error again')

    assert 'מצב מערכת' not in cleaned
    assert 'system error' not in cleaned
    assert 'גלידה' in cleaned


def test_sanitize_living_summary_drops_meta_lines():
    summary = 'User plans an ice cream shop.\nSelf-correction: the previous answer was wrong.\nBudget is tight.'

    assert sanitize_living_summary(summary) == 'User plans an ice cream shop.\n\nBudget is tight.'


def test_format_profile_lists_rules_verbatim():
    profile = UserProfile(core_profile={'topics': ['גלידה'], 'core_rules': ['Answer in Hebrew', 'No emojis']})
    block = format_profile(profile)

    assert '{"topics":["גלידה"]}' in block
    assert '1. Answer in Hebrew' in block
    assert '2. No emojis' in block
    assert 'core_rules' not in block
    assert format_profile(UserProfile()) == ''


def test_empty_ledger_is_explicit():
    assert 'Nothing has been acquired yet.' in format_ledger([])


def test_history_is_included_for_routed_rounds(registry):
    injection = run(registry.assembler.build_context('ice cream shop permits', None, HISTORY, _decision(ExpertId.ONTOLOGICAL,
                                                                                                     ExpertId.OPERATIONAL)))

    assert injection.history == HISTORY
    assert 'Operational Fox: Start with a permit checklist.' in injection.dialogue_block
    assert injection.history_cleared is False


def test_single_direct_call_gets_no_history(registry, store):
    store.add_memory('I want to open an ice cream shop', [0.5], 'renaissance')
    decision = _decision(ExpertId.RENAISSANCE, direct=True)

    injection = run(registry.assembler.build_context('איש הרנסנס, מה דעתך?', None, HISTORY, decision))

    assert injection.history_cleared is True
    assert injection.history == []
    assert injection.dialogue_block == ''
    assert injection.memories_block == ''


def test_drift_uses_profile_only_context(registry):
    profile = UserProfile(core_profile={'core_rules': ['Be brief']}, living_summary='The user plans an ice cream shop and asks about pricing strategy')
    decision = _decision(ExpertId.ONTOLOGICAL, ExpertId.OPERATIONAL)

    injection = run(registry.assembler.build_context('quantum physics lecture notes', profile, HISTORY, decision))

    assert injection.refresh is True
    assert injection.summary_block == ''
    assert injection.dialogue_block == ''
    assert '1. Be brief' in injection.profile_block


def test_go_no_go_gate_needs_crisis_and_operational(registry):
    with_gate = run(registry.assembler.build_context('saas pricing', None, [], _decision(ExpertId.CRISIS, ExpertId.OPERATIONAL)))
    without_gate = run(registry.assembler.build_context('why data', None, [], _decision(ExpertId.ONTOLOGICAL, ExpertId.OPERATIONAL)))

    assert 'VERDICT:[GO]' in with_gate.go_no_go_block
    assert without_gate.go_no_go_block == ''


@pytest.mark.parametrize('enabled', [True, False])
def test_monologue_is_optional(registry, fake_llm, enabled):
    registry.assembler.pipeline_config.monologue_enabled = enabled
    fake_llm.fallback = lambda system_prompt, text: 'The goal is profit. The assumption is demand. The constraint is rent.'

    injection = run(registry.assembler.build_context('why data', None, [], _decision(ExpertId.ONTOLOGICAL, ExpertId.OPERATIONAL)))

    assert ('The constraint is rent.' in injection.monologue_block) is enabled
