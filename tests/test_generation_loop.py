"""Tests for the per-expert generation loop and its text guards."""

from datetime import datetime, timezone

import pytest

from analysis_room.models.core import AcquiredItem, ExpertId, RouterDecision
from analysis_room.services.context_assembler import PromptInjection
from analysis_room.services.generation_loop import (VETO_MARKER, GenerationLoop, GenerationState, GenerationStateError, GenerationStateMachine,
                                                    RoundReport, TurnOutcome, apply_veto, clean_text,
                                                    enforce_stop_token, is_repetition, trim_trailing_fragment, word_overlap)
from analysis_room.services.personas import STOP_TOKENS
from analysis_room.utils.bedrock_llm import BedrockLLMError, BedrockRateLimitError

from .fakes import EXPERT_REPLIES, FakeLLM, collect

ONT, REN, CRISIS, OPS = ExpertId.ONTOLOGICAL, ExpertId.RENAISSANCE, ExpertId.CRISIS, ExpertId.OPERATIONAL


def _ledger_item(text):
    return AcquiredItem(id=1, item=text, source='operational', context='', created_at=datetime.now(timezone.utc))


@pytest.fixture
def loop_factory(app_config):

    def factory(llm):
        return GenerationLoop(llm, app_config.bedrock_llm, app_config.pipeline)

    return factory


def _run(loop, decision, injection=None, message='How do I open an ice cream shop?'):
    report = RoundReport()
    turns = collect(loop.run(message, decision, injection or PromptInjection(), report))
    return turns, report


def test_clean_text_strips_markdown():
    raw = '## Plan\n**Bold** and *soft* with `code`.\n```python\nprint(1)\n```\n---\nWait... done.'
    cleaned = clean_text(raw)

    assert cleaned.startswith('【H】Plan')
    assert '*' not in cleaned
    assert '`' not in cleaned
    assert 'print(1)' not in cleaned
    assert '---' not in cleaned
    assert '...' not in cleaned
    assert 'Bold and soft with code.' in cleaned


def test_clean_text_collapses_blank_lines():
    assert clean_text('First line.\n\n\n\nSecond line.') == 'First line.\n\nSecond line.'


def test_trim_trailing_fragment():
    assert trim_trailing_fragment('First sentence. and then') == 'First sentence.'
    assert trim_trailing_fragment('Done.') == 'Done.'
    assert trim_trailing_fragment('No punctuation at all') == 'No punctuation at all'
    long_tail = 'First sentence. this tail is long enough to keep'
    assert trim_trailing_fragment(long_tail) == long_tail


def test_decimal_point_is_not_a_sentence_end():
    assert trim_trailing_fragment('Buy flour, 2.5 kg') == 'Buy flour, 2.5 kg'
    assert trim_trailing_fragment('Order 2.5 kg of flour. then') == 'Order 2.5 kg of flour.'


def test_enforce_stop_token_appends_once():
    token = STOP_TOKENS[OPS]

    assert enforce_stop_token('Buy a freezer.', token) == f'Buy a freezer.\n{token}'
    assert enforce_stop_token(f'Buy a freezer. {token} extra text', token) == f'Buy a freezer. {token}'


def test_repetition_threshold():
    earlier = ['Customers remain loyal when distribution channels are owned directly.']

    assert is_repetition('Customers remain loyal when distribution channels are owned directly!', earlier) is True
    assert is_repetition('Secure refrigeration permits before signing the lease.', earlier) is False


def test_repeated_words_count_toward_overlap():
    current = 'freezer freezer freezer freezer inventory permits licence'

    assert word_overlap(current, 'freezer inventory') == pytest.approx(5 / 7)
    assert is_repetition(current, ['freezer inventory']) is True


def test_veto_redacts_for_non_authority_experts():
    text = 'Add microbial proteins to the base mix.'

    vetoed, count = apply_veto(text, ONT, [])
    assert vetoed == f'Add {VETO_MARKER} to the base mix.'
    assert count == 1

    assert apply_veto(text, CRISIS, []) == (text, 0)


def test_veto_redacts_acquired_claims_missing_from_ledger():
    claim = 'We already acquired a commercial freezer. Next, hire staff.'

    vetoed, count = apply_veto(claim, OPS, [])
    assert VETO_MARKER in vetoed
    assert count == 1

    kept, count = apply_veto(claim, OPS, [_ledger_item('a commercial freezer')])
    assert kept == claim
    assert count == 0


def test_every_turn_ends_with_exactly_one_stop_token(loop_factory):
    llm = FakeLLM(replies={
        ONT: EXPERT_REPLIES[ONT] + f' {STOP_TOKENS[ONT]} trailing chatter',
        REN: EXPERT_REPLIES[REN],
        CRISIS: EXPERT_REPLIES[CRISIS] + f'\n{STOP_TOKENS[CRISIS]}',
        OPS: f'**{EXPERT_REPLIES[OPS]}**',
    })
    decision = RouterDecision(experts=[ONT, REN, CRISIS, OPS], summary_mode=True)

    turns, report = _run(loop_factory(llm), decision)

    assert [turn.character for turn in turns] == [ONT, REN, CRISIS, OPS]
    for turn in turns:
        token = STOP_TOKENS[turn.character]
        assert turn.text.endswith(token)
        assert turn.text.count(token) == 1
        assert turn.text.replace(token, '').strip()
    assert 'trailing chatter' not in turns[0].text
    assert all(outcome == TurnOutcome.EMITTED for outcome in report.outcomes.values())


def test_stop_sequence_is_passed_per_expert(loop_factory):
    llm = FakeLLM()
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    _run(loop_factory(llm), decision)

    assert [call['expert'] for call in llm.expert_calls()] == [ONT, OPS]


def test_repeated_turn_is_dropped(loop_factory):
    duplicate = 'Customers remain loyal when distribution channels are owned directly.'
    llm = FakeLLM(replies={ONT: duplicate, OPS: duplicate})
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    turns, report = _run(loop_factory(llm), decision)

    assert [turn.character for turn in turns] == [ONT]
    assert report.outcomes[OPS] == TurnOutcome.REPETITION
    assert report.transitions == [
        ('ontological', GenerationState.GENERATING),
        ('ontological', GenerationState.VALIDATING),
        ('ontological', GenerationState.EMITTING),
        ('ontological', GenerationState.IDLE),
        ('operational', GenerationState.GENERATING),
        ('operational', GenerationState.VALIDATING),
        ('operational', GenerationState.SKIPPED),
        ('operational', GenerationState.IDLE),
        ('round', GenerationState.DONE),
    ]


def test_empty_output_is_skipped(loop_factory):
    llm = FakeLLM(replies={ONT: STOP_TOKENS[ONT]})
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    turns, report = _run(loop_factory(llm), decision)

    assert [turn.character for turn in turns] == [OPS]
    assert report.outcomes[ONT] == TurnOutcome.EMPTY
    assert report.all_failed is False


def test_backend_error_skips_expert_and_continues(loop_factory):
    llm = FakeLLM(replies={ONT: BedrockLLMError('Bedrock API error: boom')})
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    turns, report = _run(loop_factory(llm), decision)

    assert [turn.character for turn in turns] == [OPS]
    assert report.outcomes[ONT] == TurnOutcome.BACKEND_ERROR
    assert report.all_failed is False
    assert report.transitions[:3] == [('ontological', GenerationState.GENERATING), ('ontological', GenerationState.SKIPPED),
                                      ('ontological', GenerationState.IDLE)]


def test_all_rate_limited_is_reported(loop_factory):
    llm = FakeLLM(replies={ONT: BedrockRateLimitError('ThrottlingException'), OPS: BedrockRateLimitError('429 Too Many Requests')})
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    turns, report = _run(loop_factory(llm), decision)

    assert turns == []
    assert report.all_failed is True
    assert report.rate_limited is True


def test_summary_mode_caps_tokens(loop_factory, app_config):
    llm = FakeLLM()
    summary = RouterDecision(experts=[ONT, REN, CRISIS, OPS], summary_mode=True)
    normal = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    _run(loop_factory(llm), summary)
    assert [call['max_tokens'] for call in llm.expert_calls()] == [app_config.bedrock_llm.summary_max_tokens] * 4
    assert all('[Summary mode]' in call['system_prompt'] for call in llm.expert_calls())

    llm.calls.clear()
    _run(loop_factory(llm), normal)
    assert [call['max_tokens'] for call in llm.expert_calls()] == [app_config.bedrock_llm.max_tokens] * 2


def test_later_experts_see_earlier_turns(loop_factory):
    llm = FakeLLM()
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)

    _run(loop_factory(llm), decision)

    first, second = llm.expert_calls()
    assert '[Earlier experts this round' not in first['system_prompt']
    assert 'ownership of distribution channels' in second['system_prompt']
    assert '[Earlier experts this round' in second['system_prompt']


def test_safety_round_injects_hotline_notice(loop_factory):
    llm = FakeLLM()
    decision = RouterDecision(experts=[CRISIS, OPS], summary_mode=False, safety_triggered=True)

    _run(loop_factory(llm), decision)

    assert all('[Safety override - active]' in call['system_prompt'] for call in llm.expert_calls())


def test_turns_carry_conversation_voice(loop_factory):
    llm = FakeLLM()
    decision = RouterDecision(experts=[ONT, OPS], summary_mode=False)
    report = RoundReport()

    turns = collect(loop_factory(llm).run('hi there friend', decision, PromptInjection(), report, voice_settings={'ontological': 'Puck'}))

    assert turns[0].voice_id == 'Puck'
    assert turns[0].pitch == -2.0
    assert turns[1].voice_id == 'Fenrir'


def test_state_machine_rejects_illegal_transitions():
    machine = GenerationStateMachine()
    machine.advance(GenerationState.GENERATING, ONT)

    with pytest.raises(GenerationStateError):
        machine.advance(GenerationState.EMITTING, ONT)

    machine.advance(GenerationState.VALIDATING, ONT)
    machine.advance(GenerationState.EMITTING, ONT)
    with pytest.raises(GenerationStateError):
        machine.advance(GenerationState.DONE)

    machine.advance(GenerationState.IDLE, ONT)
    machine.advance(GenerationState.DONE)
    with pytest.raises(GenerationStateError):
        machine.advance(GenerationState.GENERATING, OPS)
