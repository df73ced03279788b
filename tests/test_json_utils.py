"""Tests for LLM JSON cleanup."""

import json

import pytest

from analysis_room.utils.json_utils import clean_json_response, parse_json_response, repair_json_response


def test_clean_strips_code_fences():
    assert clean_json_response('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert clean_json_response('```\n[1, 2]\n```') == '[1, 2]'


def test_repair_removes_trailing_commas_and_control_characters():
    assert repair_json_response('{"a": [1, 2,],\x07 "b": 3,}') == '{"a": [1, 2], "b": 3}'


def test_parse_repairs_when_needed():
    assert parse_json_response('```json\n{"rule": "Be brief",}\n```') == {'rule': 'Be brief'}


def test_parse_raises_on_hopeless_input():
    with pytest.raises(json.JSONDecodeError):
        parse_json_response('the model refused to answer')
