"""Tests for reward and deposit accounting and the lifecycle guards."""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from survey_ledger import lifecycle
from survey_ledger.economics import EconomicAccount, basis_point_shares, validate_funding
from survey_ledger.errors import LedgerError


def _survey(**overrides):
    survey = {
        "creator": "creator",
        "reward_pool_msat": 1_000,
        "deposit_required_msat": 200,
        "reward_per_response_msat": 300,
        "total_responses": 0,
        "end_time": 100,
        "is_active": 1,
        "results_released": 0,
    }
    survey.update(overrides)
    return survey


def test_basis_point_shares():
    assert basis_point_shares([3, 5, 2], 10) == [3000, 5000, 2000]
    assert basis_point_shares([1, 1, 1], 3) == [3333, 3333, 3333]
    assert basis_point_shares([0, 0], 0) == [0, 0]


def test_validate_funding_default_deposit():
    assert validate_funding(1_000, 0, 100, default_deposit_msat=42) == 42
    assert validate_funding(1_000, 7, 100, default_deposit_msat=42) == 7
    with pytest.raises(LedgerError):
        validate_funding(1_000, 0, 1_001, default_deposit_msat=42)


def test_reward_capacity_and_remaining_pool():
    account = EconomicAccount(_survey(total_responses=3))
    assert account.total_rewards_allocated_msat == 900
    assert account.remaining_reward_pool_msat == 100
    assert account.participant_payout_msat == 500
    with pytest.raises(LedgerError) as excinfo:
        account.check_reward_capacity()
    assert excinfo.value.code == "validation"

    drained = EconomicAccount(_survey(reward_pool_msat=0, total_responses=3))
    assert drained.remaining_reward_pool_msat == 0


def test_withdrawal_checks():
    account = EconomicAccount(_survey())
    with pytest.raises(LedgerError) as excinfo:
        account.check_participant_withdrawal(None)
    assert excinfo.value.code == "authorization"
    with pytest.raises(LedgerError) as excinfo:
        account.check_participant_withdrawal({"has_withdrawn": 1})
    assert excinfo.value.code == "duplicate"
    account.check_participant_withdrawal({"has_withdrawn": 0})

    with pytest.raises(LedgerError) as excinfo:
        account.check_creator("someone")
    assert excinfo.value.code == "authorization"
    account.check_creator("creator")


def test_survey_state_transitions():
    survey = _survey(end_time=100)
    assert lifecycle.survey_state(survey, 99) == lifecycle.OPEN
    assert lifecycle.survey_state(survey, 100) == lifecycle.CLOSED
    assert lifecycle.survey_state(dict(survey, results_released=1), 50) == lifecycle.RELEASED

    with pytest.raises(LedgerError) as excinfo:
        lifecycle.require_open(survey, 100)
    assert excinfo.value.to_response() == {"error": "survey has ended", "code": "state", "state": "closed"}
    lifecycle.require_closed(survey, 100, "reveal results")


def test_fully_decrypted_needs_release_every_option_and_matching_sum():
    released = _survey(results_released=1, total_responses=3)
    settled = [{"settled": 1, "decrypted_votes": 2}, {"settled": 1, "decrypted_votes": 1}]
    assert lifecycle.is_fully_decrypted(released, settled) is True
    assert lifecycle.is_fully_decrypted(released, [settled[0], {"settled": 0, "decrypted_votes": 0}]) is False
    assert lifecycle.is_fully_decrypted(released, [settled[0], dict(settled[1], decrypted_votes=2)]) is False
    assert lifecycle.is_fully_decrypted(_survey(total_responses=3), settled) is False
