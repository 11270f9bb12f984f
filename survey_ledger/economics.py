"""Per-survey economic account: reward pool, deposits, payouts."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import AUTHORIZATION, DUPLICATE, VALIDATION, LedgerError

BASIS_POINTS = 10_000


def validate_funding(
    reward_pool_msat: int,
    deposit_required_msat: int,
    reward_per_response_msat: int,
    default_deposit_msat: int,
) -> int:
    """Check creation funding and return the effective deposit requirement."""
    if reward_pool_msat <= 0:
        raise LedgerError(VALIDATION, "reward pool must be funded")
    if deposit_required_msat < 0:
        raise LedgerError(VALIDATION, "deposit_required_msat must not be negative")
    if reward_per_response_msat <= 0:
        raise LedgerError(VALIDATION, "reward per response must be positive")
    if reward_per_response_msat > reward_pool_msat:
        raise LedgerError(
            VALIDATION,
            "reward per response exceeds reward pool",
            reward_pool_msat=reward_pool_msat,
        )
    return deposit_required_msat or default_deposit_msat


def basis_point_shares(counts: List[int], total_responses: int) -> List[int]:
    if total_responses <= 0:
        return [0 for _ in counts]
    return [count * BASIS_POINTS // total_responses for count in counts]


class EconomicAccount:
    """Read-side view over a survey row, with the withdrawal rules."""

    def __init__(self, survey: Dict[str, Any]):
        self.survey = survey
        self.reward_pool_msat = int(survey["reward_pool_msat"])
        self.deposit_required_msat = int(survey["deposit_required_msat"])
        self.reward_per_response_msat = int(survey["reward_per_response_msat"])
        self.total_responses = int(survey["total_responses"])

    @property
    def total_rewards_allocated_msat(self) -> int:
        return self.total_responses * self.reward_per_response_msat

    @property
    def remaining_reward_pool_msat(self) -> int:
        return max(0, self.reward_pool_msat - self.total_rewards_allocated_msat)

    @property
    def participant_payout_msat(self) -> int:
        return self.deposit_required_msat + self.reward_per_response_msat

    def check_deposit(self, amount_msat: int) -> None:
        if amount_msat < self.deposit_required_msat:
            raise LedgerError(
                VALIDATION,
                "insufficient deposit",
                deposit_required_msat=self.deposit_required_msat,
            )

    def check_reward_capacity(self) -> None:
        """A new response must leave its reward covered by the pool."""
        if self.remaining_reward_pool_msat < self.reward_per_response_msat:
            raise LedgerError(
                VALIDATION,
                "reward pool exhausted",
                remaining_reward_pool_msat=self.remaining_reward_pool_msat,
            )

    def check_participant_withdrawal(self, participant_row: Optional[Dict[str, Any]]) -> None:
        if not participant_row:
            raise LedgerError(AUTHORIZATION, "did not participate in this survey")
        if participant_row.get("has_withdrawn"):
            raise LedgerError(DUPLICATE, "funds already withdrawn")

    def check_creator(self, caller: str) -> None:
        if caller != self.survey["creator"]:
            raise LedgerError(AUTHORIZATION, "only the survey creator can withdraw the reward pool")

    def check_pool_available(self) -> None:
        if self.reward_pool_msat <= 0:
            raise LedgerError(DUPLICATE, "no reward pool left")

    def summary(self, unwithdrawn_participants: int) -> Dict[str, int]:
        return {
            "reward_pool_msat": self.reward_pool_msat,
            "deposit_required_msat": self.deposit_required_msat,
            "reward_per_response_msat": self.reward_per_response_msat,
            "total_rewards_allocated_msat": self.total_rewards_allocated_msat,
            "remaining_reward_pool_msat": self.remaining_reward_pool_msat,
            "total_deposits_held_msat": unwithdrawn_participants * self.deposit_required_msat,
        }
