"""Survey ledger service: the public operations behind the plugin's RPC methods."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from . import lifecycle
from .ciphertext import (
    CiphertextError,
    CiphertextProvider,
    DecryptionOracle,
    LocalCiphertextBackend,
    RelayerDecryptionClient,
)
from .economics import EconomicAccount, basis_point_shares, validate_funding
from .errors import (
    CAPABILITY,
    CONFIG,
    CUSTODY,
    DUPLICATE,
    VALIDATION,
    LedgerError,
)
from .ledger_store import SurveyStore
from .tally import EncryptedTally

Event = Tuple[str, Dict[str, Any]]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SurveyLedgerService:
    """Anonymous survey ledger with encrypted tallies and escrowed rewards."""

    MIN_OPTIONS = 2
    MAX_OPTIONS = 10
    MAX_OPTION_LEN = 64
    MAX_QUESTION_LEN = 500
    MAX_PRINCIPAL_LEN = 128
    MAX_DURATION_SECONDS = 365 * 86_400
    MAX_OPEN_SURVEYS = 5_000
    MAX_LIST_LIMIT = 500
    PAYOUT_TOPICS = ("participant_withdrawal", "reward_pool_withdrawn")

    def __init__(
        self,
        store: SurveyStore,
        provider: CiphertextProvider,
        oracle: Optional[DecryptionOracle] = None,
        logger: Optional[Callable[[str, str], None]] = None,
        ledger_id: str = "survey-ledger",
        default_deposit_msat: int = 10_000_000,
        min_duration_seconds: int = 60,
        relayer_url: str = "",
        relayer_token: str = "",
        network_enabled: bool = False,
        require_decryption_proof: bool = False,
        payout_fn: Optional[Callable[[str, int, str], None]] = None,
        event_fn: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.provider = provider
        self._logger = logger
        self.ledger_id = ledger_id
        self.default_deposit_msat = max(1, int(default_deposit_msat))
        self.min_duration_seconds = max(1, int(min_duration_seconds))
        self.relayer_url = relayer_url.strip()
        self.network_enabled = bool(network_enabled)
        self.require_decryption_proof = bool(require_decryption_proof)
        self._payout_fn = payout_fn
        self._event_fn = event_fn
        self._time_fn = time_fn
        self._write_lock = threading.RLock()

        if self.network_enabled and not self._is_valid_relayer_url(self.relayer_url):
            self._log("survey-ledger: invalid relayer URL; disabling network integration", "warn")
            self.network_enabled = False
            self.relayer_url = ""

        if oracle is None and self.network_enabled and self.relayer_url:
            oracle = RelayerDecryptionClient(self.relayer_url, auth_token=relayer_token)
        if isinstance(oracle, RelayerDecryptionClient) and isinstance(provider, LocalCiphertextBackend):
            self._log(
                "survey-ledger: a relayer cannot resolve handles issued by the local backend; "
                "using the local oracle and disabling network integration",
                "warn",
            )
            oracle = provider
            self.network_enabled = False
            self.relayer_url = ""
        self.oracle = oracle

        self.tally = EncryptedTally(provider, ledger_id, logger=logger)
        self.store.initialize()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _is_valid_relayer_url(self, url: str) -> bool:
        if not isinstance(url, str) or not url.strip():
            return False
        parsed = urlparse(url)
        if parsed.scheme not in ("https", "http"):
            return False
        if not parsed.netloc or not parsed.hostname:
            return False
        if parsed.scheme == "http" and parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
            return False
        return True

    # plumbing

    def _execute(
        self,
        operation: Callable[[List[Event]], Dict[str, Any]],
        after_commit: Optional[Callable[[], None]] = None,
    ) -> Dict[str, Any]:
        """Run a state-mutating operation atomically, then publish its events."""
        events: List[Event] = []
        try:
            with self._write_lock:
                with self.store.transaction():
                    result = operation(events)
        except LedgerError as exc:
            self._log(f"survey-ledger: call rejected ({exc.code}): {exc.message}", "debug")
            return exc.to_response()
        except sqlite3.Error as exc:
            # payout events are emitted right before the transfer, so any here were paid
            paid = [payload for topic, payload in events if topic in self.PAYOUT_TOPICS]
            if paid and self._payout_fn:
                self._log(
                    f"survey-ledger: commit failed after transfer; ledger no longer records "
                    f"payout(s) {json.dumps(paid, sort_keys=True)}; reconcile manually: {exc}",
                    "error",
                )
            raise
        if after_commit:
            after_commit()
        self._publish(events)
        return result

    def _query(self, operation: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return operation()
        except LedgerError as exc:
            return exc.to_response()

    def _emit(self, events: List[Event], survey_id: int, topic: str, payload: Dict[str, Any]) -> None:
        payload = dict(payload, survey_id=survey_id)
        self.store.add_event(
            survey_id=survey_id,
            event_type=topic,
            payload_json=json.dumps(payload, sort_keys=True, separators=(",", ":")),
            now_ts=self._now(),
        )
        events.append((topic, payload))

    def _publish(self, events: List[Event]) -> None:
        if not self._event_fn:
            return
        for topic, payload in events:
            try:
                self._event_fn(topic, payload)
            except Exception as exc:
                self._log(f"survey-ledger: event delivery failed for {topic} (ledger state kept): {exc}", "warn")

    def _transfer(self, recipient: str, amount_msat: int, memo: str) -> None:
        if amount_msat <= 0 or not self._payout_fn:
            return
        try:
            self._payout_fn(recipient, amount_msat, memo)
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(CUSTODY, f"transfer failed: {exc}") from exc

    def _principal(self, value: Any, field: str) -> str:
        if not isinstance(value, str):
            raise LedgerError(VALIDATION, f"{field} is required")
        value = value.strip()
        if not value or len(value) > self.MAX_PRINCIPAL_LEN:
            raise LedgerError(VALIDATION, f"invalid {field}")
        return value

    def _load_survey(self, survey_id: Any) -> Dict[str, Any]:
        if not _is_int(survey_id) or survey_id < 0:
            raise LedgerError(VALIDATION, "survey_id must be a non-negative integer")
        survey = self.store.get_survey(survey_id)
        if not survey:
            raise LedgerError(VALIDATION, "survey not found")
        return survey

    def _option_index(self, survey: Dict[str, Any], option_index: Any) -> int:
        if not _is_int(option_index) or option_index < 0 or option_index >= int(survey["option_count"]):
            raise LedgerError(
                VALIDATION,
                "invalid option index",
                option_count=int(survey["option_count"]),
            )
        return option_index

    def _amount(self, value: Any, field: str) -> int:
        if not _is_int(value) or value < 0:
            raise LedgerError(VALIDATION, f"{field} must be a non-negative integer")
        return value

    def _normalize_options(self, options: Any) -> List[str]:
        if not isinstance(options, list):
            raise LedgerError(VALIDATION, "options must be a list")
        if len(options) < self.MIN_OPTIONS or len(options) > self.MAX_OPTIONS:
            raise LedgerError(
                VALIDATION,
                f"options must contain between {self.MIN_OPTIONS} and {self.MAX_OPTIONS} entries",
            )
        cleaned: List[str] = []
        for item in options:
            if not isinstance(item, str):
                raise LedgerError(VALIDATION, "invalid options (expected unique non-empty strings)")
            value = item.strip()
            if not value or len(value) > self.MAX_OPTION_LEN or value in cleaned:
                raise LedgerError(VALIDATION, "invalid options (expected unique non-empty strings)")
            cleaned.append(value)
        return cleaned

    # creation

    def create_survey(
        self,
        creator: str,
        question: str,
        options: List[Any],
        duration_seconds: int,
        deposit_required_msat: int,
        reward_per_response_msat: int,
        amount_msat: int,
    ) -> Dict[str, Any]:
        def operation(events: List[Event]) -> Dict[str, Any]:
            creator_id = self._principal(creator, "creator")
            if not isinstance(question, str) or not question.strip():
                raise LedgerError(VALIDATION, "question is required")
            text = question.strip()
            if len(text) > self.MAX_QUESTION_LEN:
                raise LedgerError(VALIDATION, f"question too long (max {self.MAX_QUESTION_LEN} chars)")
            cleaned_options = self._normalize_options(options)
            if not _is_int(duration_seconds) or duration_seconds < self.min_duration_seconds:
                raise LedgerError(
                    VALIDATION,
                    "duration too short",
                    min_duration_seconds=self.min_duration_seconds,
                )
            if duration_seconds > self.MAX_DURATION_SECONDS:
                raise LedgerError(VALIDATION, "duration too long")
            deposit = validate_funding(
                reward_pool_msat=self._amount(amount_msat, "amount_msat"),
                deposit_required_msat=self._amount(deposit_required_msat, "deposit_required_msat"),
                reward_per_response_msat=self._amount(reward_per_response_msat, "reward_per_response_msat"),
                default_deposit_msat=self.default_deposit_msat,
            )
            now_ts = self._now()
            if self.store.count_open_surveys(now_ts) >= self.MAX_OPEN_SURVEYS:
                raise LedgerError(
                    VALIDATION,
                    "too many open surveys",
                    max_open_surveys=self.MAX_OPEN_SURVEYS,
                )

            survey_id = self.store.next_survey_id()
            end_time = now_ts + duration_seconds
            counters = self.tally.zero_counters(len(cleaned_options))
            self.store.create_survey(
                survey_id=survey_id,
                creator=creator_id,
                question=text,
                options_json=json.dumps(cleaned_options, separators=(",", ":")),
                option_count=len(cleaned_options),
                end_time=end_time,
                reward_pool_msat=amount_msat,
                deposit_required_msat=deposit,
                reward_per_response_msat=reward_per_response_msat,
                now_ts=now_ts,
            )
            self.store.create_tallies(survey_id, counters, now_ts)
            self.store.credit_custody(amount_msat, now_ts)
            self._emit(events, survey_id, "survey_created", {
                "creator": creator_id,
                "question": text,
                "options": cleaned_options,
                "end_time": end_time,
                "reward_pool_msat": amount_msat,
                "deposit_required_msat": deposit,
                "reward_per_response_msat": reward_per_response_msat,
            })
            self._log(f"survey-ledger: survey {survey_id} created by {creator_id} ({len(cleaned_options)} options)")
            return {
                "ok": True,
                "survey_id": survey_id,
                "end_time": end_time,
                "reward_pool_msat": amount_msat,
                "deposit_required_msat": deposit,
                "reward_per_response_msat": reward_per_response_msat,
            }

        return self._execute(operation)

    # responses

    def submit_response(
        self,
        survey_id: int,
        participant: str,
        encrypted_choice: str,
        input_proof: str,
        amount_msat: int,
    ) -> Dict[str, Any]:
        superseded: List[str] = []

        def operation(events: List[Event]) -> Dict[str, Any]:
            participant_id = self._principal(participant, "participant")
            if not isinstance(encrypted_choice, str) or not encrypted_choice:
                raise LedgerError(VALIDATION, "encrypted_choice is required")
            if not isinstance(input_proof, str) or not input_proof:
                raise LedgerError(VALIDATION, "input_proof is required")
            deposit_paid = self._amount(amount_msat, "amount_msat")

            survey = self._load_survey(survey_id)
            now_ts = self._now()
            lifecycle.require_open(survey, now_ts)
            if self.store.get_participant(survey_id, participant_id):
                raise LedgerError(DUPLICATE, "already responded to this survey")
            account = EconomicAccount(survey)
            account.check_deposit(deposit_paid)
            account.check_reward_capacity()

            counters = [tally["encrypted_votes"] for tally in self.store.get_tallies(survey_id)]
            updated = self.tally.accumulate(counters, encrypted_choice, input_proof, participant_id)

            if not self.store.add_participant(survey_id, participant_id, deposit_paid, now_ts):
                raise LedgerError(DUPLICATE, "already responded to this survey")
            self.store.set_encrypted_votes(survey_id, updated, now_ts)
            superseded.extend(counters)
            self.store.increment_responses(survey_id, now_ts)
            self.store.credit_custody(deposit_paid, now_ts)
            self._emit(events, survey_id, "response_recorded", {
                "participant": participant_id,
                "timestamp": now_ts,
                "deposit_paid_msat": deposit_paid,
            })
            return {
                "ok": True,
                "survey_id": survey_id,
                "participant": participant_id,
                "deposit_paid_msat": deposit_paid,
                "total_responses": int(survey["total_responses"]) + 1,
            }

        return self._execute(operation, after_commit=lambda: self.tally.discard(superseded))

    # withdrawals

    def withdraw_participant_funds(self, survey_id: int, participant: str) -> Dict[str, Any]:
        def operation(events: List[Event]) -> Dict[str, Any]:
            participant_id = self._principal(participant, "participant")
            survey = self._load_survey(survey_id)
            account = EconomicAccount(survey)
            account.check_participant_withdrawal(self.store.get_participant(survey_id, participant_id))

            now_ts = self._now()
            payout = account.participant_payout_msat
            if not self.store.mark_withdrawn(survey_id, participant_id, now_ts):
                raise LedgerError(DUPLICATE, "funds already withdrawn")
            if not self.store.debit_custody(payout, now_ts):
                raise LedgerError(CUSTODY, "insufficient custodied balance", payout_msat=payout)
            self.store.add_payout(survey_id, participant_id, payout, "participant", now_ts)
            self._emit(events, survey_id, "participant_withdrawal", {
                "participant": participant_id,
                "deposit_msat": account.deposit_required_msat,
                "reward_msat": account.reward_per_response_msat,
                "total_msat": payout,
            })
            # withdrawal is recorded above, so a re-entrant call sees it
            self._transfer(participant_id, payout, f"survey {survey_id} deposit and reward")
            self._log(f"survey-ledger: {participant_id} withdrew {payout} msat from survey {survey_id}")
            return {
                "ok": True,
                "survey_id": survey_id,
                "participant": participant_id,
                "deposit_msat": account.deposit_required_msat,
                "reward_msat": account.reward_per_response_msat,
                "total_msat": payout,
            }

        return self._execute(operation)

    def withdraw_reward_pool(self, survey_id: int, caller: str) -> Dict[str, Any]:
        def operation(events: List[Event]) -> Dict[str, Any]:
            caller_id = self._principal(caller, "caller")
            survey = self._load_survey(survey_id)
            account = EconomicAccount(survey)
            account.check_creator(caller_id)
            now_ts = self._now()
            lifecycle.require_closed(survey, now_ts, "withdraw reward pool")
            account.check_pool_available()

            remaining = account.remaining_reward_pool_msat
            if not self.store.zero_reward_pool(survey_id, now_ts):
                raise LedgerError(DUPLICATE, "no reward pool left")
            if remaining > 0:
                if not self.store.debit_custody(remaining, now_ts):
                    raise LedgerError(CUSTODY, "insufficient custodied balance", payout_msat=remaining)
                self.store.add_payout(survey_id, caller_id, remaining, "creator", now_ts)
            self._emit(events, survey_id, "reward_pool_withdrawn", {
                "creator": caller_id,
                "amount_msat": remaining,
            })
            self._transfer(caller_id, remaining, f"survey {survey_id} unused reward pool")
            self._log(f"survey-ledger: creator withdrew {remaining} msat from survey {survey_id}")
            return {"ok": True, "survey_id": survey_id, "amount_msat": remaining}

        return self._execute(operation)

    # reveal and settlement

    def release_and_request_decrypt(self, survey_id: int, option_index: int, caller: str) -> Dict[str, Any]:
        def operation(events: List[Event]) -> Dict[str, Any]:
            caller_id = self._principal(caller, "caller")
            survey = self._load_survey(survey_id)
            index = self._option_index(survey, option_index)
            now_ts = self._now()
            lifecycle.require_closed(survey, now_ts, "reveal results")

            released_now = self.store.mark_released(survey_id, now_ts)
            if released_now:
                self._emit(events, survey_id, "results_released", {
                    "released_by": caller_id,
                    "total_responses": int(survey["total_responses"]),
                })
                self._log(f"survey-ledger: survey {survey_id} results released by {caller_id}")

            counter = self.store.get_tallies(survey_id)[index]["encrypted_votes"]
            handle = self.tally.reveal(counter, caller_id)
            self._emit(events, survey_id, "decryption_requested", {
                "option_index": index,
                "vote_handle": handle,
                "requested_by": caller_id,
            })
            return {
                "ok": True,
                "survey_id": survey_id,
                "option_index": index,
                "vote_handle": handle,
                "released": released_now,
            }

        return self._execute(operation)

    def _attestation(self, counter: str, count: int, signature: str) -> bool:
        """True when the oracle vouches for ``count``; raises on a rejected or missing proof."""
        if not self.oracle:
            if self.require_decryption_proof:
                raise LedgerError(CONFIG, "strict settlement requires a decryption oracle")
            return False
        if not signature:
            if self.require_decryption_proof:
                raise LedgerError(VALIDATION, "decryption attestation required")
            return False
        handle = self.tally.transport_handle(counter)
        try:
            attested = self.oracle.verify_attestation(handle, count, signature)
        except (CiphertextError, OSError, ValueError) as exc:
            raise LedgerError(CAPABILITY, f"attestation check failed: {exc}") from exc
        if not attested:
            raise LedgerError(VALIDATION, "decryption attestation rejected")
        return True

    def store_decrypted_vote(
        self,
        survey_id: int,
        option_index: int,
        plaintext_count: int,
        caller: str,
        signature: str = "",
    ) -> Dict[str, Any]:
        """Store one option's plaintext count.

        An unattested count stays replaceable; an attested one is final.
        Conservation is checked against attested counts only, and "fully
        decrypted" requires the stored counts to add up to the responses.
        """
        def operation(events: List[Event]) -> Dict[str, Any]:
            caller_id = self._principal(caller, "caller")
            survey = self._load_survey(survey_id)
            now_ts = self._now()
            lifecycle.require_released(survey, now_ts)
            index = self._option_index(survey, option_index)
            count = self._amount(plaintext_count, "plaintext_count")
            total = int(survey["total_responses"])
            if count > total:
                raise LedgerError(VALIDATION, "decrypted count exceeds total responses", total_responses=total)

            tallies = self.store.get_tallies(survey_id)
            tally = tallies[index]
            attested = self._attestation(tally["encrypted_votes"], count, signature)
            previous = int(tally["decrypted_votes"])

            if tally["settled"] and previous == count and (tally["attested"] or not attested):
                return {
                    "ok": True,
                    "survey_id": survey_id,
                    "option_index": index,
                    "decrypted_votes": count,
                    "attested": bool(tally["attested"]),
                    "already_settled": True,
                    "fully_decrypted": lifecycle.is_fully_decrypted(survey, tallies),
                }
            if tally["attested"]:
                raise LedgerError(
                    DUPLICATE,
                    "option already settled with an attested count",
                    decrypted_votes=previous,
                )

            others = [t for i, t in enumerate(tallies) if i != index and t["attested"]]
            attested_sum = sum(int(t["decrypted_votes"]) for t in others) + count
            if attested_sum > total:
                raise LedgerError(VALIDATION, "decrypted counts exceed total responses", total_responses=total)
            if len(others) == len(tallies) - 1 and attested_sum != total:
                raise LedgerError(
                    VALIDATION,
                    "decrypted counts do not add up to total responses",
                    total_responses=total,
                )

            replaced = bool(tally["settled"])
            self.store.store_decrypted_votes(survey_id, index, count, caller_id, now_ts, attested=attested)
            if replaced:
                self._log(
                    f"survey-ledger: survey {survey_id} option {index} count replaced "
                    f"({previous} -> {count}) by {caller_id}",
                    "warn",
                )
            self._emit(events, survey_id, "vote_decrypted", {
                "option_index": index,
                "decrypted_votes": count,
                "attested": attested,
                "replaced": replaced,
                "settled_by": caller_id,
            })
            fully = lifecycle.is_fully_decrypted(survey, self.store.get_tallies(survey_id))
            if fully:
                self._log(f"survey-ledger: survey {survey_id} fully decrypted")
            return {
                "ok": True,
                "survey_id": survey_id,
                "option_index": index,
                "decrypted_votes": count,
                "attested": attested,
                "already_settled": False,
                "fully_decrypted": fully,
            }

        return self._execute(operation)

    def settle_results(self, survey_id: int, caller: str) -> Dict[str, Any]:
        """Release every option, resolve it through the oracle, store the counts."""
        if not self.oracle:
            return LedgerError(CONFIG, "no decryption oracle configured").to_response()

        info = self.get_survey_info(survey_id)
        if "error" in info:
            return info

        for index in range(int(info["option_count"])):
            released = self.release_and_request_decrypt(survey_id, index, caller)
            if "error" in released:
                return dict(released, option_index=index)
            try:
                result = self.oracle.decrypt(released["vote_handle"], self.ledger_id)
            except (CiphertextError, OSError, ValueError) as exc:
                self._log(f"survey-ledger: decryption of survey {survey_id} option {index} failed: {exc}", "warn")
                return LedgerError(CAPABILITY, f"decryption failed: {exc}", option_index=index).to_response()
            stored = self.store_decrypted_vote(
                survey_id, index, result.value, caller, signature=result.signature
            )
            if "error" in stored:
                return dict(stored, option_index=index)

        return self.get_survey_statistics(survey_id)

    # reads

    def survey_count(self) -> Dict[str, Any]:
        return {"ok": True, "count": self.store.count_surveys()}

    def get_survey_info(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            tallies = self.store.get_tallies(survey_id)
            return {
                "ok": True,
                "survey_id": survey_id,
                "creator": survey["creator"],
                "question": survey["question"],
                "option_count": int(survey["option_count"]),
                "end_time": int(survey["end_time"]),
                "total_responses": int(survey["total_responses"]),
                "is_active": bool(survey["is_active"]),
                "results_released": bool(survey["results_released"]),
                "state": lifecycle.survey_state(survey, self._now()),
                "fully_decrypted": lifecycle.is_fully_decrypted(survey, tallies),
            }

        return self._query(query)

    def get_survey_options(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            return {"ok": True, "survey_id": survey_id, "options": json.loads(survey["options_json"])}

        return self._query(query)

    def get_encrypted_votes(self, survey_id: int, option_index: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            index = self._option_index(survey, option_index)
            tally = self.store.get_tallies(survey_id)[index]
            return {"ok": True, "survey_id": survey_id, "option_index": index, "vote_handle": tally["encrypted_votes"]}

        return self._query(query)

    def get_decrypted_votes(self, survey_id: int, option_index: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            lifecycle.require_released(survey, self._now())
            index = self._option_index(survey, option_index)
            tally = self.store.get_tallies(survey_id)[index]
            return {
                "ok": True,
                "survey_id": survey_id,
                "option_index": index,
                "decrypted_votes": int(tally["decrypted_votes"]),
                "settled": bool(tally["settled"]),
            }

        return self._query(query)

    def get_all_decrypted_votes(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            lifecycle.require_released(survey, self._now())
            tallies = self.store.get_tallies(survey_id)
            return {
                "ok": True,
                "survey_id": survey_id,
                "votes": [int(t["decrypted_votes"]) for t in tallies],
                "settled": [bool(t["settled"]) for t in tallies],
                "fully_decrypted": lifecycle.is_fully_decrypted(survey, tallies),
            }

        return self._query(query)

    def get_survey_statistics(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            lifecycle.require_released(survey, self._now())
            tallies = self.store.get_tallies(survey_id)
            counts = [int(t["decrypted_votes"]) for t in tallies]
            total = int(survey["total_responses"])
            return {
                "ok": True,
                "survey_id": survey_id,
                "total_responses": total,
                "votes": counts,
                "percentages_bps": basis_point_shares(counts, total),
                "fully_decrypted": lifecycle.is_fully_decrypted(survey, tallies),
            }

        return self._query(query)

    def has_user_voted(self, survey_id: int, participant: str) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            self._load_survey(survey_id)
            row = self.store.get_participant(survey_id, self._principal(participant, "participant"))
            return {"ok": True, "survey_id": survey_id, "has_voted": row is not None}

        return self._query(query)

    def has_user_withdrawn(self, survey_id: int, participant: str) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            self._load_survey(survey_id)
            row = self.store.get_participant(survey_id, self._principal(participant, "participant"))
            return {"ok": True, "survey_id": survey_id, "has_withdrawn": bool(row and row["has_withdrawn"])}

        return self._query(query)

    def get_survey_financials(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            summary = EconomicAccount(survey).summary(self.store.count_unwithdrawn(survey_id))
            return dict(summary, ok=True, survey_id=survey_id)

        return self._query(query)

    def is_survey_open(self, survey_id: int) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            survey = self._load_survey(survey_id)
            state = lifecycle.survey_state(survey, self._now())
            return {"ok": True, "survey_id": survey_id, "open": state == lifecycle.OPEN, "state": state}

        return self._query(query)

    def custody_balance(self) -> Dict[str, Any]:
        custody = self.store.get_custody()
        return {
            "ok": True,
            "balance_msat": int(custody["balance_msat"]),
            "total_in_msat": int(custody["total_in_msat"]),
            "total_out_msat": int(custody["total_out_msat"]),
        }

    def audit_custody(self) -> Dict[str, Any]:
        balance = int(self.store.get_custody()["balance_msat"])
        participant_owed = self.store.sum_participant_liabilities()
        creator_owed = self.store.sum_creator_liabilities()
        owed = participant_owed + creator_owed
        if balance < owed:
            self._log(f"survey-ledger: custody shortfall of {owed - balance} msat", "warn")
        return {
            "ok": True,
            "balance_msat": balance,
            "participant_liabilities_msat": participant_owed,
            "creator_liabilities_msat": creator_owed,
            "surplus_msat": balance - owed,
            "solvent": balance >= owed,
        }

    def list_surveys(self, limit: int = 50, participant: str = "") -> Dict[str, Any]:
        if not _is_int(limit) or limit <= 0:
            return {"error": "limit must be positive", "code": VALIDATION}
        limit = min(limit, self.MAX_LIST_LIMIT)
        viewer = participant.strip() if isinstance(participant, str) else ""

        now_ts = self._now()
        surveys = []
        for survey in self.store.list_surveys(limit):
            state = lifecycle.survey_state(survey, now_ts)
            account = EconomicAccount(survey)
            entry = {
                "survey_id": survey["survey_id"],
                "question": survey["question"],
                "creator": survey["creator"],
                "end_time": int(survey["end_time"]),
                "option_count": int(survey["option_count"]),
                "total_responses": int(survey["total_responses"]),
                "state": state,
                "is_ended": state != lifecycle.OPEN,
                "reward_pool_msat": account.reward_pool_msat,
                "deposit_required_msat": account.deposit_required_msat,
                "reward_per_response_msat": account.reward_per_response_msat,
            }
            if viewer:
                entry["has_voted"] = self.store.get_participant(survey["survey_id"], viewer) is not None
                entry["is_creator"] = survey["creator"] == viewer
            surveys.append(entry)
        return {"ok": True, "count": len(surveys), "surveys": surveys}

    def list_events(self, survey_id: int, limit: int = 100) -> Dict[str, Any]:
        def query() -> Dict[str, Any]:
            self._load_survey(survey_id)
            if not _is_int(limit) or limit <= 0:
                raise LedgerError(VALIDATION, "limit must be positive")
            rows = self.store.list_events(survey_id, min(limit, self.MAX_LIST_LIMIT))
            events = [
                {
                    "event_id": row["event_id"],
                    "event_type": row["event_type"],
                    "payload": json.loads(row["payload_json"]),
                    "created_at": row["created_at"],
                }
                for row in rows
            ]
            return {"ok": True, "survey_id": survey_id, "count": len(events), "events": events}

        return self._query(query)

    def status(self) -> Dict[str, Any]:
        now_ts = self._now()
        by_state = {lifecycle.OPEN: 0, lifecycle.CLOSED: 0, lifecycle.RELEASED: 0}
        for survey in self.store.list_surveys(self.store.count_surveys() or 1):
            by_state[lifecycle.survey_state(survey, now_ts)] += 1
        return {
            "ok": True,
            "ledger_id": self.ledger_id,
            "surveys": by_state,
            "total_surveys": self.store.count_surveys(),
            "total_responses": self.store.count_total_responses(),
            "custody_balance_msat": int(self.store.get_custody()["balance_msat"]),
            "network_enabled": self.network_enabled,
            "relayer_url": self.relayer_url,
            "oracle_configured": self.oracle is not None,
            "require_decryption_proof": self.require_decryption_proof,
        }
