#!/usr/bin/env python3
"""cl-survey-ledger: anonymous surveys with encrypted tallies and escrowed rewards."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from survey_ledger.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from survey_ledger.ciphertext import CiphertextError, LocalCiphertextBackend
from survey_ledger.ledger_service import SurveyLedgerService
from survey_ledger.ledger_store import SurveyStore

plugin = Plugin()
service: SurveyLedgerService | None = None
backend: LocalCiphertextBackend | None = None

LEDGER_ID = "cl-survey-ledger"
EVENT_TOPICS = (
    "survey_created",
    "response_recorded",
    "participant_withdrawal",
    "results_released",
    "decryption_requested",
    "vote_decrypted",
    "reward_pool_withdrawn",
)

for _topic in EVENT_TOPICS:
    plugin.add_notification_topic(_topic)


plugin.add_option(
    name="survey-ledger-db-path",
    default="~/.lightning/cl_survey_ledger.db",
    description="SQLite path for cl-survey-ledger state",
)

plugin.add_option(
    name="survey-ledger-default-deposit-msat",
    default="10000000",
    description="Deposit required from participants when a survey is created with 0",
)

plugin.add_option(
    name="survey-ledger-min-duration",
    default="60",
    description="Minimum survey duration in seconds",
)

plugin.add_option(
    name="survey-ledger-payout-mode",
    default="ledger",
    description="'ledger' records payouts only; 'keysend' pays withdrawals out via keysend",
)

plugin.add_option(
    name="survey-ledger-relayer-url",
    default="",
    description="Decryption relayer base URL",
)

plugin.add_option(
    name="survey-ledger-relayer-token",
    default="",
    description="Bearer token sent to the decryption relayer",
)

plugin.add_option(
    name="survey-ledger-network-enabled",
    default="false",
    description="Enable decryption relayer HTTP calls (default false)",
)

plugin.add_option(
    name="survey-ledger-strict-settlement",
    default="false",
    description="Require an oracle attestation when storing decrypted counts",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _notify(topic: str, payload: Dict[str, Any]) -> None:
    plugin.notify(topic, payload)


def _keysend_payout(recipient: str, amount_msat: int, memo: str) -> None:
    del memo
    plugin.rpc.call("keysend", {"destination": recipient, "amount_msat": amount_msat})


def _require_service() -> SurveyLedgerService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


def _principal(value: str) -> str:
    """Default a caller to this node's pubkey."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    info = plugin.rpc.getinfo()
    return str(info.get("id", "")) if isinstance(info, dict) else ""


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("survey-ledger-db-path") or "~/.lightning/cl_survey_ledger.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    relayer_url = str(options.get("survey-ledger-relayer-url") or "").strip()
    relayer_token = str(options.get("survey-ledger-relayer-token") or "").strip()
    network_enabled = _parse_bool(options.get("survey-ledger-network-enabled"))
    strict_settlement = _parse_bool(options.get("survey-ledger-strict-settlement"))
    default_deposit = max(1, _parse_int(options.get("survey-ledger-default-deposit-msat"), 10_000_000))
    min_duration = max(1, _parse_int(options.get("survey-ledger-min-duration"), 60))

    payout_mode = str(options.get("survey-ledger-payout-mode") or "ledger").strip().lower()
    if payout_mode not in ("ledger", "keysend"):
        plugin.log(f"survey-ledger: unknown payout mode {payout_mode!r}; using 'ledger'", level="warn")
        payout_mode = "ledger"

    global backend
    backend = LocalCiphertextBackend(operator=LEDGER_ID)
    plugin.log(
        "survey-ledger: using the local plaintext-backed ciphertext backend; "
        "encrypted tallies do not survive a restart",
        level="warn",
    )

    store = SurveyStore(db_path=db_path, logger=_logger)

    global service
    service = SurveyLedgerService(
        store=store,
        provider=backend,
        oracle=None if network_enabled else backend,
        logger=_logger,
        ledger_id=LEDGER_ID,
        default_deposit_msat=default_deposit,
        min_duration_seconds=min_duration,
        relayer_url=relayer_url,
        relayer_token=relayer_token,
        network_enabled=network_enabled,
        require_decryption_proof=strict_settlement,
        payout_fn=_keysend_payout if payout_mode == "keysend" else None,
        event_fn=_notify,
    )
    if service.oracle is None:
        # relayer rejected at startup; fall back to the local oracle
        service.oracle = backend

    plugin.log(
        "cl-survey-ledger initialized "
        f"(db_path={db_path}, payout_mode={payout_mode}, network_enabled={service.network_enabled})"
    )


@plugin.method("survey-create")
def survey_create(
    plugin: Plugin,
    question: str,
    options_json: str,
    duration_seconds: int,
    reward_per_response_msat: int,
    amount_msat: int,
    deposit_required_msat: int = 0,
    creator: str = "",
) -> Dict[str, Any]:
    del plugin

    try:
        options = json.loads(options_json)
    except (json.JSONDecodeError, TypeError):
        return {"error": "invalid options_json", "code": "validation"}

    return _require_service().create_survey(
        creator=_principal(creator),
        question=question,
        options=options,
        duration_seconds=_parse_int(duration_seconds, 0),
        deposit_required_msat=_parse_int(deposit_required_msat, 0),
        reward_per_response_msat=_parse_int(reward_per_response_msat, 0),
        amount_msat=_parse_int(amount_msat, 0),
    )


@plugin.method("survey-encrypt-choice")
def survey_encrypt_choice(plugin: Plugin, option_index: int, participant: str = "") -> Dict[str, Any]:
    del plugin
    if backend is None:
        raise RuntimeError("service not initialized")
    try:
        handle, proof = backend.encrypt_input(_parse_int(option_index, -1), LEDGER_ID, _principal(participant))
    except CiphertextError as exc:
        return {"error": str(exc), "code": "validation"}
    return {"ok": True, "encrypted_choice": handle, "input_proof": proof}


@plugin.method("survey-respond")
def survey_respond(
    plugin: Plugin,
    survey_id: int,
    encrypted_choice: str,
    input_proof: str,
    amount_msat: int,
    participant: str = "",
) -> Dict[str, Any]:
    del plugin
    return _require_service().submit_response(
        survey_id=_parse_int(survey_id, -1),
        participant=_principal(participant),
        encrypted_choice=encrypted_choice,
        input_proof=input_proof,
        amount_msat=_parse_int(amount_msat, 0),
    )


@plugin.method("survey-withdraw")
def survey_withdraw(plugin: Plugin, survey_id: int, participant: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().withdraw_participant_funds(
        survey_id=_parse_int(survey_id, -1),
        participant=_principal(participant),
    )


@plugin.method("survey-reveal")
def survey_reveal(plugin: Plugin, survey_id: int, option_index: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().release_and_request_decrypt(
        survey_id=_parse_int(survey_id, -1),
        option_index=_parse_int(option_index, -1),
        caller=_principal(caller),
    )


@plugin.method("survey-store-result")
def survey_store_result(
    plugin: Plugin,
    survey_id: int,
    option_index: int,
    plaintext_count: int,
    signature: str = "",
    caller: str = "",
) -> Dict[str, Any]:
    del plugin
    return _require_service().store_decrypted_vote(
        survey_id=_parse_int(survey_id, -1),
        option_index=_parse_int(option_index, -1),
        plaintext_count=_parse_int(plaintext_count, -1),
        caller=_principal(caller),
        signature=signature,
    )


@plugin.method("survey-settle")
def survey_settle(plugin: Plugin, survey_id: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().settle_results(
        survey_id=_parse_int(survey_id, -1),
        caller=_principal(caller),
    )


@plugin.method("survey-withdraw-pool")
def survey_withdraw_pool(plugin: Plugin, survey_id: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().withdraw_reward_pool(
        survey_id=_parse_int(survey_id, -1),
        caller=_principal(caller),
    )


@plugin.method("survey-info")
def survey_info(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_survey_info(_parse_int(survey_id, -1))


@plugin.method("survey-options")
def survey_options(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_survey_options(_parse_int(survey_id, -1))


@plugin.method("survey-handle")
def survey_handle(plugin: Plugin, survey_id: int, option_index: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_encrypted_votes(_parse_int(survey_id, -1), _parse_int(option_index, -1))


@plugin.method("survey-result")
def survey_result(plugin: Plugin, survey_id: int, option_index: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_decrypted_votes(_parse_int(survey_id, -1), _parse_int(option_index, -1))


@plugin.method("survey-results")
def survey_results(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_all_decrypted_votes(_parse_int(survey_id, -1))


@plugin.method("survey-stats")
def survey_stats(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_survey_statistics(_parse_int(survey_id, -1))


@plugin.method("survey-financials")
def survey_financials(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().get_survey_financials(_parse_int(survey_id, -1))


@plugin.method("survey-has-voted")
def survey_has_voted(plugin: Plugin, survey_id: int, participant: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().has_user_voted(_parse_int(survey_id, -1), _principal(participant))


@plugin.method("survey-has-withdrawn")
def survey_has_withdrawn(plugin: Plugin, survey_id: int, participant: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().has_user_withdrawn(_parse_int(survey_id, -1), _principal(participant))


@plugin.method("survey-is-open")
def survey_is_open(plugin: Plugin, survey_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().is_survey_open(_parse_int(survey_id, -1))


@plugin.method("survey-list")
def survey_list(plugin: Plugin, limit: int = 50, participant: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().list_surveys(limit=_parse_int(limit, 50), participant=participant)


@plugin.method("survey-count")
def survey_count(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().survey_count()


@plugin.method("survey-events")
def survey_events(plugin: Plugin, survey_id: int, limit: int = 100) -> Dict[str, Any]:
    del plugin
    return _require_service().list_events(_parse_int(survey_id, -1), limit=_parse_int(limit, 100))


@plugin.method("survey-custody")
def survey_custody(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().custody_balance()


@plugin.method("survey-audit")
def survey_audit(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().audit_custody()


@plugin.method("survey-status")
def survey_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


if __name__ == "__main__":
    plugin.run()
