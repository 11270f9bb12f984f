"""Encrypted tally engine.

Every response sweeps all option counters: compare the encrypted choice with
each index, select 1 or 0, add it in. The sweep length depends only on the
option count, never on the choice.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from .ciphertext import CiphertextError, CiphertextProvider
from .errors import CAPABILITY, VALIDATION, LedgerError


class EncryptedTally:
    def __init__(
        self,
        provider: CiphertextProvider,
        ledger_id: str,
        logger: Optional[Callable[[str, str], None]] = None,
    ):
        self.provider = provider
        self.ledger_id = ledger_id
        self._logger = logger

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def zero_counters(self, option_count: int) -> List[str]:
        try:
            counters = []
            for _ in range(option_count):
                counter = self.provider.encrypt_constant(0)
                self.provider.grant_access(counter, self.ledger_id)
                counters.append(counter)
            return counters
        except CiphertextError as exc:
            raise LedgerError(CAPABILITY, f"counter initialisation failed: {exc}") from exc
        finally:
            self.provider.end_call()

    def accumulate(
        self,
        counters: Sequence[str],
        encrypted_choice: str,
        input_proof: str,
        participant: str,
    ) -> List[str]:
        """Return the updated counters after one encrypted response.

        Intermediate ciphertexts and the consumed input are released before
        returning. The superseded counters are left to the caller, which frees
        them once the new ones are persisted.
        """
        scratch: List[str] = []
        updated: List[str] = []
        try:
            try:
                choice = self.provider.verify_input(
                    encrypted_choice, input_proof, self.ledger_id, participant
                )
            except CiphertextError as exc:
                raise LedgerError(VALIDATION, f"invalid encrypted choice: {exc}") from exc

            one = self.provider.encrypt_constant(1)
            zero = self.provider.encrypt_constant(0)
            scratch.extend([one, zero])
            for index, counter in enumerate(counters):
                is_match = self.provider.equals(choice, index)
                increment = self.provider.select(is_match, one, zero)
                scratch.extend([is_match, increment])
                updated.append(self.provider.add(counter, increment))

            for counter in updated:
                self.provider.grant_access(counter, self.ledger_id)
            scratch.append(choice)
        except CiphertextError as exc:
            scratch.extend(updated)
            raise LedgerError(CAPABILITY, f"homomorphic update failed: {exc}") from exc
        finally:
            for handle in scratch:
                self.provider.release(handle)
            self.provider.end_call()

        self._log(f"survey-ledger: swept {len(updated)} encrypted counters", "debug")
        return updated

    def discard(self, counters: Sequence[str]) -> None:
        for counter in counters:
            self.provider.release(counter)

    def transport_handle(self, counter: str) -> str:
        try:
            return self.provider.to_transport_handle(counter)
        except CiphertextError as exc:
            raise LedgerError(CAPABILITY, f"transport handle unavailable: {exc}") from exc
        finally:
            self.provider.end_call()

    def reveal(self, counter: str, requester: str) -> str:
        """Turn a counter into a transport handle decryptable by the ledger and requester."""
        try:
            handle = self.provider.to_transport_handle(counter)
            self.provider.grant_access(counter, self.ledger_id)
            self.provider.grant_access(counter, requester)
            return handle
        except CiphertextError as exc:
            raise LedgerError(CAPABILITY, f"reveal failed: {exc}") from exc
        finally:
            self.provider.end_call()
