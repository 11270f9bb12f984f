"""Ciphertext capability interface and its two implementations.

The ledger never sees plaintext choices. It holds opaque ciphertext handles and
asks a provider to combine them. Decryption happens out of band through a
``DecryptionOracle``; the ledger only hands out transport handles and grants.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import urllib.request
from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Set, Tuple


class CiphertextError(Exception):
    """Raised by a provider when an operation or grant check fails."""


class DecryptionResult(NamedTuple):
    value: int
    signature: str


class CiphertextProvider(ABC):
    """Synchronous homomorphic capabilities consumed by the tally engine."""

    @abstractmethod
    def verify_input(self, encrypted_input: str, proof: str, contract: str, user: str) -> str:
        """Check an externally encrypted input and return a usable ciphertext."""

    @abstractmethod
    def encrypt_constant(self, value: int) -> str:
        ...

    @abstractmethod
    def add(self, a: str, b: str) -> str:
        ...

    @abstractmethod
    def equals(self, a: str, value: int) -> str:
        ...

    @abstractmethod
    def select(self, cond: str, a: str, b: str) -> str:
        ...

    @abstractmethod
    def to_transport_handle(self, ciphertext: str) -> str:
        ...

    @abstractmethod
    def grant_access(self, ciphertext: str, principal: str) -> None:
        ...

    @abstractmethod
    def has_access(self, ciphertext: str, principal: str) -> bool:
        ...

    def end_call(self) -> None:
        """Drop access that only lasts for the current ledger call."""

    def release(self, ciphertext: str) -> None:
        """Forget a ciphertext the ledger no longer references."""


class DecryptionOracle(ABC):
    """Out-of-band resolution of transport handles to plaintext integers."""

    @abstractmethod
    def decrypt(self, handle: str, requester: str) -> DecryptionResult:
        ...

    @abstractmethod
    def verify_attestation(self, handle: str, value: int, signature: str) -> bool:
        ...


class LocalCiphertextBackend(CiphertextProvider, DecryptionOracle):
    """Plaintext-backed backend for tests and development nodes.

    Values are kept in process memory, so handles do not survive a restart.
    Access rules match a coprocessor: an operand must either have been produced
    during the current call or be granted to ``operator``, and decryption
    requires a grant to the requester.
    """

    UINT8_MAX = 255
    UINT32_MAX = 2**32 - 1

    def __init__(self, operator: str, secret: bytes = b""):
        self.operator = operator
        self._secret = secret or os.urandom(32)
        self._values: Dict[str, Tuple[str, int]] = {}
        self._acl: Dict[str, Set[str]] = {}
        self._transient: Set[str] = set()
        self._lock = threading.RLock()
        self.op_counts: Dict[str, int] = {"equals": 0, "select": 0, "add": 0}

    def _mac(self, *parts: Any) -> str:
        material = ":".join(str(part) for part in parts).encode("utf-8")
        return hmac.new(self._secret, material, hashlib.sha256).hexdigest()

    def _new(self, kind: str, value: int, transient: bool = True) -> str:
        handle = "0x" + secrets.token_hex(32)
        with self._lock:
            self._values[handle] = (kind, value)
            self._acl[handle] = set()
            if transient:
                self._transient.add(handle)
        return handle

    def _operand(self, ciphertext: str) -> Tuple[str, int]:
        with self._lock:
            entry = self._values.get(ciphertext)
            if entry is None:
                raise CiphertextError("unknown ciphertext")
            if ciphertext not in self._transient and self.operator not in self._acl[ciphertext]:
                raise CiphertextError("ciphertext not accessible to operator")
            return entry

    def encrypt_input(self, value: int, contract: str, user: str) -> Tuple[str, str]:
        """Client side: encrypt an 8-bit value bound to (contract, user)."""
        if not isinstance(value, int) or value < 0 or value > self.UINT8_MAX:
            raise CiphertextError("input out of range for euint8")
        handle = self._new("euint8", value, transient=False)
        return handle, self._mac("input", handle, contract, user)

    def verify_input(self, encrypted_input: str, proof: str, contract: str, user: str) -> str:
        with self._lock:
            entry = self._values.get(encrypted_input)
            if entry is None or entry[0] != "euint8":
                raise CiphertextError("unknown encrypted input")
            expected = self._mac("input", encrypted_input, contract, user)
            if not isinstance(proof, str) or not hmac.compare_digest(expected, proof):
                raise CiphertextError("input proof does not match contract and user")
            self._transient.add(encrypted_input)
        return encrypted_input

    def encrypt_constant(self, value: int) -> str:
        return self._new("euint32", int(value) & self.UINT32_MAX)

    def add(self, a: str, b: str) -> str:
        _, left = self._operand(a)
        _, right = self._operand(b)
        self.op_counts["add"] += 1
        return self._new("euint32", (left + right) & self.UINT32_MAX)

    def equals(self, a: str, value: int) -> str:
        _, plain = self._operand(a)
        self.op_counts["equals"] += 1
        return self._new("ebool", int(plain == value))

    def select(self, cond: str, a: str, b: str) -> str:
        kind, flag = self._operand(cond)
        if kind != "ebool":
            raise CiphertextError("select condition must be an encrypted bool")
        kind_a, value_a = self._operand(a)
        _, value_b = self._operand(b)
        self.op_counts["select"] += 1
        return self._new(kind_a, value_a if flag else value_b)

    def to_transport_handle(self, ciphertext: str) -> str:
        self._operand(ciphertext)
        return ciphertext

    def grant_access(self, ciphertext: str, principal: str) -> None:
        with self._lock:
            if ciphertext not in self._values:
                raise CiphertextError("unknown ciphertext")
            self._acl[ciphertext].add(principal)

    def has_access(self, ciphertext: str, principal: str) -> bool:
        with self._lock:
            return principal in self._acl.get(ciphertext, set())

    def end_call(self) -> None:
        with self._lock:
            self._transient.clear()

    def release(self, ciphertext: str) -> None:
        with self._lock:
            self._values.pop(ciphertext, None)
            self._acl.pop(ciphertext, None)
            self._transient.discard(ciphertext)

    @property
    def handle_count(self) -> int:
        with self._lock:
            return len(self._values)

    def decrypt(self, handle: str, requester: str) -> DecryptionResult:
        with self._lock:
            entry = self._values.get(handle)
            if entry is None:
                raise CiphertextError("unknown handle")
            if requester not in self._acl[handle]:
                raise CiphertextError("requester not authorized to decrypt")
            value = entry[1]
        return DecryptionResult(value=value, signature=self._mac("decrypt", handle, value))

    def verify_attestation(self, handle: str, value: int, signature: str) -> bool:
        if not isinstance(signature, str) or not signature:
            return False
        return hmac.compare_digest(self._mac("decrypt", handle, value), signature)


class RelayerDecryptionClient(DecryptionOracle):
    """Small HTTP client for a decryption relayer."""

    def __init__(self, base_url: str, auth_token: str = "", timeout_seconds: int = 10):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as response:
            raw = response.read().decode("utf-8")
            return json.loads(raw) if raw else {}

    def decrypt(self, handle: str, requester: str) -> DecryptionResult:
        data = self._request("POST", "/v1/decrypt", {"handle": handle, "requester": requester})
        value = data.get("value")
        if isinstance(value, bool) or not isinstance(value, int):
            raise CiphertextError("relayer returned no plaintext value")
        return DecryptionResult(value=value, signature=str(data.get("signature") or ""))

    def verify_attestation(self, handle: str, value: int, signature: str) -> bool:
        payload = {"handle": handle, "value": value, "signature": signature}
        data = self._request("POST", "/v1/attestations/verify", payload)
        return bool(data.get("valid", False))
