"""Tests for the local ciphertext backend and the relayer decryption client."""

import json
import os
import sys
from unittest.mock import patch, MagicMock
from urllib.error import URLError

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from survey_ledger.ciphertext import (
    CiphertextError,
    LocalCiphertextBackend,
    RelayerDecryptionClient,
)

LEDGER = "survey-ledger"


# ---------------------------------------------------------------------------
# LocalCiphertextBackend
# ---------------------------------------------------------------------------


def test_input_bound_to_contract_and_user():
    backend = LocalCiphertextBackend(operator=LEDGER)
    handle, proof = backend.encrypt_input(2, LEDGER, "alice")

    with pytest.raises(CiphertextError):
        backend.verify_input(handle, proof, LEDGER, "bob")
    with pytest.raises(CiphertextError):
        backend.verify_input(handle, proof, "other-ledger", "alice")
    assert backend.verify_input(handle, proof, LEDGER, "alice") == handle


def test_input_range_is_uint8():
    backend = LocalCiphertextBackend(operator=LEDGER)
    with pytest.raises(CiphertextError):
        backend.encrypt_input(256, LEDGER, "alice")
    with pytest.raises(CiphertextError):
        backend.encrypt_input(-1, LEDGER, "alice")


def test_transient_access_ends_with_call():
    backend = LocalCiphertextBackend(operator=LEDGER)
    one = backend.encrypt_constant(1)
    two = backend.add(one, one)

    backend.end_call()
    with pytest.raises(CiphertextError, match="not accessible"):
        backend.add(two, one)

    backend.grant_access(two, LEDGER)
    backend.grant_access(one, LEDGER)
    assert backend.has_access(two, LEDGER)
    backend.add(two, one)


def test_select_requires_encrypted_bool():
    backend = LocalCiphertextBackend(operator=LEDGER)
    one = backend.encrypt_constant(1)
    zero = backend.encrypt_constant(0)
    with pytest.raises(CiphertextError):
        backend.select(one, one, zero)

    flag = backend.equals(one, 1)
    picked = backend.select(flag, one, zero)
    backend.grant_access(picked, "auditor")
    assert backend.decrypt(picked, "auditor").value == 1


def test_add_wraps_at_uint32():
    backend = LocalCiphertextBackend(operator=LEDGER)
    top = backend.encrypt_constant(2**32 - 1)
    total = backend.add(top, backend.encrypt_constant(2))
    backend.grant_access(total, "auditor")
    assert backend.decrypt(total, "auditor").value == 1


def test_decrypt_requires_grant():
    backend = LocalCiphertextBackend(operator=LEDGER)
    counter = backend.encrypt_constant(7)
    with pytest.raises(CiphertextError, match="not authorized"):
        backend.decrypt(counter, "auditor")
    with pytest.raises(CiphertextError, match="unknown"):
        backend.decrypt("0xdeadbeef", "auditor")

    backend.grant_access(counter, "auditor")
    result = backend.decrypt(counter, "auditor")
    assert result.value == 7
    assert backend.verify_attestation(counter, 7, result.signature) is True
    assert backend.verify_attestation(counter, 8, result.signature) is False
    assert backend.verify_attestation(counter, 7, "") is False


def test_release_forgets_ciphertext():
    backend = LocalCiphertextBackend(operator=LEDGER)
    counter = backend.encrypt_constant(5)
    backend.grant_access(counter, "auditor")
    backend.release(counter)
    assert backend.handle_count == 0
    assert not backend.has_access(counter, "auditor")
    with pytest.raises(CiphertextError, match="unknown"):
        backend.decrypt(counter, "auditor")


def test_attestations_are_backend_specific():
    first = LocalCiphertextBackend(operator=LEDGER, secret=b"a" * 32)
    second = LocalCiphertextBackend(operator=LEDGER, secret=b"b" * 32)
    counter = first.encrypt_constant(3)
    first.grant_access(counter, "auditor")
    signature = first.decrypt(counter, "auditor").signature
    assert second.verify_attestation(counter, 3, signature) is False


# ---------------------------------------------------------------------------
# RelayerDecryptionClient
# ---------------------------------------------------------------------------


def _mock_urlopen_response(data: dict, status: int = 200):
    """Create a mock context manager for urllib.request.urlopen."""
    body = json.dumps(data).encode("utf-8")
    mock_response = MagicMock()
    mock_response.read.return_value = body
    mock_response.status = status
    mock_response.__enter__ = lambda s: s
    mock_response.__exit__ = MagicMock(return_value=False)
    return mock_response


@patch("survey_ledger.ciphertext.urllib.request.urlopen")
def test_relayer_decrypt_success(mock_urlopen):
    """decrypt should POST the handle and requester to /v1/decrypt."""
    mock_urlopen.return_value = _mock_urlopen_response({"value": 4, "signature": "sig-1"})

    client = RelayerDecryptionClient("https://relayer.example.com/", auth_token="secret")
    result = client.decrypt("0xabc", "survey-ledger")
    assert result.value == 4
    assert result.signature == "sig-1"

    req = mock_urlopen.call_args[0][0]
    assert req.full_url == "https://relayer.example.com/v1/decrypt"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer secret"
    body = json.loads(req.data)
    assert body == {"handle": "0xabc", "requester": "survey-ledger"}


@patch("survey_ledger.ciphertext.urllib.request.urlopen")
def test_relayer_decrypt_without_token(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"value": 0})

    client = RelayerDecryptionClient("https://relayer.example.com")
    result = client.decrypt("0xabc", "survey-ledger")
    assert result.value == 0
    assert result.signature == ""
    req = mock_urlopen.call_args[0][0]
    assert req.get_header("Authorization") is None


@patch("survey_ledger.ciphertext.urllib.request.urlopen")
def test_relayer_decrypt_bad_response(mock_urlopen):
    """A response without an integer value is rejected."""
    mock_urlopen.return_value = _mock_urlopen_response({"value": "4"})

    client = RelayerDecryptionClient("https://relayer.example.com")
    with pytest.raises(CiphertextError):
        client.decrypt("0xabc", "survey-ledger")

    mock_urlopen.return_value = _mock_urlopen_response({"value": True})
    with pytest.raises(CiphertextError):
        client.decrypt("0xabc", "survey-ledger")


@patch("survey_ledger.ciphertext.urllib.request.urlopen")
def test_relayer_network_error_propagates(mock_urlopen):
    mock_urlopen.side_effect = URLError("connection refused")

    client = RelayerDecryptionClient("https://relayer.example.com")
    with pytest.raises(URLError):
        client.decrypt("0xabc", "survey-ledger")


@patch("survey_ledger.ciphertext.urllib.request.urlopen")
def test_relayer_verify_attestation(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"valid": True})

    client = RelayerDecryptionClient("https://relayer.example.com")
    assert client.verify_attestation("0xabc", 3, "sig") is True

    req = mock_urlopen.call_args[0][0]
    assert req.full_url.endswith("/v1/attestations/verify")
    assert json.loads(req.data) == {"handle": "0xabc", "signature": "sig", "value": 3}

    mock_urlopen.return_value = _mock_urlopen_response({})
    assert client.verify_attestation("0xabc", 3, "sig") is False
