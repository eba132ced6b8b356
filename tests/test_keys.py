"""Tests for signing key sources."""

from __future__ import annotations

import pytest

from conftest import OWNER, RECIPIENT, TEST_PRIVATE_KEY
from errors import SigningKeyUnavailableError
from keys import EnvKeySource, StaticKeySource


class TestStaticKeySource:
    def test_signer_for_known_address(self):
        source = StaticKeySource()
        assert source.add(TEST_PRIVATE_KEY) == OWNER
        assert source.signer_for(OWNER.lower()).address == OWNER

    def test_unknown_address(self):
        with pytest.raises(SigningKeyUnavailableError) as exc:
            StaticKeySource().signer_for(OWNER)
        assert exc.value.error_code == "NO_SIGNER"

    def test_key_must_match_address(self):
        source = StaticKeySource({RECIPIENT: TEST_PRIVATE_KEY})
        with pytest.raises(SigningKeyUnavailableError):
            source.signer_for(RECIPIENT)


class TestEnvKeySource:
    def test_reads_prefixed_variable(self):
        source = EnvKeySource(environ={f"SCHEDCTL_KEY_{OWNER.upper()}": f" {TEST_PRIVATE_KEY}\n"})
        assert source.signer_for(OWNER).address == OWNER

    def test_exact_case_variable(self):
        source = EnvKeySource(prefix="KEY_", environ={f"KEY_{OWNER}": TEST_PRIVATE_KEY})
        assert source.signer_for(OWNER).address == OWNER

    def test_missing_variable(self):
        with pytest.raises(SigningKeyUnavailableError):
            EnvKeySource(environ={}).signer_for(OWNER)

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv(f"SCHEDCTL_KEY_{OWNER.upper()}", TEST_PRIVATE_KEY)
        assert EnvKeySource().signer_for(OWNER).address == OWNER
