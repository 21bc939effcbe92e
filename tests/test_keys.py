"""Key derivation and agent id tests."""

import pytest
from nacl.signing import SigningKey

from sanctuary.errors import InvalidSeedError, ValidationError
from sanctuary.keys import (
    AGENT_ID_PREFIX,
    agent_id_from_public_key,
    derive_keys,
    generate_mnemonic,
    is_valid_agent_id,
    public_key_from_agent_id,
    sign_message,
    validate_mnemonic,
    verify_signature,
)

from conftest import ZERO_PHRASE


class TestMnemonic:

    def test_generate_24_words(self):
        """Generated phrases have 24 words and pass validation."""
        phrase = generate_mnemonic()
        assert len(phrase.split()) == 24
        assert validate_mnemonic(phrase) == phrase

    def test_generated_phrases_differ(self):
        assert generate_mnemonic() != generate_mnemonic()

    def test_bad_checksum_rejected(self):
        """Last word changed breaks the BIP-39 checksum."""
        phrase = " ".join(["abandon"] * 24)
        with pytest.raises(InvalidSeedError):
            derive_keys(phrase)

    def test_wrong_word_count_rejected(self):
        with pytest.raises(InvalidSeedError):
            derive_keys(" ".join(["abandon"] * 11 + ["about"]))

    def test_unknown_word_rejected(self):
        with pytest.raises(InvalidSeedError):
            derive_keys(" ".join(["abandon"] * 23 + ["notaword"]))

    def test_non_string_rejected(self):
        with pytest.raises(InvalidSeedError):
            derive_keys(None)

    def test_whitespace_and_case_normalized(self):
        messy = "  " + ZERO_PHRASE.upper().replace(" ", "   ") + "\n"
        assert derive_keys(messy).same_keys(derive_keys(ZERO_PHRASE))


class TestDerivation:

    def test_deterministic(self):
        """Deriving twice yields byte-identical keys."""
        phrase = generate_mnemonic()
        first = derive_keys(phrase)
        second = derive_keys(phrase)

        assert bytes(first.recovery) == bytes(second.recovery)
        assert bytes(first.agent) == bytes(second.agent)
        assert bytes(first.recall) == bytes(second.recall)
        assert first.agent_id == second.agent_id

    def test_three_keys_independent(self, zero_keys):
        """Each key comes from its own label."""
        secrets = {bytes(zero_keys.recovery), bytes(zero_keys.agent), bytes(zero_keys.recall)}
        assert len(secrets) == 3

    def test_different_phrases_different_agents(self, zero_keys):
        assert derive_keys(generate_mnemonic()).agent_id != zero_keys.agent_id

    def test_lock_discards_recovery_secret(self):
        keys = derive_keys(ZERO_PHRASE)
        public = keys.recovery_pubkey
        keys.lock()

        assert keys.locked
        assert keys.recovery is None
        assert keys.recovery_pubkey == public
        assert keys.agent_id == derive_keys(ZERO_PHRASE).agent_id


class TestAgentId:

    def test_agent_id_embeds_public_key(self, zero_keys):
        agent_id = zero_keys.agent_id
        assert agent_id.startswith(AGENT_ID_PREFIX)
        assert bytes(public_key_from_agent_id(agent_id)) == bytes(zero_keys.agent.verify_key)

    def test_agent_id_is_function_of_key(self):
        key = SigningKey.generate()
        assert agent_id_from_public_key(key.verify_key) == agent_id_from_public_key(bytes(key.verify_key))

    @pytest.mark.parametrize("value", [
        "",
        "did:web:abcdef",
        AGENT_ID_PREFIX + "00" * 31,
        AGENT_ID_PREFIX + "zz" * 32,
        AGENT_ID_PREFIX + "AB" * 32,
        None,
    ])
    def test_invalid_agent_ids(self, value):
        assert not is_valid_agent_id(value)

    def test_public_key_from_invalid_id(self):
        with pytest.raises(ValidationError):
            public_key_from_agent_id("did:sanctuary:nope")


class TestSignatures:

    def test_sign_and_verify(self, zero_keys):
        signature = sign_message(zero_keys.agent, b"hello")
        assert verify_signature(zero_keys.agent_id, b"hello", signature)

    def test_tampered_message_fails(self, zero_keys):
        signature = zero_keys.sign("hello")
        assert not verify_signature(zero_keys.agent_id, "hello!", signature)

    def test_other_agent_fails(self, zero_keys, make_keys):
        _, other = make_keys()
        signature = other.sign("hello")
        assert not verify_signature(zero_keys.agent_id, "hello", signature)

    def test_garbage_signature_fails(self, zero_keys):
        assert not verify_signature(zero_keys.agent_id, "hello", "not base64!!")
        assert not verify_signature(zero_keys.agent_id, "hello", "")
        assert not verify_signature("did:sanctuary:bad", "hello", zero_keys.sign("hello"))
