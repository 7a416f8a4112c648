"""
Identity & Authentication Unit Tests
====================================

[CRITICAL] Подписи и шифрование - критический путь.
"""

import pytest

from meshnode.exceptions import (
    DecryptionError,
    InvalidAddressError,
    PayloadDecodeError,
    SignatureVerificationFailed,
)
from meshnode.identity import (
    Identity,
    authenticate,
    decrypt_if_needed,
    load_or_create_identity,
    verify,
    verify_key_change,
)
from meshnode.wire import BROADCAST_ADDRESS, OpCode, encode_message, parse_message


def _raw(data: bytes):
    return parse_message(data, 0)


def _tamper(data: bytes, index: int, mask: int = 0x01) -> bytes:
    mutable = bytearray(data)
    mutable[index] ^= mask
    return bytes(mutable)


class TestIdentity:
    """Test key pair handling."""

    def test_address_is_verify_key(self, identity):
        assert identity.address == identity.verify_key.encode()
        assert len(identity.address) == 32

    def test_seed_roundtrip(self, identity):
        restored = Identity.import_identity(identity.export_identity())
        assert restored.address == identity.address

    def test_bad_seed_length(self):
        with pytest.raises(ValueError):
            Identity.from_seed(b"short")

    def test_encrypt_decrypt(self, identity_pair):
        alice, bob = identity_pair
        ciphertext = alice.encrypt_for(bob.address, b"hello bob")

        assert bob.decrypt_from(alice.address, ciphertext) == b"hello bob"

    def test_decrypt_by_third_party_fails(self, identity_pair):
        alice, bob = identity_pair
        eve = Identity()
        ciphertext = alice.encrypt_for(bob.address, b"hello bob")

        with pytest.raises(DecryptionError):
            eve.decrypt_from(alice.address, ciphertext)

    def test_encrypt_for_small_order_key_fails(self, identity):
        with pytest.raises(InvalidAddressError):
            identity.encrypt_for(bytes(32), b"nobody")

    def test_decrypt_from_small_order_key_fails(self, identity_pair):
        alice, bob = identity_pair
        ciphertext = alice.encrypt_for(bob.address, b"hello bob")

        with pytest.raises(DecryptionError):
            bob.decrypt_from(bytes(32), ciphertext)


class TestLoadOrCreate:
    """Test identity persistence."""

    def test_creates_then_loads(self, temp_dir):
        path = temp_dir / "keys" / "identity.key"

        created = load_or_create_identity(path)
        assert path.exists()

        loaded = load_or_create_identity(path)
        assert loaded.address == created.address


class TestAuthentication:
    """Test signature verification and payload opening."""

    def test_valid_message(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.SPEAK, ["hi"], sender)

        message = authenticate(_raw(data), receiver)
        assert message.opcode == OpCode.SPEAK
        assert message.sender == sender.address
        assert message.payload == ["hi"]
        assert not message.encrypted

    def test_every_signed_byte_matters(self, identity_pair):
        """Flipping a bit in length/flags, addresses or payload breaks the signature."""
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.SPEAK, ["hi"], sender)

        for index in (5, 69, 80, 110, len(data) - 1):
            raw = _raw(_tamper(data, index))
            assert not verify(raw), f"tampering at byte {index} not detected"

    def test_tampered_signature(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.PING, [], sender)

        with pytest.raises(SignatureVerificationFailed):
            authenticate(_raw(_tamper(data, 0)), receiver)

    def test_reserved_bits_are_covered_by_signature(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.PING, [], sender)

        # бит 1 в поле флагов зарезервирован
        assert not verify(_raw(_tamper(data, 69, mask=0x02)))

    def test_encrypted_message_for_us(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.WHISPER, [b"secret"], sender, encrypted=True)

        message = authenticate(_raw(data), receiver)
        assert message.encrypted
        assert message.payload == [b"secret"]

    def test_encrypted_message_for_someone_else(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.WHISPER, [b"secret"], sender, encrypted=True)

        raw = _raw(data)
        assert verify(raw)
        with pytest.raises(DecryptionError):
            decrypt_if_needed(raw, Identity())

    def test_plain_payload_passthrough(self, identity):
        data = encode_message(BROADCAST_ADDRESS, OpCode.SHOUT, ["x"], identity)
        raw = _raw(data)

        assert decrypt_if_needed(raw, Identity()) == raw.payload

    def test_undecodable_payload(self, identity_pair):
        sender, receiver = identity_pair
        data = encode_message(receiver.address, OpCode.SPEAK, ["hi"], sender)
        raw = _raw(data)

        # подменяем payload на ext-тип msgpack и переподписываем
        bad_payload = b"\xd4\x01\x00"
        region = len(bad_payload).to_bytes(4, "big") + raw.signed_region[4:70] + bad_payload
        forged = sender.sign(region) + region

        with pytest.raises(PayloadDecodeError):
            authenticate(_raw(forged), receiver)


class TestKeyChange:
    """Test key rotation proof."""

    def test_valid_proof(self, identity_pair):
        old, new = identity_pair
        proof = new.sign(old.address)

        assert verify_key_change(old.address, new.address, proof)

    def test_proof_by_wrong_key(self, identity_pair):
        old, new = identity_pair
        proof = old.sign(old.address)

        assert not verify_key_change(old.address, new.address, proof)

    def test_garbage_proof(self, identity_pair):
        old, new = identity_pair
        assert not verify_key_change(old.address, new.address, b"\x00" * 10)
