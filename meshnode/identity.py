"""
Identity & Authentication
=========================

[SECURITY] Криптография на базе PyNaCl:
- Ed25519 для подписей (SigningKey/VerifyKey)
- Curve25519 для шифрования (ключи выводятся из Ed25519)
- XSalsa20-Poly1305 (Box) для шифрования payload

[DECENTRALIZATION] Адрес узла = 32 байта публичного ключа подписи.
Любой узел проверяет подпись по одному только адресу отправителя.

Проверка входящего сообщения идёт в три шага:
1. verify() - подпись над заголовком (после подписи) и payload
2. decrypt_if_needed() - только если стоит флаг шифрования
3. decode_payload() - разбор MessagePack
"""

import logging
from pathlib import Path
from typing import Optional, Union

from nacl.public import Box, PrivateKey, PublicKey
from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import CryptoError

from .exceptions import DecryptionError, InvalidAddressError, SignatureVerificationFailed
from .serialization import decode_payload
from .wire import Message, RawMessage

logger = logging.getLogger(__name__)


SEED_SIZE = 32


def public_key_from_address(address: bytes) -> PublicKey:
    """
    Получить Curve25519 ключ шифрования из адреса.

    Raises:
        InvalidAddressError: Адрес не является валидным Ed25519 ключом
    """
    try:
        return VerifyKey(address).to_curve25519_public_key()
    except (CryptoError, ValueError, TypeError) as e:
        raise InvalidAddressError(f"Address is not a valid public key: {e}") from e


class Identity:
    """
    Ключевая пара узла.

    [USAGE]
        identity = Identity()
        signature = identity.sign(data)
        ciphertext = identity.encrypt_for(peer_address, data)
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.verify_key: VerifyKey = self.signing_key.verify_key

        self.private_key: PrivateKey = self.signing_key.to_curve25519_private_key()
        self.public_key: PublicKey = self.private_key.public_key

        self.address: bytes = self.verify_key.encode()

    @classmethod
    def from_seed(cls, seed: bytes) -> "Identity":
        """
        Восстановить идентичность из seed (32 байта).

        [SECURITY] Seed должен быть криптографически случайным.
        """
        if len(seed) != SEED_SIZE:
            raise ValueError(f"Seed must be exactly {SEED_SIZE} bytes")
        return cls(SigningKey(seed))

    def export_identity(self) -> bytes:
        """Экспорт seed приватного ключа для сохранения."""
        return bytes(self.signing_key)

    @classmethod
    def import_identity(cls, key_bytes: bytes) -> "Identity":
        return cls.from_seed(key_bytes)

    @property
    def short_id(self) -> str:
        return self.address.hex()[:16]

    def sign(self, data: bytes) -> bytes:
        """Подписать данные, вернуть 64-байтную подпись."""
        return self.signing_key.sign(data).signature

    def encrypt_for(self, address: bytes, plaintext: bytes) -> bytes:
        """
        Зашифровать данные для владельца address.

        Nonce генерируется автоматически и идёт в начале ciphertext.

        Raises:
            InvalidAddressError: address нельзя использовать как ключ шифрования
        """
        box = Box(self.private_key, public_key_from_address(address))
        return bytes(box.encrypt(plaintext))

    def decrypt_from(self, address: bytes, ciphertext: bytes) -> bytes:
        """
        Расшифровать данные от владельца address.

        Raises:
            DecryptionError: Данные повреждены или зашифрованы не для нас
        """
        try:
            box = Box(self.private_key, public_key_from_address(address))
        except InvalidAddressError as e:
            raise DecryptionError(str(e)) from e
        try:
            return box.decrypt(ciphertext)
        except CryptoError as e:
            raise DecryptionError(f"Cannot decrypt payload: {e}") from e

    def __repr__(self) -> str:
        return f"Identity({self.short_id}...)"


def load_or_create_identity(identity_file: Union[str, Path]) -> Identity:
    """
    Загрузить идентичность из файла или создать новую и сохранить.
    """
    path = Path(identity_file)

    if path.exists():
        logger.info(f"[IDENTITY] Loading from {identity_file}")
        identity = Identity.import_identity(path.read_bytes())
        logger.info(f"[IDENTITY] Loaded: {identity.short_id}...")
    else:
        logger.info("[IDENTITY] Generating new identity...")
        identity = Identity()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(identity.export_identity())
        logger.info(f"[IDENTITY] Created: {identity.short_id}...")

    return identity


# ============================================================================
# Authentication
# ============================================================================

def verify(raw: RawMessage) -> bool:
    """
    Проверить подпись сообщения по адресу отправителя.

    Подписана вся область после подписи: length, opcode/flags,
    from, to и payload (зашифрованный, если стоит флаг).
    """
    try:
        VerifyKey(raw.sender).verify(raw.signed_region, raw.signature)
        return True
    except (CryptoError, ValueError, TypeError):
        return False


def decrypt_if_needed(raw: RawMessage, identity: Identity) -> bytes:
    """
    Вернуть открытые байты payload.

    Raises:
        DecryptionError: Сообщение зашифровано не для нас или повреждено
    """
    if not raw.encrypted:
        return raw.payload

    if raw.recipient != identity.address:
        raise DecryptionError("Encrypted message is not addressed to us")

    return identity.decrypt_from(raw.sender, raw.payload)


def open_message(raw: RawMessage, identity: Identity) -> Message:
    """
    Дешифровать и разобрать payload уже проверенного сообщения.

    Raises:
        DecryptionError: Не удалось расшифровать
        PayloadDecodeError: Payload не является допустимым объектом
    """
    plaintext = decrypt_if_needed(raw, identity)
    payload = decode_payload(plaintext)

    return Message(
        opcode=raw.opcode,
        sender=raw.sender,
        recipient=raw.recipient,
        payload=payload,
        encrypted=raw.encrypted,
        raw=raw,
    )


def authenticate(raw: RawMessage, identity: Identity) -> Message:
    """
    Полная проверка: подпись, дешифровка, разбор payload.

    Raises:
        SignatureVerificationFailed: Подпись не совпала
        DecryptionError: Не удалось расшифровать
        PayloadDecodeError: Payload не является допустимым объектом
    """
    if not verify(raw):
        raise SignatureVerificationFailed(
            f"Bad signature from {raw.sender.hex()[:16]}..."
        )
    return open_message(raw, identity)


def verify_key_change(old_address: bytes, new_address: bytes, proof: bytes) -> bool:
    """
    Проверить доказательство смены ключа.

    proof - подпись нового ключа над старым адресом.
    """
    try:
        VerifyKey(new_address).verify(old_address, proof)
        return True
    except (CryptoError, ValueError, TypeError):
        return False
