"""
Иерархия ошибок узла
====================

[PROTOCOL] Все ошибки протокола наследуются от MeshError.

Политика обработки (см. Node._process_transmission):
- Ошибки фрейминга (Truncated*) -> отбрасываем всю передачу, без NACK
- Ошибки аутентификации -> молча отбрасываем одно сообщение
- UnsupportedCompression -> NACK на опцию или отброс передачи
- SubnetMismatch -> NACK и разрыв соединения
- UnknownOpcode -> NACK с исходным opcode
- LookupTimeout -> не фатально, lookup продолжается с частичными ответами
- OwnershipError -> NACK на STORE (только при включённой проверке владельца)
"""


class MeshError(Exception):
    """Базовая ошибка протокола."""
    pass


class TruncatedTransmission(MeshError):
    """Буфер короче, чем объявлено в заголовке передачи."""
    pass


class TruncatedMessage(TruncatedTransmission):
    """Внутри передачи не хватает байт на заголовок или payload сообщения."""
    pass


class UnsupportedCompression(MeshError):
    """Для compression id нет зарегистрированного кодека."""

    def __init__(self, compression_id: int):
        super().__init__(f"Unsupported compression id: {compression_id}")
        self.compression_id = compression_id


class CompressionError(MeshError):
    """Кодек не смог распаковать данные."""
    pass


class SignatureVerificationFailed(MeshError):
    """Подпись сообщения не прошла проверку."""
    pass


class DecryptionError(MeshError):
    """Сообщение не адресовано нам или повреждено."""
    pass


class PayloadDecodeError(MeshError):
    """Payload не является допустимым объектом."""
    pass


class PayloadEncodeError(MeshError):
    """Значение не укладывается в ограниченную объектную модель."""
    pass


class InvalidAddressError(MeshError):
    """Адрес не является валидным Ed25519 ключом."""
    pass


class PayloadTooLargeError(MeshError):
    """Payload превышает лимит длины поля (2^32 - 1)."""
    pass


class SubnetMismatch(MeshError):
    """Параметры подсети пира не совпадают с нашими."""

    def __init__(self, field_name: str, ours, theirs):
        super().__init__(f"Subnet mismatch on {field_name}: ours={ours!r} theirs={theirs!r}")
        self.field_name = field_name
        self.ours = ours
        self.theirs = theirs


class UnknownOpcode(MeshError):
    """Opcode не имеет обработчика (зарезервированные 12-14)."""

    def __init__(self, opcode: int):
        super().__init__(f"Unknown opcode: {opcode}")
        self.opcode = opcode


class LookupTimeout(MeshError):
    """Раунд итеративного поиска не дождался всех ответов."""
    pass


class OwnershipError(MeshError):
    """Ключ уже принадлежит другому владельцу."""
    pass


class RequestRejected(MeshError):
    """Пир ответил NACK на наш запрос."""

    def __init__(self, opcode: int, payload=None):
        super().__init__(f"Request with opcode {opcode} rejected: {payload!r}")
        self.opcode = opcode
        self.payload = payload
