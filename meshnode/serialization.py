"""
Payload Serialization - ограниченная объектная модель
=====================================================

[WIRE] Payload сообщения - это MessagePack-значение из ограниченного
набора типов, совместимого между языками:
- nil, bool, double (включая NaN/±Inf)
- целые со знаком/без знака до 64 бит
- байтовые и текстовые строки < 2^32 байт
- последовательности < 2^32 элементов
- словари со строковыми ключами < 2^32 записей

Extension-типы MessagePack не допускаются.
"""

from typing import Any, List, Tuple

import msgpack

from .exceptions import PayloadDecodeError, PayloadEncodeError


def _reject_ext(code: int, data: bytes) -> Any:
    raise PayloadDecodeError(f"Extension type {code} is not allowed in payloads")


def _string_keyed(pairs: List[Tuple[Any, Any]]) -> dict:
    result = {}
    for key, value in pairs:
        if not isinstance(key, str):
            raise PayloadDecodeError(f"Map keys must be strings, got {type(key).__name__}")
        result[key] = value
    return result


def _check_keys(value: Any) -> None:
    """Ключи всех вложенных словарей должны быть строками."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise PayloadEncodeError(f"Map keys must be strings, got {type(key).__name__}")
            _check_keys(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_keys(item)


def encode_payload(value: Any) -> bytes:
    """
    Сериализовать значение в байты.

    Raises:
        PayloadEncodeError: Тип не поддерживается или выходит за пределы
    """
    _check_keys(value)
    try:
        return msgpack.packb(value, use_bin_type=True, strict_types=False)
    except (TypeError, ValueError, OverflowError) as e:
        raise PayloadEncodeError(f"Cannot encode payload: {e}") from e


def decode_payload(data: bytes) -> Any:
    """
    Десериализовать payload.

    Raises:
        PayloadDecodeError: Байты не являются допустимым значением
    """
    try:
        return msgpack.unpackb(
            data,
            raw=False,
            use_list=True,
            strict_map_key=False,
            object_pairs_hook=_string_keyed,
            ext_hook=_reject_ext,
        )
    except PayloadDecodeError:
        raise
    except (ValueError, TypeError, UnicodeDecodeError, msgpack.UnpackException) as e:
        raise PayloadDecodeError(f"Cannot decode payload: {e}") from e
