"""
Connection Options - согласование параметров соединения
=======================================================

[PROTOCOL] Опции передаются в SET_CONNECTION_OPT с payload
[option, setting]. Пир отвечает ACK [3, option] или NACK [3, option].

| option | Название              | setting                          |
|--------|-----------------------|----------------------------------|
| 0      | COMPRESSION           | id кодека для наших передач      |
| 1      | PREFERRED_COMPRESSION | id кодека, который просим у пира |
| 2      | SUBNET                | [k, α, τ, β, ℓ, transport, desc] |

Соединение переходит в ESTABLISHED, когда обе стороны
подтвердили SUBNET.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, List, Optional

from config import SubnetConfig

from .compression import Compression
from .exceptions import PayloadDecodeError, SubnetMismatch


class ConnectionOption(IntEnum):
    COMPRESSION = 0
    PREFERRED_COMPRESSION = 1
    SUBNET = 2


SUBNET_FIELDS = ("k", "alpha", "tau", "beta", "ell", "transport_id", "network_description")


@dataclass(frozen=True)
class Subnet:
    """
    Параметры подсети, которые обязаны совпадать у всех узлов.

    [USAGE]
        ours = Subnet.from_config(config.subnet)
        ours.check(Subnet.from_payload(setting))
    """

    k: int = 20
    alpha: int = 3
    tau: int = 256
    beta: int = 256
    ell: int = 8
    transport_id: int = 0
    network_description: str = ""

    def __post_init__(self):
        if self.k < 1 or self.alpha < 1 or self.ell < 1:
            raise ValueError(f"k, alpha and ell must be positive: {self}")
        if self.tau < 1 or self.tau > self.beta:
            raise ValueError(f"tau must be in [1, beta]: tau={self.tau} beta={self.beta}")
        if self.beta % 8:
            raise ValueError(f"beta must be a whole number of bytes: {self.beta}")

    @classmethod
    def from_config(cls, cfg: SubnetConfig) -> "Subnet":
        return cls(
            k=cfg.k,
            alpha=cfg.alpha,
            tau=cfg.tau,
            beta=cfg.beta,
            ell=cfg.ell,
            transport_id=cfg.transport_id,
            network_description=cfg.network_description,
        )

    @property
    def address_size(self) -> int:
        return self.beta // 8

    def to_payload(self) -> List[Any]:
        return [getattr(self, name) for name in SUBNET_FIELDS]

    @classmethod
    def from_payload(cls, setting: Any) -> "Subnet":
        """
        Разобрать setting опции SUBNET.

        Raises:
            PayloadDecodeError: Неверная форма или типы полей
        """
        if not isinstance(setting, list) or len(setting) != len(SUBNET_FIELDS):
            raise PayloadDecodeError(f"Subnet setting must be a {len(SUBNET_FIELDS)}-element list")

        *numbers, description = setting
        if not all(isinstance(n, int) and not isinstance(n, bool) for n in numbers):
            raise PayloadDecodeError("Subnet parameters must be integers")
        if not isinstance(description, str):
            raise PayloadDecodeError("Network description must be a string")

        try:
            return cls(*numbers, description)
        except ValueError as e:
            raise PayloadDecodeError(f"Invalid subnet parameters: {e}") from e

    def check(self, other: "Subnet") -> None:
        """
        Сравнить с параметрами пира.

        Raises:
            SubnetMismatch: Первое несовпавшее поле
        """
        for name in SUBNET_FIELDS:
            ours, theirs = getattr(self, name), getattr(other, name)
            if ours != theirs:
                raise SubnetMismatch(name, ours, theirs)


@dataclass
class ConnectionOptions:
    """Согласованные опции одного соединения."""

    # Кодек, которым пир сжимает передачи к нам (как объявил пир)
    compression: int = Compression.NONE
    # Кодек, которым мы сжимаем передачи к пиру (по его просьбе)
    preferred_compression: int = Compression.NONE
    subnet: Optional[Subnet] = None

    # Какие SUBNET уже подтверждены
    subnet_acked_by_peer: bool = False
    subnet_received: bool = False

    @property
    def negotiated(self) -> bool:
        return self.subnet_acked_by_peer and self.subnet_received

    def to_dict(self) -> dict:
        return {
            "compression": int(self.compression),
            "preferred_compression": int(self.preferred_compression),
            "subnet": self.subnet.to_payload() if self.subnet else None,
            "negotiated": self.negotiated,
        }
