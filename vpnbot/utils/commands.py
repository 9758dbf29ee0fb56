# vpnbot/utils/commands.py
"""
Команды бота: закрытый набор вариантов, разбираемый один раз на входе.

callback_data кнопок имеет вид "verb|arg"; старый формат "/verb arg"
(с префиксом \f, который добавляют некоторые клиенты) тоже понимаем.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import ClassVar, Dict, Optional, Tuple, Type, Union

SEP = "|"
ESCAPE_PREFIX = "\f"


class MalformedCommand(ValueError):
    """Известный глагол, но аргументы не те."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"malformed command {raw!r}: {reason}")


@dataclass(frozen=True)
class Command:
    verb: ClassVar[str] = ""
    # требуется ли привязанный аккаунт; проверяется один раз в диспетчере
    requires_account: ClassVar[bool] = True


# ---- без аргументов ----
@dataclass(frozen=True)
class Start(Command):
    verb: ClassVar[str] = "start"
    requires_account: ClassVar[bool] = False
    param: Optional[str] = None


@dataclass(frozen=True)
class Register(Command):
    verb: ClassVar[str] = "register"
    requires_account: ClassVar[bool] = False


@dataclass(frozen=True)
class Menu(Command):
    verb: ClassVar[str] = "menu"


@dataclass(frozen=True)
class Balance(Command):
    verb: ClassVar[str] = "balance"


@dataclass(frozen=True)
class ListServices(Command):
    verb: ClassVar[str] = "list"


@dataclass(frozen=True)
class Pricelist(Command):
    verb: ClassVar[str] = "pricelist"


@dataclass(frozen=True)
class Help(Command):
    verb: ClassVar[str] = "help"


@dataclass(frozen=True)
class Pays(Command):
    verb: ClassVar[str] = "pays"


@dataclass(frozen=True)
class Trial(Command):
    verb: ClassVar[str] = "trial"


# ---- с id ----
@dataclass(frozen=True)
class ShowService(Command):
    verb: ClassVar[str] = "service"
    service_id: int = 0


@dataclass(frozen=True)
class OrderService(Command):
    verb: ClassVar[str] = "serviceorder"
    service_id: int = 0


@dataclass(frozen=True)
class DownloadKey(Command):
    verb: ClassVar[str] = "download_qr"
    service_id: int = 0


@dataclass(frozen=True)
class ShowQr(Command):
    verb: ClassVar[str] = "show_qr"
    service_id: int = 0


@dataclass(frozen=True)
class ShowMarzbanKeys(Command):
    verb: ClassVar[str] = "show_mz_keys"
    service_id: int = 0


@dataclass(frozen=True)
class Delete(Command):
    verb: ClassVar[str] = "delete"
    service_id: int = 0


@dataclass(frozen=True)
class DeleteConfirmed(Command):
    verb: ClassVar[str] = "delete_confirmed"
    service_id: int = 0


@dataclass(frozen=True)
class Unknown(Command):
    requires_account: ClassVar[bool] = False
    raw: str = ""


AnyCommand = Union[
    Start, Register, Menu, Balance, ListServices, Pricelist, Help, Pays, Trial,
    ShowService, OrderService, DownloadKey, ShowQr, ShowMarzbanKeys, Delete, DeleteConfirmed,
    Unknown,
]

_NO_ARGS: Tuple[Type[Command], ...] = (Register, Menu, Balance, ListServices, Pricelist, Help, Pays, Trial)
_WITH_ID: Tuple[Type[Command], ...] = (
    ShowService, OrderService, DownloadKey, ShowQr, ShowMarzbanKeys, Delete, DeleteConfirmed,
)
_BY_VERB: Dict[str, Type[Command]] = {cls.verb: cls for cls in _NO_ARGS + _WITH_ID}


def _split(data: str) -> Tuple[str, ...]:
    data = data.lstrip(ESCAPE_PREFIX).strip()
    if SEP in data:
        parts = data.split(SEP)
    else:
        parts = data.split()
    if not parts:
        return ("",)
    return tuple(p.strip() for p in parts)


def decode_callback(data: Optional[str]) -> AnyCommand:
    """
    callback_data → команда.
    Неизвестный глагол → Unknown; известный без нужного id → MalformedCommand.
    """
    raw = data or ""
    parts = _split(raw)
    verb = parts[0].lstrip("/").lower()
    args = [a for a in parts[1:] if a]

    cls = _BY_VERB.get(verb)
    if cls is None:
        return Unknown(raw=raw)

    if cls in _NO_ARGS:
        return cls()

    if not args:
        raise MalformedCommand(raw, f"{verb} requires an id")
    arg = args[0]
    # только ASCII-цифры
    if not (arg.isascii() and arg.isdecimal()):
        raise MalformedCommand(raw, f"{verb} id must be numeric, got {arg!r}")
    return cls(service_id=int(arg))


def encode(cmd: Command) -> str:
    """Команда → callback_data."""
    if isinstance(cmd, (Start, Unknown)):
        raise ValueError(f"{type(cmd).__name__} is not a button command")
    values = [str(getattr(cmd, f.name)) for f in fields(cmd)]
    return SEP.join([cmd.verb, *values])
