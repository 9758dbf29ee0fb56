# vpnbot/utils/models.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

MARZBAN_CATEGORY_PREFIX = "vpn-mz-"

STATUS_ACTIVE = "ACTIVE"
STATUS_BLOCK = "BLOCK"
STATUS_NOT_PAID = "NOT PAID"
STATUS_PROGRESS = "PROGRESS"


class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TelegramInfo(_ApiModel):
    user_id: Union[int, str] = ""
    username: Optional[str] = ""
    login: Optional[str] = ""
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    language_code: Optional[str] = ""
    is_premium: bool = False
    chat_id: int = 0
    profile: Dict[str, Any] = Field(default_factory=dict, alias="telegram_bot")


class UserSettings(_ApiModel):
    telegram: TelegramInfo = Field(default_factory=TelegramInfo)


class User(_ApiModel):
    """Аккаунт в биллинге, привязанный к чату через settings.telegram.chat_id."""
    id: int = Field(alias="user_id")
    login: str = ""
    balance: float = 0.0
    settings: Optional[UserSettings] = None

    @property
    def chat_id(self) -> Optional[int]:
        if self.settings is None:
            return None
        return self.settings.telegram.chat_id or None


class UserBalance(_ApiModel):
    user_id: int
    balance: float = 0.0
    forecast: float = 0.0


class MarzbanKey(_ApiModel):
    subscription_url: str = ""
    links: List[str] = Field(default_factory=list)


class UserService(_ApiModel):
    """Экземпляр услуги пользователя (ключ доступа)."""
    user_service_id: int
    service_id: int = 0
    user_id: int = 0
    name: Optional[str] = ""
    status: Optional[str] = ""
    expire: Optional[str] = None
    category: Optional[str] = ""
    key_marzban: Optional[MarzbanKey] = None

    @property
    def is_marzban(self) -> bool:
        return (self.category or "").startswith(MARZBAN_CATEGORY_PREFIX)


class Service(_ApiModel):
    """Позиция каталога."""
    service_id: int
    name: Optional[str] = ""
    cost: float = 0.0
    period: float = 0.0
    category: Optional[str] = ""


class UserPay(_ApiModel):
    date: str = ""
    money: float = 0.0


class WithdrawItem(_ApiModel):
    withdraw_id: Optional[int] = None
    user_id: int = 0
    service_id: int = 0
    cost: float = 0.0


class RegistrationRequest(_ApiModel):
    login: str
    password: str
    full_name: str = ""
    settings: UserSettings

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
