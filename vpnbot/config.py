# vpnbot/config.py
import os
import re
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# Период обновления session_id в API (не настраивается)
SESSION_REFRESH_INTERVAL_SEC = 30 * 60

DEFAULT_LOGO_URL = "https://vpn-for-friends.com/logobot.jpg"
DEFAULT_PAYMENTS_PROFILE = "telegram_bot"
DEFAULT_TRIAL_TTL_HOURS = 24


def _parse_str_list(s: Optional[str]) -> Tuple[str, ...]:
    if not s:
        return ()
    return tuple(token for token in re.split(r"[,\s;]+", s.strip()) if token)


def _parse_bool(s: Optional[str], default: bool = False) -> bool:
    if s is None or not s.strip():
        return default
    return s.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(s: Optional[str], default: int = 0) -> int:
    try:
        return int((s or "").strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class ApiConfig:
    base_url: str = ""
    login: str = ""
    password: str = ""
    timeout_seconds: int = 10
    # Категория услуг для фильтра каталога и списка ключей (пусто: без фильтра)
    services_category: str = ""


@dataclass(frozen=True)
class TrialConfig:
    enabled: bool = False
    service_id: int = 0
    require_start_param: bool = False
    allowed_start_params: Tuple[str, ...] = ()
    eligibility_ttl_hours: int = DEFAULT_TRIAL_TTL_HOURS

    @property
    def ttl_hours(self) -> int:
        """TTL допуска к тесту; неположительное значение → 24 часа."""
        if self.eligibility_ttl_hours <= 0:
            return DEFAULT_TRIAL_TTL_HOURS
        return self.eligibility_ttl_hours

    @property
    def is_configured(self) -> bool:
        return self.enabled and self.service_id > 0


@dataclass(frozen=True)
class TelegramConfig:
    token: str = ""
    support_chat_url: str = "https://t.me/"
    news_channel_url: str = ""
    logo_url: str = DEFAULT_LOGO_URL
    payments_profile: str = DEFAULT_PAYMENTS_PROFILE
    webhook_url: str = ""
    webhook_path: str = "/telegram"
    webhook_port: int = 8080


@dataclass(frozen=True)
class Config:
    env: str = "development"
    log_level: str = "INFO"
    api: ApiConfig = field(default_factory=ApiConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    trial: TrialConfig = field(default_factory=TrialConfig)

    @property
    def use_webhook(self) -> bool:
        return bool(self.telegram.webhook_url)

    def validate(self) -> None:
        """Проверка обязательных настроек"""
        errors = []
        if not self.telegram.token:
            errors.append("BOT_TOKEN не установлен")
        if not self.api.base_url:
            errors.append("API_BASE_URL не установлен")
        if self.trial.enabled and self.trial.service_id <= 0:
            errors.append("TRIAL_SERVICE_ID должен быть > 0 при TRIAL_ENABLED")
        if errors:
            raise ValueError("; ".join(errors))


def load_config() -> Config:
    """Собирает конфиг из переменных окружения (.env подхватывается при импорте)."""
    api = ApiConfig(
        base_url=os.getenv("API_BASE_URL", "").rstrip("/"),
        login=os.getenv("API_LOGIN", ""),
        password=os.getenv("API_PASSWORD", ""),
        timeout_seconds=_parse_int(os.getenv("API_TIMEOUT_SECONDS"), 10) or 10,
        services_category=os.getenv("SERVICES_CATEGORY", "").strip(),
    )
    telegram = TelegramConfig(
        token=os.getenv("BOT_TOKEN", ""),
        support_chat_url=os.getenv("SUPPORT_CHAT_URL", "https://t.me/"),
        news_channel_url=os.getenv("NEWS_CHANNEL_URL", ""),
        logo_url=os.getenv("LOGO_URL") or DEFAULT_LOGO_URL,
        payments_profile=os.getenv("PAYMENTS_PROFILE") or DEFAULT_PAYMENTS_PROFILE,
        webhook_url=os.getenv("WEBHOOK_URL", "").rstrip("/"),
        webhook_path=os.getenv("WEBHOOK_PATH", "/telegram"),
        webhook_port=_parse_int(os.getenv("WEBHOOK_PORT"), 8080),
    )
    trial = TrialConfig(
        enabled=_parse_bool(os.getenv("TRIAL_ENABLED")),
        service_id=_parse_int(os.getenv("TRIAL_SERVICE_ID")),
        require_start_param=_parse_bool(os.getenv("TRIAL_REQUIRE_START_PARAM")),
        allowed_start_params=_parse_str_list(os.getenv("TRIAL_ALLOWED_START_PARAMS")),
        eligibility_ttl_hours=_parse_int(os.getenv("TRIAL_ELIGIBILITY_TTL_HOURS"), DEFAULT_TRIAL_TTL_HOURS),
    )
    return Config(
        env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        api=api,
        telegram=telegram,
        trial=trial,
    )
