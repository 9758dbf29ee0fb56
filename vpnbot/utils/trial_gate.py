# vpnbot/utils/trial_gate.py
"""
Допуск к тестовому периоду.

Состояния чата: не допущен → допущен (по промо-ссылке /start <param>, до now + TTL)
→ тест уже взят (подтверждено списанием в биллинге, навсегда для процесса).
Одна и та же evaluate() решает и показ кнопки, и выдачу теста.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from vpnbot.config import TrialConfig
from vpnbot.utils.account_service import AccountService
from vpnbot.utils.errors import BackendError
from vpnbot.utils.models import Service
from vpnbot.utils.time_helpers import now_utc

logger = logging.getLogger(__name__)

REASON_DISABLED = "disabled"
REASON_NEEDS_START_PARAM = "needs_start_param"
REASON_CLAIMED = "claimed"
REASON_UNAVAILABLE = "unavailable"
REASON_AVAILABLE = "available"


@dataclass(frozen=True)
class TrialDecision:
    reason: str
    service: Optional[Service] = None

    @property
    def available(self) -> bool:
        return self.reason == REASON_AVAILABLE and self.service is not None


class TrialEligibilityGate:
    def __init__(
        self,
        config: TrialConfig,
        accounts: AccountService,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._config = config
        self._accounts = accounts
        self._clock = clock
        # chat_id → момент, до которого действует допуск
        self._eligible_until: Dict[int, datetime] = {}
        self._eligible_lock = threading.Lock()
        # chat_id → True; только положительные ответы биллинга
        self._claimed: Dict[int, bool] = {}
        self._claimed_lock = threading.Lock()

    # ---- допуск по промо-ссылке ----
    def grant_from_start_param(self, chat_id: int, param: Optional[str]) -> bool:
        """Выдаёт допуск, если параметр /start из белого списка. True, если допуск выдан."""
        cfg = self._config
        param = (param or "").strip()
        if not (cfg.enabled and cfg.require_start_param and param):
            return False
        if param not in cfg.allowed_start_params:
            logger.info("start param %r from chat %s is not in allow-list", param, chat_id)
            return False
        until = self._clock() + timedelta(hours=cfg.ttl_hours)
        with self._eligible_lock:
            self._eligible_until[chat_id] = until
        logger.info("trial eligibility granted to chat %s until %s", chat_id, until.isoformat())
        return True

    def is_eligible(self, chat_id: int) -> bool:
        with self._eligible_lock:
            until = self._eligible_until.get(chat_id)
        return until is not None and self._clock() < until

    # ---- тест уже брали ----
    def _claimed_cached(self, chat_id: int) -> bool:
        with self._claimed_lock:
            return self._claimed.get(chat_id, False)

    def _remember_claimed(self, chat_id: int) -> None:
        with self._claimed_lock:
            self._claimed[chat_id] = True

    async def has_claimed(self, chat_id: int) -> bool:
        """
        Кэш, затем биллинг. Положительный ответ запоминаем навсегда,
        отрицательный не кэшируем. UserNotFound пробрасывается наверх.
        """
        if self._claimed_cached(chat_id):
            return True
        claimed = await self._accounts.has_trial_withdrawal(chat_id, self._config.service_id)
        if claimed:
            self._remember_claimed(chat_id)
        return claimed

    # ---- решение ----
    async def evaluate(self, chat_id: int) -> TrialDecision:
        cfg = self._config
        if not cfg.is_configured:
            return TrialDecision(REASON_DISABLED)

        if cfg.require_start_param and not self.is_eligible(chat_id):
            return TrialDecision(REASON_NEEDS_START_PARAM)

        if await self.has_claimed(chat_id):
            return TrialDecision(REASON_CLAIMED)

        try:
            svc = await self._accounts.catalog_item(cfg.service_id)
        except BackendError as e:
            # тест просто не показываем
            logger.warning("trial service %s lookup failed: %s", cfg.service_id, e)
            return TrialDecision(REASON_UNAVAILABLE)
        if svc is None or not svc.name:
            return TrialDecision(REASON_UNAVAILABLE)
        return TrialDecision(REASON_AVAILABLE, svc)

    async def offer(self, chat_id: int) -> Optional[Service]:
        """Услуга для кнопки теста или None."""
        decision = await self.evaluate(chat_id)
        return decision.service if decision.available else None
