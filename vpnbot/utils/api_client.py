# vpnbot/utils/api_client.py
"""
Клиент биллинга (SHM API) с одной общей сессией.

session_id получаем через auth.cgi и передаём cookie в каждом запросе.
Фоновый refresh_loop переавторизуется раз в 30 минут; запрос, отвергнутый
с 401/403, один раз переавторизуется на месте и повторяется с новым токеном.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from vpnbot.config import SESSION_REFRESH_INTERVAL_SEC, ApiConfig
from vpnbot.utils.errors import AuthError, BackendError, TransportError
from vpnbot.utils.models import (
    STATUS_ACTIVE,
    MarzbanKey,
    Service,
    User,
    UserBalance,
    UserPay,
    UserService,
    WithdrawItem,
    RegistrationRequest,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

AUTH_PATH = "/shm/user/auth.cgi"
USER_PATH = "/shm/v1/admin/user"
USER_SERVICE_PATH = "/shm/v1/admin/user/service"
USER_PAY_PATH = "/shm/v1/admin/user/pay"
WITHDRAW_PATH = "/shm/v1/admin/user/service/withdraw"
SERVICE_PATH = "/shm/v1/admin/service"
ORDER_PATH = "/shm/v1/admin/service/order"
BALANCE_PATH = "/shm/v1/template/getUserBalance"
KEY_FILE_PATH = "/shm/v1/template/uploadDocumentFromStorage"
MARZBAN_KEY_PATH = "/shm/v1/storage/manage/vpn_mrzb_{user_service_id}"

SESSION_COOKIE = "session_id"
_STALE_SESSION_STATUSES = (401, 403)


def _filter(**fields: Any) -> str:
    """filter={...} для админских ручек; пустые значения не передаём."""
    clean = {k: v for k, v in fields.items() if v not in (None, "")}
    return json.dumps(clean, separators=(",", ":"), ensure_ascii=False)


class BackendSession:
    def __init__(
        self,
        base_url: str,
        login: str,
        password: str,
        *,
        timeout: float = 10.0,
        category: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._login_name = login
        self._password = password
        self._category = category
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._session_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: ApiConfig, **kwargs: Any) -> "BackendSession":
        return cls(
            cfg.base_url,
            cfg.login,
            cfg.password,
            timeout=float(cfg.timeout_seconds),
            category=cfg.services_category,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────────────
    # Сессия
    # ──────────────────────────────────────────────────────────────────────
    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    async def authenticate(self) -> str:
        """Получает новый session_id и сохраняет его. AuthError при любом сбое."""
        async with self._lock:
            token = await self._login()
            self._session_id = token
        logger.info("API session established")
        return token

    async def _login(self) -> str:
        try:
            resp = await self._client.post(
                AUTH_PATH,
                json={"login": self._login_name, "password": self._password},
            )
        except httpx.RequestError as e:
            raise AuthError(f"auth request failed: {e!r}") from e

        if not resp.is_success:
            raise AuthError(f"auth rejected with status {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthError("auth response is not JSON") from e

        token = payload.get("session_id") if isinstance(payload, dict) else None
        if not token or not isinstance(token, str):
            raise AuthError("auth response has no session_id")
        return token

    async def _current_token(self) -> str:
        async with self._lock:
            token = self._session_id
        if token is None:
            # Сессии ещё нет, авторизуемся на месте
            token = await self._reauthenticate(stale=None)
        return token

    async def _reauthenticate(self, stale: Optional[str]) -> str:
        async with self._lock:
            if self._session_id is not None and self._session_id != stale:
                # Токен уже заменил кто-то другой (refresh_loop или соседний запрос)
                return self._session_id
            token = await self._login()
            self._session_id = token
        logger.info("API session re-established on demand")
        return token

    async def refresh_once(self) -> bool:
        """Один тик обновления. Ошибку логируем и не пробрасываем."""
        try:
            await self.authenticate()
        except AuthError as e:
            logger.warning("Session refresh failed: %s", e)
            return False
        return True

    async def refresh_loop(
        self,
        shutdown_event: asyncio.Event,
        interval: float = SESSION_REFRESH_INTERVAL_SEC,
    ) -> None:
        """
        Фоновое обновление session_id раз в interval секунд.
        Останавливается по shutdown_event; сбои тика не прерывают цикл.
        """
        logger.info("session refresh loop started (interval=%ss)", interval)
        while not shutdown_event.is_set():
            # Прерываемый sleep
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh_once()
            except Exception:
                logger.exception("session refresh tick crashed")
        logger.info("session refresh loop stopped")

    # ──────────────────────────────────────────────────────────────────────
    # HTTP
    # ──────────────────────────────────────────────────────────────────────
    async def _send(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers={"Cookie": f"{SESSION_COOKIE}={token}"},
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {path} failed: {e!r}") from e

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        token = await self._current_token()
        resp = await self._send(method, path, token, params=params, json_body=json_body)

        if resp.status_code in _STALE_SESSION_STATUSES:
            logger.warning("%s %s → %s, re-authenticating once", method, path, resp.status_code)
            token = await self._reauthenticate(stale=token)
            resp = await self._send(method, path, token, params=params, json_body=json_body)

        if not resp.is_success:
            raise BackendError(f"{method} {path} failed", status=resp.status_code, body=resp.text)
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise BackendError("malformed JSON", status=resp.status_code, body=resp.text) from e

    def _data(self, resp: httpx.Response, model: Type[M]) -> List[M]:
        """Разбор конверта {"data": [...]}."""
        payload = self._json(resp)
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise BackendError("unexpected envelope", status=resp.status_code, body=resp.text)
        try:
            return [model.model_validate(item) for item in payload["data"]]
        except ValidationError as e:
            raise BackendError(f"bad {model.__name__} payload: {e}", status=resp.status_code, body=resp.text) from e

    def _object(self, resp: httpx.Response, model: Type[M]) -> M:
        payload = self._json(resp)
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise BackendError(f"bad {model.__name__} payload: {e}", status=resp.status_code, body=resp.text) from e

    # ──────────────────────────────────────────────────────────────────────
    # Пользователи
    # ──────────────────────────────────────────────────────────────────────
    async def find_accounts(self, login: str) -> List[User]:
        """Кандидаты по логину; окончательное сопоставление делает вызывающий."""
        resp = await self._request("GET", USER_PATH, params={"filter": _filter(login=login)})
        return self._data(resp, User)

    async def register_account(self, request: RegistrationRequest) -> None:
        await self._request("PUT", USER_PATH, json_body=request.to_payload())

    async def get_balance(self, user_id: int) -> UserBalance:
        resp = await self._request("GET", BALANCE_PATH, params={"format": "json", "uid": user_id})
        return self._object(resp, UserBalance)

    async def list_payments(self, user_id: int) -> List[UserPay]:
        resp = await self._request("GET", USER_PAY_PATH, params={"filter": _filter(user_id=user_id)})
        return self._data(resp, UserPay)

    async def has_trial_withdrawal(self, user_id: int, service_id: int) -> bool:
        """True, если по услуге уже было списание (тест брали)."""
        resp = await self._request(
            "GET", WITHDRAW_PATH, params={"filter": _filter(user_id=user_id, service_id=service_id)}
        )
        return len(self._data(resp, WithdrawItem)) > 0

    # ──────────────────────────────────────────────────────────────────────
    # Услуги пользователя
    # ──────────────────────────────────────────────────────────────────────
    async def list_user_services(self, user_id: int) -> List[UserService]:
        resp = await self._request(
            "GET",
            USER_SERVICE_PATH,
            params={"filter": _filter(user_id=user_id, category=self._category)},
        )
        return self._data(resp, UserService)

    async def get_user_service(self, user_id: int, user_service_id: int) -> Optional[UserService]:
        resp = await self._request(
            "GET",
            USER_SERVICE_PATH,
            params={"filter": _filter(user_id=user_id, user_service_id=user_service_id)},
        )
        items = self._data(resp, UserService)
        if not items:
            return None
        us = items[0]
        if us.is_marzban and us.status == STATUS_ACTIVE:
            us.key_marzban = await self.get_marzban_key(us.user_id or user_id, us.user_service_id)
        return us

    async def get_marzban_key(self, user_id: int, user_service_id: int) -> MarzbanKey:
        resp = await self._request(
            "GET",
            MARZBAN_KEY_PATH.format(user_service_id=user_service_id),
            params={"user_id": user_id},
        )
        return self._object(resp, MarzbanKey)

    async def download_user_key_file(self, user_id: int, user_service_id: int) -> bytes:
        resp = await self._request(
            "GET", KEY_FILE_PATH, params={"uid": user_id, "name": f"vpn{user_service_id}"}
        )
        return resp.content

    async def delete_user_service(self, user_id: int, user_service_id: int) -> None:
        await self._request(
            "DELETE", USER_SERVICE_PATH, params={"user_id": user_id, "user_service_id": user_service_id}
        )

    # ──────────────────────────────────────────────────────────────────────
    # Каталог и заказ
    # ──────────────────────────────────────────────────────────────────────
    async def list_catalog(self) -> List[Service]:
        resp = await self._request(
            "GET",
            SERVICE_PATH,
            params={"filter": _filter(allow_to_order=1, category=self._category)},
        )
        return sorted(self._data(resp, Service), key=lambda s: s.period)

    async def get_catalog_item(self, service_id: int) -> Optional[Service]:
        resp = await self._request("GET", SERVICE_PATH, params={"service_id": service_id, "limit": 1})
        items = self._data(resp, Service)
        return items[0] if items else None

    async def place_order(self, user_id: int, service_id: int) -> Optional[UserService]:
        resp = await self._request(
            "PUT",
            ORDER_PATH,
            json_body={"service_id": service_id, "user_id": user_id, "check_exists_unpaid": 1},
        )
        items = self._data(resp, UserService)
        return items[0] if items else None
