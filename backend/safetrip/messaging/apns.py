from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
import jwt  # PyJWT

from ..config import settings
from ..errors import PermanentTokenError
from .base import AlertMessage, DeliveryResult, not_applicable

log = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAYS = [1, 2, 4]  # Exponential backoff: 1s, 2s, 4s

# APNs reasons meaning the token will never work again
INVALID_TOKEN_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}


class PushResult:
    def __init__(self, ok: bool, status: int, detail: str):
        self.ok = ok
        self.status = status
        self.detail = detail

    def dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "status": self.status, "detail": self.detail}


class DummyPush:
    async def send(self, device_token: str, title: str, body: str, data: dict | None = None) -> PushResult:
        log.info(f"[DUMMY PUSH] token={device_token} title={title!r} body={body!r} data={data}")
        return PushResult(ok=True, status=200, detail="dummy")

    async def close(self) -> None:
        return None


class APNsClient:
    """
    Token-based APNs using HTTP/2.
    Requires:
      - APNS_TEAM_ID  (Apple Developer Team ID)
      - APNS_KEY_ID  (Key ID of your .p8)
      - APNS_PRIVATE_KEY or APNS_AUTH_KEY_PATH
      - APNS_BUNDLE_ID (topic)
    """

    def __init__(self) -> None:
        self.team_id = settings.APNS_TEAM_ID
        self.key_id = settings.APNS_KEY_ID
        self.bundle_id = settings.APNS_BUNDLE_ID
        self.private_key = settings.get_apns_private_key()
        self.base_url = (
            "https://api.development.push.apple.com"
            if settings.APNS_USE_SANDBOX
            else "https://api.push.apple.com"
        )
        self._client: httpx.AsyncClient | None = None
        # Cache JWT to avoid TooManyProviderTokenUpdates (429) from Apple
        self._cached_jwt: str | None = None
        self._jwt_issued_at: float = 0

        log.info(f"[APNS] Initialized: team={self.team_id}, key={self.key_id}, "
                 f"bundle={self.bundle_id}, sandbox={settings.APNS_USE_SANDBOX}")

    def _provider_jwt(self) -> str:
        now = int(time.time())
        # Reuse cached JWT if less than 50 minutes old (Apple allows 60 min)
        if self._cached_jwt is not None and (now - self._jwt_issued_at) < 3000:
            return self._cached_jwt
        # Apple APNs only requires 'alg' and 'kid', no 'typ'
        headers = {"alg": "ES256", "kid": self.key_id}
        payload = {"iss": self.team_id, "iat": now}
        self._cached_jwt = jwt.encode(payload, self.private_key, algorithm="ES256", headers=headers)
        self._jwt_issued_at = now
        log.debug("[APNS] Generated new provider JWT")
        return self._cached_jwt

    async def _client_ctx(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(http2=True, timeout=10)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, device_token: str, title: str, body: str, data: dict | None = None) -> PushResult:
        c = await self._client_ctx()
        url = f"{self.base_url}/3/device/{device_token}"
        headers = {
            "authorization": f"bearer {self._provider_jwt()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10",
            "content-type": "application/json",
        }
        payload: dict[str, Any] = {
            "aps": {
                "alert": {"title": title, "body": body},
                "sound": "default",
                "interruption-level": "critical",
            }
        }
        if data:
            payload["data"] = data

        r = await c.post(url, headers=headers, json=payload)
        ok = 200 <= r.status_code < 300
        if ok:
            detail = r.headers.get("apns-id", "success")
        else:
            # For errors, the reason is in the response JSON body
            try:
                detail = r.json().get("reason", r.text)
            except ValueError:
                detail = r.text or "unknown error"
        return PushResult(ok=ok, status=r.status_code, detail=detail)


def get_push_sender():
    if settings.PUSH_BACKEND.lower() == "apns":
        return APNsClient()
    return DummyPush()


def check_token_result(token: str, result: PushResult) -> None:
    """Raise PermanentTokenError when APNs says the token is dead."""
    if result.status == 410 or result.detail in INVALID_TOKEN_REASONS:
        raise PermanentTokenError(token, f"{result.status} {result.detail}")


def is_retryable(result: PushResult) -> bool:
    return result.status == 429 or result.status >= 500


class PushChannel:
    """Push alerts to every registered device of the contact's linked app account.

    Each token gets up to MAX_RETRIES attempts with exponential backoff.
    Tokens APNs reports as invalid are removed from the device store.
    """

    name = "push"

    def __init__(self, sender: Any, device_store: Any,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 retry_delays: list[float] | None = None):
        self.sender = sender
        self.device_store = device_store
        self.sleep = sleep
        self.retry_delays = retry_delays if retry_delays is not None else RETRY_DELAYS

    async def _send_to_token(self, token: str, message: AlertMessage) -> tuple[bool, str | None]:
        last_error = None
        for attempt in range(MAX_RETRIES):
            try:
                result = await self.sender.send(token, message.title, message.body, message.data())
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                log.warning(f"[APNS] Error sending alert {message.alert_id} "
                            f"(attempt {attempt + 1}/{MAX_RETRIES}): {last_error}")
            else:
                if result.ok:
                    return True, result.detail
                check_token_result(token, result)
                last_error = f"status={result.status} detail={result.detail}"
                if not is_retryable(result):
                    return False, last_error
                log.warning(f"[APNS] Failed for alert {message.alert_id} "
                            f"(attempt {attempt + 1}/{MAX_RETRIES}): {last_error}")

            if attempt < MAX_RETRIES - 1:
                delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                log.info(f"[APNS] Retrying in {delay} seconds...")
                await self.sleep(delay)

        return False, f"All retries failed: {last_error}"

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        linked_user_id = getattr(contact, "linked_user_id", None)
        if not linked_user_id:
            return not_applicable(self.name, "contact has no linked app account")

        tokens = self.device_store.tokens_for_user(linked_user_id)
        if not tokens:
            return not_applicable(self.name, "no registered devices")

        delivered_to = []
        last_error = None
        for token in tokens:
            try:
                ok, detail = await self._send_to_token(token, message)
            except PermanentTokenError as e:
                log.info(f"[APNS] Device token invalid for user {linked_user_id} ({e.reason}), removing")
                self.device_store.remove_token(e.token)
                last_error = f"invalid token: {e.reason}"
                continue
            if ok:
                delivered_to.append(detail)
            else:
                last_error = detail

        if delivered_to:
            log.info(f"[APNS] Alert {message.alert_id} pushed to {len(delivered_to)} device(s) of user {linked_user_id}")
            return DeliveryResult(ok=True, channel=self.name, provider_id=delivered_to[0])
        return DeliveryResult(ok=False, channel=self.name, error=last_error)
