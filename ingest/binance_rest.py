import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class ExchangeError(Exception):
    """Base class for failures talking to the exchange."""


class BinanceAPIError(ExchangeError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class AuthError(BinanceAPIError):
    """Rejected or expired API credentials (HTTP 401/403). Never retried."""


class RateLimitError(BinanceAPIError):
    """Request weight exceeded (HTTP 429) or IP banned (HTTP 418)."""

    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str,
                 retry_after: Optional[float] = None):
        super().__init__(status, code, msg, body)
        self.retry_after = retry_after


class TransientError(ExchangeError):
    """Network failure, timeout or 5xx; safe to retry idempotent calls."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def sign_query(secret: str, query: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        query.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class BinanceRESTClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        exchange_cfg = config.section("exchange")
        # USDⓈ-M futures base URL
        self.base_url = (base_url or exchange_cfg.get("base_url", "https://fapi.binance.com")).rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window = int(exchange_cfg.get("recv_window_ms", 5000))
        self.timeout_s = float(exchange_cfg.get("request_timeout_s", 15))
        self.max_attempts = max(1, int(exchange_cfg.get("max_attempts", 3)))
        self.backoff_base_s = float(exchange_cfg.get("backoff_base_s", 0.5))
        self._session = session
        self._owns_session = session is None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            return self._session

    async def close(self):
        async with self._lock:
            if self._owns_session and self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def build_signed_query(self, params: Optional[Dict[str, Any]] = None) -> str:
        """Encode params with a fresh timestamp and append the HMAC signature."""
        if not self.api_key or not self.api_secret:
            raise AuthError(401, None, "API key/secret required for signed request", "")
        signed = dict(params or {})
        # Signatures are only valid inside recvWindow of this timestamp
        signed["timestamp"] = int(time.time() * 1000)
        signed.setdefault("recvWindow", self.recv_window)
        query = urlencode(signed, doseq=True)
        return f"{query}&signature={sign_query(self.api_secret, query)}"

    async def _request_once(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        signed: bool,
    ) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {}
        if signed:
            query = self.build_signed_query(params)
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = urlencode(params or {}, doseq=True)
            if self.api_key:
                headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        try:
            async with session.request(
                method.upper(),
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
                retry_after_header = resp.headers.get("Retry-After")
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise TransientError(f"Timeout calling {path}") from exc
        except aiohttp.ClientError as exc:
            raise TransientError(f"Network error calling {path}: {exc}") from exc

        payload: Any
        if "application/json" in content_type:
            try:
                payload = json.loads(text)
            except ValueError:
                payload = text
        else:
            payload = text

        if status >= 400:
            code = None
            msg = None
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("msg")
            raise self._classify_error(status, code, msg, text, retry_after_header)

        return payload

    @staticmethod
    def _classify_error(status: int, code: Optional[int], msg: Optional[str], body: str,
                        retry_after_header: Optional[str]) -> ExchangeError:
        if status in (401, 403):
            return AuthError(status, code, msg, body)
        if status in (418, 429):
            retry_after = None
            if retry_after_header:
                try:
                    retry_after = float(retry_after_header)
                except ValueError:
                    retry_after = None
            return RateLimitError(status, code, msg, body, retry_after=retry_after)
        if status >= 500:
            return TransientError(f"Binance server error {status}: {msg or body[:200]}", status=status)
        return BinanceAPIError(status, code, msg, body)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        retry: bool = False,
    ) -> Any:
        attempts = self.max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._request_once(method, path, params, signed)
            except TransientError as exc:
                if attempt >= attempts:
                    raise
                delay = self.backoff_base_s * (2 ** (attempt - 1))
                logger.warning(
                    "%s %s failed (%s/%s): %s; retrying in %.2fs",
                    method,
                    path,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed, retry=True)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Not retried: a replayed order could double the fill
        return await self._request("POST", path, params=params, signed=signed, retry=False)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed, retry=False)
