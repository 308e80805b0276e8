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

# HTTP statuses Binance uses for account-level trouble, mapped to error kinds.
_STATUS_KINDS = {
    401: "auth",
    403: "waf",
    418: "ip_ban",
    429: "rate_limit",
}


class BinanceAPIError(Exception):
    def __init__(
        self,
        status: int,
        code: Optional[int],
        msg: Optional[str],
        body: str,
        retry_after: Optional[float] = None,
    ):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        self.retry_after = retry_after
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def kind(self) -> str:
        if self.code in (-2014, -2015):
            return "auth"
        return _STATUS_KINDS.get(self.status, "rejected")


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window: Optional[int] = None,
    ):
        exchange_cfg = config.get("exchange") or {}
        self.base_url = (base_url or exchange_cfg.get("rest_base_url") or "https://api.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key or exchange_cfg.get("api_key")
        self.api_secret: Optional[str] = api_secret or exchange_cfg.get("api_secret")
        self.recv_window = int(recv_window or exchange_cfg.get("recv_window") or 5000)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``params`` with timestamp, recvWindow and HMAC signature."""
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Binance API key/secret required for signed request")
        signed = dict(params)
        signed.setdefault("timestamp", int(time.time() * 1000))
        signed.setdefault("recvWindow", self.recv_window)
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signed

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = dict(params or {})
        headers: Dict[str, str] = {}

        if signed:
            params = self.sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        logger.debug("Binance %s %s", method.upper(), path)

        async with session.request(
            method.upper(),
            url,
            params=params,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=15),
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                retry_after = None
                if resp.headers.get("Retry-After"):
                    try:
                        retry_after = float(resp.headers["Retry-After"])
                    except ValueError:
                        retry_after = None
                error = BinanceAPIError(resp.status, code, msg, text, retry_after=retry_after)
                self._log_error(path, error)
                raise error

            return payload

    @staticmethod
    def _log_error(path: str, error: BinanceAPIError) -> None:
        kind = error.kind
        if kind == "auth":
            logger.error("Binance authentication error on %s: invalid API key or signature", path)
        elif kind == "waf":
            logger.error("Binance authorization error on %s: WAF limit violated", path)
        elif kind == "ip_ban":
            logger.error("Binance IP auto-ban on %s: too many requests after 429", path)
        elif kind == "rate_limit":
            logger.error("Binance rate limit exceeded on %s (retry after %s)", path, error.retry_after)
        else:
            logger.error("Binance request %s failed: code=%s msg=%s", path, error.code, error.msg)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)
