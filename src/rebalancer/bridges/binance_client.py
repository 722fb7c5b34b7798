"""Binance SAPI client for deposit and withdrawal flows."""

import hashlib
import hmac
import logging
import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

# API endpoint paths
DEPOSIT_ADDRESS = "/sapi/v1/capital/deposit/address"
DEPOSIT_HISTORY = "/sapi/v1/capital/deposit/hisrec"
WITHDRAW_APPLY = "/sapi/v1/capital/withdraw/apply"
WITHDRAW_HISTORY = "/sapi/v1/capital/withdraw/history"
WITHDRAW_QUOTA = "/sapi/v1/capital/withdraw/quota"
SYSTEM_STATUS = "/sapi/v1/system/status"
ASSET_CONFIG = "/sapi/v1/capital/config/getall"
TICKER_PRICE = "/api/v3/ticker/price"

RECV_WINDOW = 10000


class BinanceApiError(Exception):
    """Binance returned an error payload or a non-2xx status."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(f"Binance API error{f' ({code})' if code is not None else ''}: {message}")


class BinanceClient:
    """Signed access to the Binance capital endpoints."""

    def __init__(self, api_key: str, api_secret: str, base_url: str, timeout: float = 30.0):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def sign(self, query: str) -> str:
        """HMAC-SHA256 of the query string, hex encoded."""
        return hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()

    async def _request(
        self, method: str, path: str, params: Optional[dict] = None, signed: bool = False
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = RECV_WINDOW
        query = urlencode(params)
        if signed:
            query = f"{query}&signature={self.sign(query)}"

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, url, headers={"X-MBX-APIKEY": self.api_key})

        if response.status_code >= 400:
            try:
                body = response.json()
                raise BinanceApiError(body.get("msg", response.text), body.get("code"))
            except ValueError:
                raise BinanceApiError(response.text or f"HTTP {response.status_code}")
        return response.json()

    async def is_system_operational(self) -> bool:
        try:
            data = await self._request("GET", SYSTEM_STATUS)
            return data.get("status") == 0
        except (httpx.HTTPError, BinanceApiError) as e:
            logger.warning(f"Binance system status check failed: {e}")
            return False

    async def get_deposit_address(self, coin: str, network: str) -> dict:
        return await self._request("GET", DEPOSIT_ADDRESS, {"coin": coin, "network": network}, signed=True)

    async def get_deposit_history(self, coin: str, status: Optional[int] = None) -> list[dict]:
        return await self._request(
            "GET", DEPOSIT_HISTORY, {"coin": coin, "status": status, "limit": 1000}, signed=True
        )

    async def withdraw(
        self, coin: str, network: str, address: str, amount: str, withdraw_order_id: str
    ) -> dict:
        logger.info(f"Submitting Binance withdrawal {withdraw_order_id}: {amount} {coin} on {network}")
        return await self._request(
            "POST",
            WITHDRAW_APPLY,
            {
                "coin": coin,
                "network": network,
                "address": address,
                "amount": amount,
                "withdrawOrderId": withdraw_order_id,
            },
            signed=True,
        )

    async def get_withdraw_history(
        self, coin: str, withdraw_order_id: Optional[str] = None
    ) -> list[dict]:
        return await self._request(
            "GET",
            WITHDRAW_HISTORY,
            {"coin": coin, "withdrawOrderId": withdraw_order_id, "limit": 1000},
            signed=True,
        )

    async def get_withdraw_quota(self) -> dict:
        """Remaining 24h withdrawal quota in USD: {wdQuota, usedWdQuota}."""
        return await self._request("GET", WITHDRAW_QUOTA, signed=True)

    async def get_asset_config(self) -> list[dict]:
        return await self._request("GET", ASSET_CONFIG, signed=True)

    async def get_price(self, symbol: str) -> str:
        data = await self._request("GET", TICKER_PRICE, {"symbol": symbol})
        return data["price"]
