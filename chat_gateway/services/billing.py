"""Billing service client - identity, sessions, pre-authorization, settlement, balance.

Every call carries the module API key and the caller's request id. 5xx
responses and network failures are retried with exponential backoff; any other
failure surfaces as `BillingError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Literal, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from chat_gateway.models.domain import (
    BillingOutcome,
    IdentityResolution,
    SessionAllocation,
    SettlementResult,
    Usage,
    WalletBalance,
)

logger = logging.getLogger(__name__)

SettlementAction = Literal["commit", "rollback"]

T = TypeVar("T", bound=BaseModel)


class BillingError(Exception):
    """Error reported by (or while reaching) the billing service."""

    def __init__(self, code: str, message: str, status_code: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class BillingClient:
    """Async wrapper around the billing service HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        module_id: str,
        default_model: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.module_id = module_id
        self.default_model = default_model
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"X-Module-Api-Key": api_key},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #
    async def _request(
        self,
        method: str,
        endpoint: str,
        response_model: Type[T],
        request_id: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> T:
        headers = {"X-Request-Id": request_id} if request_id else {}
        attempt = 0

        while True:
            logger.debug("Billing API %s %s (attempt %d)", method, endpoint, attempt + 1)
            try:
                response = await self._client.request(
                    method, endpoint, json=json, params=params, headers=headers
                )
            except httpx.TransportError as exc:
                if attempt < self.max_retries:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(
                        "Billing API network error on %s, retrying in %.2fs: %s", endpoint, delay, exc
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                logger.error("Billing API request to %s failed: %s", endpoint, exc)
                raise BillingError("BILLING_UNAVAILABLE", f"Billing service unreachable: {exc}", 503) from exc

            if response.status_code >= 500 and attempt < self.max_retries:
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Billing API returned %d on %s, retrying in %.2fs",
                    response.status_code,
                    endpoint,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            try:
                data = response.json()
            except ValueError:
                data = {}

            if response.is_error:
                error = data.get("error") if isinstance(data, dict) else None
                error = error if isinstance(error, dict) else {}
                code = error.get("code") or "UNKNOWN_ERROR"
                message = error.get("message") or f"HTTP {response.status_code}"
                logger.error(
                    "Billing API error on %s: %d %s %s", endpoint, response.status_code, code, message
                )
                raise BillingError(code, message, response.status_code)

            try:
                return response_model.model_validate(data)
            except ValidationError as exc:
                raise BillingError(
                    "INVALID_RESPONSE", f"Unexpected billing response from {endpoint}", 502
                ) from exc

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #
    async def resolve_identity(
        self, provider: str, tenant: str, external_user_id: str, request_id: str
    ) -> IdentityResolution:
        logger.info("Resolving identity provider=%s tenant=%s", provider, tenant)
        result = await self._request(
            "POST",
            "/identity/resolve",
            IdentityResolution,
            request_id,
            json={
                "request_id": request_id,
                "provider": provider,
                "tenant": tenant,
                "external_user_id": external_user_id,
            },
        )
        logger.info("Identity resolved user=%s is_new=%s", result.user_id, result.is_new)
        return result

    async def create_session(self, user_id: str, idempotency_key: str, request_id: str) -> SessionAllocation:
        result = await self._request(
            "POST",
            "/session/create",
            SessionAllocation,
            request_id,
            json={"user_id": user_id, "idempotency_key": idempotency_key},
        )
        logger.info("Session allocated user=%s session=%s", user_id, result.session_id)
        return result

    async def pre_authorize(self, user_id: str, request_id: str) -> BillingOutcome:
        """Ask the billing service whether `user_id` may start a paid request."""
        result = await self._request(
            "POST",
            "/billing/start",
            BillingOutcome,
            request_id,
            json={"user_id": user_id, "module_id": self.module_id, "request_id": request_id},
        )
        logger.info(
            "Billing pre-authorization user=%s allowed=%s reason=%s balance=%s",
            user_id,
            result.allowed,
            result.reason,
            result.balance,
        )
        return result

    async def settle(
        self,
        user_id: str,
        request_id: str,
        action: SettlementAction,
        usage: Optional[Usage] = None,
        model: Optional[str] = None,
        shell_id: Optional[str] = None,
        origin_url: Optional[str] = None,
    ) -> SettlementResult:
        """Commit (charge for `usage`) or roll back a pre-authorized request."""
        if action not in ("commit", "rollback"):
            raise ValueError(f"Unknown settlement action: {action}")
        if action == "commit" and usage is None:
            raise ValueError("Commit settlement requires usage counters")

        body: Dict[str, Any] = {
            "user_id": user_id,
            "module_id": self.module_id,
            "request_id": request_id,
            "action": action,
        }
        if action == "commit":
            body["usage"] = usage.model_dump(exclude_none=True)
            body["model"] = model or self.default_model
            if shell_id:
                body["shell_id"] = shell_id
            if origin_url:
                body["origin_url"] = origin_url

        logger.info("Settling billing user=%s action=%s model=%s", user_id, action, body.get("model"))
        result = await self._request("POST", "/billing/finish", SettlementResult, request_id, json=body)
        logger.info(
            "Billing settled action=%s credits_spent=%s balance_after=%s",
            result.action,
            result.credits_spent,
            result.balance_after,
        )
        return result

    async def fetch_balance(
        self,
        user_id: str,
        request_id: str,
        shell_id: Optional[str] = None,
        origin_url: Optional[str] = None,
    ) -> WalletBalance:
        params = {"user_id": user_id}
        if shell_id:
            params["shell_id"] = shell_id
        if origin_url:
            params["origin_url"] = origin_url
        result = await self._request("GET", "/wallet/balance", WalletBalance, request_id, params=params)
        logger.info("Balance retrieved user=%s balance=%s", result.user_id, result.balance)
        return result
