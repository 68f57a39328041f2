"""MercadoLibre Items/OAuth client used by the sync engine.

Only the handful of endpoints the sync needs are wrapped:

* ``PUT /items/{id}``: partial update of price / available_quantity / status,
  nested under ``variations`` when the listing is a variation;
* ``GET /items/{id}?attributes=variations``: live variation lookup;
* ``POST /oauth/token``: refresh_token grant.

Update calls never raise for marketplace rejections; they return a
``MeliUpdateResult`` so one bad listing cannot stop a batch. The only
exception that escapes ``update_listing`` is ``TokenRefreshError`` raised by
the token source, which is fatal for the tenant.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from prodflow.config import settings
from prodflow.services.errors import MeliApiError, VariationResolutionError
from prodflow.services.retry_policy import RetryPolicy
from prodflow.utils.logger import logger, meli_logger, MeliConnectionLogger
from prodflow.utils.sku import normalize_sku


NON_MODIFIABLE_CAUSES = {"item.price.not_modifiable", "item.attributes.not_modifiable", "field_not_updatable"}
PRICE_TOO_LOW_CAUSE = "item.price.invalid"
# "The price must be greater than $ 350" -> 350
_MIN_PRICE_RE = re.compile(r"\$\s*(\d+(?:\.\d+)?)")

VARIATION_FIELDS = ("price", "available_quantity")


@dataclass
class MeliUpdateResult:
    success: bool
    status_code: Optional[int] = None
    attempts: int = 0
    skipped: bool = False
    error_message: Optional[str] = None
    error_body: Any = None
    # Set when the marketplace forced a different price than requested.
    applied_price: Optional[Decimal] = None
    warning: Optional[str] = None

    @property
    def variation_not_found(self) -> bool:
        return self.status_code == 404


class _Pacer:
    """Keeps a minimum gap between consecutive update calls, across tasks."""

    def __init__(self, interval: float, sleep):
        self.interval = interval
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    async def wait(self) -> None:
        if self.interval <= 0:
            return
        async with self._lock:
            if self._last_call is not None:
                remaining = self._last_call + self.interval - time.monotonic()
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call = time.monotonic()


def build_update_body(fields: Dict[str, Any], variation_id: Optional[str] = None) -> Dict[str, Any]:
    """Shape a partial update for ``PUT /items/{id}``.

    Price and quantity of a variation listing go inside a single-element
    ``variations`` array; item-level fields (status) stay at the top.
    """

    clean = {k: _jsonable(v) for k, v in fields.items() if v is not None}
    if not variation_id:
        return clean

    variation = {"id": _variation_id_value(variation_id)}
    body: Dict[str, Any] = {}
    for key, value in clean.items():
        if key in VARIATION_FIELDS:
            variation[key] = value
        else:
            body[key] = value
    body["variations"] = [variation]
    return body


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def _variation_id_value(variation_id: str) -> Any:
    text = str(variation_id)
    return int(text) if text.isdigit() else text


def _response_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text or None


def _causes(body: Any) -> List[Dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    cause = body.get("cause")
    if isinstance(cause, list):
        return [c for c in cause if isinstance(c, dict)]
    return []


def extract_minimum_price(body: Any) -> Optional[Decimal]:
    """Minimum price stated in a price-too-low rejection, if any."""

    for cause in _causes(body):
        if cause.get("code") != PRICE_TOO_LOW_CAUSE:
            continue
        match = _MIN_PRICE_RE.search(str(cause.get("message") or ""))
        if match:
            try:
                return Decimal(match.group(1))
            except InvalidOperation:
                return None
    return None


def is_non_modifiable(body: Any) -> bool:
    return any(c.get("code") in NON_MODIFIABLE_CAUSES for c in _causes(body))


def variation_sku(variation: Dict[str, Any]) -> Optional[str]:
    for attr in variation.get("attributes") or []:
        if isinstance(attr, dict) and attr.get("id") == "SELLER_SKU":
            sku = normalize_sku(attr.get("value_name"))
            if sku:
                return sku
    return normalize_sku(variation.get("seller_custom_field"))


class MeliApiClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        token_source=None,
        retry_policy: Optional[RetryPolicy] = None,
        call_delay: Optional[float] = None,
        base_url: Optional[str] = None,
        connection_logger: MeliConnectionLogger = meli_logger,
        _pacer: Optional[_Pacer] = None,
    ):
        self.http = http_client
        self.token_source = token_source
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.base_url = (base_url or settings.MELI_API_BASE_URL).rstrip("/")
        self.connection_logger = connection_logger
        if _pacer is None:
            delay = settings.UPDATE_CALL_DELAY_SECONDS if call_delay is None else call_delay
            _pacer = _Pacer(delay, self.retry_policy.sleep)
        self._pacer = _pacer

    def with_token_source(self, token_source) -> "MeliApiClient":
        """Same HTTP client, policy and pacing, bound to a tenant's tokens."""
        return MeliApiClient(
            self.http,
            token_source=token_source,
            retry_policy=self.retry_policy,
            base_url=self.base_url,
            connection_logger=self.connection_logger,
            _pacer=self._pacer,
        )

    async def _authorized(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send with the tenant's bearer token; on 401 refresh once and resend."""

        if self.token_source is None:
            raise RuntimeError("MeliApiClient has no token source bound")

        token = await self.token_source.get()
        resp = await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            **kwargs,
        )
        if resp.status_code != 401:
            return resp

        logger.info("[meli] 401 on %s %s, refreshing access token", method, path)
        token = await self.token_source.refresh(stale_token=token)
        return await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            **kwargs,
        )

    async def update_listing(
        self,
        meli_id: str,
        fields: Dict[str, Any],
        *,
        variation_id: Optional[str] = None,
    ) -> MeliUpdateResult:
        """Apply a partial update; never raises for marketplace rejections."""

        policy = self.retry_policy
        body = build_update_body(fields, variation_id)
        path = f"/items/{meli_id}"
        attempt = 0
        price_retry_used = False
        applied_price: Optional[Decimal] = None
        warning: Optional[str] = None

        while True:
            attempt += 1
            await self._pacer.wait()
            try:
                resp = await self._authorized("PUT", path, json=body)
            except httpx.TransportError as exc:
                if policy.has_attempts_left(attempt):
                    delay = await policy.backoff(attempt)
                    logger.warning(
                        "[meli] transport error on %s (%s). Retrying (%s/%s) after %.1fs",
                        meli_id, exc, attempt, policy.max_attempts, delay,
                    )
                    continue
                return MeliUpdateResult(
                    success=False,
                    attempts=attempt,
                    error_message=f"transport error after {attempt} attempts: {exc}",
                )

            if resp.is_success:
                self.connection_logger.log_meli_event(
                    "item_update",
                    f"Updated {meli_id}" + (f" variation {variation_id}" if variation_id else ""),
                    request_data=body,
                )
                return MeliUpdateResult(
                    success=True,
                    status_code=resp.status_code,
                    attempts=attempt,
                    applied_price=applied_price,
                    warning=warning,
                )

            status = resp.status_code
            error_body = _response_body(resp)

            if policy.is_retryable_status(status):
                if policy.has_attempts_left(attempt):
                    delay = await policy.backoff(attempt)
                    logger.warning(
                        "[meli] %s on %s. Retrying (%s/%s) after %.1fs",
                        status, meli_id, attempt, policy.max_attempts, delay,
                    )
                    continue
                return self._failure(meli_id, status, attempt, error_body,
                                     f"gave up after {attempt} attempts (status {status})")

            if status == 400 and is_non_modifiable(error_body):
                logger.warning("[meli] %s is not modifiable, skipping: %s", meli_id, error_body)
                return MeliUpdateResult(
                    success=False,
                    skipped=True,
                    status_code=status,
                    attempts=attempt,
                    error_body=error_body,
                    error_message=f"{meli_id} is not modifiable",
                )

            if status == 400 and "price" in fields and not price_retry_used:
                minimum = extract_minimum_price(error_body)
                if minimum is not None:
                    price_retry_used = True
                    applied_price = minimum
                    warning = (
                        f"{meli_id}: price {fields['price']} rejected as too low, "
                        f"clamped to marketplace minimum {minimum}"
                    )
                    self.connection_logger.log_meli_event(
                        "price_clamped", warning, response_data={"cause": _causes(error_body)},
                        status="warning",
                    )
                    body = build_update_body({**fields, "price": minimum}, variation_id)
                    continue

            return self._failure(meli_id, status, attempt, error_body, f"rejected with status {status}")

    def _failure(self, meli_id: str, status: int, attempts: int, error_body: Any, message: str) -> MeliUpdateResult:
        self.connection_logger.log_meli_event(
            "item_update",
            f"Definitive failure on {meli_id}",
            response_data={"status": status},
            status="error",
            error=f"{message}: {error_body}",
        )
        return MeliUpdateResult(
            success=False,
            status_code=status,
            attempts=attempts,
            error_body=error_body,
            error_message=message,
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self._authorized("GET", path, params=params)
            except httpx.TransportError:
                if policy.has_attempts_left(attempt):
                    await policy.backoff(attempt)
                    continue
                raise
            if resp.is_success:
                return resp.json()
            if policy.should_retry(resp.status_code, attempt):
                await policy.backoff(attempt)
                continue
            raise MeliApiError(resp.status_code, _response_body(resp))

    async def get_item_variations(self, meli_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/items/{meli_id}", params={"attributes": "variations"})
        variations = data.get("variations") if isinstance(data, dict) else None
        return [v for v in (variations or []) if isinstance(v, dict)]

    async def get_live_variation_id(self, meli_id: str, sku: str) -> Optional[str]:
        """Variation id whose seller SKU matches ``sku``.

        Returns ``None`` for items without variations. Raises
        ``VariationResolutionError`` when variations exist but none matches.
        """

        variations = await self.get_item_variations(meli_id)
        if not variations:
            return None
        wanted = normalize_sku(sku)
        for variation in variations:
            if wanted and variation_sku(variation) == wanted and variation.get("id") is not None:
                return str(variation["id"])
        raise VariationResolutionError(meli_id, sku, len(variations))

    async def exchange_refresh_token(
        self,
        refresh_token: str,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run the refresh_token grant and return the token payload."""

        client_id = client_id or settings.MELI_APP_ID
        client_secret = client_secret or settings.MELI_CLIENT_SECRET
        if not client_id or not client_secret:
            raise ValueError("MELI_APP_ID / MELI_CLIENT_SECRET are not configured")

        data = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }
        resp = await self.http.post(
            f"{self.base_url}/oauth/token",
            data=data,
            headers={"Accept": "application/json"},
        )
        body = _response_body(resp)
        if not resp.is_success or not isinstance(body, dict) or not body.get("access_token"):
            self.connection_logger.log_meli_event(
                "token_refresh",
                "Refresh token grant rejected",
                request_data=data,
                response_data={"status": resp.status_code},
                status="error",
                error=str(body),
            )
            raise MeliApiError(resp.status_code, body, f"refresh_token grant failed with status {resp.status_code}")

        self.connection_logger.log_meli_event(
            "token_refresh",
            "Refresh token grant succeeded",
            request_data=data,
            response_data={"expires_in": body.get("expires_in")},
        )
        return body
