"""
Card issuance for approved purchase intents.

Each approved intent gets its own virtual card whose hard limit equals the
approved amount. The mock issuer is for development; the Stripe Issuing
client talks to the real REST API over httpx.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx

from .config import DEFAULT_CARD_TTL_SECONDS, Settings
from .errors import CardIssuanceError, ConfigError
from .models import VirtualCard, VirtualCardRequest
from .money import amount_to_micros, micros_to_minor_units

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"
TEST_CARD_NUMBER = "4242424242424242"


class PaymentProvider(Protocol):
    async def create_virtual_card(self, request: VirtualCardRequest) -> VirtualCard: ...

    async def cancel_virtual_card(self, card_id: str) -> None: ...

    async def get_virtual_card(self, card_id: str) -> Optional[VirtualCard]: ...

    async def is_configured(self) -> bool: ...


class MockPaymentProvider:
    """Issues fake cards that no merchant will accept."""

    def __init__(self, card_ttl_seconds: int = DEFAULT_CARD_TTL_SECONDS, billing_zip: str = "10001"):
        self.card_ttl_seconds = card_ttl_seconds
        self.billing_zip = billing_zip
        self._cards: dict[str, VirtualCard] = {}

    async def create_virtual_card(self, request: VirtualCardRequest) -> VirtualCard:
        now = time.time()
        card = VirtualCard(
            id=f"card_{secrets.token_hex(8)}",
            card_number=TEST_CARD_NUMBER,
            exp_month=12,
            exp_year=datetime.fromtimestamp(now, tz=timezone.utc).year + 1,
            cvc=str(secrets.randbelow(900) + 100),
            billing_zip=self.billing_zip,
            hard_limit=request.amount,
            currency=request.currency,
            expires_at=now + self.card_ttl_seconds,
        )
        self._cards[card.id] = card
        logger.info(
            "Mock card %s issued for intent %s (limit %s %s)",
            card.id, request.purchase_intent_id, request.amount, request.currency,
        )
        return card

    async def cancel_virtual_card(self, card_id: str) -> None:
        self._cards.pop(card_id, None)

    async def get_virtual_card(self, card_id: str) -> Optional[VirtualCard]:
        return self._cards.get(card_id)

    async def is_configured(self) -> bool:
        return True


class StripeIssuingProvider:
    """Stripe Issuing client: one virtual card per approved intent."""

    def __init__(
        self,
        secret_key: Optional[str],
        cardholder_id: Optional[str],
        card_ttl_seconds: int = DEFAULT_CARD_TTL_SECONDS,
        base_url: str = STRIPE_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.secret_key = secret_key
        self.cardholder_id = cardholder_id
        self.card_ttl_seconds = card_ttl_seconds
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def is_configured(self) -> bool:
        return bool(self.secret_key and self.cardholder_id)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        if not await self.is_configured():
            raise CardIssuanceError("Stripe Issuing is not configured")
        try:
            resp = await self.client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise CardIssuanceError(f"Stripe request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise CardIssuanceError(f"Stripe request failed: {exc}") from exc

        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", {}).get("message") or resp.text
            except ValueError:
                message = resp.text
            logger.warning("Stripe %s %s returned %s", method, path, resp.status_code)
            raise CardIssuanceError(message, status_code=resp.status_code)
        return resp.json()

    async def create_virtual_card(self, request: VirtualCardRequest) -> VirtualCard:
        form = {
            "cardholder": self.cardholder_id,
            "currency": request.currency.lower(),
            "type": "virtual",
            "status": "active",
            "spending_controls[spending_limits][0][amount]": str(
                micros_to_minor_units(amount_to_micros(request.amount))
            ),
            "spending_controls[spending_limits][0][interval]": "all_time",
            "metadata[purchase_intent_id]": request.purchase_intent_id,
            "metadata[organization_id]": request.organization_id,
            "metadata[agent_id]": request.agent_id,
        }
        created = await self._call("POST", "/v1/issuing/cards", data=form)
        card_id = created["id"]
        try:
            details = await self._call(
                "GET",
                f"/v1/issuing/cards/{card_id}",
                params=[("expand[]", "number"), ("expand[]", "cvc")],
            )
            card = self._to_card(details, hard_limit=request.amount, currency=request.currency)
        except (CardIssuanceError, KeyError, ValueError):
            # The card is already live; cancel it before surfacing the error.
            await self._cancel_unusable(card_id)
            raise
        logger.info("Stripe card %s issued for intent %s", card_id, request.purchase_intent_id)
        return card

    async def _cancel_unusable(self, card_id: str) -> None:
        try:
            await self.cancel_virtual_card(card_id)
        except CardIssuanceError as exc:
            logger.error("Could not cancel Stripe card %s after a failed issue: %s", card_id, exc)
        else:
            logger.warning("Cancelled Stripe card %s after a failed issue", card_id)

    async def cancel_virtual_card(self, card_id: str) -> None:
        await self._call("POST", f"/v1/issuing/cards/{card_id}", data={"status": "canceled"})

    async def get_virtual_card(self, card_id: str) -> Optional[VirtualCard]:
        try:
            details = await self._call("GET", f"/v1/issuing/cards/{card_id}")
        except CardIssuanceError as exc:
            if exc.status_code == 404:
                return None
            raise
        limits = (details.get("spending_controls") or {}).get("spending_limits") or []
        hard_limit = limits[0]["amount"] / 100 if limits else 0.0
        return self._to_card(details, hard_limit=hard_limit, currency=details.get("currency", "usd"))

    def _to_card(self, details: dict, *, hard_limit: float, currency: str) -> VirtualCard:
        # cardholder is an id unless the request expanded it
        cardholder = details.get("cardholder")
        address: dict = {}
        if isinstance(cardholder, dict):
            address = (cardholder.get("billing") or {}).get("address") or {}
        return VirtualCard(
            id=details["id"],
            card_number=details.get("number") or f"****{details.get('last4', '')}",
            exp_month=int(details["exp_month"]),
            exp_year=int(details["exp_year"]),
            cvc=details.get("cvc") or "",
            billing_zip=address.get("postal_code"),
            hard_limit=hard_limit,
            currency=currency,
            expires_at=time.time() + self.card_ttl_seconds,
        )


def build_payment_provider(settings: Settings) -> PaymentProvider:
    """Pick the card issuer named in settings."""
    if settings.payment_provider == "mock":
        return MockPaymentProvider(card_ttl_seconds=settings.card_ttl_seconds)
    if settings.payment_provider == "stripe":
        return StripeIssuingProvider(
            secret_key=settings.stripe_secret_key,
            cardholder_id=settings.stripe_cardholder_id,
            card_ttl_seconds=settings.card_ttl_seconds,
        )
    raise ConfigError(f"Unknown payment provider: {settings.payment_provider}")
