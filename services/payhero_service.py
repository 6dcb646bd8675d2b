"""
PayHero STK push integration.

POST /api/v2/payments starts an M-Pesa push on the payer's phone;
GET /api/v2/transaction-status?reference=... reports its outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import aiohttp

from config import Config
from utils.exception_handler import ExternalServiceError
from utils.helpers import DEPOSIT_ID_PREFIX, random_token

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"

_SUCCESS_VALUES = {"SUCCESS", "SUCCESSFUL", "COMPLETED", "PAID"}
_FAILED_VALUES = {"FAILED", "FAILURE", "CANCELLED", "CANCELED", "REJECTED", "TIMEOUT", "EXPIRED"}


class PayHeroAPIError(ExternalServiceError):
    """Custom exception for PayHero API errors"""
    pass


@dataclass
class PushPaymentResult:
    reference: str
    external_reference: Optional[str] = None


@dataclass
class PaymentStatusResult:
    status: str
    provider_reference: Optional[str] = None


def normalize_status(raw: Optional[str]) -> str:
    value = (raw or "").strip().upper()
    if value in _SUCCESS_VALUES:
        return STATUS_SUCCESS
    if value in _FAILED_VALUES:
        return STATUS_FAILED
    return STATUS_PENDING


class PayHeroService:
    """Service for initiating and tracking M-Pesa STK push payments"""

    def __init__(
        self,
        base_url: str = None,
        auth_token: str = None,
        status_auth_token: str = None,
        channel_id: int = None,
        callback_url: str = None,
        timeout_seconds: int = None,
    ):
        self.base_url = (base_url or Config.PAYHERO_BASE_URL).rstrip("/")
        self.auth_token = auth_token if auth_token is not None else Config.PAYHERO_AUTH_TOKEN
        self.status_auth_token = status_auth_token or Config.PAYHERO_STATUS_AUTH_TOKEN or self.auth_token
        self.channel_id = channel_id if channel_id is not None else Config.PAYHERO_CHANNEL_ID
        self.callback_url = callback_url or Config.PAYHERO_CALLBACK_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PAYHERO_TIMEOUT_SECONDS)

    @property
    def enabled(self) -> bool:
        return bool(self.auth_token)

    async def initiate_push(self, amount: Decimal, phone: str, customer_name: str = "Customer") -> PushPaymentResult:
        """Ask the provider to push a payment prompt to the payer's phone"""
        if not self.enabled:
            raise PayHeroAPIError("STK push is not configured")

        external_reference = f"{DEPOSIT_ID_PREFIX}{random_token(8)}"
        payload = {
            "amount": int(amount) if Decimal(amount) == Decimal(amount).to_integral_value() else float(amount),
            "phone_number": phone,
            "channel_id": self.channel_id,
            "provider": "m-pesa",
            "external_reference": external_reference,
            "customer_name": customer_name,
            "callback_url": self.callback_url,
        }
        data = await self._request("POST", "/api/v2/payments", self.auth_token, json=payload)

        reference = data.get("reference") or data.get("CheckoutRequestID")
        if not reference:
            raise PayHeroAPIError(f"STK push response carried no reference: {data}")

        logger.info(f"🚀 PAYHERO: STK push sent to {phone} for {amount} (reference {reference})")
        return PushPaymentResult(reference=str(reference), external_reference=external_reference)

    async def poll_status(self, reference: str) -> PaymentStatusResult:
        data = await self._request(
            "GET", "/api/v2/transaction-status", self.status_auth_token, params={"reference": reference}
        )
        status = normalize_status(data.get("status"))
        provider_reference = data.get("provider_reference") or data.get("third_party_reference")
        logger.debug(f"PAYHERO: Status for {reference}: {data.get('status')} -> {status}")
        return PaymentStatusResult(status=status, provider_reference=provider_reference)

    async def _request(self, method: str, endpoint: str, token: str, **kwargs) -> dict:
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json", "Authorization": token or ""}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=headers, **kwargs) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        response_data = {"raw": await response.text()}

                    if response.status in (200, 201) and isinstance(response_data, dict):
                        return response_data

                    logger.error(f"❌ PAYHERO: {method} {endpoint} failed: {response.status} - {response_data}")
                    raise PayHeroAPIError(f"PayHero API error: {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ PAYHERO: {method} {endpoint} unreachable: {type(e).__name__}: {e}")
            raise PayHeroAPIError(f"PayHero API unreachable: {type(e).__name__}") from e
