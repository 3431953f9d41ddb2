"""
Payment Gateway Client Module

REST client for the Paystack transaction API plus an in-process mock for
tests. Amounts cross this boundary in minor units (kobo); everything the
client returns is already converted to major units.
"""

import httpx
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import UpstreamError
from .money import from_minor_units, to_minor_units
from .schedule import as_utc, utcnow

logger = logging.getLogger("edupay.gateway")


@dataclass
class ChargeInitialization:
    """Checkout session created by the gateway"""
    authorization_url: str
    access_code: str
    reference: str


@dataclass
class ChargeVerification:
    """Gateway's view of a finished charge"""
    reference: str
    status: str          # success, failed, abandoned, ...
    amount: Decimal      # major units
    paid_at: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status == "success"


class PaymentGateway(ABC):
    """Abstract payment gateway"""

    @abstractmethod
    def initialize_charge(self, email: str, amount: Decimal, reference: str,
                          metadata: Optional[Dict[str, Any]] = None) -> ChargeInitialization:
        """Open a checkout for amount (major units)"""
        pass

    @abstractmethod
    def verify_charge(self, reference: str) -> ChargeVerification:
        """Look up the outcome of a charge"""
        pass

    def close(self) -> None:
        pass


class PaystackClient(PaymentGateway):
    """REST client for the Paystack transaction API"""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        currency: str = "NGN",
        callback_url: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.currency = currency
        self.callback_url = callback_url
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json"
        }

    def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        start = time.time()
        try:
            response = self._client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Paystack {operation} request failed: {e}")
            raise UpstreamError(f"Payment {operation} failed: {e}", operation=operation) from e

        latency_ms = (time.time() - start) * 1000
        logger.debug(f"Paystack {operation} returned {response.status_code} in {latency_ms:.0f}ms")

        if response.status_code != 200:
            logger.warning(f"Paystack {operation} returned {response.status_code}: {response.text}")
            raise UpstreamError(
                f"Payment {operation} failed with HTTP {response.status_code}",
                operation=operation,
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(f"Payment {operation} returned invalid JSON", operation=operation) from e

        if not body.get("status") or not isinstance(body.get("data"), dict):
            raise UpstreamError(
                f"Payment {operation} failed: {body.get('message', 'no data')}",
                operation=operation
            )
        return body["data"]

    def initialize_charge(self, email: str, amount: Decimal, reference: str,
                          metadata: Optional[Dict[str, Any]] = None) -> ChargeInitialization:
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "reference": reference,
            "metadata": metadata or {}
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        data = self._request("initialization", "POST", "/transaction/initialize", json=payload)
        return ChargeInitialization(
            authorization_url=data["authorization_url"],
            access_code=data["access_code"],
            reference=data.get("reference", reference)
        )

    def verify_charge(self, reference: str) -> ChargeVerification:
        data = self._request("verification", "GET", f"/transaction/verify/{reference}")
        paid_at = data.get("paid_at") or data.get("paidAt")
        return ChargeVerification(
            reference=data.get("reference", reference),
            status=data.get("status", "unknown"),
            amount=from_minor_units(data.get("amount", 0)),
            paid_at=as_utc(paid_at) if paid_at else None,
            metadata=data.get("metadata") or {}
        )

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class MockPaymentGateway(PaymentGateway):
    """
    In-process gateway for tests and local development.

    Every initialized charge succeeds for its full amount unless the test
    overrides the outcome with set_outcome().
    """

    def __init__(self, base_url: str = "https://checkout.mock.local"):
        self.base_url = base_url
        self.charges: Dict[str, Dict[str, Any]] = {}

    def initialize_charge(self, email: str, amount: Decimal, reference: str,
                          metadata: Optional[Dict[str, Any]] = None) -> ChargeInitialization:
        self.charges[reference] = {
            "email": email,
            "amount_minor": to_minor_units(amount),
            "metadata": dict(metadata or {}),
            "status": "success",
            "paid_at": None
        }
        return ChargeInitialization(
            authorization_url=f"{self.base_url}/{reference}",
            access_code=f"ac_{reference}",
            reference=reference
        )

    def set_outcome(self, reference: str, status: str = "success",
                    amount: Optional[Decimal] = None, paid_at: Optional[datetime] = None) -> None:
        charge = self.charges[reference]
        charge["status"] = status
        if amount is not None:
            charge["amount_minor"] = to_minor_units(amount)
        charge["paid_at"] = paid_at

    def verify_charge(self, reference: str) -> ChargeVerification:
        charge = self.charges.get(reference)
        if charge is None:
            raise UpstreamError(f"Unknown transaction reference {reference}",
                                operation="verification", status_code=404)
        return ChargeVerification(
            reference=reference,
            status=charge["status"],
            amount=from_minor_units(charge["amount_minor"]),
            paid_at=charge["paid_at"] or utcnow(),
            metadata=dict(charge["metadata"])
        )
