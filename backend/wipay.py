"""WiPay redirect checkout client.

Creates hosted-checkout payments, looks them up by reference and checks
webhook signatures. Every HTTP call is bounded by ``timeout`` seconds; transport
errors, timeouts and non-2xx answers all surface as ``PaymentGatewayError``.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

import requests

from errors import PaymentGatewayError
from helpers import safe_float

WIPAY_BASE_URLS = {
    "production": "https://api.wipay.com/v1",
    "sandbox": "https://sandbox.wipay.com/v1",
}
SUCCESS_STATUSES = {"success", "completed", "paid"}


@dataclass
class PaymentRequest:
    amount: float
    order_id: str
    customer_email: str
    currency: str = "JMD"
    customer_name: str = ""
    description: str = ""
    return_url: str = ""
    cancel_url: str = ""


@dataclass
class PaymentIntent:
    transaction_id: str
    payment_url: str
    reference: str
    status: str = "pending"


@dataclass
class PaymentVerification:
    transaction_id: str
    reference: str
    status: str
    amount: float
    currency: str
    metadata: Dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class WiPayClient:
    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        secret_key: str,
        environment: str = "sandbox",
        timeout: float = 30,
        logger=None,
    ):
        self.merchant_id = (merchant_id or "").strip()
        self.merchant_key = (merchant_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        normalized_environment = (environment or "sandbox").strip().lower()
        self.base_url = WIPAY_BASE_URLS.get(normalized_environment, WIPAY_BASE_URLS["sandbox"])
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config, logger=None) -> "WiPayClient":
        return cls(
            merchant_id=config.get("WIPAY_MERCHANT_ID", ""),
            merchant_key=config.get("WIPAY_MERCHANT_KEY", ""),
            secret_key=config.get("WIPAY_SECRET_KEY", ""),
            environment=config.get("WIPAY_ENVIRONMENT", "sandbox"),
            timeout=safe_float(config.get("WIPAY_TIMEOUT_SECONDS"), 30) or 30,
            logger=logger,
        )

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.merchant_key and self.secret_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Merchant-Id": self.merchant_id,
            "X-Merchant-Key": self.merchant_key,
            "Authorization": f"Bearer {self.secret_key}",
        }

    def _require_configuration(self):
        if not self.configured:
            raise PaymentGatewayError(
                "Payment service not initialized. Please configure WiPay credentials."
            )

    def _send(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            if method == "POST":
                response = requests.post(
                    url, json=payload, headers=self._headers(), timeout=self.timeout
                )
            else:
                response = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as exc:
            self.logger.error("WiPay %s %s timed out after %ss", method, path, self.timeout)
            raise PaymentGatewayError("Payment provider timed out.") from exc
        except requests.RequestException as exc:
            self.logger.error("WiPay %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError(f"Payment provider unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            self.logger.error(
                "WiPay %s %s returned %s: %s", method, path, response.status_code, response.text
            )
            raise PaymentGatewayError(
                message or f"Payment provider returned HTTP {response.status_code}.",
                status_code=response.status_code,
                payload=data,
            )
        return data if isinstance(data, dict) else {}

    def create_payment(self, payment_request: PaymentRequest) -> PaymentIntent:
        self._require_configuration()
        data = self._send(
            "POST",
            "/payments",
            {
                "amount": payment_request.amount,
                "currency": payment_request.currency or "JMD",
                "order_id": payment_request.order_id,
                "customer_email": payment_request.customer_email,
                "customer_name": payment_request.customer_name,
                "description": payment_request.description or "Harvest Market Order",
                "return_url": payment_request.return_url,
                "cancel_url": payment_request.cancel_url,
            },
        )
        transaction_id = str(data.get("transaction_id") or data.get("id") or "").strip()
        payment_url = str(data.get("payment_url") or data.get("checkout_url") or "").strip()
        if not transaction_id or not payment_url:
            raise PaymentGatewayError(
                "Payment provider response is missing the checkout details.", payload=data
            )
        return PaymentIntent(
            transaction_id=transaction_id,
            payment_url=payment_url,
            reference=str(data.get("reference") or transaction_id).strip(),
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        self._require_configuration()
        data = self._send("GET", f"/payments/{reference}")
        raw_status = str(data.get("status") or "").strip().lower()
        return PaymentVerification(
            transaction_id=str(data.get("transaction_id") or data.get("id") or "").strip(),
            reference=str(data.get("reference") or data.get("transaction_id") or reference).strip(),
            status="success" if raw_status in SUCCESS_STATUSES else "failed",
            amount=safe_float(data.get("amount"), 0.0),
            currency=str(data.get("currency") or "JMD").strip().upper(),
            metadata=data,
        )

    def verify_signature(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> bool:
        if not self.secret_key or not signature:
            return False
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        expected = hmac.new(
            self.secret_key.encode("utf-8"), raw_payload or b"", hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())
