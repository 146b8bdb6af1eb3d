"""Paystack transfer API client used for agent payouts.

Every failure mode (HTTP error status, ``status: false`` body, network
error, timeout) surfaces as ``GatewayError``. Retrying is up to the caller.
"""
import logging
from typing import Optional, Dict, Any
import httpx
from campus_fulfillment.core.errors import GatewayError

logger = logging.getLogger(__name__)

# Paystack transfer states that mean the transfer was accepted for settlement.
ACCEPTED_TRANSFER_STATES = {"success", "pending", "processing", "received"}
FAILED_TRANSFER_STATES = {"failed", "reversed", "abandoned", "rejected", "blocked"}
# Held by Paystack until someone enters an OTP; nothing has been sent.
OTP_TRANSFER_STATE = "otp"


class PaystackGateway:
    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co",
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    async def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None,
                            params: Optional[Dict] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                response = await client.request(method, endpoint, headers=headers, json=data, params=params)
        except httpx.TimeoutException as e:
            logger.error(f"Paystack timeout: {method} {endpoint} - {type(e).__name__}")
            raise GatewayError("Payout gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"Paystack network error: {method} {endpoint} - {type(e).__name__}: {e}")
            raise GatewayError("Payout gateway unreachable")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code in (200, 201) and body.get("status") is True:
            logger.info(f"Paystack API success: {method} {endpoint}")
            return body.get("data") or {}

        message = body.get("message") or f"HTTP {response.status_code}"
        logger.error(f"Paystack API error: {response.status_code} {method} {endpoint} - {message}")
        raise GatewayError(message, gateway_status=response.status_code)

    async def resolve_account(self, account_number: str, bank_code: str) -> Optional[str]:
        data = await self._make_request(
            "GET", "/bank/resolve",
            params={"account_number": account_number, "bank_code": bank_code},
        )
        return data.get("account_name")

    async def register_payee(self, account_number: str, bank_code: str, name: str) -> str:
        data = await self._make_request("POST", "/transferrecipient", data={
            "type": "nuban",
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": "NGN",
        })
        recipient_code = data.get("recipient_code")
        if not recipient_code:
            raise GatewayError("Gateway did not return a recipient code")
        return recipient_code

    async def initiate_transfer(self, recipient_code: str, amount: int, reference: str, reason: str) -> str:
        data = await self._make_request("POST", "/transfer", data={
            "source": "balance",
            "amount": amount,
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason,
        })
        status = (data.get("status") or "").lower()
        if status in FAILED_TRANSFER_STATES:
            raise GatewayError(f"Transfer {status}")
        if status == OTP_TRANSFER_STATE:
            raise GatewayError("Transfer requires OTP finalization")
        return data.get("transfer_code") or data.get("reference") or reference

    async def fetch_transfer(self, reference: str) -> str:
        """Settlement state of a transfer previously initiated with ``reference``."""
        data = await self._make_request("GET", f"/transfer/verify/{reference}")
        return (data.get("status") or "unknown").lower()
