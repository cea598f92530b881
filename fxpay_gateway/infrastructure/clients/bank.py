"""Bank transfer HTTP client for settlement payouts"""

import httpx
from dataclasses import dataclass
from typing import Optional
from fxpay_gateway.config import settings
from fxpay_gateway.domain.exceptions import BankTransferError


@dataclass
class TransferOutcome:
    """Final state of a payout as reported by the bank"""

    reference: str
    succeeded: bool
    failure_reason: Optional[str] = None


class BankTransferClient:
    """Client for the external bank payout API"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url if base_url is not None else settings.bank_api_base
        self.timeout = timeout or settings.http_timeout_seconds

    async def submit_transfer(
        self,
        reference: str,
        amount: float,
        currency: str,
        account_last4: Optional[str] = None,
    ) -> TransferOutcome:
        """
        Submit a settlement payout and wait for the bank's verdict.

        Without a configured bank API the transfer is simulated and accepted.

        Raises:
            BankTransferError: On timeout, HTTP errors, or invalid response
        """
        if not self.base_url:
            return TransferOutcome(reference=reference, succeeded=True)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/transfers",
                    json={
                        "reference": reference,
                        "amount": amount,
                        "currency": currency,
                        "account_last4": account_last4,
                    },
                )
                response.raise_for_status()
                data = response.json()

                status = data["status"]
                return TransferOutcome(
                    reference=reference,
                    succeeded=status == "completed",
                    failure_reason=data.get("failure_reason") if status != "completed" else None,
                )

            except httpx.TimeoutException as e:
                raise BankTransferError(f"Bank API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise BankTransferError(f"Bank API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise BankTransferError(f"Bank API unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise BankTransferError(f"Invalid transfer response from bank: {e}") from e
