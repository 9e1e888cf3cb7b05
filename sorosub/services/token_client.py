"""Client for the remote token ledger API."""
import time
from typing import Any, Optional

import httpx

from sorosub.config import settings
from sorosub.errors import TokenLedgerError, TransferError
from sorosub.logging import get_logger
from sorosub import metrics

logger = get_logger(__name__)

# Status codes the ledger uses to decline a transfer (funds/allowance)
DECLINED_STATUSES = (402, 409)


class TokenLedgerClient:
    """Client for querying balances and moving tokens on the ledger API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the token ledger client.

        Args:
            base_url: Base URL of the ledger API. Defaults to settings.token_ledger_base.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (e.g. a MockTransport in tests).
        """
        self.base_url = base_url or settings.token_ledger_base
        self.timeout = timeout
        self.transport = transport

    async def balance(self, token: str, account: str) -> int:
        """
        Fetch the balance of ``account`` in ``token``.

        Raises:
            TokenLedgerError: If the API is unreachable or returns an error
        """
        data = await self._request("GET", f"/tokens/{token}/balances/{account}", operation="balance")
        return int(data["balance"])

    async def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        """
        Move ``amount`` from ``sender`` to ``recipient`` on the sender's authority.

        Raises:
            TransferError: If the ledger declines the transfer
            TokenLedgerError: If the API is unreachable or returns an error
        """
        await self._request(
            "POST",
            f"/tokens/{token}/transfer",
            operation="transfer",
            json={"sender": sender, "recipient": recipient, "amount": str(amount)},
        )

    async def transfer_from(
        self, token: str, spender: str, sender: str, recipient: str, amount: int
    ) -> None:
        """
        Move ``amount`` from ``sender`` to ``recipient`` using ``spender``'s allowance.

        Raises:
            TransferError: If the ledger declines the transfer
            TokenLedgerError: If the API is unreachable or returns an error
        """
        await self._request(
            "POST",
            f"/tokens/{token}/transfer-from",
            operation="transfer_from",
            json={
                "spender": spender,
                "sender": sender,
                "recipient": recipient,
                "amount": str(amount),
            },
        )

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        start_time = time.perf_counter()

        logger.info("token_ledger_request_started", operation=operation, url=url)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.request(method, url, **kwargs)
                duration_seconds = time.perf_counter() - start_time

                if response.status_code in DECLINED_STATUSES:
                    detail = _detail(response)
                    logger.warning(
                        "token_ledger_transfer_declined",
                        operation=operation,
                        status_code=response.status_code,
                        detail=detail,
                        duration_ms=round(duration_seconds * 1000, 2),
                        outcome="declined",
                    )
                    metrics.record_ledger_call(operation, success=False, latency_seconds=duration_seconds, error_type="declined")
                    raise TransferError(detail)

                response.raise_for_status()

                logger.info(
                    "token_ledger_request_completed",
                    operation=operation,
                    duration_ms=round(duration_seconds * 1000, 2),
                    outcome="success",
                )
                metrics.record_ledger_call(operation, success=True, latency_seconds=duration_seconds)

                return response.json()

            except httpx.HTTPStatusError as e:
                duration_seconds = time.perf_counter() - start_time

                logger.error(
                    "token_ledger_http_error",
                    operation=operation,
                    status_code=e.response.status_code,
                    duration_ms=round(duration_seconds * 1000, 2),
                    error=str(e),
                    outcome="error",
                )
                metrics.record_ledger_call(operation, success=False, latency_seconds=duration_seconds, error_type="http_error")

                raise TokenLedgerError(e.response.status_code, str(e))

            except httpx.RequestError as e:
                duration_seconds = time.perf_counter() - start_time

                logger.error(
                    "token_ledger_request_error",
                    operation=operation,
                    duration_ms=round(duration_seconds * 1000, 2),
                    error=str(e),
                    outcome="error",
                )
                error_type = "timeout" if isinstance(e, httpx.TimeoutException) else "connection_error"
                metrics.record_ledger_call(operation, success=False, latency_seconds=duration_seconds, error_type=error_type)

                raise TokenLedgerError(503, f"Request failed: {e}")


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text
