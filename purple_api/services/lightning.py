"""
Lightning Invoice Client - Node-agnostic interface plus a Core Lightning adapter.

The adapter talks to Core Lightning's REST interface (clnrest), authenticating
every call with a rune. Failures surface immediately; polling callers retry.
"""

from typing import Any, Protocol

import httpx
from structlog import get_logger

from purple_api.exceptions import InvalidAmountError, InvoiceNotFoundError, NodeUnavailableError
from purple_api.models.domain import ConnectionParams, Invoice

logger = get_logger(__name__)


class LightningInvoiceClient(Protocol):
    """
    Lightning invoice protocol.

    Any node backend must implement this interface.
    """

    async def create_invoice(self, amount_msat: int, label: str, description: str) -> Invoice:
        """
        Register an invoice on the node under label.

        Raises:
            InvalidAmountError: If amount_msat <= 0
            NodeUnavailableError: If the node cannot be reached
        """
        ...

    async def query_paid(self, label: str) -> bool:
        """
        Check whether the invoice registered under label has been paid.

        Raises:
            InvoiceNotFoundError: If the node does not know the label
            NodeUnavailableError: If the node cannot be reached
        """
        ...


class ClnRestInvoiceClient:
    """Core Lightning REST adapter."""

    def __init__(
        self,
        base_url: str,
        rune: str,
        connection_params: ConnectionParams,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            base_url: clnrest base URL, e.g. https://node:3010
            rune: Server-side rune allowing invoice and listinvoices
            connection_params: What clients receive to watch their invoice
            timeout: Seconds per request
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.rune = rune
        self.connection_params = connection_params
        self.timeout = timeout
        self._transport = transport

        logger.info(
            "lightning_client_initialized",
            base_url=self.base_url,
            nodeid=connection_params.nodeid,
        )

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Invoke one node RPC method over REST."""
        url = f"{self.base_url}/v1/{method}"
        headers = {"Rune": self.rune, "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=params, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.error("lightning_node_unreachable", method=method, error=str(exc))
            raise NodeUnavailableError(f"{method}: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "lightning_node_error",
                method=method,
                status=response.status_code,
                error=response.text,
            )
            raise NodeUnavailableError(f"{method} returned HTTP {response.status_code}")

        try:
            result: dict[str, Any] = response.json()
        except ValueError as exc:
            logger.error("lightning_node_bad_response", method=method, error=str(exc))
            raise NodeUnavailableError(f"{method} returned a non-JSON body") from exc
        return result

    async def create_invoice(self, amount_msat: int, label: str, description: str) -> Invoice:
        if amount_msat <= 0:
            raise InvalidAmountError(amount_msat)

        result = await self._call(
            "invoice",
            {"amount_msat": amount_msat, "label": label, "description": description},
        )
        bolt11 = result.get("bolt11")
        if not bolt11:
            raise NodeUnavailableError("invoice response carried no bolt11")

        logger.info("lightning_invoice_created", label=label, amount_msat=amount_msat)
        return Invoice(bolt11=bolt11, label=label, connection_params=self.connection_params)

    async def query_paid(self, label: str) -> bool:
        result = await self._call("listinvoices", {"label": label})
        invoices = result.get("invoices") or []
        if not invoices:
            raise InvoiceNotFoundError(label)
        status = invoices[0].get("status")
        logger.debug("lightning_invoice_status", label=label, status=status)
        return status == "paid"
