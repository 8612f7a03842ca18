"""RpcLedgerClient: Ledger client for a remote ledger gateway.

Instructions are signed locally and posted as CBOR:

    POST {url}/v1/instructions   {"instruction": bytes, "signature": bytes}
      -> {"accepted": bool, "sequence": int | None, "error": str | None,
          "message": str}
    GET  {url}/v1/accounts/{address}
      -> {"data": bytes}            (404 when the account does not exist)

Network errors and 5xx answers are retried with capped backoff; once the
retries are exhausted a :class:`TransportError` is raised.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import cbor2
import httpx
from eth_account.signers.local import LocalAccount

from .errors import AccountNotFoundError, ErrorKind, TransportError
from .LedgerClient import LedgerClient, SubmitReceipt
from .UpdateProtocol import sign_instruction

logger = logging.getLogger(__name__)

# Retry configuration for gateway requests
MAX_RETRIES = 3
BACKOFF_BASE = 1.0
BACKOFF_MAX = 5.0

CBOR_CONTENT_TYPE = "application/cbor"


class RpcLedgerClient(LedgerClient):
    """Ledger client talking to a remote gateway over HTTP.

    :ivar url: Gateway base URL.
    :ivar max_retries: Attempts per request.
    :ivar backoff_base: First retry delay in seconds.
    """

    def __init__(
        self,
        url: str,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the client.

        :param url: Gateway base URL (e.g., "http://localhost:8899").
        :param max_retries: Attempts per request (default: 3).
        :param backoff_base: First retry delay in seconds (default: 1.0).
        :param transport: Optional httpx transport (e.g., for tests).
        :param timeout: Request timeout in seconds (default: 10).
        """
        self.url = url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.transport = transport
        self.timeout = timeout

    def _request(self, method: str, path: str, content: bytes | None = None) -> httpx.Response:
        """Make a request to the gateway with retry and backoff.

        4xx answers are returned to the caller without retrying.

        :param method: HTTP method.
        :param path: API endpoint path.
        :param content: Optional CBOR body.
        :returns: HTTP response.
        :raises TransportError: If max retries exceeded.
        """
        headers = {"Accept": CBOR_CONTENT_TYPE}
        if content is not None:
            headers["Content-Type"] = CBOR_CONTENT_TYPE

        last_error = ""
        with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    logger.debug(
                        "%s %s (attempt %d)", method, path, attempt + 1
                    )
                    response = client.request(
                        method, self.url + path, content=content, headers=headers
                    )
                    logger.debug(
                        "Response: %s %s", response.status_code, response.reason_phrase
                    )
                    if response.status_code < 500:
                        return response
                    last_error = f"{response.status_code} {response.reason_phrase}"
                    logger.warning(
                        "gateway %s %s failed: %s (attempt %d/%d)",
                        method,
                        path,
                        last_error,
                        attempt + 1,
                        self.max_retries,
                    )
                except httpx.RequestError as exc:
                    last_error = str(exc)
                    logger.warning(
                        "gateway %s %s error: %s (attempt %d/%d)",
                        method,
                        path,
                        exc,
                        attempt + 1,
                        self.max_retries,
                    )
                if attempt + 1 < self.max_retries:
                    time.sleep(min(self.backoff_base * (1.5 ** attempt), BACKOFF_MAX))

        raise TransportError(
            f"gateway {method} {path} failed after {self.max_retries} attempts: {last_error}"
        )

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            body = cbor2.loads(response.content)
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise TransportError(f"Invalid gateway response: {e}") from e
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected gateway response: {body!r}")
        return body

    def submit(self, instruction: bytes, signer: LocalAccount) -> SubmitReceipt:
        """Sign an instruction and post it to the gateway.

        :raises TransportError: If the gateway cannot be reached.
        """
        payload = cbor2.dumps(
            {
                "instruction": instruction,
                "signature": sign_instruction(instruction, signer),
            }
        )
        response = self._request("POST", "/v1/instructions", payload)
        if not response.is_success:
            raise TransportError(
                f"gateway rejected request: {response.status_code} {response.reason_phrase}"
            )
        body = self._decode(response)

        error = body.get("error")
        try:
            kind = ErrorKind(error) if error else None
        except ValueError:
            kind = ErrorKind.INVALID_PARAMETER
        return SubmitReceipt(
            accepted=bool(body.get("accepted")),
            sequence_number=body.get("sequence"),
            error=kind,
            message=body.get("message") or "",
        )

    def get_account(self, address: str) -> bytes:
        """Fetch the raw bytes of an account from the gateway.

        :raises AccountNotFoundError: If the gateway reports no account.
        :raises TransportError: If the gateway cannot be reached.
        """
        response = self._request("GET", f"/v1/accounts/{address}")
        if response.status_code == 404:
            raise AccountNotFoundError(f"No account at {address}")
        if not response.is_success:
            raise TransportError(
                f"gateway rejected request: {response.status_code} {response.reason_phrase}"
            )
        data = self._decode(response).get("data")
        if not isinstance(data, bytes):
            raise TransportError(f"Gateway returned no data for {address}")
        return data
