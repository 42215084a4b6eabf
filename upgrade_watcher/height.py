"""Block height source: RPC ``/status`` query with bounded retries.

``HeightSource.poll`` never raises for transport or payload problems; an
exhausted retry budget is reported as ``None`` (unavailable) and the caller
decides how long to wait before polling again.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from http.client import HTTPException
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import PollingPolicy
from .errors import TransientIOError

LOGGER = logging.getLogger(__name__)

RPC_CONNECT_TIMEOUT_S = 1.0
RPC_TOTAL_TIMEOUT_S = 2.0
_MAX_STATUS_BYTES = 1024 * 1024
_READ_CHUNK = 64 * 1024


def parse_height(payload: Any) -> int:
    """Extract ``result.sync_info.latest_block_height`` as a positive int."""
    try:
        raw = payload["result"]["sync_info"]["latest_block_height"]
    except (KeyError, TypeError):
        raise TransientIOError("status payload has no latest_block_height") from None
    if isinstance(raw, bool):
        raise TransientIOError(f"non-numeric height: {raw!r}")
    if isinstance(raw, int):
        height = raw
    elif isinstance(raw, str) and raw.isascii() and raw.isdigit():
        try:
            height = int(raw)
        except ValueError:
            raise TransientIOError(f"height out of range ({len(raw)} digits)") from None
    else:
        raise TransientIOError(f"non-numeric height: {raw!r}")
    if height <= 0:
        raise TransientIOError(f"height must be > 0, got {height}")
    return height


def _read_body(resp: Any, deadline: float) -> bytes:
    """Read the response in short reads, giving up once *deadline* has passed."""
    chunks: list[bytes] = []
    size = 0
    while True:
        if time.monotonic() > deadline:
            raise TransientIOError("RPC deadline exceeded")
        chunk = resp.read1(_READ_CHUNK)
        if not chunk:
            return b"".join(chunks)
        size += len(chunk)
        if size > _MAX_STATUS_BYTES:
            raise TransientIOError("RPC status response too large")
        chunks.append(chunk)


class StatusClient:
    """Fetch the node status document.  Override for testing."""

    def __init__(self, rpc: str) -> None:
        self._url = f"{rpc.rstrip('/')}/status"

    @property
    def url(self) -> str:
        return self._url

    def fetch_status(self) -> Any:
        req = Request(self._url, headers={"Accept": "application/json"})
        deadline = time.monotonic() + RPC_TOTAL_TIMEOUT_S
        try:
            # The socket timeout bounds connect and every recv; the deadline bounds the total.
            with urlopen(req, timeout=RPC_CONNECT_TIMEOUT_S) as resp:  # noqa: S310
                body = _read_body(resp, deadline)
        except (URLError, OSError, HTTPException) as exc:
            raise TransientIOError(f"RPC request failed: {exc}") from None
        try:
            return json.loads(body.decode("utf-8"))
        except (ValueError, RecursionError) as exc:
            raise TransientIOError(f"malformed status payload: {exc}") from None

    def fetch_height(self) -> int:
        return parse_height(self.fetch_status())


class HeightSource:
    def __init__(
        self,
        client: StatusClient,
        policy: PollingPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._policy = policy
        self._sleep = sleep

    def poll(self) -> int | None:
        """Return the current height, or ``None`` once every attempt has failed."""
        attempts = self._policy.rpc_retry_max
        delay = self._policy.rpc_retry_delay_s
        for attempt in range(1, attempts + 1):
            try:
                return self._client.fetch_height()
            except TransientIOError as exc:
                LOGGER.debug("RPC attempt %d/%d failed: %s", attempt, attempts, exc)
                if attempt < attempts:
                    LOGGER.warning(
                        "RPC query failed (attempt %d/%d), retrying in %ss...",
                        attempt,
                        attempts,
                        f"{delay:g}",
                    )
                    self._sleep(delay)
        return None
