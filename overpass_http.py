"""
HTTP access to Overpass API mirrors.

Every Overpass request goes through overpass_query(), which keeps at least
one second between requests to the same mirror within this process and
turns the ways a mirror can refuse a query (HTTP 429, 5xx, a non-JSON body
or an error remark inside a 200 body) into two exception types.

No retries and no shared session: a refused query is the caller's signal
to move to the next mirror, and the source chain records that attempt.
OVERPASS_BASE_URL names a self-hosted instance tried before the public
mirrors.
"""

import logging
import os
import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

PUBLIC_MIRRORS = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
)


class OverpassRateLimitError(Exception):
    """The mirror asked us to slow down."""


class OverpassQueryError(Exception):
    """The mirror failed the query or could not be reached."""


class OverpassTimeoutError(OverpassQueryError):
    """No response from the mirror within the HTTP timeout."""


def configured_mirrors():
    """Mirror URLs in the order they should be tried."""
    custom = os.environ.get("OVERPASS_BASE_URL", "").strip()
    if custom and custom not in PUBLIC_MIRRORS:
        return (custom,) + PUBLIC_MIRRORS
    return PUBLIC_MIRRORS


_SERVER_REMARKS = ("runtime error", "timed out", "out of memory")


def _mirror_host(base_url: str) -> str:
    return urlparse(base_url).netloc or base_url


def _body_remark(data: Any) -> str:
    """Overpass reports query failures in a remark, under osm3s or at the top level."""
    if not isinstance(data, dict):
        return ""
    meta = data.get("osm3s") or {}
    return str(meta.get("remark") or data.get("remark") or "")


def _raise_for_status(status: int, where: str) -> None:
    if status == 429:
        raise OverpassRateLimitError(f"HTTP 429 from {where}")
    if status == 504:
        raise OverpassQueryError(f"HTTP 504 gateway timeout from {where}")
    if status >= 400:
        raise OverpassQueryError(f"HTTP {status} from {where}")


def _raise_for_remark(remark: str, where: str) -> None:
    lowered = remark.lower()
    if "too many requests" in lowered:
        raise OverpassRateLimitError(f"rate limit remark from {where}")
    if any(marker in lowered for marker in _SERVER_REMARKS):
        raise OverpassQueryError(f"server error remark from {where}: {remark[:100]}")


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 12  # seconds
    MIN_SPACING = 1.0  # seconds between requests to one mirror

    def __init__(self):
        self._lock = threading.Lock()
        self._mirror_locks: Dict[str, threading.Lock] = {}
        self._last_sent: Dict[str, float] = {}

    def _mirror_lock(self, base_url: str) -> threading.Lock:
        with self._lock:
            return self._mirror_locks.setdefault(base_url, threading.Lock())

    def _wait_turn(self, base_url: str) -> None:
        with self._mirror_lock(base_url):
            gap = time.monotonic() - self._last_sent.get(base_url, 0.0)
            if gap < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - gap)
            self._last_sent[base_url] = time.monotonic()

    def query(
        self,
        overpass_ql: str,
        base_url: str = PUBLIC_MIRRORS[0],
        caller: str = "unknown",
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> Dict[str, Any]:
        """
        Run one Overpass QL query against one mirror and return the parsed
        JSON.

        ``caller`` names the lookup in log lines and error messages.  The
        source chain passes its own ``session``; without one a fresh
        session is opened and closed around the request.

        Raises OverpassRateLimitError for a 429 or a "too many requests"
        remark, OverpassTimeoutError when the mirror does not answer in
        time, and OverpassQueryError for any other HTTP, transport or body
        failure.
        """
        timeout = timeout or self.DEFAULT_TIMEOUT
        where = f"{_mirror_host(base_url)} [caller={caller}]"

        self._wait_turn(base_url)
        owned = session is None
        if owned:
            session = requests.Session()
            session.trust_env = False

        logger.debug("Overpass query to %s (%d chars)", where, len(overpass_ql))
        try:
            resp = session.post(base_url, data={"data": overpass_ql}, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise OverpassTimeoutError(f"timeout after {timeout}s from {where}") from e
        except requests.exceptions.RequestException as e:
            raise OverpassQueryError(f"request failed to {where}: {e}") from e
        finally:
            if owned:
                session.close()

        _raise_for_status(resp.status_code, where)
        try:
            data = resp.json()
        except ValueError as e:
            raise OverpassQueryError(
                f"non-JSON body (HTTP {resp.status_code}) from {where}"
            ) from e

        _raise_for_remark(_body_remark(data), where)
        return data


_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    base_url: str = PUBLIC_MIRRORS[0],
    caller: str = "unknown",
    timeout: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Query through the process-wide client, sharing its per-mirror spacing."""
    return _client.query(
        overpass_ql, base_url=base_url, caller=caller, timeout=timeout, session=session,
    )
