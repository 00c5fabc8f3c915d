"""Writing log entries to the logging API, retrying until they are accepted."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

import httpx

from sdexport.gce_config import metadata_uri
from sdexport.log_entries import LogEntry
from sdexport.resources import MonitoredResource
from sdexport.sink_metrics import (
    measure_latency_on_success,
    request_count,
    successfully_sent_entry_count,
)

__all__ = ["RETRY_DELAY", "DEFAULT_LOGGING_ENDPOINT", "ApiError", "LoggingWriter"]

log = logging.getLogger(__name__)

RETRY_DELAY = 10.0
DEFAULT_LOGGING_ENDPOINT = "https://logging.googleapis.com/"
_SCOPE = "https://www.googleapis.com/auth/logging.write"
_BAD_REQUEST = 400


class ApiError(Exception):
    """An error response of the logging API."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(f"googleapi: Error {code}: {message}")
        self.code = code
        self.message = message


class _MetadataToken:
    """Access tokens of the instance's default service account, cached until expiry."""

    def __init__(self) -> None:
        self._token = ""
        self._expires = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._expires:
                return self._token
            response = httpx.get(
                metadata_uri("/instance/service-accounts/default/token"),
                params={"scopes": _SCOPE},
                headers={"Metadata-Flavor": "Google"},
            )
            response.raise_for_status()
            data = response.json()
            self._token = data["access_token"]
            self._expires = time.monotonic() + max(float(data.get("expires_in", 0)) - 60, 0)
            return self._token


class LoggingWriter:
    """Writes entries, retrying forever unless the API answers Bad Request."""

    def __init__(
        self,
        endpoint: str = "",
        client: httpx.Client | None = None,
        token_provider: Callable[[], str] | None = None,
        retry_delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.endpoint = endpoint or DEFAULT_LOGGING_ENDPOINT
        self._client = client if client is not None else httpx.Client()
        self._token_provider = token_provider or _MetadataToken()
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _send(self, request: dict[str, Any]) -> int:
        url = f"{self.endpoint.rstrip('/')}/v2/entries:write"
        response = self._client.post(
            url,
            json=request,
            headers={"Authorization": f"Bearer {self._token_provider()}"},
        )
        if response.status_code >= 300:
            raise ApiError(response.status_code, response.text)
        return response.status_code

    def write(
        self,
        entries: Sequence[LogEntry],
        log_name: str,
        resource: MonitoredResource | None,
    ) -> None:
        """Send ``entries`` under ``log_name`` for ``resource``."""
        request: dict[str, Any] = {
            "entries": [entry.to_dict() for entry in entries],
            "logName": log_name,
        }
        if resource is not None:
            request["resource"] = resource.to_dict()

        while True:
            try:
                status = self._send(request)
            except ApiError as err:
                request_count.inc(str(err.code))
                # Malformed entries would be rejected again, so give up on them.
                if err.code == _BAD_REQUEST:
                    log.warning(
                        "Received bad request response from server, "
                        "assuming some entries were rejected: %s", err,
                    )
                    return
                failure: Exception = err
            except Exception as err:  # noqa: BLE001 - every other failure is retried
                failure = err
            else:
                request_count.inc(str(status))
                successfully_sent_entry_count.add(len(entries))
                measure_latency_on_success(entries)
                return
            log.warning("Failed to send request to Stackdriver: %s", failure)
            self._sleep(self.retry_delay)