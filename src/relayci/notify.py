# notify.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, Iterable, Optional, Protocol

log = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a sink fails to deliver."""


class NotificationSink(Protocol):
    def notify(self, summary: Dict[str, Any]) -> None:
        ...


class LogSink:
    """Writes a one-line run summary to the relayci logger."""

    def notify(self, summary: Dict[str, Any]) -> None:
        jobs = ", ".join(f"{j['name']}={j['status']}" for j in summary.get("jobs", []))
        log.info("run %s finished: %s (%s)", summary.get("run_id"), summary.get("status"), jobs)


class WebhookSink:
    """POSTs the run summary as JSON to `url`."""

    def __init__(self, url: str, *, timeout: float = 10.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})

    def notify(self, summary: Dict[str, Any]) -> None:
        req_headers = {"Content-Type": "application/json"}
        req_headers.update(self.headers)
        data = json.dumps({"event": "run.finished", "run": summary}).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, headers=req_headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            raise NotificationError(f"webhook returned {e.code} {e.reason}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"webhook unreachable: {e.reason}") from e


def notify_all(sinks: Iterable[NotificationSink], summary: Dict[str, Any]) -> None:
    """Best-effort delivery: a failing sink is logged and skipped."""
    for sink in sinks:
        try:
            sink.notify(summary)
        except Exception as e:  # noqa: BLE001 - delivery must never affect the run
            log.warning("notification via %s failed: %s", type(sink).__name__, e)
