# triggers.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Iterable, List, Optional, Protocol, Set

from .cron import CronExpression
from .model import Event, Triggers

log = logging.getLogger(__name__)

PUSH = "push"
PULL_REQUEST = "pull_request"
DISPATCH = "workflow_dispatch"
SCHEDULE = "schedule"
EVENT_KINDS = (PUSH, PULL_REQUEST, DISPATCH, SCHEDULE)


# ---------------------------------------------------------------------
# Tick ledger: "at most one run per scheduled tick"
# ---------------------------------------------------------------------

class TickLedger(Protocol):
    def claim(self, key: str) -> bool:
        """Return True exactly once per key."""
        ...


class MemoryTickLedger:
    """In-process ledger; enough for a single orchestrator process."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True


class RedisTickLedger:
    """
    Shared ledger for several orchestrator processes: SET key NX EX ttl.
    `client` is a synchronous redis.Redis instance.
    """

    def __init__(self, client, *, prefix: str = "relayci:tick", ttl_seconds: int = 24 * 3600):
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def claim(self, key: str) -> bool:
        return bool(self.client.set(f"{self.prefix}:{key}", "1", nx=True, ex=self.ttl_seconds))


# ---------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------

def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def _paths_hit(changed: List[str], patterns: List[str]) -> bool:
    # no paths -> always run
    if not patterns:
        return True
    return any(_matches_any(f, patterns) for f in changed)


def tick_minute(tick: datetime) -> datetime:
    if tick.tzinfo is None:
        tick = tick.replace(tzinfo=timezone.utc)
    return tick.astimezone(timezone.utc).replace(second=0, microsecond=0)


class TriggerMatcher:
    """Decides whether an incoming Event starts a new PipelineRun."""

    def __init__(self, triggers: Triggers, ledger: Optional[TickLedger] = None):
        self.triggers = triggers
        self.ledger = ledger or MemoryTickLedger()
        self._crons = [CronExpression.parse(c) for c in triggers.schedule]

    def matches(self, event: Event) -> bool:
        """Pure rule check, no tick dedup."""
        t = self.triggers

        if event.kind == PUSH:
            if t.push is None:
                return False
            branch = event.branch
            if t.push.branches and not _matches_any(branch, t.push.branches):
                return False
            if _matches_any(branch, t.push.branches_ignore):
                return False
            return _paths_hit(event.changed_files, t.push.paths)

        if event.kind == PULL_REQUEST:
            if t.pull_request is None:
                return False
            target = event.base_branch or event.branch
            if t.pull_request.branches and not _matches_any(target, t.pull_request.branches):
                return False
            return _paths_hit(event.changed_files, t.pull_request.paths)

        if event.kind == DISPATCH:
            return t.workflow_dispatch

        if event.kind == SCHEDULE:
            return bool(self.matching_crons(event))

        log.debug("unknown event kind %r", event.kind)
        return False

    def matching_crons(self, event: Event) -> List[CronExpression]:
        if event.tick is None:
            return []
        minute = tick_minute(event.tick)
        return [c for c in self._crons if c.matches(minute)]

    def should_start(self, event: Event, pipeline: str = "pipeline") -> bool:
        """
        Rule check plus idempotent dedup of scheduled ticks: for a given
        (pipeline, minute) only the first event wins.
        """
        if not self.matches(event):
            return False
        if event.kind != SCHEDULE:
            return True

        minute = tick_minute(event.tick).isoformat()
        key = f"{pipeline}:{minute}"
        if self.ledger.claim(key):
            return True
        log.info("schedule tick %s for %s already started a run", minute, pipeline)
        return False
