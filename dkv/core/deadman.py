"""
Dead-man switch: alert when a monitored entity stops sending heartbeats.

Triggers live under their own root of the backend. A sweep walks every
trigger, alerts for entities silent longer than ``notifyDelay`` and records
``lastNotification`` so the next alert waits for the cooldown. The monitor
keeps no state of its own between sweeps.

Sweeps take a lease entry first, so two processes on the same backend do not
both alert for the same silence. Without a lock store every sweep runs and
duplicate alerts are possible (at-least-once).
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from .errors import Conflict, DKVError, MalformedInput, NotFound, UpstreamUnavailable
from .notify import Notifier
from .schema import DeadManTrigger, Entry, Path
from .store import VersionedStore
from ..util.logging import logger

LEASE_PATH: Path = ("deadman-sweep",)


class TriggerState(str, Enum):
    HEALTHY = "healthy"
    COOLING_DOWN = "cooling_down"
    ALERT = "alert"


def evaluate(trigger: DeadManTrigger, now: float) -> TriggerState:
    if now - trigger.last_ping <= trigger.notify_delay:
        return TriggerState.HEALTHY
    if trigger.last_notification is not None and now - trigger.last_notification <= trigger.effective_cooldown:
        return TriggerState.COOLING_DOWN
    return TriggerState.ALERT


def parse_trigger(value: Any) -> DeadManTrigger:
    try:
        return DeadManTrigger.model_validate(value)
    except ValidationError as e:
        raise MalformedInput(f"Invalid dead-man trigger: {e}") from e


def entity_name(path: Path) -> str:
    return "/".join(path)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@dataclass
class SweepReport:
    checked: int = 0
    healthy: int = 0
    cooling_down: int = 0
    alerted: List[str] = field(default_factory=list)
    # alert went out but lastNotification could not be recorded
    unrecorded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    lease_acquired: bool = True


class DeadManMonitor:
    def __init__(
        self,
        triggers: VersionedStore,
        notifier: Notifier,
        locks: Optional[VersionedStore] = None,
        lease_sec: float = 300,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.triggers = triggers
        self.notifier = notifier
        self.locks = locks
        self.lease_sec = lease_sec
        self.owner = owner or uuid.uuid4().hex
        self.clock = clock

    def alert_text(self, name: str, trigger: DeadManTrigger, now: float) -> str:
        silence = int(now - trigger.last_ping)
        return (
            f"Dead man switch triggered: {name}\n"
            f"Last ping: {_iso(trigger.last_ping)} ({silence}s ago, limit {int(trigger.notify_delay)}s)"
        )

    async def provision(self, path: Path, notify_delay: float, notify_cooldown: Optional[float] = None) -> DeadManTrigger:
        """Create a trigger, or change the delays of an existing one without touching its timestamps."""
        now = self.clock()
        trigger = DeadManTrigger(last_ping=now, notify_delay=notify_delay, notify_cooldown=notify_cooldown)
        try:
            await self.triggers.write(path, trigger.to_value(), expected=None)
            logger.log_operation("deadman.provision", "created", {"entity": entity_name(path)})
            return trigger
        except Conflict:
            pass

        def mutate(value):
            existing = parse_trigger(value)
            existing.notify_delay = trigger.notify_delay
            existing.notify_cooldown = trigger.notify_cooldown
            return existing.to_value()

        entry = await self.triggers.update(path, mutate, operation="provision")
        logger.log_operation("deadman.provision", "updated", {"entity": entity_name(path)})
        return parse_trigger(entry.value)

    async def ping(self, path: Path) -> DeadManTrigger:
        """Record a heartbeat. NotFound when no trigger is provisioned for ``path``."""
        now = self.clock()

        def mutate(value):
            trigger = parse_trigger(value)
            trigger.last_ping = now
            return trigger.to_value()

        entry = await self.triggers.update(path, mutate, operation="ping")
        return parse_trigger(entry.value)

    async def sweep(self, now: Optional[float] = None) -> SweepReport:
        now = self.clock() if now is None else now
        report = SweepReport()

        lease = await self._acquire_lease(now)
        if lease is False:
            report.lease_acquired = False
            logger.info("Dead-man sweep skipped: lease held by another instance")
            return report

        try:
            async for entry in self.triggers.list_range():
                try:
                    await self._check(entry, now, report)
                except DKVError as e:
                    name = entity_name(entry.path)
                    logger.error(f"Dead-man check for {name} failed: {e.message}")
                    if name in report.alerted:
                        report.unrecorded.append(name)
                    else:
                        report.failed.append(name)
        finally:
            await self._release_lease(lease)

        logger.log_operation("deadman.sweep", "done", {
            "checked": report.checked,
            "alerted": len(report.alerted),
            "failed": len(report.failed),
        })
        return report

    async def _check(self, entry: Entry, now: float, report: SweepReport) -> None:
        report.checked += 1
        name = entity_name(entry.path)
        try:
            trigger = parse_trigger(entry.value)
        except MalformedInput as e:
            logger.error(f"Skipping trigger {name}: {e.message}")
            report.failed.append(name)
            return

        state = evaluate(trigger, now)
        if state is TriggerState.HEALTHY:
            report.healthy += 1
            return
        if state is TriggerState.COOLING_DOWN:
            report.cooling_down += 1
            return

        try:
            await self.notifier.send(self.alert_text(name, trigger, now))
        except UpstreamUnavailable as e:
            # lastNotification stays put, so the next sweep tries again
            logger.log_deadman_alert(name, trigger.last_ping, now - trigger.last_ping, status="failed")
            logger.error(f"Dead-man alert for {name} not delivered: {e.message}")
            report.failed.append(name)
            return

        logger.log_deadman_alert(name, trigger.last_ping, now - trigger.last_ping)
        report.alerted.append(name)
        if not await self._record_notification(entry, now):
            report.unrecorded.append(name)

    async def _record_notification(self, entry: Entry, now: float) -> bool:
        """CAS ``lastNotification = now``; one retry on a fresh read, then give up for this run."""
        current = entry
        for attempt in range(2):
            trigger = parse_trigger(current.value)
            trigger.last_notification = now
            try:
                await self.triggers.write(current.path, trigger.to_value(), expected=current.versionstamp)
                return True
            except (Conflict, NotFound):
                if attempt == 1:
                    break
            current = await self.triggers.try_read(current.path)
            if current is None:
                break

        logger.warning(f"Could not record notification time for {entity_name(entry.path)}; it will be re-evaluated next sweep")
        return False

    async def _acquire_lease(self, now: float):
        """Return the lease versionstamp, None when running without a lock store, or False when taken."""
        if self.locks is None:
            return None

        current = await self.locks.try_read(LEASE_PATH)
        if current is not None:
            holder = current.value if isinstance(current.value, dict) else {}
            if holder.get("owner") != self.owner and holder.get("expiresAt", 0) > now:
                return False

        lease = {"owner": self.owner, "expiresAt": now + self.lease_sec}
        try:
            return await self.locks.write(
                LEASE_PATH,
                lease,
                expected=current.versionstamp if current is not None else None,
                ttl=self.lease_sec,
            )
        except (Conflict, NotFound):
            return False

    async def _release_lease(self, versionstamp: Optional[str]) -> None:
        if self.locks is None or versionstamp is None:
            return
        try:
            await self.locks.delete(LEASE_PATH, expected=versionstamp)
        except Conflict:
            logger.warning("Dead-man sweep lease changed hands before release")
