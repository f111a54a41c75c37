"""Background retention sweeper."""

import logging
import signal
import threading
from datetime import datetime, timedelta
from typing import Optional
from pydantic import BaseModel
from .errors import ConcurrentModification, InvalidTransition, NotFound
from .machine import StateMachine
from .models import (
    Config,
    Entity,
    EntityKind,
    EntityRef,
    Event,
    Operation,
    Resource,
    ResourceStatus,
    utcnow,
)
from .storage import Storage

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """Counts from one sweep pass."""
    scanned: int = 0
    tombstoned: int = 0
    purged: int = 0
    expired: int = 0
    skipped: int = 0
    events_dropped: int = 0


class Sweeper:
    """Ages out finished entities and fails ones that stopped making progress.

    Per entity, in order of precedence:

    * tombstoned and past the grace window: purged, along with its lock file
      and its transition log records
    * finished and past retention: tombstoned
    * in progress with no action for ``stale_after_seconds``: failed

    Each step goes through the per-entity lock and re-checks its condition
    there, so a pass can run alongside polling, creation and other sweepers.
    """

    def __init__(self, storage: Storage, machine: Optional[StateMachine] = None):
        self.storage = storage
        self.machine = machine or StateMachine(storage)
        self.running = True
        self._wakeup = threading.Event()

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        logger.info("[Sweeper] Shutdown requested, finishing current pass")
        self.stop()

    def stop(self) -> None:
        self.running = False
        self._wakeup.set()

    def run(self, interval: Optional[float] = None, install_signals: bool = True) -> None:
        """Run sweep passes until stopped."""
        if install_signals:
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info("[Sweeper] Started")
        while self.running:
            report = self.sweep_once()
            logger.info(
                "[Sweeper] Pass done: scanned=%d tombstoned=%d purged=%d expired=%d "
                "skipped=%d events_dropped=%d",
                report.scanned,
                report.tombstoned,
                report.purged,
                report.expired,
                report.skipped,
                report.events_dropped,
            )
            wait = interval if interval is not None else self.storage.get_config().sweep_interval
            self._wakeup.wait(wait)
        logger.info("[Sweeper] Stopped")

    def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run a single pass over every stored entity."""
        config = self.storage.get_config()
        now = now or utcnow()
        report = SweepReport()
        for kind in EntityKind:
            for entity in self.storage.list(kind):
                report.scanned += 1
                self._sweep_with_retries(entity.ref, config, now, report)
        if report.purged:
            report.events_dropped = self.storage.compact_events()
        return report

    def _sweep_with_retries(self, ref: EntityRef, config: Config, now: datetime, report: SweepReport) -> None:
        for attempt in range(1, config.sweep_max_retries + 1):
            try:
                self._sweep_entity(ref, config, now, report)
                return
            except NotFound:
                # Removed by someone else since the listing
                return
            except (ConcurrentModification, InvalidTransition) as e:
                logger.debug("[Sweeper] Race on %s (attempt %d): %s", ref, attempt, e)
        logger.warning("[Sweeper] Giving up on %s for this pass", ref)
        report.skipped += 1

    def _sweep_entity(self, ref: EntityRef, config: Config, now: datetime, report: SweepReport) -> None:
        entity = self.storage.get(ref)

        if entity.tombstoned_at is not None:
            if self._purgeable(entity, config, now):
                if self.storage.purge(ref, condition=lambda e: self._purgeable(e, config, now)):
                    logger.info("[Sweeper] Purged %s", ref)
                    report.purged += 1
            return

        if self._retention_over(entity, config, now):
            self.storage.tombstone(ref)
            logger.info("[Sweeper] Tombstoned %s", ref)
            report.tombstoned += 1
            return

        if self._stale(entity, config, now):
            idle = int((now - entity.last_action_at).total_seconds())
            self.machine.transition(
                ref,
                Event.FAIL,
                expected_version=entity.version,
                error_code="Timeout",
                error_message=f"No progress for {idle} seconds",
            )
            logger.warning("[Sweeper] Failed stale %s after %d idle seconds", ref, idle)
            report.expired += 1

    @staticmethod
    def _purgeable(entity: Entity, config: Config, now: datetime) -> bool:
        if entity.tombstoned_at is None:
            return False
        return now >= entity.tombstoned_at + timedelta(seconds=config.tombstone_grace_seconds)

    @staticmethod
    def _retention_over(entity: Entity, config: Config, now: datetime) -> bool:
        if isinstance(entity, Operation):
            return (
                entity.is_terminal
                and entity.retention_expiry is not None
                and now >= entity.retention_expiry
            )
        # Failed resources nobody deletes are retained like finished operations
        return entity.status == ResourceStatus.FAILED and now >= entity.last_action_at + timedelta(
            seconds=config.retention_seconds
        )

    @staticmethod
    def _stale(entity: Entity, config: Config, now: datetime) -> bool:
        if not config.stale_after_seconds:
            return False
        if isinstance(entity, Resource):
            active = entity.in_progress
        else:
            active = not entity.is_terminal
        return active and now - entity.last_action_at >= timedelta(seconds=config.stale_after_seconds)
