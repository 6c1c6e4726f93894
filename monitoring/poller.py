"""
Zabbix Poll Orchestrator.

============================================================
PURPOSE
============================================================
Runs one poll cycle end to end:

    IDLE -> INITIALIZING -> FETCHING -> TRANSFORMING
         -> PERSISTING -> MATCHING -> NOTIFYING
         -> RECONCILING -> IDLE

DISABLED is entered whenever config.enabled is false, checked
at entry and again before persisting and before notifying.

============================================================
GUARANTEES
============================================================
- Single-flight: a cycle never starts while another runs in
  this process; overlapping triggers are skipped, not queued
- Only newly created, still open, not yet notified alerts are
  notified
- Alerts are notified one at a time; groups in priority order
- Each notified alert is committed before the next one, so a
  later failure never re-notifies it
- Reconciliation failures are logged, never fail the cycle
- run_cycle never raises; failures become a failed PollResult
  and a recorded config error

============================================================
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from core.clock import ClockProtocol, SystemClock
from core.exceptions import ConfigurationError
from monitoring.alerts.rules import NotificationRuleMatcher
from monitoring.alerts.transformer import RawProblem, filter_actionable, transform_problem
from monitoring.models import ACTIONABLE_SEVERITIES, PollResult, PollState
from monitoring.notifications.dispatcher import NotificationDispatcher
from monitoring.zabbix.client import ZabbixClient
from monitoring.zabbix.exceptions import ZabbixError
from monitoring.zabbix.resilience import CircuitBreaker
from storage.database import session_scope
from storage.repositories import MonitoringRepositories


logger = logging.getLogger(__name__)


FETCH_LIMIT = 1000
FETCH_SEVERITIES = sorted(int(s) for s in ACTIONABLE_SEVERITIES)

CYCLE_IN_PROGRESS = "Poll cycle already in progress"


class CycleDisabled(Exception):
    """Integration was switched off while a cycle was running."""


class ZabbixPollOrchestrator:
    """
    Drives poll cycles.

    Long-lived: one instance per process, shared by the scheduler
    and the manual poll-now endpoint so both go through the same
    single-flight lock.
    """

    def __init__(
        self,
        settings: Any,
        session_factory: sessionmaker,
        client: ZabbixClient,
        cipher: Any,
        matcher: NotificationRuleMatcher,
        dispatcher: NotificationDispatcher,
        breaker: Optional[CircuitBreaker] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._client = client
        self._cipher = cipher
        self._matcher = matcher
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._breaker = breaker or CircuitBreaker(clock=self._clock)

        self._lock = asyncio.Lock()
        self._state = PollState.IDLE
        self._last_result: Optional[PollResult] = None
        self._config_fingerprint: Optional[Tuple] = None

    # =========================================================
    # PROPERTIES
    # =========================================================

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_result(self) -> Optional[PollResult]:
        return self._last_result

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _transition(self, new_state: PollState) -> None:
        if new_state != self._state:
            logger.debug(f"Poll state: {self._state.value} -> {new_state.value}")
        self._state = new_state

    # =========================================================
    # CYCLE
    # =========================================================

    async def run_cycle(self, trigger: str = "scheduled") -> PollResult:
        """
        Run one poll cycle.

        Args:
            trigger: "scheduled" or "manual", recorded on the result

        Returns:
            PollResult; skipped=True when another cycle was running
            or the integration is disabled/unconfigured
        """
        result = PollResult(
            cycle_id=uuid.uuid4().hex[:12],
            trigger=trigger,
            started_at=self._clock.now(),
        )

        if self._lock.locked():
            logger.warning(f"Poll cycle already running, skipping {trigger} trigger")
            result.skipped = True
            result.error = CYCLE_IN_PROGRESS
            result.final_state = self._state
            return result

        async with self._lock:
            started = time.monotonic()
            logger.info(f"Poll cycle {result.cycle_id} started ({trigger})")
            try:
                await self._execute(result)
            except CycleDisabled:
                self._transition(PollState.DISABLED)
                result.skipped = True
                result.error = "Integration disabled during cycle"
                logger.info(f"Poll cycle {result.cycle_id}: integration disabled mid-cycle")
            except Exception as e:
                result.success = False
                result.error = str(e) or type(e).__name__
                logger.error(f"Poll cycle {result.cycle_id} failed: {result.error}")
                self._record_failure(result.error)
            finally:
                result.duration_seconds = time.monotonic() - started
                result.final_state = self._state
                if self._state != PollState.DISABLED:
                    self._transition(PollState.IDLE)
                self._last_result = result

        logger.info(
            f"Poll cycle {result.cycle_id} finished: success={result.success} "
            f"skipped={result.skipped} fetched={result.alerts_fetched} "
            f"new={len(result.new_alert_ids)} sent={result.notifications_sent} "
            f"resolved={result.resolved_count} ({result.duration_seconds:.2f}s)"
        )
        return result

    async def _execute(self, result: PollResult) -> None:
        # INITIALIZING
        self._transition(PollState.INITIALIZING)
        with session_scope(self._session_factory) as session:
            repos = MonitoringRepositories.from_session(session)
            config = repos.config.get_or_create_default(self._settings, self._cipher)

            if not config.enabled:
                self._transition(PollState.DISABLED)
                result.skipped = True
                logger.info("Zabbix integration disabled, skipping poll cycle")
                return

            if not config.url:
                result.skipped = True
                result.error = "Zabbix URL not configured"
                repos.config.record_error(config, result.error, self._clock.now())
                logger.warning(result.error)
                return

        await self._ensure_client(config)

        # FETCHING
        self._transition(PollState.FETCHING)
        self._breaker.before_call()
        try:
            enriched = await self._client.fetch_problems_with_details(
                FETCH_SEVERITIES, FETCH_LIMIT
            )
        except ZabbixError:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()
        result.alerts_fetched = len(enriched)

        # TRANSFORMING
        self._transition(PollState.TRANSFORMING)
        now = self._clock.now()
        parsed = [(RawProblem.from_payload(item.problem), item) for item in enriched]
        actionable = {id(raw) for raw in filter_actionable(raw for raw, _ in parsed)}
        records = [
            transform_problem(raw, item.trigger, item.host, now)
            for raw, item in parsed
            if id(raw) in actionable
        ]
        dropped = len(parsed) - len(records)
        if dropped:
            logger.info(f"Dropped {dropped} problems below high severity")

        # PERSISTING
        self._transition(PollState.PERSISTING)
        with session_scope(self._session_factory) as session:
            repos = MonitoringRepositories.from_session(session)
            self._check_still_enabled(repos, config)

            saved = repos.alerts.save_all(records)
            result.saved_count = saved.saved_count
            result.updated_count = saved.updated_count
            result.new_alert_ids = list(saved.new_ids)
            result.alerts_processed = saved.saved_count + saved.updated_count
            result.errors.extend(
                f"{err.get('alert_id')}: {err.get('error')}" for err in saved.errors
            )

        # MATCHING + NOTIFYING
        if result.new_alert_ids:
            await self._notify_new_alerts(result, config)

        with session_scope(self._session_factory) as session:
            repos = MonitoringRepositories.from_session(session)
            current = repos.config.get_active() or config
            repos.config.record_success(current, len(result.new_alert_ids), self._clock.now())

        result.success = True

        # RECONCILING
        await self._reconcile(result)

    def _check_still_enabled(self, repos: MonitoringRepositories, config: Any) -> None:
        if not repos.config.is_enabled(config):
            raise CycleDisabled()

    async def _notify_new_alerts(self, result: PollResult, config: Any) -> None:
        with session_scope(self._session_factory) as session:
            repos = MonitoringRepositories.from_session(session)
            self._check_still_enabled(repos, config)
            candidate_ids = [
                alert.alert_id
                for alert in repos.alerts.list_notification_candidates(result.new_alert_ids)
            ]

        for alert_id in candidate_ids:
            with session_scope(self._session_factory) as session:
                repos = MonitoringRepositories.from_session(session)
                alert = repos.alerts.get_by_alert_id(alert_id)
                if alert is None or alert.resolved or alert.notification_sent:
                    continue

                self._transition(PollState.MATCHING)
                groups = self._matcher.find_eligible_groups(alert, repos.groups)
                if not groups:
                    continue

                self._transition(PollState.NOTIFYING)
                dispatch = await self._dispatcher.notify(alert, groups, repos)
                result.notifications_sent += dispatch.sent
                result.errors.extend(dispatch.errors)

    async def _reconcile(self, result: PollResult) -> None:
        """Mark stored open alerts resolved when upstream no longer reports them."""
        self._transition(PollState.RECONCILING)
        try:
            problems = await self._client.get_problems(FETCH_SEVERITIES, FETCH_LIMIT)
            active_ids = set()
            for payload in problems:
                raw = RawProblem.from_payload(payload)
                if raw.is_active and raw.external_id:
                    active_ids.add(raw.external_id)

            with session_scope(self._session_factory) as session:
                repos = MonitoringRepositories.from_session(session)
                resolved = repos.alerts.reconcile_resolved(active_ids, self._clock.now())
            result.resolved_count = len(resolved)
        except Exception as e:
            logger.error(f"Reconciliation failed: {e}")
            result.errors.append(f"reconciliation: {e}")

    # =========================================================
    # HELPERS
    # =========================================================

    @staticmethod
    def _fingerprint(config: Any) -> Tuple:
        return (
            config.url,
            config.username,
            config.api_token_encrypted,
            config.password_encrypted,
            config.enabled,
        )

    async def _ensure_client(self, config: Any) -> None:
        """(Re-)initialize the client when unready or its config changed."""
        fingerprint = self._fingerprint(config)
        if self._client.initialized and fingerprint == self._config_fingerprint:
            return

        self._config_fingerprint = None
        if not await self._client.initialize(config, self._cipher):
            raise ConfigurationError(
                "Zabbix client not initialized: check URL and credentials",
                config_key="zabbix",
            )
        self._config_fingerprint = fingerprint

    async def reinitialize_client(self, config: Any) -> bool:
        """
        Re-read credentials after an admin config change.

        While a cycle runs only the fingerprint is dropped; the next
        cycle re-initializes.
        """
        self._config_fingerprint = None
        if self.is_running:
            return False
        if not await self._client.initialize(config, self._cipher):
            return False
        self._config_fingerprint = self._fingerprint(config)
        return True

    def _record_failure(self, message: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                repos = MonitoringRepositories.from_session(session)
                config = repos.config.get_active()
                if config is not None:
                    repos.config.record_error(config, message, self._clock.now())
        except Exception as e:
            logger.error(f"Failed to record poll error: {e}")
