"""
Downtime reconciliation: compare each group's window with the clock and
stop or start its members accordingly.
"""
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple
import logging

from ..core.exceptions import (
    AuthenticationError, AuthorizationError, CloudDowntimeError, NotFoundError,
    TransientProviderError, ValidationError
)
from ..services.base import BaseProviderAdapter
from ..services.models import ApplyResult, DesiredState, DowntimeWindow, Provider
from ..state.stores import DowntimeStore, MembershipStore
from ..state.tracker import GroupStateTracker


logger = logging.getLogger(__name__)


def desired_state_for(start: datetime, end: datetime, now: datetime) -> Optional[DesiredState]:
    """Desired run state of a group at ``now`` for the window ``[start, end)``.

    Returns None before the window opens.
    """
    if now < start:
        return None
    if now < end:
        return DesiredState.STOPPED
    return DesiredState.STARTED


@dataclass
class GroupOutcome:
    """Result of dispatching one group's transition."""
    group_name: str
    desired: DesiredState
    results: List[ApplyResult] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.skipped_reason is None and not self.failures


@dataclass
class TickReport:
    """What one tick did, kept on the reconciler for inspection."""
    started_at: datetime
    windows: int = 0
    invalid: List[str] = field(default_factory=list)
    not_in_scope: List[str] = field(default_factory=list)
    already_handled: List[str] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)
    applied: Dict[str, DesiredState] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


class DowntimeReconciler:
    """Periodic control loop body that enforces each group's downtime window."""

    def __init__(
        self,
        adapters: Mapping[Provider, BaseProviderAdapter],
        downtime_store: DowntimeStore,
        membership_store: MembershipStore,
        tracker: Optional[GroupStateTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_workers: int = 4,
        call_timeout: float = 120
    ):
        """Initialize the reconciler.

        Args:
            adapters: Constructed provider adapters keyed by provider
            downtime_store: Source of group windows
            membership_store: Source of group members
            tracker: Handled-state tracker, a fresh one if omitted
            clock: Returns the current aware UTC time; defaults to the wall clock
            max_workers: Groups dispatched concurrently within one tick
            call_timeout: Seconds a tick waits for group dispatches before moving on
        """
        self.adapters = dict(adapters)
        self.downtime_store = downtime_store
        self.membership_store = membership_store
        self.tracker = tracker or GroupStateTracker()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.call_timeout = call_timeout

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='downtime-dispatch')
        self._in_flight: Dict[str, Future] = {}
        self.last_report: Optional[TickReport] = None

    def tick(self) -> None:
        """Run one reconciliation pass. Never raises."""
        report = TickReport(started_at=self.clock())
        try:
            self._tick(report)
        except Exception as e:
            logger.exception(f"Error in downtime reconciliation tick: {e}")
        finally:
            self.last_report = report

    def close(self) -> None:
        """Stop accepting dispatches; running ones finish in the background."""
        self._executor.shutdown(wait=False)

    def _tick(self, report: TickReport) -> None:
        logger.debug("Checking scheduled downtimes...")
        self._reap_in_flight()

        windows = self.downtime_store.get_all_windows()
        report.windows = len(windows)
        if not windows:
            logger.info("No scheduled downtimes found")
            return

        now = self.clock()
        pending: Dict[Future, Tuple[str, DesiredState]] = {}

        for window in windows:
            try:
                desired = self._evaluate(window, now, report)
            except Exception as e:
                logger.exception(f"Failed to evaluate downtime for group '{window.group_name}': {e}")
                report.failed[window.group_name] = str(e)
                continue

            if desired is None:
                continue

            if window.group_name in self._in_flight:
                logger.warning(f"Group '{window.group_name}' still has a dispatch in flight; skipping this tick")
                report.in_flight.append(window.group_name)
                continue

            if desired is DesiredState.STOPPED:
                logger.info(f"Group '{window.group_name}' is in scheduled downtime. Stopping instances...")
            else:
                logger.info(f"Group '{window.group_name}' downtime ended. Starting instances...")

            future = self._executor.submit(self._apply_group, window.group_name, desired)
            pending[future] = (window.group_name, desired)

        if pending:
            self._collect(pending, report)

    def _evaluate(self, window: DowntimeWindow, now: datetime, report: TickReport) -> Optional[DesiredState]:
        """Desired transition for a window, or None when nothing should be dispatched."""
        try:
            start, end = window.parse()
        except ValidationError as e:
            logger.warning(f"Invalid downtime format for group '{window.group_name}'. Skipping... ({e.details})")
            report.invalid.append(window.group_name)
            return None

        desired = desired_state_for(start, end, now)
        if desired is None:
            report.not_in_scope.append(window.group_name)
            return None

        if self.tracker.get(window.group_name) == desired:
            logger.debug(f"Group '{window.group_name}' already {desired.value}")
            report.already_handled.append(window.group_name)
            return None

        return desired

    def _apply_group(self, group_name: str, desired: DesiredState) -> GroupOutcome:
        """Dispatch the transition for every (provider, account, region) subset of a group."""
        outcome = GroupOutcome(group_name=group_name, desired=desired)

        try:
            members = self.membership_store.get_members(group_name)
        except NotFoundError as e:
            logger.warning(f"Group '{group_name}' no longer exists: {e}")
            outcome.skipped_reason = 'group not found'
            return outcome

        # Each account is authorized separately and each EC2 region is its own endpoint
        batches: Dict[Tuple[Provider, str, Optional[str]], List[str]] = OrderedDict()
        for provider, provider_members in members.items():
            for member in provider_members:
                key = (provider, member.account_id, member.region)
                batches.setdefault(key, []).append(member.instance_id)

        if not batches:
            logger.info(f"Group '{group_name}' has no members")
            outcome.skipped_reason = 'no members'
            return outcome

        for (provider, account_id, region), instance_ids in batches.items():
            adapter = self.adapters.get(provider)
            if adapter is None:
                message = f"No adapter configured for {provider.value}"
                logger.error(f"{message}; cannot apply '{desired.value}' to group '{group_name}'")
                outcome.failures.append(message)
                continue

            location = f"account {account_id} region {region}" if region else f"account {account_id}"
            logger.info(f"Applying '{desired.value}' to {provider.value} instances of group '{group_name}' in {location}: {instance_ids}")
            try:
                outcome.results.append(adapter.apply_desired_state(account_id, instance_ids, desired, region=region))
            except AuthenticationError as e:
                logger.warning(f"No {provider.value} session for account {account_id}, group '{group_name}' not {desired.value}: {e}")
                outcome.failures.append(str(e))
            except AuthorizationError as e:
                logger.error(f"{provider.value} rejected '{desired.value}' for group '{group_name}' in account {account_id}: {e}")
                outcome.failures.append(str(e))
            except TransientProviderError as e:
                logger.warning(f"{provider.value} call failed for group '{group_name}' in account {account_id}, will retry next tick: {e}")
                outcome.failures.append(str(e))
            except CloudDowntimeError as e:
                logger.error(f"Failed to apply '{desired.value}' to group '{group_name}' in account {account_id}: {e}")
                outcome.failures.append(str(e))
            except Exception as e:
                logger.exception(f"Unexpected error applying '{desired.value}' to group '{group_name}' in account {account_id}: {e}")
                outcome.failures.append(str(e))

        return outcome

    def _collect(self, pending: Dict[Future, Tuple[str, DesiredState]], report: TickReport) -> None:
        done, not_done = wait(pending, timeout=self.call_timeout)

        for future in done:
            group_name, desired = pending[future]
            try:
                outcome = future.result()
            except Exception as e:
                logger.exception(f"Dispatch for group '{group_name}' crashed: {e}")
                report.failed[group_name] = str(e)
                continue
            self._record(outcome, report)

        for future in not_done:
            group_name, desired = pending[future]
            logger.warning(
                f"Dispatch of '{desired.value}' for group '{group_name}' did not finish within "
                f"{self.call_timeout}s; will retry once it completes"
            )
            self._in_flight[group_name] = future
            report.failed[group_name] = 'timed out'

    def _record(self, outcome: GroupOutcome, report: TickReport) -> None:
        # Tracker writes happen only here, on the tick's thread
        if outcome.succeeded:
            self.tracker.set(outcome.group_name, outcome.desired)
            report.applied[outcome.group_name] = outcome.desired
            acted = sum(len(r.acted_on) for r in outcome.results)
            logger.info(f"Group '{outcome.group_name}' marked {outcome.desired.value} ({acted} instances acted on)")
        elif outcome.skipped_reason is not None:
            report.skipped[outcome.group_name] = outcome.skipped_reason
        else:
            report.failed[outcome.group_name] = '; '.join(outcome.failures)
            logger.warning(f"Group '{outcome.group_name}' left in its previous state after {len(outcome.failures)} failed branch(es)")

    def _reap_in_flight(self) -> None:
        for group_name, future in list(self._in_flight.items()):
            if future.done():
                del self._in_flight[group_name]
                logger.info(f"Late dispatch for group '{group_name}' finished; it will be re-evaluated now")
