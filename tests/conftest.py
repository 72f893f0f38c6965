"""
Pytest configuration and shared fixtures for Cloud Downtime tests.
"""

import itertools
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from cloud_downtime.auth.session_cache import ProviderSessionCache
from cloud_downtime.core.exceptions import AuthenticationError, TransientProviderError
from cloud_downtime.scheduler.reconciler import DowntimeReconciler
from cloud_downtime.services.base import BaseProviderAdapter
from cloud_downtime.services.models import (
    GroupMember, InstanceRef, InstanceState, Provider, StoredCredential, parse_timestamp
)
from cloud_downtime.state.file_store import (
    FileCredentialStore, FileDowntimeStore, FileMembershipStore
)
from cloud_downtime.state.tracker import GroupStateTracker


AWS_ACCOUNT = "123456789012"
OTHER_AWS_ACCOUNT = "210987654321"
AZURE_TENANT = "72f988bf-86f1-41af-91ab-2d7cd011db47"
AZURE_SUBSCRIPTION = "0b1f6471-1bf0-4dda-aec3-cb9272f09590"


def make_credential(provider: Provider, account_id: str, expires_at: Optional[datetime] = None,
                    **material) -> StoredCredential:
    """Stored credential that is valid for a day unless told otherwise."""
    return StoredCredential(
        provider=provider,
        account_id=account_id,
        material=material or {'token': f'token-{account_id}'},
        expires_at=expires_at or datetime.now(timezone.utc) + timedelta(days=1)
    )


class FakeClock:
    """Settable clock for reconciler and session cache tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: str) -> None:
        self.now = parse_timestamp(value)

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAdapter(BaseProviderAdapter):
    """In-memory provider: instance states live in a dict and every bulk call is recorded."""

    def __init__(self, provider: Provider, session_cache: ProviderSessionCache, credential_store,
                 states: Optional[Dict[str, InstanceState]] = None):
        self._provider = provider
        self.states: Dict[str, InstanceState] = dict(states or {})
        self.calls: List[tuple] = []
        self.call_regions: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.gate: Optional[threading.Event] = None
        super().__init__(session_cache, credential_store)

    @property
    def provider(self) -> Provider:
        return self._provider

    def refresh_credential(self, stored):
        raise AuthenticationError(f"Cannot refresh {stored.account_id}")

    def discovery_scopes(self, account_id):
        return ['scope-1']

    def _acquire_credential(self, account_selector):
        if account_selector.startswith('bad'):
            raise AuthenticationError(f"Rejected {account_selector}")
        return make_credential(self._provider, account_selector)

    def _describe(self, session, instance_ids, region):
        self._maybe_fail(session)
        return {
            instance_id: self._ref(session, instance_id)
            for instance_id in instance_ids if instance_id in self.states
        }

    def _discover(self, session, scope):
        self._maybe_fail(session)
        return [self._ref(session, instance_id) for instance_id in self.states]

    def _stop_instances(self, session, instance_ids, region):
        self._transition('stop', session, instance_ids, InstanceState.STOPPED, region)

    def _start_instances(self, session, instance_ids, region):
        self._transition('start', session, instance_ids, InstanceState.RUNNING, region)

    def _terminate_instances(self, session, instance_ids, region):
        self._transition('terminate', session, instance_ids, InstanceState.TERMINATED, region)

    def _classify_error(self, error):
        return TransientProviderError

    def calls_for(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def _maybe_fail(self, session):
        failure = self.failures.get(session.account_id)
        if failure is not None:
            raise failure

    def _transition(self, operation, session, instance_ids, new_state, region):
        if self.gate is not None:
            self.gate.wait(timeout=10)
        self.calls.append((operation, session.account_id, list(instance_ids)))
        self.call_regions.append((operation, session.account_id, region))
        for instance_id in instance_ids:
            self.states[instance_id] = new_state

    def _ref(self, session, instance_id):
        return InstanceRef(
            provider=self._provider,
            account_id=session.account_id,
            instance_id=instance_id,
            state=self.states[instance_id],
            region='scope-1'
        )


class World:
    """File-backed stores plus one fake adapter per provider."""

    def __init__(self, data_dir: Path, clock: FakeClock):
        self.clock = clock
        self.membership_store = FileMembershipStore(data_dir)
        self.downtime_store = FileDowntimeStore(data_dir, self.membership_store)
        self.credential_store = FileCredentialStore(data_dir)
        self.tracker = GroupStateTracker()
        self.adapters = {
            provider: FakeAdapter(provider, ProviderSessionCache(provider, self.credential_store), self.credential_store)
            for provider in Provider
        }
        self._reconcilers: List[DowntimeReconciler] = []

    def login(self, provider: Provider, account_id: str) -> None:
        self.credential_store.store_credential(make_credential(provider, account_id))

    def add_group(self, name: str, *members: GroupMember, state: InstanceState = InstanceState.RUNNING) -> None:
        self.membership_store.create_group(name, members)
        for member in members:
            self.adapters[member.provider].states[member.instance_id] = state

    def reconciler(self, **kwargs) -> DowntimeReconciler:
        reconciler = DowntimeReconciler(
            self.adapters,
            self.downtime_store,
            self.membership_store,
            tracker=self.tracker,
            clock=self.clock,
            **kwargs
        )
        self._reconcilers.append(reconciler)
        return reconciler

    def close(self) -> None:
        for reconciler in self._reconcilers:
            reconciler.close()


@pytest.fixture
def clock():
    return FakeClock(parse_timestamp("2024-01-05T12:00:00Z"))


@pytest.fixture
def world_factory(tmp_path, clock):
    """Build isolated worlds; hypothesis examples each need a fresh one."""
    counter = itertools.count()
    worlds = []

    def factory() -> World:
        world = World(tmp_path / f"world-{next(counter)}", FakeClock(clock.now))
        worlds.append(world)
        return world

    yield factory

    for world in worlds:
        world.close()


@pytest.fixture
def world(world_factory):
    return world_factory()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 under moto never looks at the real environment."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
