"""
Data models for groups, downtime windows, instances and provider sessions.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.exceptions import ValidationError


class Provider(str, Enum):
    """Cloud providers a group member can live in."""
    AWS = "aws"
    AZURE = "azure"


class InstanceState(str, Enum):
    """Run state of an instance as observed from its provider."""
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def from_provider(cls, value: Optional[str]) -> "InstanceState":
        """Map a provider state string, anything unrecognised is UNKNOWN."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN


class DesiredState(str, Enum):
    """Run state a group's members should be in."""
    STOPPED = "stopped"
    STARTED = "started"

    @property
    def precondition(self) -> InstanceState:
        """Observed state an instance must be in for this transition to apply."""
        if self is DesiredState.STOPPED:
            return InstanceState.RUNNING
        return InstanceState.STOPPED


@dataclass(frozen=True)
class GroupMember:
    """One instance reference inside a group.

    ``region`` locates an EC2 instance; None means the account session's region.
    Azure members are located by their resource id and carry no region.
    """
    provider: Provider
    account_id: str
    instance_id: str
    region: Optional[str] = None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing ``Z`` is accepted and naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a parsable timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class DowntimeWindow:
    """A group's declared downtime window, as stored."""
    group_name: str
    start: Optional[str]
    end: Optional[str]

    def parse(self) -> Tuple[datetime, datetime]:
        """Return the window as aware UTC instants.

        Raises:
            ValidationError: If either bound is unparsable or start is not before end
        """
        try:
            start = parse_timestamp(self.start)
            end = parse_timestamp(self.end)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid downtime window for group '{self.group_name}'",
                details=str(e)
            )

        if start >= end:
            raise ValidationError(
                f"Downtime window for group '{self.group_name}' starts at or after it ends",
                details=f"start={self.start} end={self.end}"
            )
        return start, end

    def describe(self) -> str:
        """Human readable schedule string."""
        return f"{self.start} - {self.end}"


@dataclass(frozen=True)
class InstanceRef:
    """An instance and its observed state, refreshed from the provider on every call."""
    provider: Provider
    account_id: str
    instance_id: str
    state: InstanceState
    region: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class StoredCredential:
    """Credential material as persisted by the credential store."""
    provider: Provider
    account_id: str
    material: Dict[str, str]
    expires_at: datetime
    region: Optional[str] = None
    subscription_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderSession:
    """An authenticated session for one provider account.

    Sessions are never mutated; a refresh produces a new object.
    """
    provider: Provider
    account_id: str
    credentials: Mapping[str, str]
    expires_at: datetime
    region: Optional[str] = None
    subscription_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'credentials', MappingProxyType(dict(self.credentials)))
        object.__setattr__(self, 'subscription_ids', tuple(self.subscription_ids))

    @classmethod
    def from_stored(cls, stored: StoredCredential) -> "ProviderSession":
        return cls(
            provider=stored.provider,
            account_id=stored.account_id,
            credentials=stored.material,
            expires_at=stored.expires_at,
            region=stored.region,
            subscription_ids=stored.subscription_ids
        )

    def to_stored(self) -> StoredCredential:
        return StoredCredential(
            provider=self.provider,
            account_id=self.account_id,
            material=dict(self.credentials),
            expires_at=self.expires_at,
            region=self.region,
            subscription_ids=self.subscription_ids
        )


@dataclass
class ApplyResult:
    """Outcome of one bulk start/stop/terminate request for an account."""
    provider: Provider
    account_id: str
    operation: str              # 'stopped', 'started' or 'terminated'
    requested: List[str]
    acted_on: List[str]
    skipped: Dict[str, InstanceState]
    timestamp: datetime

    @property
    def is_noop(self) -> bool:
        return not self.acted_on


@dataclass(frozen=True)
class FleetInstance:
    """An instance enriched with its group and schedule for operator display."""
    instance: InstanceRef
    group_name: Optional[str]
    schedule: str
