"""Provider adapters and the models they exchange."""

from .models import (
    ApplyResult, DesiredState, DowntimeWindow, FleetInstance, GroupMember,
    InstanceRef, InstanceState, Provider, ProviderSession, StoredCredential
)

__all__ = [
    'ApplyResult',
    'DesiredState',
    'DowntimeWindow',
    'FleetInstance',
    'GroupMember',
    'InstanceRef',
    'InstanceState',
    'Provider',
    'ProviderSession',
    'StoredCredential'
]
