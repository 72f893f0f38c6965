"""
Azure adapter: virtual machine power state, start/deallocate and discovery.
"""
import re
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
from azure.mgmt.compute import ComputeManagementClient

from .base import BaseProviderAdapter
from .models import InstanceRef, InstanceState, Provider, ProviderSession, StoredCredential
from ..auth.azure_auth import AzureTokenAuthenticator, StaticTokenCredential
from ..auth.session_cache import ProviderSessionCache
from ..core.exceptions import (
    AuthenticationError, AuthorizationError, TransientProviderError, ValidationError
)
from ..state.stores import CredentialStore


VM_ID_PATTERN = re.compile(
    r'^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<resource_group>[^/]+)'
    r'/providers/Microsoft\.Compute/virtualMachines/(?P<name>[^/]+)$',
    re.IGNORECASE
)

POWER_STATES = {
    'running': InstanceState.RUNNING,
    'stopped': InstanceState.STOPPED,
    'deallocated': InstanceState.STOPPED,
}


def parse_vm_id(vm_id: str) -> Tuple[str, str, str]:
    """Split an ARM virtual machine id into (subscription, resource group, name).

    Raises:
        ValidationError: If the id is not a virtual machine resource id
    """
    match = VM_ID_PATTERN.match(vm_id or '')
    if not match:
        raise ValidationError(f"Not an Azure virtual machine id: {vm_id}")
    return match.group('subscription'), match.group('resource_group'), match.group('name')


def power_state(vm) -> InstanceState:
    """Read the PowerState/* status of a VM listed with its instance view."""
    instance_view = getattr(vm, 'instance_view', None)
    for status in getattr(instance_view, 'statuses', None) or []:
        code = status.code or ''
        if code.startswith('PowerState/'):
            return POWER_STATES.get(code.split('/', 1)[1], InstanceState.UNKNOWN)
    return InstanceState.UNKNOWN


class AzureProviderAdapter(BaseProviderAdapter):
    """Provider adapter for Azure virtual machines."""

    def __init__(
        self,
        session_cache: ProviderSessionCache,
        credential_store: CredentialStore,
        authenticator: Optional[AzureTokenAuthenticator] = None,
        client_factory: Optional[Callable] = None
    ):
        """Initialize the Azure adapter.

        Args:
            session_cache: Azure session cache
            credential_store: Store tokens are written to on authenticate
            authenticator: Token authenticator, a default one is created if omitted
            client_factory: Builds a compute client from (credential, subscription_id)
        """
        self.authenticator = authenticator or AzureTokenAuthenticator()
        self.client_factory = client_factory or ComputeManagementClient
        super().__init__(session_cache, credential_store)

    @property
    def provider(self) -> Provider:
        return Provider.AZURE

    def refresh_credential(self, stored: StoredCredential) -> StoredCredential:
        return self.authenticator.refresh(stored)

    def discovery_scopes(self, account_id: str) -> List[str]:
        session = self._require_session(account_id)
        return list(session.subscription_ids)

    def _acquire_credential(self, account_selector) -> StoredCredential:
        return self.authenticator.acquire_token(account_selector)

    def _client(self, session: ProviderSession, subscription_id: str):
        credential = StaticTokenCredential(
            session.credentials['access_token'],
            int(float(session.credentials['expires_on']))
        )
        return self.client_factory(credential, subscription_id)

    def _describe(
        self, session: ProviderSession, instance_ids: List[str], region: Optional[str]
    ) -> Dict[str, InstanceRef]:
        # VM ids carry their subscription, region plays no part in lookup
        by_subscription: Dict[str, Dict[str, str]] = defaultdict(dict)
        for instance_id in instance_ids:
            try:
                subscription_id, _, _ = parse_vm_id(instance_id)
            except ValidationError:
                # Unparsable ids are reported as UNKNOWN by the caller
                continue
            by_subscription[subscription_id.lower()][instance_id.lower()] = instance_id

        observed = {}
        for subscription_id, wanted in by_subscription.items():
            client = self._client(session, subscription_id)
            for vm in client.virtual_machines.list_all(status_only="true"):
                requested_id = wanted.get((vm.id or '').lower())
                if requested_id is not None:
                    observed[requested_id] = self._to_ref(vm, session, requested_id)

        return observed

    def _discover(self, session: ProviderSession, scope: str) -> List[InstanceRef]:
        client = self._client(session, scope)
        return [
            self._to_ref(vm, session, vm.id)
            for vm in client.virtual_machines.list_all(status_only="true")
        ]

    def _stop_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        # Deallocate rather than power off so compute stops being billed
        self._for_each_vm(session, instance_ids, 'begin_deallocate')

    def _start_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        self._for_each_vm(session, instance_ids, 'begin_start')

    def _terminate_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        self._for_each_vm(session, instance_ids, 'begin_delete')

    def _for_each_vm(self, session: ProviderSession, instance_ids: List[str], method: str) -> None:
        """Issue one long-running operation per VM without waiting for completion."""
        clients = {}
        for instance_id in instance_ids:
            subscription_id, resource_group, name = parse_vm_id(instance_id)
            if subscription_id not in clients:
                clients[subscription_id] = self._client(session, subscription_id)
            getattr(clients[subscription_id].virtual_machines, method)(resource_group, name)

    def _classify_error(self, error: Exception) -> type:
        if isinstance(error, ClientAuthenticationError):
            return AuthenticationError
        if isinstance(error, HttpResponseError) and error.status_code == 403:
            return AuthorizationError
        return TransientProviderError

    def _to_ref(self, vm, session: ProviderSession, instance_id: str) -> InstanceRef:
        hardware_profile = getattr(vm, 'hardware_profile', None)
        return InstanceRef(
            provider=Provider.AZURE,
            account_id=session.account_id,
            instance_id=instance_id,
            state=power_state(vm),
            region=getattr(vm, 'location', None),
            metadata={
                'name': vm.name,
                'vm_size': getattr(hardware_profile, 'vm_size', None)
            }
        )
