"""
Provider adapter interface shared by the AWS and Azure implementations.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import logging

from .models import (
    ApplyResult, DesiredState, InstanceRef, InstanceState, Provider,
    ProviderSession, StoredCredential
)
from ..auth.session_cache import ProviderSessionCache
from ..core.exceptions import (
    AuthenticationError, CloudDowntimeError, StateError, TransientProviderError
)
from ..state.stores import CredentialStore


logger = logging.getLogger(__name__)


class BaseProviderAdapter(ABC):
    """Uniform capability surface over one cloud's compute API."""

    def __init__(self, session_cache: ProviderSessionCache, credential_store: CredentialStore):
        """Initialize the adapter.

        Args:
            session_cache: Session cache for this adapter's provider
            credential_store: Store new credentials are written to on authenticate
        """
        if session_cache.provider is not self.provider:
            raise ValueError(
                f"{type(self).__name__} needs a {self.provider.value} session cache, "
                f"got {session_cache.provider.value}"
            )
        self.session_cache = session_cache
        self.credential_store = credential_store

        if session_cache.refresher is None:
            session_cache.refresher = self.refresh_credential

    @property
    @abstractmethod
    def provider(self) -> Provider:
        pass

    # Public operations

    def list_instances(
        self, account_id: str, instance_ids: Sequence[str], region: Optional[str] = None
    ) -> List[InstanceRef]:
        """Query the current state of the given instances.

        ``region`` narrows the query for providers that are regional (EC2);
        None means the session's region.

        Returns one InstanceRef per distinct requested id, in request order.
        Ids the provider does not report come back as UNKNOWN.

        Raises:
            AuthenticationError: If no session is available for the account
            AuthorizationError: If the provider rejects the query
            TransientProviderError: If the provider call fails
        """
        session = self._require_session(account_id)
        return self._list_with_session(session, instance_ids, region)

    def apply_desired_state(
        self,
        account_id: str,
        instance_ids: Sequence[str],
        desired: DesiredState,
        region: Optional[str] = None
    ) -> ApplyResult:
        """Move the instances towards the desired run state.

        Only instances whose observed state is the transition's precondition
        are acted on (RUNNING for stop, STOPPED for start), with a single bulk
        provider request. Repeating the call with the same inputs has no
        further effect.
        """
        session = self._require_session(account_id)
        observed = self._list_with_session(session, instance_ids, region)

        precondition = desired.precondition
        actionable = [ref.instance_id for ref in observed if ref.state is precondition]
        skipped = {ref.instance_id: ref.state for ref in observed if ref.state is not precondition}

        result = ApplyResult(
            provider=self.provider,
            account_id=account_id,
            operation=desired.value,
            requested=[ref.instance_id for ref in observed],
            acted_on=actionable,
            skipped=skipped,
            timestamp=datetime.now(timezone.utc)
        )

        if skipped and all(state is InstanceState.UNKNOWN for state in skipped.values()):
            logger.warning(
                f"None of {list(skipped)} were found in {self.provider.value} account {account_id}"
                f"{f' region {region}' if region else ''}; check the members' account and region"
            )

        if not actionable:
            logger.info(
                f"No {self.provider.value} instances in account {account_id} need to be {desired.value} "
                f"({len(skipped)} skipped)"
            )
            return result

        operation = 'stop' if desired is DesiredState.STOPPED else 'start'
        logger.info(f"Requesting {operation} of {self.provider.value} instances in account {account_id}: {actionable}")

        try:
            if desired is DesiredState.STOPPED:
                self._stop_instances(session, actionable, region)
            else:
                self._start_instances(session, actionable, region)
        except Exception as e:
            self._handle_provider_error(e, operation, account_id)

        return result

    def terminate_instances(
        self, account_id: str, instance_ids: Sequence[str], region: Optional[str] = None
    ) -> ApplyResult:
        """Terminate every listed instance that still exists."""
        session = self._require_session(account_id)
        observed = self._list_with_session(session, instance_ids, region)

        gone = (InstanceState.TERMINATED, InstanceState.UNKNOWN)
        actionable = [ref.instance_id for ref in observed if ref.state not in gone]

        result = ApplyResult(
            provider=self.provider,
            account_id=account_id,
            operation='terminated',
            requested=[ref.instance_id for ref in observed],
            acted_on=actionable,
            skipped={ref.instance_id: ref.state for ref in observed if ref.state in gone},
            timestamp=datetime.now(timezone.utc)
        )

        if actionable:
            logger.info(f"Terminating {self.provider.value} instances in account {account_id}: {actionable}")
            try:
                self._terminate_instances(session, actionable, region)
            except Exception as e:
                self._handle_provider_error(e, 'terminate', account_id)

        return result

    def authenticate(self, account_selector: Any) -> str:
        """Establish and store a new session for an account.

        Args:
            account_selector: Provider-specific account selector (role ARN, tenant id)

        Returns:
            The account id the session is stored under

        Raises:
            AuthenticationError: If authentication fails; nothing is stored in that case
        """
        stored = self._acquire_credential(account_selector)

        try:
            self.credential_store.store_credential(stored)
        except StateError as e:
            raise AuthenticationError(
                f"Authenticated {self.provider.value} account {stored.account_id} but could not store the credential",
                details=str(e)
            )

        self.session_cache.put(ProviderSession.from_stored(stored))
        logger.info(f"Authenticated {self.provider.value} account {stored.account_id}")
        return stored.account_id

    def discover_instances(self, account_id: str, scope: str) -> List[InstanceRef]:
        """List every instance of the account in one region or subscription."""
        session = self._require_session(account_id)
        try:
            return self._discover(session, scope)
        except Exception as e:
            self._handle_provider_error(e, f'discovery in {scope}', account_id)

    # Provider specifics

    @abstractmethod
    def refresh_credential(self, stored: StoredCredential) -> StoredCredential:
        """Obtain fresh material for an expired credential. Raises on failure."""
        pass

    @abstractmethod
    def discovery_scopes(self, account_id: str) -> List[str]:
        """Regions or subscriptions fleet discovery should query for the account."""
        pass

    @abstractmethod
    def _acquire_credential(self, account_selector: Any) -> StoredCredential:
        pass

    @abstractmethod
    def _describe(
        self, session: ProviderSession, instance_ids: List[str], region: Optional[str]
    ) -> Dict[str, InstanceRef]:
        """Return observed refs keyed by instance id; absent ids are simply missing."""
        pass

    @abstractmethod
    def _discover(self, session: ProviderSession, scope: str) -> List[InstanceRef]:
        pass

    @abstractmethod
    def _stop_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        pass

    @abstractmethod
    def _start_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        pass

    @abstractmethod
    def _terminate_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        pass

    @abstractmethod
    def _classify_error(self, error: Exception) -> type:
        """Map a provider SDK exception onto the error taxonomy."""
        pass

    # Helpers

    def _require_session(self, account_id: str) -> ProviderSession:
        session = self.session_cache.get_session(account_id)
        if session is None:
            raise AuthenticationError(
                f"No {self.provider.value} session for account {account_id}. Please authenticate first."
            )
        return session

    def _list_with_session(
        self, session: ProviderSession, instance_ids: Sequence[str], region: Optional[str] = None
    ) -> List[InstanceRef]:
        unique_ids = list(dict.fromkeys(instance_ids))
        if not unique_ids:
            return []

        try:
            observed = self._describe(session, unique_ids, region)
        except Exception as e:
            self._handle_provider_error(e, 'describe', session.account_id)

        return [
            observed.get(instance_id) or InstanceRef(
                provider=self.provider,
                account_id=session.account_id,
                instance_id=instance_id,
                state=InstanceState.UNKNOWN,
                region=region or session.region
            )
            for instance_id in unique_ids
        ]

    def _handle_provider_error(self, error: Exception, operation: str, account_id: str) -> None:
        """Convert a provider error into the taxonomy and raise it.

        Raises:
            CloudDowntimeError: Always, the subclass chosen by _classify_error
        """
        if isinstance(error, CloudDowntimeError):
            raise error

        error_class = self._classify_error(error)
        if error_class is AuthenticationError:
            self.session_cache.invalidate(account_id)
        if not issubclass(error_class, CloudDowntimeError):
            error_class = TransientProviderError

        raise error_class(
            f"{self.provider.value} {operation} failed for account {account_id}: {error}",
            details=str(error)
        ) from error
