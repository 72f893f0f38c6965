"""
Store interfaces consumed by the reconciler, the session cache and discovery.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..services.models import DowntimeWindow, GroupMember, Provider, StoredCredential


class DowntimeStore(ABC):
    """Persists one downtime window per group."""

    @abstractmethod
    def get_all_windows(self) -> List[DowntimeWindow]:
        """Return every stored window, malformed ones included."""
        pass

    @abstractmethod
    def get_window(self, group_name: str) -> Optional[DowntimeWindow]:
        pass

    @abstractmethod
    def upsert_window(self, group_name: str, start: str, end: str) -> DowntimeWindow:
        """Create or replace the window for a group.

        Raises:
            NotFoundError: If the group does not exist
            ValidationError: If the window is malformed
        """
        pass

    @abstractmethod
    def delete_window(self, group_name: str) -> bool:
        """Remove a group's window. Returns False if there was none."""
        pass


class MembershipStore(ABC):
    """Read side of the group-management workflow."""

    @abstractmethod
    def get_members(self, group_name: str) -> Dict[Provider, List[GroupMember]]:
        """Return a group's members keyed by provider.

        Raises:
            NotFoundError: If the group does not exist
        """
        pass

    @abstractmethod
    def get_group_for_instance(self, provider: Provider, instance_id: str) -> Optional[str]:
        pass


class CredentialStore(ABC):
    """Persists provider credential material per account."""

    @abstractmethod
    def load_credential(self, provider: Provider, account_id: str) -> Optional[StoredCredential]:
        pass

    @abstractmethod
    def store_credential(self, credential: StoredCredential) -> None:
        """Create or replace the credential for ``(credential.provider, credential.account_id)``.

        Raises:
            StateError: If the credential cannot be persisted
        """
        pass

    @abstractmethod
    def list_accounts(self, provider: Provider) -> List[str]:
        pass
