"""
JSON file backed implementations of the group, window and credential stores.
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .stores import CredentialStore, DowntimeStore, MembershipStore
from ..core.exceptions import NotFoundError, StateError, ValidationError
from ..services.models import (
    DowntimeWindow, GroupMember, Provider, StoredCredential, parse_timestamp
)

logger = logging.getLogger(__name__)


class JsonDocument:
    """A single JSON document on disk, read whole and written atomically."""

    def __init__(self, path: Path, file_mode: Optional[int] = None):
        self.path = path
        self.file_mode = file_mode
        self.lock = threading.RLock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> Dict[str, Any]:
        """Load the document, an absent file reads as empty.

        Raises:
            StateError: If the file is corrupted
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self.path} corrupted: {e}")
        except OSError as e:
            raise StateError(f"Failed to read {self.path}: {e}")

    def write(self, data: Dict[str, Any]) -> None:
        """Replace the document atomically via a temp file.

        Raises:
            StateError: If writing fails
        """
        temp_file = self.path.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            if self.file_mode is not None:
                os.chmod(temp_file, self.file_mode)

            temp_file.replace(self.path)

        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StateError(f"Failed to write {self.path}: {e}")


class FileMembershipStore(MembershipStore):
    """Groups and their members, stored in ``groups.json``.

    Layout::

        {"nightly": {"aws": [{"account_id": "...", "instance_id": "i-...", "region": "us-west-2"}],
                     "azure": [...]}}
    """

    def __init__(self, data_dir: Path):
        self.document = JsonDocument(data_dir / "groups.json")

    def get_members(self, group_name: str) -> Dict[Provider, List[GroupMember]]:
        with self.document.lock:
            groups = self.document.read()

        if group_name not in groups:
            raise NotFoundError(f"Group '{group_name}' does not exist")

        members: Dict[Provider, List[GroupMember]] = {}
        for provider_name, entries in groups[group_name].items():
            provider = Provider(provider_name)
            members[provider] = [
                GroupMember(provider, entry['account_id'], entry['instance_id'], entry.get('region'))
                for entry in entries
            ]
        return members

    def get_group_for_instance(self, provider: Provider, instance_id: str) -> Optional[str]:
        with self.document.lock:
            groups = self.document.read()

        for group_name, providers in groups.items():
            for entry in providers.get(provider.value, []):
                if entry['instance_id'] == instance_id:
                    return group_name
        return None

    def list_groups(self) -> List[str]:
        with self.document.lock:
            return sorted(self.document.read())

    def group_exists(self, group_name: str) -> bool:
        with self.document.lock:
            return group_name in self.document.read()

    def create_group(self, group_name: str, members: Iterable[GroupMember] = ()) -> None:
        """Create a group.

        Raises:
            ValidationError: If the name is empty, taken, or a member already belongs to another group
        """
        if not group_name or not group_name.strip():
            raise ValidationError("Group name is required")

        with self.document.lock:
            groups = self.document.read()
            if group_name in groups:
                raise ValidationError(f"Group '{group_name}' already exists")
            groups[group_name] = {}
            self._add(groups, group_name, members)
            self.document.write(groups)

        logger.info(f"Created group '{group_name}'")

    def add_members(self, group_name: str, members: Iterable[GroupMember]) -> None:
        with self.document.lock:
            groups = self.document.read()
            if group_name not in groups:
                raise NotFoundError(f"Group '{group_name}' does not exist")
            self._add(groups, group_name, members)
            self.document.write(groups)

    def remove_members(self, group_name: str, members: Iterable[GroupMember]) -> int:
        """Remove members from a group, returning how many were removed."""
        with self.document.lock:
            groups = self.document.read()
            if group_name not in groups:
                raise NotFoundError(f"Group '{group_name}' does not exist")

            removed = 0
            for member in members:
                entries = groups[group_name].get(member.provider.value, [])
                kept = [e for e in entries if e['instance_id'] != member.instance_id]
                removed += len(entries) - len(kept)
                groups[group_name][member.provider.value] = kept
            self.document.write(groups)

        return removed

    def delete_group(self, group_name: str) -> bool:
        with self.document.lock:
            groups = self.document.read()
            if group_name not in groups:
                return False
            del groups[group_name]
            self.document.write(groups)

        logger.info(f"Deleted group '{group_name}'")
        return True

    def _add(self, groups: Dict[str, Any], group_name: str, members: Iterable[GroupMember]) -> None:
        # An instance belongs to at most one group
        for member in members:
            owner = None
            for name, providers in groups.items():
                if any(e['instance_id'] == member.instance_id for e in providers.get(member.provider.value, [])):
                    owner = name
                    break

            if owner == group_name:
                continue
            if owner is not None:
                raise ValidationError(
                    f"Instance {member.instance_id} already belongs to group '{owner}'"
                )

            entry = {'account_id': member.account_id, 'instance_id': member.instance_id}
            if member.region:
                entry['region'] = member.region
            groups[group_name].setdefault(member.provider.value, []).append(entry)


class FileDowntimeStore(DowntimeStore):
    """Downtime windows stored in ``downtimes.json`` keyed by group name."""

    def __init__(self, data_dir: Path, membership_store: Optional[FileMembershipStore] = None):
        self.document = JsonDocument(data_dir / "downtimes.json")
        self.membership_store = membership_store

    def get_all_windows(self) -> List[DowntimeWindow]:
        with self.document.lock:
            data = self.document.read()

        return [self._to_window(group_name, entry) for group_name, entry in data.items()]

    def get_window(self, group_name: str) -> Optional[DowntimeWindow]:
        with self.document.lock:
            entry = self.document.read().get(group_name)

        if entry is None:
            return None
        return self._to_window(group_name, entry)

    def upsert_window(self, group_name: str, start: str, end: str) -> DowntimeWindow:
        if self.membership_store is not None and not self.membership_store.group_exists(group_name):
            raise NotFoundError(f"Group '{group_name}' does not exist")

        window = DowntimeWindow(group_name, start, end)
        window.parse()

        with self.document.lock:
            data = self.document.read()
            data[group_name] = {'start_time': start, 'end_time': end}
            self.document.write(data)

        logger.info(f"Downtime for group '{group_name}' set to {window.describe()}")
        return window

    def delete_window(self, group_name: str) -> bool:
        with self.document.lock:
            data = self.document.read()
            if group_name not in data:
                return False
            del data[group_name]
            self.document.write(data)

        logger.info(f"Removed downtime for group '{group_name}'")
        return True

    @staticmethod
    def _to_window(group_name: str, entry: Any) -> DowntimeWindow:
        # Records that are not objects keep no bounds and fail to parse later
        if not isinstance(entry, dict):
            return DowntimeWindow(group_name, None, None)
        return DowntimeWindow(group_name, entry.get('start_time'), entry.get('end_time'))


class FileCredentialStore(CredentialStore):
    """Credential material stored in ``credentials.json``, readable by the owner only."""

    def __init__(self, data_dir: Path):
        self.document = JsonDocument(data_dir / "credentials.json", file_mode=0o600)

    def load_credential(self, provider: Provider, account_id: str) -> Optional[StoredCredential]:
        with self.document.lock:
            entry = self.document.read().get(provider.value, {}).get(account_id)

        if entry is None:
            return None

        try:
            return self._deserialize(provider, account_id, entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable {provider.value} credential for {account_id}: {e}")
            return None

    def store_credential(self, credential: StoredCredential) -> None:
        with self.document.lock:
            data = self.document.read()
            data.setdefault(credential.provider.value, {})[credential.account_id] = self._serialize(credential)
            self.document.write(data)

        logger.debug(f"Stored {credential.provider.value} credential for {credential.account_id}")

    def list_accounts(self, provider: Provider) -> List[str]:
        with self.document.lock:
            return sorted(self.document.read().get(provider.value, {}))

    def _serialize(self, credential: StoredCredential) -> Dict[str, Any]:
        return {
            'material': credential.material,
            'expires_at': credential.expires_at.isoformat(),
            'region': credential.region,
            'subscription_ids': list(credential.subscription_ids),
            'last_updated': datetime.now(timezone.utc).isoformat()
        }

    def _deserialize(self, provider: Provider, account_id: str, entry: Dict[str, Any]) -> StoredCredential:
        return StoredCredential(
            provider=provider,
            account_id=account_id,
            material=dict(entry['material']),
            expires_at=parse_timestamp(entry['expires_at']),
            region=entry.get('region'),
            subscription_ids=tuple(entry.get('subscription_ids', ()))
        )
