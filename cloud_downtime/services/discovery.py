"""
Fleet-wide instance discovery across regions and subscriptions.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Mapping, Optional, Sequence
import logging

from .base import BaseProviderAdapter
from .models import FleetInstance, InstanceRef, Provider
from ..state.stores import DowntimeStore, MembershipStore


logger = logging.getLogger(__name__)

NO_SCHEDULE = "N/A"


class FleetDiscovery:
    """Lists every instance an operator can see, annotated with group and schedule.

    Read-only: nothing here feeds the reconciler.
    """

    def __init__(
        self,
        adapters: Mapping[Provider, BaseProviderAdapter],
        membership_store: MembershipStore,
        downtime_store: DowntimeStore,
        max_workers: int = 10
    ):
        self.adapters = dict(adapters)
        self.membership_store = membership_store
        self.downtime_store = downtime_store
        self.max_workers = max_workers

    def discover(self, accounts: Mapping[Provider, Sequence[str]]) -> List[FleetInstance]:
        """Query all scopes of the given accounts concurrently and enrich the results.

        Args:
            accounts: Account ids to scan, per provider

        Returns:
            Flattened list of enriched instances. Scopes that fail are logged and omitted.
        """
        instances = self.discover_raw(accounts)
        return self.enrich(instances)

    def discover_raw(self, accounts: Mapping[Provider, Sequence[str]]) -> List[InstanceRef]:
        all_instances: List[InstanceRef] = []
        discovery_errors = []

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_context = {}

            for provider, account_ids in accounts.items():
                adapter = self.adapters.get(provider)
                if adapter is None:
                    discovery_errors.append(f"No adapter configured for {provider.value}")
                    continue

                for account_id in account_ids:
                    try:
                        scopes = adapter.discovery_scopes(account_id)
                    except Exception as e:
                        discovery_errors.append(f"Failed to list scopes for {provider.value} account {account_id}: {e}")
                        continue

                    for scope in scopes:
                        future = executor.submit(adapter.discover_instances, account_id, scope)
                        future_to_context[future] = (provider, account_id, scope)

            for future in as_completed(future_to_context):
                provider, account_id, scope = future_to_context[future]
                try:
                    found = future.result()
                    all_instances.extend(found)
                    logger.info(f"Discovered {len(found)} {provider.value} instances for {account_id} in {scope}")
                except Exception as e:
                    error_msg = f"Discovery failed for {provider.value} account {account_id} in {scope}: {e}"
                    discovery_errors.append(error_msg)
                    logger.error(error_msg)

        logger.info(f"Discovery complete: {len(all_instances)} total instances found")
        if discovery_errors:
            logger.warning(f"Discovery errors: {len(discovery_errors)} scopes failed")
            for error in discovery_errors:
                logger.warning(f"  - {error}")

        return all_instances

    def enrich(self, instances: Sequence[InstanceRef]) -> List[FleetInstance]:
        """Attach group name and schedule to each instance."""
        schedules: Dict[str, str] = {}
        enriched = []

        for instance in instances:
            group_name = self._group_for(instance)
            if group_name is None:
                schedule = NO_SCHEDULE
            else:
                if group_name not in schedules:
                    schedules[group_name] = self._schedule_for(group_name)
                schedule = schedules[group_name]

            enriched.append(FleetInstance(instance=instance, group_name=group_name, schedule=schedule))

        return enriched

    def _group_for(self, instance: InstanceRef) -> Optional[str]:
        try:
            return self.membership_store.get_group_for_instance(instance.provider, instance.instance_id)
        except Exception as e:
            logger.warning(f"Could not resolve group for {instance.instance_id}: {e}")
            return None

    def _schedule_for(self, group_name: str) -> str:
        try:
            window = self.downtime_store.get_window(group_name)
        except Exception as e:
            logger.warning(f"Could not load downtime for group '{group_name}': {e}")
            return NO_SCHEDULE
        return window.describe() if window else NO_SCHEDULE
