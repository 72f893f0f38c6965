"""Explicit construction of stores, session caches, adapters and the reconciler."""

from datetime import timedelta
from typing import Dict, Mapping, Optional

from cloud_downtime.auth.aws_auth import AWSRoleAuthenticator
from cloud_downtime.auth.azure_auth import AzureTokenAuthenticator
from cloud_downtime.auth.session_cache import ProviderSessionCache
from cloud_downtime.core.config import Config, ConfigManager
from cloud_downtime.scheduler.reconciler import DowntimeReconciler
from cloud_downtime.scheduler.runner import DowntimeScheduler
from cloud_downtime.services.aws import AWSProviderAdapter
from cloud_downtime.services.azure import AzureProviderAdapter
from cloud_downtime.services.base import BaseProviderAdapter
from cloud_downtime.services.discovery import FleetDiscovery
from cloud_downtime.services.models import Provider
from cloud_downtime.state.file_store import (
    FileCredentialStore, FileDowntimeStore, FileMembershipStore
)
from cloud_downtime.state.tracker import GroupStateTracker


class Runtime:
    """Owns every long-lived component of one process."""

    def __init__(
        self,
        config_manager: ConfigManager,
        config: Optional[Config] = None,
        adapters: Optional[Mapping[Provider, BaseProviderAdapter]] = None
    ):
        """Build stores and adapters from configuration.

        Args:
            config_manager: Configuration manager, also locates the data directory
            config: Configuration to use instead of the saved one
            adapters: Pre-built adapters, mainly for tests
        """
        self.config_manager = config_manager
        self.config = config or config_manager.load_or_default()

        data_dir = config_manager.get_data_dir(self.config)
        self.membership_store = FileMembershipStore(data_dir)
        self.downtime_store = FileDowntimeStore(data_dir, self.membership_store)
        self.credential_store = FileCredentialStore(data_dir)
        self.tracker = GroupStateTracker()

        self.adapters: Dict[Provider, BaseProviderAdapter] = dict(adapters) if adapters else self._build_adapters()

        self._reconciler: Optional[DowntimeReconciler] = None
        self._scheduler: Optional[DowntimeScheduler] = None

    def _build_adapters(self) -> Dict[Provider, BaseProviderAdapter]:
        margin = timedelta(seconds=self.config.session_expiry_margin_seconds)

        aws_adapter = AWSProviderAdapter(
            ProviderSessionCache(Provider.AWS, self.credential_store, expiry_margin=margin),
            self.credential_store,
            authenticator=AWSRoleAuthenticator(
                default_region=self.config.default_aws_region,
                duration_seconds=self.config.aws_session_duration_seconds
            ),
            regions=self.config.aws_regions
        )
        azure_adapter = AzureProviderAdapter(
            ProviderSessionCache(Provider.AZURE, self.credential_store, expiry_margin=margin),
            self.credential_store,
            authenticator=AzureTokenAuthenticator(subscription_ids=self.config.azure_subscriptions)
        )
        return {Provider.AWS: aws_adapter, Provider.AZURE: azure_adapter}

    @property
    def reconciler(self) -> DowntimeReconciler:
        if self._reconciler is None:
            self._reconciler = DowntimeReconciler(
                self.adapters,
                self.downtime_store,
                self.membership_store,
                tracker=self.tracker,
                max_workers=self.config.dispatch_workers,
                call_timeout=self.config.provider_call_timeout_seconds
            )
        return self._reconciler

    @property
    def scheduler(self) -> DowntimeScheduler:
        if self._scheduler is None:
            self._scheduler = DowntimeScheduler(self.reconciler, self.config.tick_interval_seconds)
        return self._scheduler

    def discovery(self) -> FleetDiscovery:
        return FleetDiscovery(
            self.adapters,
            self.membership_store,
            self.downtime_store,
            max_workers=self.config.discovery_workers
        )

    def known_accounts(self) -> Dict[Provider, list]:
        return {provider: self.credential_store.list_accounts(provider) for provider in self.adapters}

    def close(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop(timeout=5)
        if self._reconciler is not None:
            self._reconciler.close()
