"""Azure Resource Manager token acquisition."""

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Sequence

from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import DefaultAzureCredential

from ..core.exceptions import AuthenticationError
from ..services.models import Provider, StoredCredential


logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"

TENANT_PATTERN = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')


class StaticTokenCredential:
    """TokenCredential over a token that was obtained earlier.

    Lets management clients run on a cached session without going back to
    the identity provider on every call.
    """

    def __init__(self, token: str, expires_on: int):
        self._token = AccessToken(token, expires_on)

    def get_token(self, *scopes, **kwargs) -> AccessToken:
        return self._token


class AzureTokenAuthenticator:
    """Obtains ARM access tokens for a tenant through DefaultAzureCredential."""

    def __init__(self, subscription_ids: Sequence[str] = (), credential=None):
        """Initialize the authenticator.

        Args:
            subscription_ids: Subscriptions recorded on new credentials
            credential: Optional azure-identity credential, defaults to DefaultAzureCredential
        """
        self.subscription_ids = tuple(subscription_ids)
        self._credential = credential

    @property
    def credential(self):
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        return self._credential

    def acquire_token(self, tenant_id: str, subscription_ids: Optional[Sequence[str]] = None) -> StoredCredential:
        """Get an ARM token for the tenant and package it as a stored credential.

        Raises:
            AuthenticationError: If the tenant id is invalid or no token can be obtained
        """
        if not tenant_id or not TENANT_PATTERN.match(tenant_id):
            raise AuthenticationError(f"Invalid Azure tenant id: {tenant_id}")

        subscriptions = tuple(subscription_ids) if subscription_ids is not None else self.subscription_ids
        if not subscriptions:
            raise AuthenticationError(
                "No Azure subscriptions configured. Add subscription ids to azure_subscriptions in the configuration."
            )

        try:
            logger.info(f"Requesting Azure management token for tenant {tenant_id}")
            token = self.credential.get_token(ARM_SCOPE, tenant_id=tenant_id)
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Azure login failed for tenant {tenant_id}", details=str(e))
        except AzureError as e:
            raise AuthenticationError(f"Azure identity error for tenant {tenant_id}: {e}", details=str(e))

        logger.info(f"Obtained Azure token for tenant {tenant_id}")
        return StoredCredential(
            provider=Provider.AZURE,
            account_id=tenant_id,
            material={'access_token': token.token, 'expires_on': str(token.expires_on)},
            expires_at=datetime.fromtimestamp(token.expires_on, tz=timezone.utc),
            subscription_ids=subscriptions
        )

    def refresh(self, stored: StoredCredential) -> StoredCredential:
        """Acquire a new token for an expired credential's tenant and subscriptions."""
        return self.acquire_token(stored.account_id, stored.subscription_ids)
