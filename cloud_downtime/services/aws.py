"""
AWS adapter: EC2 instance state, start/stop and discovery through boto3.
"""
import dataclasses
import logging
import re
from typing import Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import ClientError

from .base import BaseProviderAdapter
from .models import InstanceRef, InstanceState, Provider, ProviderSession, StoredCredential
from ..auth.aws_auth import AWSRoleAuthenticator
from ..auth.session_cache import ProviderSessionCache
from ..core.config import DEFAULT_AWS_REGIONS, REGION_PATTERN
from ..core.exceptions import (
    AuthenticationError, AuthorizationError, TransientProviderError, ValidationError
)
from ..state.stores import CredentialStore


logger = logging.getLogger(__name__)

AUTHORIZATION_ERROR_CODES = {
    'UnauthorizedOperation', 'AccessDenied', 'AccessDeniedException', 'AuthFailure'
}
AUTHENTICATION_ERROR_CODES = {
    'ExpiredToken', 'ExpiredTokenException', 'RequestExpired', 'InvalidClientTokenId'
}

# EC2 accepts at most 200 values per filter
FILTER_CHUNK_SIZE = 200


class AWSProviderAdapter(BaseProviderAdapter):
    """Provider adapter for EC2 instances."""

    def __init__(
        self,
        session_cache: ProviderSessionCache,
        credential_store: CredentialStore,
        authenticator: Optional[AWSRoleAuthenticator] = None,
        regions: Optional[Sequence[str]] = None
    ):
        """Initialize the AWS adapter.

        Args:
            session_cache: AWS session cache
            credential_store: Store assumed-role credentials are written to
            authenticator: STS role authenticator, a default one is created if omitted
            regions: Regions scanned by fleet discovery
        """
        self.authenticator = authenticator or AWSRoleAuthenticator()
        self.regions = list(regions or DEFAULT_AWS_REGIONS)
        super().__init__(session_cache, credential_store)

    @property
    def provider(self) -> Provider:
        return Provider.AWS

    def refresh_credential(self, stored: StoredCredential) -> StoredCredential:
        return self.authenticator.refresh(stored)

    def discovery_scopes(self, account_id: str) -> List[str]:
        return list(self.regions)

    def change_region(self, account_id: str, region: str) -> StoredCredential:
        """Point an account's session at another region.

        Members without an explicit region, and new instance queries, use this region.

        Raises:
            ValidationError: If the region is malformed
            AuthenticationError: If the account has no stored credential
        """
        if not re.match(REGION_PATTERN, region or ''):
            raise ValidationError(f"Invalid AWS region format: {region}")

        stored = self.credential_store.load_credential(Provider.AWS, account_id)
        if stored is None:
            raise AuthenticationError(f"No AWS session for account {account_id}. Please authenticate first.")

        updated = dataclasses.replace(stored, region=region)
        self.credential_store.store_credential(updated)
        self.session_cache.invalidate(account_id)

        logger.info(f"AWS account {account_id} now uses region {region} (was {stored.region})")
        return updated

    def _acquire_credential(self, account_selector) -> StoredCredential:
        return self.authenticator.assume_role(account_selector)

    def _client(self, session: ProviderSession, region: Optional[str] = None):
        """EC2 client bound to the session's credentials, one per call."""
        boto_session = boto3.Session(
            aws_access_key_id=session.credentials['access_key_id'],
            aws_secret_access_key=session.credentials['secret_access_key'],
            aws_session_token=session.credentials.get('session_token'),
            region_name=region or session.region
        )
        return boto_session.client('ec2')

    def _describe(
        self, session: ProviderSession, instance_ids: List[str], region: Optional[str]
    ) -> Dict[str, InstanceRef]:
        region = region or session.region
        client = self._client(session, region)
        paginator = client.get_paginator('describe_instances')

        observed = {}
        # A filter, unlike InstanceIds, does not fail the whole call for unknown ids
        for offset in range(0, len(instance_ids), FILTER_CHUNK_SIZE):
            chunk = instance_ids[offset:offset + FILTER_CHUNK_SIZE]
            pages = paginator.paginate(Filters=[{'Name': 'instance-id', 'Values': chunk}])
            for page in pages:
                for reservation in page.get('Reservations', []):
                    for instance in reservation.get('Instances', []):
                        ref = self._to_ref(instance, session, region)
                        observed[ref.instance_id] = ref

        return observed

    def _discover(self, session: ProviderSession, scope: str) -> List[InstanceRef]:
        client = self._client(session, region=scope)
        paginator = client.get_paginator('describe_instances')

        instances = []
        for page in paginator.paginate():
            for reservation in page.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    instances.append(self._to_ref(instance, session, scope))
        return instances

    def _stop_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        self._client(session, region).stop_instances(InstanceIds=instance_ids)

    def _start_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        self._client(session, region).start_instances(InstanceIds=instance_ids)

    def _terminate_instances(self, session: ProviderSession, instance_ids: List[str], region: Optional[str]) -> None:
        self._client(session, region).terminate_instances(InstanceIds=instance_ids)

    def _classify_error(self, error: Exception) -> type:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in AUTHORIZATION_ERROR_CODES:
                return AuthorizationError
            if error_code in AUTHENTICATION_ERROR_CODES:
                return AuthenticationError
            return TransientProviderError
        # BotoCoreError covers connection failures and timeouts
        return TransientProviderError

    def _to_ref(self, instance: dict, session: ProviderSession, region: Optional[str]) -> InstanceRef:
        tags = {tag['Key']: tag['Value'] for tag in instance.get('Tags', [])}
        return InstanceRef(
            provider=Provider.AWS,
            account_id=session.account_id,
            instance_id=instance['InstanceId'],
            state=InstanceState.from_provider(instance.get('State', {}).get('Name')),
            region=region,
            metadata={
                'instance_type': instance.get('InstanceType', 'Unknown'),
                'name': tags.get('Name'),
                'launch_time': instance.get('LaunchTime'),
                'private_ip': instance.get('PrivateIpAddress'),
                'public_ip': instance.get('PublicIpAddress')
            }
        )
