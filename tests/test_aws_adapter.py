"""Tests for the AWS adapter and STS role authentication against moto."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from cloud_downtime.auth.aws_auth import (
    AWSRoleAuthenticator, create_cloudformation_template, extract_account_id
)
from cloud_downtime.auth.session_cache import ProviderSessionCache
from cloud_downtime.core.exceptions import (
    AuthenticationError, AuthorizationError, TransientProviderError, ValidationError
)
from cloud_downtime.scheduler.reconciler import DowntimeReconciler
from cloud_downtime.services.aws import AWSProviderAdapter
from cloud_downtime.services.models import (
    DesiredState, GroupMember, InstanceState, Provider, StoredCredential, parse_timestamp
)
from cloud_downtime.state.file_store import (
    FileCredentialStore, FileDowntimeStore, FileMembershipStore
)
from conftest import AWS_ACCOUNT


REGION = "us-east-2"
ROLE_ARN = f"arn:aws:iam::{AWS_ACCOUNT}:role/AllowExternalEC2Management"


def client_error(code, operation="StopInstances"):
    return ClientError({'Error': {'Code': code, 'Message': f'{code} message'}}, operation)


@pytest.fixture
def credential_store(tmp_path):
    store = FileCredentialStore(tmp_path)
    store.store_credential(StoredCredential(
        provider=Provider.AWS,
        account_id=AWS_ACCOUNT,
        material={
            'access_key_id': 'testing',
            'secret_access_key': 'testing',
            'session_token': 'testing',
            'role_arn': ROLE_ARN
        },
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        region=REGION
    ))
    return store


@pytest.fixture
def adapter(credential_store):
    cache = ProviderSessionCache(Provider.AWS, credential_store)
    return AWSProviderAdapter(cache, credential_store, regions=[REGION, "us-west-1"])


@pytest.fixture
def ec2(aws_credentials):
    with mock_aws():
        yield boto3.client('ec2', region_name=REGION)


def launch(client, count):
    image_id = client.describe_images()['Images'][0]['ImageId']
    response = client.run_instances(ImageId=image_id, MinCount=count, MaxCount=count, InstanceType='t3.micro')
    return [instance['InstanceId'] for instance in response['Instances']]


def state_of(client, instance_id):
    response = client.describe_instances(InstanceIds=[instance_id])
    return response['Reservations'][0]['Instances'][0]['State']['Name']


class TestListInstances:

    def test_reports_states_and_unknown_ids(self, ec2, adapter):
        running, stopped = launch(ec2, 2)
        ec2.stop_instances(InstanceIds=[stopped])

        refs = adapter.list_instances(AWS_ACCOUNT, [running, stopped, "i-0123456789abcdef0", running])

        assert [ref.instance_id for ref in refs] == [running, stopped, "i-0123456789abcdef0"]
        assert [ref.state for ref in refs] == [InstanceState.RUNNING, InstanceState.STOPPED, InstanceState.UNKNOWN]
        assert refs[0].metadata['instance_type'] == 't3.micro'

    def test_without_session(self, ec2, tmp_path):
        store = FileCredentialStore(tmp_path / "empty")
        adapter = AWSProviderAdapter(ProviderSessionCache(Provider.AWS, store), store)

        with pytest.raises(AuthenticationError):
            adapter.list_instances(AWS_ACCOUNT, ["i-0123456789abcdef0"])


class TestApplyDesiredState:

    def test_stop_acts_on_running_only(self, ec2, adapter):
        running, stopped = launch(ec2, 2)
        ec2.stop_instances(InstanceIds=[stopped])

        result = adapter.apply_desired_state(AWS_ACCOUNT, [running, stopped], DesiredState.STOPPED)

        assert result.acted_on == [running]
        assert result.skipped == {stopped: InstanceState.STOPPED}
        assert state_of(ec2, running) == 'stopped'

    def test_repeated_stop_is_a_noop(self, ec2, adapter):
        instance_ids = launch(ec2, 2)

        first = adapter.apply_desired_state(AWS_ACCOUNT, instance_ids, DesiredState.STOPPED)
        second = adapter.apply_desired_state(AWS_ACCOUNT, instance_ids, DesiredState.STOPPED)

        assert sorted(first.acted_on) == sorted(instance_ids)
        assert second.is_noop

    def test_start_acts_on_stopped_only(self, ec2, adapter):
        running, stopped = launch(ec2, 2)
        ec2.stop_instances(InstanceIds=[stopped])

        result = adapter.apply_desired_state(AWS_ACCOUNT, [running, stopped], DesiredState.STARTED)

        assert result.acted_on == [stopped]
        assert state_of(ec2, stopped) in ('pending', 'running')

    def test_terminated_instances_are_left_alone(self, ec2, adapter):
        alive, dead = launch(ec2, 2)
        ec2.terminate_instances(InstanceIds=[dead])

        result = adapter.apply_desired_state(AWS_ACCOUNT, [alive, dead], DesiredState.STOPPED)

        assert result.acted_on == [alive]
        assert result.skipped == {dead: InstanceState.TERMINATED}

    def test_terminate(self, ec2, adapter):
        instance_ids = launch(ec2, 2)

        result = adapter.terminate_instances(AWS_ACCOUNT, instance_ids + ["i-0123456789abcdef0"])

        assert sorted(result.acted_on) == sorted(instance_ids)
        assert result.skipped == {"i-0123456789abcdef0": InstanceState.UNKNOWN}


class TestErrorClassification:

    @pytest.mark.parametrize("code,expected", [
        ("UnauthorizedOperation", AuthorizationError),
        ("AccessDenied", AuthorizationError),
        ("ExpiredToken", AuthenticationError),
        ("RequestExpired", AuthenticationError),
        ("RequestLimitExceeded", TransientProviderError),
        ("InternalError", TransientProviderError),
    ])
    def test_client_errors(self, adapter, code, expected):
        assert adapter._classify_error(client_error(code)) is expected

    def test_connection_errors_are_transient(self, adapter):
        error = EndpointConnectionError(endpoint_url="https://ec2.us-east-2.amazonaws.com")
        assert adapter._classify_error(error) is TransientProviderError

    def test_expired_token_drops_cached_session(self, adapter):
        ec2_client = Mock()
        ec2_client.get_paginator.return_value.paginate.side_effect = client_error("ExpiredToken", "DescribeInstances")

        with patch.object(adapter, '_client', return_value=ec2_client):
            with pytest.raises(AuthenticationError) as exc_info:
                adapter.apply_desired_state(AWS_ACCOUNT, ["i-0123456789abcdef0"], DesiredState.STOPPED)

        assert isinstance(exc_info.value.__cause__, ClientError)
        assert AWS_ACCOUNT not in adapter.session_cache._sessions

    def test_rejected_stop(self, adapter):
        ec2_client = Mock()
        ec2_client.get_paginator.return_value.paginate.return_value = [{
            'Reservations': [{'Instances': [{'InstanceId': 'i-1', 'State': {'Name': 'running'}}]}]
        }]
        ec2_client.stop_instances.side_effect = client_error("UnauthorizedOperation")

        with patch.object(adapter, '_client', return_value=ec2_client):
            with pytest.raises(AuthorizationError):
                adapter.apply_desired_state(AWS_ACCOUNT, ["i-1"], DesiredState.STOPPED)


class TestRegions:
    """Instances outside the session's region are addressed in their own region."""

    def test_apply_in_member_region(self, aws_credentials, adapter):
        with mock_aws():
            west = boto3.client('ec2', region_name="us-west-2")
            instance_id, = launch(west, 1)

            unseen = adapter.list_instances(AWS_ACCOUNT, [instance_id])
            result = adapter.apply_desired_state(AWS_ACCOUNT, [instance_id], DesiredState.STOPPED, region="us-west-2")

            assert unseen[0].state is InstanceState.UNKNOWN
            assert result.acted_on == [instance_id]
            assert state_of(west, instance_id) == 'stopped'

    def test_tick_stops_member_in_other_region(self, aws_credentials, adapter, tmp_path):
        groups = FileMembershipStore(tmp_path)
        downtimes = FileDowntimeStore(tmp_path, groups)
        clock = lambda: parse_timestamp("2024-01-05T23:00:00Z")

        with mock_aws():
            west = boto3.client('ec2', region_name="us-west-2")
            instance_id, = launch(west, 1)
            groups.create_group("nightly", [GroupMember(Provider.AWS, AWS_ACCOUNT, instance_id, "us-west-2")])
            downtimes.upsert_window("nightly", "2024-01-05T22:00:00Z", "2024-01-06T06:00:00Z")

            reconciler = DowntimeReconciler({Provider.AWS: adapter}, downtimes, groups, clock=clock)
            try:
                reconciler.tick()
            finally:
                reconciler.close()

            assert state_of(west, instance_id) == 'stopped'

        assert reconciler.last_report.applied == {"nightly": DesiredState.STOPPED}
        assert groups.get_members("nightly")[Provider.AWS][0].region == "us-west-2"

    def test_change_region(self, aws_credentials, adapter, credential_store):
        with mock_aws():
            west = boto3.client('ec2', region_name="us-west-2")
            instance_id, = launch(west, 1)
            adapter.session_cache.get_session(AWS_ACCOUNT)

            adapter.change_region(AWS_ACCOUNT, "us-west-2")
            refs = adapter.list_instances(AWS_ACCOUNT, [instance_id])

        assert refs[0].state is InstanceState.RUNNING
        assert refs[0].region == "us-west-2"
        assert credential_store.load_credential(Provider.AWS, AWS_ACCOUNT).region == "us-west-2"

    def test_change_region_rejects_bad_region(self, adapter):
        with pytest.raises(ValidationError):
            adapter.change_region(AWS_ACCOUNT, "mars")

    def test_change_region_without_session(self, tmp_path):
        store = FileCredentialStore(tmp_path / "empty")
        adapter = AWSProviderAdapter(ProviderSessionCache(Provider.AWS, store), store)

        with pytest.raises(AuthenticationError):
            adapter.change_region(AWS_ACCOUNT, "us-west-2")


class TestDiscovery:

    def test_discover_per_region(self, aws_credentials, adapter):
        with mock_aws():
            east = boto3.client('ec2', region_name=REGION)
            west = boto3.client('ec2', region_name="us-west-1")
            east_ids = launch(east, 2)
            west_ids = launch(west, 1)

            assert adapter.discovery_scopes(AWS_ACCOUNT) == [REGION, "us-west-1"]
            found_east = adapter.discover_instances(AWS_ACCOUNT, REGION)
            found_west = adapter.discover_instances(AWS_ACCOUNT, "us-west-1")

        assert sorted(ref.instance_id for ref in found_east) == sorted(east_ids)
        assert [ref.instance_id for ref in found_west] == west_ids
        assert all(ref.region == "us-west-1" for ref in found_west)


class TestRoleAuthentication:

    def test_extract_account_id(self):
        assert extract_account_id(ROLE_ARN) == AWS_ACCOUNT

    @pytest.mark.parametrize("role_arn", [
        "",
        "not-an-arn",
        "arn:aws:iam::12345:role/Short",
        f"arn:aws:iam::{AWS_ACCOUNT}:user/someone",
    ])
    def test_invalid_role_arn(self, role_arn):
        with pytest.raises(AuthenticationError):
            extract_account_id(role_arn)

    def test_authenticate_stores_session(self, aws_credentials, tmp_path):
        store = FileCredentialStore(tmp_path)
        adapter = AWSProviderAdapter(ProviderSessionCache(Provider.AWS, store), store)

        with mock_aws():
            account_id = adapter.authenticate(ROLE_ARN)

        assert account_id == AWS_ACCOUNT
        stored = store.load_credential(Provider.AWS, AWS_ACCOUNT)
        assert stored.material['role_arn'] == ROLE_ARN
        assert stored.region == "us-east-2"
        assert stored.expires_at > datetime.now(timezone.utc)
        assert adapter.session_cache.get_session(AWS_ACCOUNT).credentials['access_key_id'] == stored.material['access_key_id']

    def test_failed_authentication_stores_nothing(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        adapter = AWSProviderAdapter(ProviderSessionCache(Provider.AWS, store), store)

        with patch('cloud_downtime.auth.aws_auth.boto3.client') as mock_client:
            mock_client.return_value.assume_role.side_effect = client_error("AccessDenied", "AssumeRole")
            with pytest.raises(AuthenticationError) as exc_info:
                adapter.authenticate(ROLE_ARN)

        assert "Access denied" in str(exc_info.value)
        assert store.list_accounts(Provider.AWS) == []

    def test_refresh_reassumes_recorded_role(self, aws_credentials, credential_store):
        authenticator = AWSRoleAuthenticator(duration_seconds=900)
        stored = credential_store.load_credential(Provider.AWS, AWS_ACCOUNT)

        with mock_aws():
            refreshed = authenticator.refresh(stored)

        assert refreshed.account_id == AWS_ACCOUNT
        assert refreshed.region == REGION
        assert refreshed.material['role_arn'] == ROLE_ARN

    def test_refresh_without_role_arn(self):
        stored = StoredCredential(
            provider=Provider.AWS,
            account_id=AWS_ACCOUNT,
            material={'access_key_id': 'a', 'secret_access_key': 'b'},
            expires_at=datetime.now(timezone.utc)
        )
        with pytest.raises(AuthenticationError):
            AWSRoleAuthenticator().refresh(stored)

    def test_cloudformation_template(self):
        template = create_cloudformation_template("arn:aws:iam::999999999999:user/scheduler")

        assert "RoleName: AllowExternalEC2Management" in template
        assert "AWS: 'arn:aws:iam::999999999999:user/scheduler'" in template
        assert "ec2:StopInstances" in template
        assert "ec2:StartInstances" in template
