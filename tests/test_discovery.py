"""Tests for fleet discovery and enrichment."""

from cloud_downtime.services.discovery import NO_SCHEDULE, FleetDiscovery
from cloud_downtime.services.models import GroupMember, InstanceState, Provider
from conftest import AWS_ACCOUNT, AZURE_TENANT, OTHER_AWS_ACCOUNT


def discovery_for(world):
    return FleetDiscovery(world.adapters, world.membership_store, world.downtime_store, max_workers=4)


class TestFleetDiscovery:

    def test_instances_are_enriched(self, world):
        world.login(Provider.AWS, AWS_ACCOUNT)
        world.add_group("nightly", GroupMember(Provider.AWS, AWS_ACCOUNT, "i-1"))
        world.downtime_store.upsert_window("nightly", "2024-01-05T23:00:00Z", "2024-01-06T06:00:00Z")
        world.adapters[Provider.AWS].states["i-loose"] = InstanceState.STOPPED

        fleet = discovery_for(world).discover({Provider.AWS: [AWS_ACCOUNT]})

        by_id = {item.instance.instance_id: item for item in fleet}
        assert by_id["i-1"].group_name == "nightly"
        assert by_id["i-1"].schedule == "2024-01-05T23:00:00Z - 2024-01-06T06:00:00Z"
        assert by_id["i-loose"].group_name is None
        assert by_id["i-loose"].schedule == NO_SCHEDULE

    def test_group_without_window(self, world):
        world.login(Provider.AWS, AWS_ACCOUNT)
        world.add_group("adhoc", GroupMember(Provider.AWS, AWS_ACCOUNT, "i-1"))

        fleet = discovery_for(world).discover({Provider.AWS: [AWS_ACCOUNT]})

        assert [(item.group_name, item.schedule) for item in fleet] == [("adhoc", NO_SCHEDULE)]

    def test_failing_account_is_omitted(self, world):
        world.login(Provider.AWS, AWS_ACCOUNT)
        world.login(Provider.AWS, OTHER_AWS_ACCOUNT)
        adapter = world.adapters[Provider.AWS]
        adapter.states["i-1"] = InstanceState.RUNNING
        adapter.failures[OTHER_AWS_ACCOUNT] = RuntimeError("throttled")

        fleet = discovery_for(world).discover({Provider.AWS: [AWS_ACCOUNT, OTHER_AWS_ACCOUNT]})

        assert [item.instance.account_id for item in fleet] == [AWS_ACCOUNT]

    def test_account_without_session_is_omitted(self, world):
        world.adapters[Provider.AZURE].states["vm-1"] = InstanceState.RUNNING

        assert discovery_for(world).discover({Provider.AZURE: [AZURE_TENANT]}) == []

    def test_missing_adapter(self, world):
        discovery = FleetDiscovery({}, world.membership_store, world.downtime_store)

        assert discovery.discover({Provider.AWS: [AWS_ACCOUNT]}) == []
