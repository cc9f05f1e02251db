"""End-to-end reconcile and delete flows against the in-memory cloud."""

from __future__ import annotations

import pytest
from azure.mgmt.compute.models import AvailabilitySet
from azure.mgmt.compute.models import SubResource as ComputeSubResource
from azure.mgmt.network.models import (
    FrontendIPConfiguration,
    LoadBalancer,
    LoadBalancerSku,
    PublicIPAddress,
    PublicIPAddressSku,
    VirtualNetwork,
)
from azure.mgmt.resource.resources.models import ResourceGroup

from azure_mock import (
    CLUSTER,
    CREATE_OR_UPDATE,
    DELETE,
    SUBSCRIPTION_ID,
    MockClientFactory,
    MockClusterScaler,
    StateRecorder,
    make_cluster,
    make_config,
    make_infrastructure,
)
from infraflow.errors import TerminalConditionError
from infraflow.flow import FlowError, TaskState
from infraflow.identifiers import Kind, resource_group_id, resource_id, subnet_id
from infraflow.models import (
    AzureResource,
    InfrastructureState,
    NetworkLayout,
    OutboundAccessType,
)
from infraflow.reconciler import FlowContext, delete, reconcile

RG_ID = resource_group_id(SUBSCRIPTION_ID, CLUSTER)
AVSET_ID = resource_id(
    SUBSCRIPTION_ID, CLUSTER, Kind.AVAILABILITY_SET, f"{CLUSTER}-avset-workers"
)
LB_IP_ID = resource_id(SUBSCRIPTION_ID, CLUSTER, Kind.PUBLIC_IP, "lb-ip")

ZONED_NAT_NETWORKS = {
    "vnet": {"cidr": "10.0.0.0/8"},
    "zones": [
        {"name": 1, "cidr": "10.0.0.0/16", "natGateway": {"enabled": True}},
        {"name": 2, "cidr": "10.1.0.0/16", "natGateway": {"enabled": True}},
    ],
}


def nat_id(name: str) -> str:
    return resource_id(SUBSCRIPTION_ID, CLUSTER, Kind.NAT_GATEWAY, name)


def ip_id(name: str) -> str:
    return resource_id(SUBSCRIPTION_ID, CLUSTER, Kind.PUBLIC_IP, name)


class TestReconcileScenarios:
    """Reconciliation of typical cluster layouts."""

    @pytest.mark.asyncio
    async def test_single_subnet_without_nat(self) -> None:
        """Test a new cluster with a managed vnet and load balancer egress."""
        factory = MockClientFactory()
        infra = make_infrastructure({"workers": "10.0.0.0/16"})

        result = await reconcile(factory, infra, make_cluster(), make_config())

        assert result.success, result.error
        status = result.status
        assert [s.name for s in status.networks.subnets] == [f"{CLUSTER}-nodes"]
        assert status.networks.vnet.name == CLUSTER
        assert status.networks.vnet.resource_group is None
        assert status.networks.layout == NetworkLayout.SINGLE_SUBNET
        assert status.networks.outbound_access_type == OutboundAccessType.LOAD_BALANCER
        assert [rt.name for rt in status.route_tables] == ["worker_route_table"]
        assert [sg.name for sg in status.security_groups] == [f"{CLUSTER}-workers"]
        assert status.availability_sets == []
        assert status.resource_group.name == CLUSTER
        assert status.egress_cidrs == []
        assert not status.migrating_to_vmo
        nodes = subnet_id(SUBSCRIPTION_ID, CLUSTER, CLUSTER, f"{CLUSTER}-nodes")
        assert factory.cloud.exists(nodes)

    @pytest.mark.asyncio
    async def test_zonal_nat_with_user_ip(self) -> None:
        """Test a zone with a user IP behind its NAT gateway and a zone without NAT."""
        factory = MockClientFactory()
        factory.cloud.add(RG_ID, ResourceGroup(location="westeurope"))
        factory.cloud.add(ip_id("my-ip"), PublicIPAddress(location="westeurope"))
        networks = {
            "vnet": {"cidr": "10.0.0.0/8"},
            "zones": [
                {
                    "name": 1,
                    "cidr": "10.0.0.0/16",
                    "natGateway": {
                        "enabled": True,
                        "ipAddresses": [{"name": "my-ip", "resourceGroup": CLUSTER}],
                    },
                },
                {"name": 2, "cidr": "10.1.0.0/16"},
            ],
        }

        result = await reconcile(
            factory, make_infrastructure(networks), make_cluster(), make_config()
        )

        assert result.success, result.error
        cloud = factory.cloud
        nat = cloud.get(nat_id(f"{CLUSTER}-nat-gateway-z1"))
        assert [ref.id for ref in nat.public_ip_addresses] == [ip_id("my-ip")]
        assert cloud.ids(Kind.NAT_GATEWAY) == [nat_id(f"{CLUSTER}-nat-gateway-z1")]
        assert cloud.writes(Kind.PUBLIC_IP) == []
        z1 = cloud.get(subnet_id(SUBSCRIPTION_ID, CLUSTER, CLUSTER, f"{CLUSTER}-nodes-z1"))
        z2 = cloud.get(subnet_id(SUBSCRIPTION_ID, CLUSTER, CLUSTER, f"{CLUSTER}-nodes-z2"))
        assert z1.nat_gateway.id == nat.id
        assert z2.nat_gateway is None
        address = cloud.get(ip_id("my-ip")).ip_address
        assert result.status.egress_cidrs == [f"{address}/32"]
        assert result.status.networks.layout == NetworkLayout.MULTIPLE_SUBNET
        assert result.status.networks.outbound_access_type == OutboundAccessType.NAT_GATEWAY
        assert ip_id("my-ip") not in [item.id for item in result.state.managed_items]

    @pytest.mark.asyncio
    async def test_unneeded_public_ip_deleted(self) -> None:
        """Test that a leftover cluster IP is deleted without touching NAT gateways."""
        factory = MockClientFactory()
        old_ip = ip_id(f"{CLUSTER}-old-ip")
        factory.cloud.add(RG_ID, ResourceGroup(location="westeurope"))
        factory.cloud.add(old_ip, PublicIPAddress(location="westeurope"))
        state = InfrastructureState(
            managed_items=[AzureResource(kind=Kind.PUBLIC_IP.value, id=old_ip)]
        )

        result = await reconcile(
            factory, make_infrastructure(), make_cluster(), make_config(), state=state
        )

        assert result.success, result.error
        assert not factory.cloud.exists(old_ip)
        assert factory.cloud.writes(Kind.NAT_GATEWAY) == []
        assert old_ip not in [item.id for item in result.state.managed_items]

    @pytest.mark.asyncio
    async def test_user_vnet_missing(self) -> None:
        """Test that a missing user vnet fails the flow with a terminal error."""
        factory = MockClientFactory()
        infra = make_infrastructure(
            {
                "vnet": {"name": "existing-vnet", "resourceGroup": "existing-rg"},
                "workers": "10.0.0.0/24",
            }
        )

        result = await reconcile(factory, infra, make_cluster(), make_config())

        assert not result.success
        assert isinstance(result.error, FlowError)
        (cause,) = result.error.causes
        assert isinstance(cause, TerminalConditionError)
        assert cause.metadata.kind == Kind.VIRTUAL_NETWORK
        assert cause.metadata.name == "existing-vnet"
        assert str(cause.error) == "user vnet not found"
        assert result.flow.states["ensure subnets"] == TaskState.BLOCKED
        assert factory.cloud.writes(Kind.SUBNET) == []
        assert result.status is not None

    @pytest.mark.asyncio
    async def test_resume_after_partial_nat_create(self) -> None:
        """Test that a NAT gateway created before a failure is not written again."""
        factory = MockClientFactory()
        recorder = StateRecorder()
        infra = make_infrastructure(ZONED_NAT_NETWORKS)
        z1, z2 = nat_id(f"{CLUSTER}-nat-gateway-z1"), nat_id(f"{CLUSTER}-nat-gateway-z2")
        factory.cloud.fail(CREATE_OR_UPDATE, z2)

        first = await reconcile(factory, infra, make_cluster(), make_config(), persist=recorder)

        assert not first.success
        assert z1 in [item.id for item in recorder.last.managed_items]
        assert first.flow.states["ensure subnets"] == TaskState.BLOCKED

        factory.cloud.clear_failures()
        factory.cloud.clear_calls()
        second = await reconcile(
            factory, infra, make_cluster(), make_config(), state=recorder.last
        )

        assert second.success, second.error
        assert [(c.operation, c.resource_id) for c in factory.cloud.writes(Kind.NAT_GATEWAY)] == [
            (CREATE_OR_UPDATE, z2)
        ]
        assert factory.cloud.writes(Kind.PUBLIC_IP) == []

    @pytest.mark.asyncio
    async def test_identity_status(self) -> None:
        factory = MockClientFactory()
        identity = factory.cloud.add_identity("identity-rg", "workers", "client-1")
        infra = make_infrastructure(
            identity={"name": "workers", "resourceGroup": "identity-rg", "acrAccess": True}
        )

        result = await reconcile(factory, infra, make_cluster(), make_config())

        assert result.status.identity is not None
        assert result.status.identity.id == identity.id
        assert result.status.identity.client_id == "client-1"
        assert result.status.identity.acr_access

    @pytest.mark.asyncio
    async def test_user_vnet_status(self) -> None:
        factory = MockClientFactory()
        factory.cloud.add(
            resource_group_id(SUBSCRIPTION_ID, "net-rg"), ResourceGroup(location="westeurope")
        )
        factory.cloud.add(
            resource_id(SUBSCRIPTION_ID, "net-rg", Kind.VIRTUAL_NETWORK, "shared"),
            VirtualNetwork(location="westeurope"),
        )
        infra = make_infrastructure(
            {"vnet": {"name": "shared", "resourceGroup": "net-rg"}, "workers": "10.1.0.0/24"}
        )

        result = await reconcile(factory, infra, make_cluster(), make_config())

        assert result.success, result.error
        assert result.status.networks.vnet.name == "shared"
        assert result.status.networks.vnet.resource_group == "net-rg"


class TestIdempotence:
    """Repeated reconciliation with unchanged inputs."""

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self) -> None:
        """Test that the second run issues no create, update or delete."""
        factory = MockClientFactory()
        infra = make_infrastructure(ZONED_NAT_NETWORKS)
        first = await reconcile(factory, infra, make_cluster(), make_config())
        assert first.success, first.error
        factory.cloud.clear_calls()

        second = await reconcile(
            factory, infra, make_cluster(), make_config(), state=first.state
        )

        assert second.success, second.error
        assert factory.cloud.writes() == []
        assert second.state == first.state
        assert second.status == first.status


class TestPersistence:
    """Tests for state persistence during a flow."""

    @pytest.mark.asyncio
    async def test_final_state_is_persisted(self) -> None:
        """Test that the last persisted state matches the result."""
        recorder = StateRecorder()

        result = await reconcile(
            MockClientFactory(),
            make_infrastructure(),
            make_cluster(),
            make_config(),
            persist=recorder,
        )

        assert len(recorder.states) > 1
        assert recorder.last == result.state
        assert RG_ID in [item.id for item in recorder.last.managed_items]
        assert recorder.last.data["resources_exist"] == "true"
        assert recorder.last.data["ids/ResourceGroup"] == RG_ID

    @pytest.mark.asyncio
    async def test_progress_write_failure_does_not_fail_flow(self) -> None:
        """Test that a failed intermediate write is only logged."""
        states: list[InfrastructureState] = []
        calls = 0

        async def flaky(state: InfrastructureState) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OSError("disk full")
            states.append(state)

        result = await reconcile(
            MockClientFactory(),
            make_infrastructure(),
            make_cluster(),
            make_config(),
            persist=flaky,
        )

        assert result.success, result.error
        assert states[-1] == result.state

    @pytest.mark.asyncio
    async def test_state_defaults_to_infrastructure_status(self) -> None:
        """Test that the state embedded in the Infrastructure status is used."""
        infra = make_infrastructure()
        infra.status.state = InfrastructureState(data={"resources_exist": "true"})

        context = FlowContext(MockClientFactory(), infra, make_cluster(), make_config())

        assert context.whiteboard.get("resources_exist") == "true"


class TestAvailabilitySetMigration:
    """Migration of a legacy cluster across reconciliations."""

    @staticmethod
    def seed(factory: MockClientFactory) -> None:
        cloud = factory.cloud
        cloud.add(RG_ID, ResourceGroup(location="westeurope"))
        cloud.add(
            LB_IP_ID,
            PublicIPAddress(location="westeurope", sku=PublicIPAddressSku(name="Basic")),
        )
        for name in (CLUSTER, f"{CLUSTER}-internal"):
            frontends = None
            if name == CLUSTER:
                frontends = [
                    FrontendIPConfiguration(
                        name="frontend", public_ip_address=PublicIPAddress(id=LB_IP_ID)
                    )
                ]
            cloud.add(
                resource_id(SUBSCRIPTION_ID, CLUSTER, Kind.LOAD_BALANCER, name),
                LoadBalancer(
                    location="westeurope",
                    sku=LoadBalancerSku(name="Basic"),
                    frontend_ip_configurations=frontends,
                ),
            )
        cloud.add(
            AVSET_ID,
            AvailabilitySet(
                location="westeurope",
                virtual_machines=[ComputeSubResource(id=f"{RG_ID}/vm-0")],
            ),
        )

    @pytest.mark.asyncio
    async def test_migration_across_reconciliations(self) -> None:
        """Test the full migration and the migrating status until completion."""
        factory = MockClientFactory()
        self.seed(factory)
        scaler = MockClusterScaler()
        recorder = StateRecorder()
        infra = make_infrastructure()
        cluster = make_cluster({"shoot-vmo-migration": "true"})
        state = InfrastructureState(data={"ids/AvailabilitySet": AVSET_ID})

        first = await reconcile(
            factory, infra, cluster, make_config(), state, persist=recorder, scaler=scaler
        )

        assert first.success, first.error
        assert first.flow.states["ensure availability set"] == TaskState.SKIPPED
        assert scaler.scaled("cloud-controller-manager") == 0
        assert scaler.scaled("cluster-autoscaler") == 0
        backup_key = f"migration/basic-lb/{CLUSTER}/lb-ip"
        assert any(s.data.get(backup_key) == "true" for s in recorder.states)
        assert backup_key not in first.state.data
        assert factory.cloud.ids(Kind.LOAD_BALANCER) == []
        assert factory.cloud.get(LB_IP_ID).sku.name == "Standard"
        assert factory.cloud.exists(AVSET_ID)
        assert first.status.migrating_to_vmo
        assert [a.id for a in first.status.availability_sets] == [AVSET_ID]

        factory.cloud.add(AVSET_ID, AvailabilitySet(location="westeurope"))
        second = await reconcile(factory, infra, cluster, make_config(), first.state)

        assert second.success, second.error
        assert not factory.cloud.exists(AVSET_ID)
        assert not second.status.migrating_to_vmo
        assert second.status.availability_sets == []
        assert second.state.data["migration/AvailabilitySet/complete"] == "true"

        factory.cloud.clear_calls()
        third = await reconcile(factory, infra, cluster, make_config(), second.state)

        assert third.success, third.error
        assert third.flow.states["migrate availability set"] == TaskState.SKIPPED
        assert third.flow.states["ensure availability set"] == TaskState.SKIPPED
        assert factory.cloud.writes() == []

    @pytest.mark.asyncio
    async def test_availability_set_kept_without_migration(self) -> None:
        """Test that a legacy cluster keeps its availability set."""
        factory = MockClientFactory()
        self.seed(factory)
        state = InfrastructureState(data={"ids/AvailabilitySet": AVSET_ID})

        result = await reconcile(
            factory, make_infrastructure(), make_cluster(), make_config(), state
        )

        assert result.success, result.error
        assert result.flow.states["migrate availability set"] == TaskState.SKIPPED
        assert factory.cloud.exists(AVSET_ID)
        assert factory.cloud.ids(Kind.LOAD_BALANCER) != []
        avset = result.status.availability_sets[0]
        assert (avset.count_fault_domains, avset.count_update_domains) == (2, 5)


class TestDelete:
    """Tests for the deletion flow."""

    @pytest.mark.asyncio
    async def test_delete_after_reconcile(self) -> None:
        """Test that deletion removes everything and empties the state."""
        factory = MockClientFactory()
        infra = make_infrastructure(ZONED_NAT_NETWORKS)
        created = await reconcile(factory, infra, make_cluster(), make_config())
        recorder = StateRecorder()

        result = await delete(
            factory, infra, make_cluster(), make_config(), created.state, persist=recorder
        )

        assert result.success, result.error
        assert result.status is None
        assert factory.cloud.ids() == []
        assert result.state.managed_items == []
        assert "resources_exist" not in result.state.data
        assert recorder.last == result.state

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self) -> None:
        """Test that deletion without prior state makes no cloud call."""
        factory = MockClientFactory()
        recorder = StateRecorder()

        result = await delete(
            factory, make_infrastructure(), make_cluster(), make_config(), persist=recorder
        )

        assert result.success
        assert result.flow is None
        assert factory.cloud.calls == []
        assert recorder.states == []

    @pytest.mark.asyncio
    async def test_delete_user_vnet_subnets(self) -> None:
        """Test that subnets in a user vnet are deleted and the vnet is kept."""
        factory = MockClientFactory()
        factory.cloud.add(
            resource_group_id(SUBSCRIPTION_ID, "net-rg"), ResourceGroup(location="westeurope")
        )
        vnet_id = resource_id(SUBSCRIPTION_ID, "net-rg", Kind.VIRTUAL_NETWORK, "shared")
        factory.cloud.add(vnet_id, VirtualNetwork(location="westeurope"))
        infra = make_infrastructure(
            {"vnet": {"name": "shared", "resourceGroup": "net-rg"}, "workers": "10.1.0.0/24"}
        )
        created = await reconcile(factory, infra, make_cluster(), make_config())

        result = await delete(factory, infra, make_cluster(), make_config(), created.state)

        assert result.success, result.error
        assert factory.cloud.ids(Kind.SUBNET) == []
        assert factory.cloud.exists(vnet_id)
        assert not factory.cloud.exists(RG_ID)

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_state(self) -> None:
        """Test that a failed resource group delete keeps the inventory."""
        factory = MockClientFactory()
        infra = make_infrastructure()
        created = await reconcile(factory, infra, make_cluster(), make_config())
        factory.cloud.fail(DELETE, RG_ID)

        result = await delete(factory, infra, make_cluster(), make_config(), created.state)

        assert not result.success
        assert result.state.managed_items == created.state.managed_items
        assert factory.cloud.exists(RG_ID)

    @pytest.mark.asyncio
    async def test_user_resource_group_is_kept(self) -> None:
        """Test that only owned resources are removed from a user-named group."""
        factory = MockClientFactory()
        user_rg_id = resource_group_id(SUBSCRIPTION_ID, "user-rg")
        unrelated_vnet_id = resource_id(
            SUBSCRIPTION_ID, "user-rg", Kind.VIRTUAL_NETWORK, "unrelated"
        )
        factory.cloud.add(user_rg_id, ResourceGroup(location="westeurope"))
        factory.cloud.add(unrelated_vnet_id, VirtualNetwork(location="westeurope"))
        infra = make_infrastructure(ZONED_NAT_NETWORKS, resourceGroup={"name": "user-rg"})
        created = await reconcile(factory, infra, make_cluster(), make_config())
        assert created.success, created.error
        assert user_rg_id not in [item.id for item in created.state.managed_items]
        assert factory.cloud.ids(Kind.NAT_GATEWAY)

        result = await delete(factory, infra, make_cluster(), make_config(), created.state)

        assert result.success, result.error
        assert factory.cloud.ids() == sorted([user_rg_id, unrelated_vnet_id])
        assert factory.cloud.get(user_rg_id).tags is None
        assert result.state.managed_items == []
        assert "resources_exist" not in result.state.data
