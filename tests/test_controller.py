"""Tests for the generic controller lifecycle, using the VPC and route kinds."""

import asyncio

import pytest

from cloud_mock import (
    EMPTY_BODY,
    GONE,
    MockResourceService,
    fast_config,
    http_error,
    not_found_error,
)
from provisioner.errors import (
    BackendError,
    ReconcileCancelledError,
    ReconcileTimeoutError,
    ResourceGoneError,
    ResourceValidationError,
)
from provisioner.models import ResourceKind, ResourceRef, RoutePlan, VpcPlan
from provisioner.network import RouteController, VpcController

VPC_REF = ResourceRef(kind=ResourceKind.VPC, id="vpc-1")


def vpc_controller(service: MockResourceService, **kwargs) -> VpcController:
    return VpcController(service, fast_config(**kwargs))  # type: ignore[arg-type]


class TestCreate:
    """Tests for ResourceController.create."""

    @pytest.mark.asyncio
    async def test_create_waits_until_active(self) -> None:
        """Test that create returns once the resource reports created."""
        service = MockResourceService("creating", "creating", "created", created_id="vpc-1")
        controller = vpc_controller(service)

        state = await controller.create(VpcPlan(name="net", description="main"))

        assert state.ref == VPC_REF
        assert state.status == "created"
        assert state.converged is True
        assert state.plan == {"name": "net", "description": "main"}
        assert service.get_count == 3
        assert service.calls_to("create")[0].body == {"name": "net", "description": "main"}

    @pytest.mark.asyncio
    async def test_on_created_receives_ref_before_wait(self) -> None:
        """Test that the ref is handed out before the wait starts."""
        service = MockResourceService("creating", "created", created_id="vpc-1")
        controller = vpc_controller(service)
        seen: list[tuple[ResourceRef, int]] = []

        await controller.create(
            VpcPlan(name="net"), on_created=lambda ref: seen.append((ref, service.get_count))
        )

        assert seen == [(VPC_REF, 0)]

    @pytest.mark.asyncio
    async def test_error_status_carries_ref(self) -> None:
        """Test that an error status after create raises BackendError with the ref."""
        service = MockResourceService("creating", "error", created_id="vpc-1")
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref == VPC_REF
        assert exc_info.value.last_status == "error"
        assert service.get_count == 2

    @pytest.mark.asyncio
    async def test_timeout_carries_ref(self) -> None:
        """Test that a resource stuck creating raises ReconcileTimeoutError."""
        service = MockResourceService("creating", created_id="vpc-1")
        controller = vpc_controller(service, timeout=0.05)

        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref == VPC_REF
        assert exc_info.value.last_status == "creating"
        assert exc_info.value.target == "created"
        assert "timed out waiting for vpc vpc-1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_create_call_failure(self) -> None:
        """Test that a failed create call raises BackendError without a ref."""
        service = MockResourceService()
        service.fail_next("create", http_error(409, "name already in use"))
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref is None
        assert exc_info.value.status_code == 409
        assert service.get_count == 0

    @pytest.mark.asyncio
    async def test_missing_identifier(self) -> None:
        """Test that a create response without an id raises BackendError."""
        service = MockResourceService(created_id="")
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert "returned no identifier" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_disappears_while_creating(self) -> None:
        """Test that a 404 during the create wait raises ResourceGoneError."""
        service = MockResourceService("creating", GONE, created_id="vpc-1")
        controller = vpc_controller(service)

        with pytest.raises(ResourceGoneError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref == VPC_REF

    @pytest.mark.asyncio
    async def test_empty_status_body_carries_ref(self) -> None:
        """Test that a status response without a body raises BackendError with the ref."""
        service = MockResourceService("creating", EMPTY_BODY, created_id="vpc-1")
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref == VPC_REF
        assert exc_info.value.last_status == "creating"
        assert "unexpected body" in str(exc_info.value)
        assert service.get_count == 2

    @pytest.mark.asyncio
    async def test_cancel_carries_ref(self) -> None:
        """Test that cancelling the wait raises ReconcileCancelledError."""
        service = MockResourceService("creating", created_id="vpc-1")
        cancel = asyncio.Event()
        controller = VpcController(
            service,  # type: ignore[arg-type]
            fast_config(interval=5.0, timeout=60.0),
            cancel=cancel,
        )
        asyncio.get_running_loop().call_later(0.02, cancel.set)

        with pytest.raises(ReconcileCancelledError) as exc_info:
            await controller.create(VpcPlan(name="net"))

        assert exc_info.value.ref == VPC_REF

    @pytest.mark.asyncio
    async def test_nested_create_uses_parent(self) -> None:
        """Test that routes are created under their VPC."""
        service = MockResourceService("created", created_id="route-1")
        controller = RouteController(service, fast_config())  # type: ignore[arg-type]
        plan = RoutePlan(vpc_id="vpc-1", port_id="port-1", cidr_destination="10.0.0.0/8")

        state = await controller.create(plan)

        assert state.ref == ResourceRef(kind=ResourceKind.ROUTE, id="route-1", parent_id="vpc-1")
        assert service.calls_to("create")[0].parent_id == "vpc-1"
        assert all(call.parent_id == "vpc-1" for call in service.calls_to("get"))


class TestRead:
    """Tests for ResourceController.read."""

    @pytest.mark.asyncio
    async def test_read_converged(self) -> None:
        """Test that read reports the current status with one call."""
        service = MockResourceService("created")
        controller = vpc_controller(service)

        state = await controller.read(VPC_REF)

        assert state is not None
        assert state.status == "created"
        assert state.converged is True
        assert service.get_count == 1

    @pytest.mark.asyncio
    async def test_read_transient(self) -> None:
        """Test that a transient status is not converged."""
        controller = vpc_controller(MockResourceService("creating"))

        state = await controller.read(VPC_REF)

        assert state is not None
        assert state.converged is False

    @pytest.mark.asyncio
    async def test_read_gone(self) -> None:
        """Test that a missing resource reads as None."""
        controller = vpc_controller(MockResourceService(GONE))

        assert await controller.read(VPC_REF) is None

    @pytest.mark.asyncio
    async def test_read_empty_body(self) -> None:
        """Test that a status response without a body raises BackendError."""
        controller = vpc_controller(MockResourceService(EMPTY_BODY))

        with pytest.raises(BackendError) as exc_info:
            await controller.read(VPC_REF)

        assert exc_info.value.ref == VPC_REF

    @pytest.mark.asyncio
    async def test_read_failure(self) -> None:
        """Test that other errors raise BackendError with the ref."""
        controller = vpc_controller(MockResourceService(http_error(500)))

        with pytest.raises(BackendError) as exc_info:
            await controller.read(VPC_REF)

        assert exc_info.value.ref == VPC_REF


class TestUpdate:
    """Tests for ResourceController.update."""

    @pytest.mark.asyncio
    async def test_immutable_change_rejected_before_any_call(self) -> None:
        """Test that changing an immutable field requires replacement."""
        service = MockResourceService("created")
        controller = vpc_controller(service)

        with pytest.raises(ResourceValidationError) as exc_info:
            await controller.update(VPC_REF, VpcPlan(name="net"), VpcPlan(name="other"))

        assert "requires replacement" in str(exc_info.value)
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_unchanged_plan_reads_once(self) -> None:
        """Test that an unchanged plan does a single read and no mutation."""
        service = MockResourceService("created")
        controller = vpc_controller(service)

        state = await controller.update(VPC_REF, VpcPlan(name="net"), VpcPlan(name="net"))

        assert state.plan == {"name": "net", "description": None}
        assert [call.method for call in service.calls] == ["get"]

    @pytest.mark.asyncio
    async def test_unchanged_plan_gone(self) -> None:
        """Test that an unchanged plan for a vanished resource raises ResourceGoneError."""
        controller = vpc_controller(MockResourceService(GONE))

        with pytest.raises(ResourceGoneError):
            await controller.update(VPC_REF, VpcPlan(name="net"), VpcPlan(name="net"))


class TestDelete:
    """Tests for ResourceController.delete."""

    @pytest.mark.asyncio
    async def test_delete_waits_until_gone(self) -> None:
        """Test that delete issues one call and waits for the 404."""
        service = MockResourceService("created", "deleting", "deleting", GONE)
        controller = vpc_controller(service)

        await controller.delete(VPC_REF)

        assert len(service.calls_to("delete")) == 1
        assert service.get_count == 4

    @pytest.mark.asyncio
    async def test_delete_accepts_deleted_status(self) -> None:
        """Test that a 'deleted' status also ends the removal wait."""
        service = MockResourceService("created", "deleting", "deleted")
        controller = vpc_controller(service)

        await controller.delete(VPC_REF)

        assert service.get_count == 3

    @pytest.mark.asyncio
    async def test_already_gone(self) -> None:
        """Test that deleting a missing resource succeeds without a delete call."""
        service = MockResourceService(GONE)
        controller = vpc_controller(service)

        await controller.delete(VPC_REF)

        assert service.calls_to("delete") == []

    @pytest.mark.asyncio
    async def test_already_deleting_is_not_reissued(self) -> None:
        """Test that a resource already deleting gets no second delete call."""
        service = MockResourceService("DELETING", "deleting", GONE)
        controller = vpc_controller(service)

        await controller.delete(VPC_REF)

        assert service.calls_to("delete") == []
        assert service.get_count == 3

    @pytest.mark.asyncio
    async def test_delete_call_not_found(self) -> None:
        """Test that a 404 from the delete call counts as deleted."""
        service = MockResourceService("created")
        service.fail_next("delete", not_found_error())
        controller = vpc_controller(service)

        await controller.delete(VPC_REF)

        assert service.get_count == 1

    @pytest.mark.asyncio
    async def test_delete_call_failure(self) -> None:
        """Test that a failed delete call raises BackendError with the ref."""
        service = MockResourceService("created")
        service.fail_next("delete", http_error(409, "vpc has ports"))
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.delete(VPC_REF)

        assert exc_info.value.ref == VPC_REF
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_error_while_deleting(self) -> None:
        """Test that ERROR_DELETING fails the delete."""
        service = MockResourceService("created", "deleting", "ERROR_DELETING")
        controller = vpc_controller(service)

        with pytest.raises(BackendError) as exc_info:
            await controller.delete(VPC_REF)

        assert exc_info.value.last_status == "ERROR_DELETING"

    @pytest.mark.asyncio
    async def test_stuck_deleting_times_out(self) -> None:
        """Test that a resource that never goes away times out."""
        service = MockResourceService("created", "deleting")
        controller = vpc_controller(service, timeout=0.05)

        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await controller.delete(VPC_REF)

        assert exc_info.value.target == "removed"


class TestSnapshot:
    """Tests for status extraction."""

    def test_flat_status(self) -> None:
        """Test that a flat status string is extracted."""
        controller = vpc_controller(MockResourceService())

        snapshot = controller.snapshot_from({"id": "vpc-1", "status": "created"})

        assert snapshot.status == "created"
        assert snapshot.payload == {"id": "vpc-1", "status": "created"}

    def test_nested_status(self) -> None:
        """Test that a nested state/message status is extracted."""
        controller = vpc_controller(MockResourceService())

        snapshot = controller.snapshot_from(
            {"status": {"state": "Failed", "message": "quota exceeded"}}
        )

        assert snapshot.status == "Failed"
        assert snapshot.message == "quota exceeded"
