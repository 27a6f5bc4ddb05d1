"""Tests for relationship replacement on association kinds.

The scenario throughout: VPC endpoint "vpce-1" starts with only its default
security group "sg-default"; the managed association adds "sg-2" and
replaces the default.
"""

import asyncio

import pytest

from lifecycle.errors import Aborted, CompensationError, NotFound, ValidationFailed
from lifecycle.kinds import VPC_ENDPOINT_SECURITY_GROUP_ASSOCIATION
from lifecycle.models import AssociationSpec, FieldChange, LifecycleState, ResourceSpec
from lifecycle.orchestrator import ASSOCIATED, OrchestratorContext, ResourceOrchestrator
from lifecycle.remote import RemoteError
from remote_mock import FakeClock, MockAssociationClient

KIND = VPC_ENDPOINT_SECURITY_GROUP_ASSOCIATION


def association_spec(
    member: str = "sg-2", *, replace_default: bool = True, default: str | None = None
) -> ResourceSpec:
    return ResourceSpec(
        kind=KIND.name,
        association=AssociationSpec(
            parent_id="vpce-1",
            member_id=member,
            replace_default=replace_default,
            default_member_id=default,
        ),
    )


@pytest.fixture
def associations() -> MockAssociationClient:
    return MockAssociationClient(
        members={"vpce-1": ["sg-default"]},
        defaults={"vpce-1": "sg-default"},
    )


def create_orchestrator(
    associations: MockAssociationClient, context: OrchestratorContext, **kwargs: object
) -> ResourceOrchestrator:
    return ResourceOrchestrator(KIND, None, context, associations=associations, **kwargs)


class TestCreateAssociation:
    """Tests for create with default replacement."""

    @pytest.mark.asyncio
    async def test_add_new_then_remove_default(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that the new member is added before the default is removed."""
        orchestrator = create_orchestrator(associations, context)

        result = await orchestrator.create(association_spec())

        assert result.identifier.value == "vpce-1/sg-2"
        assert result.warnings == ()
        assert associations.mutations == [
            ("add", "vpce-1", "sg-2"),
            ("remove", "vpce-1", "sg-default"),
        ]
        assert associations.members["vpce-1"] == ["sg-2"]
        assert orchestrator.state == LifecycleState.READY

    @pytest.mark.asyncio
    async def test_default_removed_only_once_visible(
        self, context: OrchestratorContext, clock: FakeClock
    ) -> None:
        """Test that removal waits until the new member shows up in reads."""
        associations = MockAssociationClient(
            members={"vpce-1": ["sg-default"]},
            defaults={"vpce-1": "sg-default"},
            visibility_delay=2,
        )
        orchestrator = create_orchestrator(associations, context)

        result = await orchestrator.create(association_spec())

        assert result.state is not None and result.state.status == ASSOCIATED
        calls = [call[0] for call in associations.calls]
        after_add = calls[calls.index("associate") + 1 :]
        assert after_add == ["list_members", "list_members", "list_members", "disassociate"]
        assert len(clock.waits) == 2

    @pytest.mark.asyncio
    async def test_default_removal_failure_is_warning(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that a failed default removal still yields the association."""
        associations.errors.fail_always("disassociate", RemoteError("UnauthorizedOperation"))
        orchestrator = create_orchestrator(associations, context)

        result = await orchestrator.create(association_spec())

        assert result.identifier.value == "vpce-1/sg-2"
        assert len(result.warnings) == 1
        assert isinstance(result.warnings[0], CompensationError)
        assert result.warnings[0].cause is not None
        assert result.warnings[0].cause.code == "UnauthorizedOperation"
        assert associations.members["vpce-1"] == ["sg-default", "sg-2"]
        assert orchestrator.state == LifecycleState.READY

    @pytest.mark.asyncio
    async def test_default_not_associated(self, context: OrchestratorContext) -> None:
        """Test that replacing an absent default fails before any mutation."""
        associations = MockAssociationClient(
            members={"vpce-1": ["sg-other"]},
            defaults={"vpce-1": "sg-default"},
        )
        orchestrator = create_orchestrator(associations, context)

        with pytest.raises(ValidationFailed) as exc_info:
            await orchestrator.create(association_spec())

        assert "sg-default" in str(exc_info.value)
        assert associations.mutations == []
        assert orchestrator.state == LifecycleState.CREATE_FAILED

    @pytest.mark.asyncio
    async def test_member_is_default(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that the default cannot replace itself."""
        orchestrator = create_orchestrator(associations, context)

        with pytest.raises(ValidationFailed):
            await orchestrator.create(association_spec("sg-default"))

        assert associations.mutations == []

    @pytest.mark.asyncio
    async def test_no_default_found(self, context: OrchestratorContext) -> None:
        """Test that a parent without a default cannot have it replaced."""
        associations = MockAssociationClient(members={"vpce-1": ["sg-1"]})
        orchestrator = create_orchestrator(associations, context)

        with pytest.raises(ValidationFailed):
            await orchestrator.create(association_spec())

        assert associations.mutations == []

    @pytest.mark.asyncio
    async def test_claimed_default_used(self, context: OrchestratorContext) -> None:
        """Test that a declared default skips discovery."""
        associations = MockAssociationClient(members={"vpce-1": ["sg-custom"]})
        orchestrator = create_orchestrator(associations, context)

        await orchestrator.create(association_spec(default="sg-custom"))

        assert ("find_default_member", "vpce-1") not in associations.calls
        assert associations.mutations == [
            ("add", "vpce-1", "sg-2"),
            ("remove", "vpce-1", "sg-custom"),
        ]

    @pytest.mark.asyncio
    async def test_without_replacement(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that a plain association leaves the default alone."""
        orchestrator = create_orchestrator(associations, context)

        await orchestrator.create(association_spec(replace_default=False))

        assert associations.mutations == [("add", "vpce-1", "sg-2")]
        assert associations.members["vpce-1"] == ["sg-default", "sg-2"]

    @pytest.mark.asyncio
    async def test_concurrent_associations_on_one_parent(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that concurrent associations on one endpoint all land."""
        orchestrators = [create_orchestrator(associations, context) for _ in range(3)]

        await asyncio.gather(
            *(
                orchestrator.create(association_spec(member, replace_default=False))
                for orchestrator, member in zip(orchestrators, ["sg-2", "sg-3", "sg-4"])
            )
        )

        assert sorted(associations.members["vpce-1"]) == ["sg-2", "sg-3", "sg-4", "sg-default"]
        assert context.locks is not None and len(context.locks) == 0

    @pytest.mark.asyncio
    async def test_missing_association_block(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that an association kind requires its association block."""
        orchestrator = create_orchestrator(associations, context)

        with pytest.raises(ValidationFailed):
            await orchestrator.create(ResourceSpec(kind=KIND.name))

    @pytest.mark.asyncio
    async def test_cancel_before_default_removal(
        self, context: OrchestratorContext, clock: FakeClock
    ) -> None:
        """Test that cancelling while waiting for visibility keeps the default."""
        associations = MockAssociationClient(
            members={"vpce-1": ["sg-default"]},
            defaults={"vpce-1": "sg-default"},
            visibility_delay=5,
        )
        cancel = asyncio.Event()
        clock.on_wait = lambda _seconds: cancel.set()
        orchestrator = create_orchestrator(associations, context, cancel_event=cancel)

        with pytest.raises(Aborted):
            await orchestrator.create(association_spec())

        assert associations.mutations == [("add", "vpce-1", "sg-2")]
        assert "sg-default" in associations.members["vpce-1"]


class TestDeleteAssociation:
    """Tests for delete with default restoration."""

    @pytest.mark.asyncio
    async def test_restore_default_then_remove(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that the default is restored before the member is removed."""
        orchestrator = create_orchestrator(associations, context)
        spec = association_spec()
        await orchestrator.create(spec)
        associations.mutations.clear()

        await orchestrator.delete("vpce-1/sg-2", spec=spec)

        assert associations.mutations == [
            ("add", "vpce-1", "sg-default"),
            ("remove", "vpce-1", "sg-2"),
        ]
        assert associations.members["vpce-1"] == ["sg-default"]
        assert orchestrator.state == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_delete_after_own_replacement_restores_default(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that delete by identifier alone undoes this orchestrator's replacement."""
        orchestrator = create_orchestrator(associations, context)
        result = await orchestrator.create(association_spec())
        assert result.replaced_default == "sg-default"
        associations.mutations.clear()

        await orchestrator.delete(result.identifier)

        assert associations.mutations == [
            ("add", "vpce-1", "sg-default"),
            ("remove", "vpce-1", "sg-2"),
        ]
        assert associations.members["vpce-1"] == ["sg-default"]

    @pytest.mark.asyncio
    async def test_replacement_not_restored_after_plain_create(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that a later create without replacement forgets the earlier default."""
        orchestrator = create_orchestrator(associations, context)
        first = await orchestrator.create(association_spec())
        await orchestrator.delete(first.identifier)
        second = await orchestrator.create(association_spec("sg-3", replace_default=False))
        associations.mutations.clear()

        await orchestrator.delete(second.identifier)

        assert second.replaced_default is None
        assert associations.mutations == [("remove", "vpce-1", "sg-3")]

    @pytest.mark.asyncio
    async def test_delete_twice(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that a repeated delete succeeds without further mutations."""
        orchestrator = create_orchestrator(associations, context)
        spec = association_spec()
        await orchestrator.create(spec)

        await orchestrator.delete("vpce-1/sg-2", spec=spec)
        mutations = list(associations.mutations)
        await orchestrator.delete("vpce-1/sg-2", spec=spec)

        assert associations.mutations == mutations
        assert orchestrator.state == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_restore_failure_aborts_delete(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that the member stays when the default cannot be restored."""
        orchestrator = create_orchestrator(associations, context)
        spec = association_spec()
        await orchestrator.create(spec)
        associations.errors.fail_always("associate", RemoteError("UnauthorizedOperation"))

        with pytest.raises(CompensationError):
            await orchestrator.delete("vpce-1/sg-2", spec=spec)

        assert associations.members["vpce-1"] == ["sg-2"]
        assert orchestrator.state == LifecycleState.DELETE_FAILED

    @pytest.mark.asyncio
    async def test_default_already_present(self, context: OrchestratorContext) -> None:
        """Test that an already-associated default is not added again."""
        associations = MockAssociationClient(
            members={"vpce-1": ["sg-default", "sg-2"]},
            defaults={"vpce-1": "sg-default"},
        )
        orchestrator = create_orchestrator(associations, context)

        await orchestrator.delete("vpce-1/sg-2", spec=association_spec())

        assert associations.mutations == [("remove", "vpce-1", "sg-2")]

    @pytest.mark.asyncio
    async def test_delete_without_spec(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that without replacement only the member is removed."""
        associations.members["vpce-1"].append("sg-2")
        orchestrator = create_orchestrator(associations, context)

        await orchestrator.delete("vpce-1/sg-2")

        assert associations.mutations == [("remove", "vpce-1", "sg-2")]

    @pytest.mark.asyncio
    async def test_parent_gone(self, context: OrchestratorContext) -> None:
        """Test that deleting from a vanished endpoint succeeds."""
        associations = MockAssociationClient()
        orchestrator = create_orchestrator(associations, context)

        await orchestrator.delete("vpce-1/sg-2", spec=association_spec())

        assert associations.mutations == []
        assert orchestrator.state == LifecycleState.GONE


class TestReadAndUpdateAssociation:
    """Tests for read and update on association kinds."""

    @pytest.mark.asyncio
    async def test_read_present(self, context: OrchestratorContext) -> None:
        """Test that an existing membership reads as associated."""
        associations = MockAssociationClient(members={"vpce-1": ["sg-2"]})
        orchestrator = create_orchestrator(associations, context)

        state = await orchestrator.read("vpce-1/sg-2")

        assert state.status == ASSOCIATED
        assert state.attributes == {"vpc_endpoint_id": "vpce-1", "security_group_id": "sg-2"}

    @pytest.mark.asyncio
    async def test_read_absent(self, context: OrchestratorContext) -> None:
        """Test that a missing membership raises NotFound."""
        associations = MockAssociationClient(members={"vpce-1": []})
        orchestrator = create_orchestrator(
            associations, context, initial_state=LifecycleState.READY
        )

        with pytest.raises(NotFound):
            await orchestrator.read("vpce-1/sg-2")

        assert orchestrator.state == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_update_rejected(
        self, associations: MockAssociationClient, context: OrchestratorContext
    ) -> None:
        """Test that associations have no updatable fields."""
        orchestrator = create_orchestrator(associations, context)

        with pytest.raises(ValidationFailed):
            await orchestrator.update("vpce-1/sg-2", {"replace_default": FieldChange(True, False)})
