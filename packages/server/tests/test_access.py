"""
Tests for the access resolver.

Tests cover:
- Effective role: workspace floor, project grants, hard denial without membership
- authorize() against the action table, task-edit ownership rule
- Workspace role assignment precedence and the last-owner invariant
- Member removal with project-membership cascade
- Project role assignment
"""

from __future__ import annotations

import asyncio
import random
import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from workboard.core.database import get_session_context, is_conflict
from workboard.core.errors import (
    Err,
    InsufficientRole,
    LastOwnerProtected,
    MembershipNotFound,
    NoMembership,
    Ok,
    ScopeNotFound,
    TaskNotFound,
    UserNotFound,
)
from workboard.models.membership import WorkspaceMembership
from workboard.models.user import User
from workboard.services.access import ACTION_MIN_ROLE, Resource
from workboard_shared.schemas.common import Action, Role, ScopeKind, max_role


# ---------------------------------------------------------------------------
# Effective role
# ---------------------------------------------------------------------------


class TestEffectiveRole:
    async def test_workspace_role_only(self, access, owner_id, workspace_id):
        assert await access.effective_role(owner_id, workspace_id) == Ok(Role.OWNER)

    async def test_project_grant_raises_role(self, access, make_user, grant, workspace_id, project_id):
        u2 = await make_user("u2")
        await grant(u2, Role.MEMBER, workspace_id=workspace_id)
        await grant(u2, Role.ADMIN, project_id=project_id)

        assert await access.effective_role(u2, workspace_id, project_id) == Ok(Role.ADMIN)
        assert await access.effective_role(u2, workspace_id) == Ok(Role.MEMBER)

    async def test_no_membership_is_denied(self, access, make_user, workspace_id):
        u3 = await make_user("u3")
        result = await access.effective_role(u3, workspace_id, None)
        assert result == Err(NoMembership(u3, workspace_id))
        assert result.error.message == "Not a workspace member"

    async def test_project_grant_alone_is_not_access(self, access, make_user, grant, workspace_id, project_id):
        u = await make_user("outsider")
        await grant(u, Role.ADMIN, project_id=project_id)

        result = await access.effective_role(u, workspace_id, project_id)
        assert isinstance(result.error, NoMembership)

    async def test_project_from_other_workspace(self, access, make_workspace, make_project, owner_id, workspace_id):
        other_ws = await make_workspace(owner_id, "Other")
        foreign_project = await make_project(other_ws)

        result = await access.effective_role(owner_id, workspace_id, foreign_project)
        assert result == Err(ScopeNotFound(ScopeKind.PROJECT, foreign_project))

    async def test_workspace_role_is_a_floor(self, access, make_user, grant, workspace_id, project_id):
        for workspace_role in Role:
            for project_role in [None, *Role]:
                user = await make_user("combo")
                await grant(user, workspace_role, workspace_id=workspace_id)
                if project_role is not None:
                    await grant(user, project_role, project_id=project_id)

                result = await access.effective_role(user, workspace_id, project_id)
                assert result.value == max_role(workspace_role, project_role)
                assert result.value.at_least(workspace_role)

    async def test_user_ids_of_any_version(self, access, session_factory, grant, workspace_id, project_id):
        user_id = uuid.uuid1()
        async with get_session_context(session_factory) as session:
            session.add(User(id=user_id, email="legacy@example.com", display_name="legacy"))
        await grant(user_id, Role.MEMBER, workspace_id=workspace_id)

        assert await access.effective_role(user_id, workspace_id, project_id) == Ok(Role.MEMBER)
        assert user_id in {m.user_id for m in await access.list_workspace_members(workspace_id)}

    async def test_describe_access(self, access, make_user, grant, workspace_id, project_id):
        u = await make_user("u")
        await grant(u, Role.OWNER, workspace_id=workspace_id)
        await grant(u, Role.VIEWER, project_id=project_id)

        described = (await access.describe_access(u, workspace_id, project_id)).value
        assert described.workspace_role == Role.OWNER
        assert described.project_role == Role.VIEWER
        assert described.effective_role == Role.OWNER


# ---------------------------------------------------------------------------
# authorize
# ---------------------------------------------------------------------------


class TestAuthorize:
    def test_every_action_has_a_minimum_role(self):
        assert set(ACTION_MIN_ROLE) == set(Action)

    def test_resource_needs_a_scope(self):
        with pytest.raises(ValueError):
            Resource()

    async def test_viewer_can_view_but_not_create(self, access, make_user, grant, workspace_id, project_id):
        viewer = await make_user("viewer")
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)
        resource = Resource(workspace_id=workspace_id, project_id=project_id)

        assert await access.authorize(viewer, Action.VIEW_PROJECT, resource) == Ok(Role.VIEWER)
        result = await access.authorize(viewer, Action.CREATE_TASK, resource)
        assert result == Err(InsufficientRole(required=Role.ADMIN, actual=Role.VIEWER))
        assert "requires ADMIN" in result.error.message

    async def test_project_grant_unlocks_action(self, access, make_user, grant, workspace_id, project_id):
        u = await make_user("u")
        await grant(u, Role.MEMBER, workspace_id=workspace_id)
        await grant(u, Role.ADMIN, project_id=project_id)

        result = await access.authorize(u, Action.DELETE_TASK, Resource(project_id=project_id))
        assert result == Ok(Role.ADMIN)
        denied = await access.authorize(u, Action.EDIT_WORKSPACE, Resource(workspace_id=workspace_id))
        assert denied == Err(InsufficientRole(required=Role.ADMIN, actual=Role.MEMBER))

    async def test_only_owner_deletes_workspace(self, access, make_user, grant, owner_id, workspace_id):
        admin = await make_user("admin")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        resource = Resource(workspace_id=workspace_id)

        assert (await access.authorize(owner_id, Action.DELETE_WORKSPACE, resource)).ok
        result = await access.authorize(admin, Action.DELETE_WORKSPACE, resource)
        assert result.error == InsufficientRole(required=Role.OWNER, actual=Role.ADMIN)

    async def test_unknown_project(self, access, owner_id):
        missing = uuid.uuid4()
        result = await access.authorize(owner_id, Action.VIEW_PROJECT, Resource(project_id=missing))
        assert result == Err(ScopeNotFound(ScopeKind.PROJECT, missing))

    async def test_non_member_denied(self, access, make_user, workspace_id):
        u = await make_user("stranger")
        result = await access.authorize(u, Action.VIEW_WORKSPACE, Resource(workspace_id=workspace_id))
        assert isinstance(result.error, NoMembership)


class TestTaskEdit:
    async def test_member_edits_own_task_only(self, access, make_user, make_task, grant, workspace_id, project_id):
        member = await make_user("member")
        await grant(member, Role.MEMBER, workspace_id=workspace_id)
        own = await make_task(project_id, "mine", assignee_id=member)
        other = await make_task(project_id, "theirs")

        assert await access.authorize_task_edit(member, own) == Ok(Role.MEMBER)
        assert await access.authorize_task_edit(member, other) == Err(
            InsufficientRole(required=Role.ADMIN, actual=Role.MEMBER)
        )

    async def test_admin_edits_any_task(self, access, make_user, make_task, grant, workspace_id, project_id):
        admin = await make_user("admin")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        task = await make_task(project_id, "someone else's")

        assert await access.authorize_task_edit(admin, task) == Ok(Role.ADMIN)

    async def test_viewer_cannot_edit_even_if_assigned(self, access, make_user, make_task, grant, workspace_id, project_id):
        viewer = await make_user("viewer")
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)
        task = await make_task(project_id, "assigned", assignee_id=viewer)

        result = await access.authorize_task_edit(viewer, task)
        assert result.error == InsufficientRole(required=Role.MEMBER, actual=Role.VIEWER)

    async def test_unknown_task(self, access, owner_id):
        missing = uuid.uuid4()
        assert await access.authorize_task_edit(owner_id, missing) == Err(TaskNotFound(missing))


# ---------------------------------------------------------------------------
# Workspace role assignment
# ---------------------------------------------------------------------------


class TestAssignWorkspaceRole:
    async def test_last_owner_cannot_demote_self(self, access, owner_id, workspace_id):
        result = await access.assign_workspace_role(owner_id, owner_id, workspace_id, Role.ADMIN)

        assert result == Err(LastOwnerProtected(workspace_id, owner_id))
        assert await access.owner_count(workspace_id) == 1
        assert await access.effective_role(owner_id, workspace_id) == Ok(Role.OWNER)

    async def test_owner_adds_member(self, access, make_user, owner_id, workspace_id):
        u = await make_user("new")
        assert await access.assign_workspace_role(owner_id, u, workspace_id, Role.MEMBER) == Ok(None)
        assert await access.effective_role(u, workspace_id) == Ok(Role.MEMBER)

    async def test_owner_creates_and_demotes_owners(self, access, make_user, owner_id, workspace_id):
        u = await make_user("co-owner")
        assert (await access.assign_workspace_role(owner_id, u, workspace_id, Role.OWNER)).ok
        assert await access.owner_count(workspace_id) == 2

        # the first owner may now step down
        assert await access.assign_workspace_role(owner_id, owner_id, workspace_id, Role.ADMIN) == Ok(Role.OWNER)
        assert await access.owner_count(workspace_id) == 1

        # and the remaining owner is protected
        result = await access.assign_workspace_role(u, u, workspace_id, Role.VIEWER)
        assert isinstance(result.error, LastOwnerProtected)

    async def test_admin_precedence(self, access, make_user, grant, owner_id, workspace_id):
        admin = await make_user("admin")
        member = await make_user("member")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        await grant(member, Role.MEMBER, workspace_id=workspace_id)

        assert await access.assign_workspace_role(admin, member, workspace_id, Role.VIEWER) == Ok(Role.MEMBER)

        promote = await access.assign_workspace_role(admin, member, workspace_id, Role.ADMIN)
        assert promote == Err(InsufficientRole(required=Role.OWNER, actual=Role.ADMIN))

        demote_owner = await access.assign_workspace_role(admin, owner_id, workspace_id, Role.MEMBER)
        assert demote_owner == Err(InsufficientRole(required=Role.OWNER, actual=Role.ADMIN))
        assert await access.effective_role(owner_id, workspace_id) == Ok(Role.OWNER)

    async def test_member_cannot_manage(self, access, make_user, grant, workspace_id):
        member = await make_user("member")
        viewer = await make_user("viewer")
        await grant(member, Role.MEMBER, workspace_id=workspace_id)
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)

        result = await access.assign_workspace_role(member, viewer, workspace_id, Role.VIEWER)
        assert result == Err(InsufficientRole(required=Role.ADMIN, actual=Role.MEMBER))

    async def test_actor_without_membership(self, access, make_user, owner_id, workspace_id):
        stranger = await make_user("stranger")
        result = await access.assign_workspace_role(stranger, owner_id, workspace_id, Role.VIEWER)
        assert result == Err(NoMembership(stranger, workspace_id))

    async def test_unknown_target_user(self, access, owner_id, workspace_id):
        missing = uuid.uuid4()
        result = await access.assign_workspace_role(owner_id, missing, workspace_id, Role.MEMBER)

        assert result == Err(UserNotFound(missing))
        assert result.error.code == "user_not_found"
        assert len(await access.list_workspace_members(workspace_id)) == 1

    async def test_foreign_key_violation_is_not_a_conflict(self, session_factory, workspace_id):
        with pytest.raises(IntegrityError) as exc_info:
            async with get_session_context(session_factory) as session:
                session.add(
                    WorkspaceMembership(
                        user_id=uuid.uuid4(), workspace_id=workspace_id, role=Role.MEMBER.value
                    )
                )
        assert not is_conflict(exc_info.value)

    async def test_unknown_workspace(self, access, owner_id):
        missing = uuid.uuid4()
        result = await access.assign_workspace_role(owner_id, owner_id, missing, Role.ADMIN)
        assert result == Err(ScopeNotFound(ScopeKind.WORKSPACE, missing))

    @pytest.mark.parametrize("seed", range(3))
    async def test_random_sequences_keep_an_owner(self, access, make_user, grant, owner_id, workspace_id, seed):
        rng = random.Random(seed)
        users = [owner_id]
        for i in range(3):
            u = await make_user(f"u{i}")
            await grant(u, rng.choice(list(Role)), workspace_id=workspace_id)
            users.append(u)

        for _ in range(25):
            actor, target = rng.choice(users), rng.choice(users)
            new_role = rng.choice(list(Role))
            before = await access.effective_role(target, workspace_id)

            result = await access.assign_workspace_role(actor, target, workspace_id, new_role)

            assert await access.owner_count(workspace_id) >= 1
            if isinstance(result, Err):
                assert await access.effective_role(target, workspace_id) == before
            else:
                assert await access.effective_role(target, workspace_id) == Ok(new_role)

    async def test_concurrent_owner_demotions(self, access, make_user, grant, owner_id, workspace_id):
        second = await make_user("second")
        await grant(second, Role.OWNER, workspace_id=workspace_id)

        results = await asyncio.gather(
            access.assign_workspace_role(owner_id, owner_id, workspace_id, Role.ADMIN),
            access.assign_workspace_role(second, second, workspace_id, Role.ADMIN),
        )

        assert sum(1 for r in results if r.ok) == 1
        assert sum(1 for r in results if not r.ok and isinstance(r.error, LastOwnerProtected)) == 1
        assert await access.owner_count(workspace_id) == 1


# ---------------------------------------------------------------------------
# Member removal
# ---------------------------------------------------------------------------


class TestRemoveWorkspaceMember:
    async def test_admin_removes_member_and_project_grants(self, access, make_user, grant, workspace_id, project_id):
        admin = await make_user("admin")
        member = await make_user("member")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        await grant(member, Role.MEMBER, workspace_id=workspace_id, project_id=project_id)

        assert await access.remove_workspace_member(admin, member, workspace_id) == Ok(Role.MEMBER)
        assert isinstance((await access.effective_role(member, workspace_id)).error, NoMembership)
        assert [m.user_id for m in await access.list_project_members(project_id)] == []

    async def test_member_can_leave(self, access, make_user, grant, workspace_id):
        member = await make_user("member")
        await grant(member, Role.MEMBER, workspace_id=workspace_id)
        assert (await access.remove_workspace_member(member, member, workspace_id)).ok

    async def test_last_owner_cannot_leave(self, access, owner_id, workspace_id):
        result = await access.remove_workspace_member(owner_id, owner_id, workspace_id)
        assert isinstance(result.error, LastOwnerProtected)
        assert await access.owner_count(workspace_id) == 1

    async def test_admin_cannot_remove_owner(self, access, make_user, grant, owner_id, workspace_id):
        admin = await make_user("admin")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        result = await access.remove_workspace_member(admin, owner_id, workspace_id)
        assert result.error == InsufficientRole(required=Role.OWNER, actual=Role.ADMIN)

    async def test_target_not_member(self, access, make_user, owner_id, workspace_id):
        u = await make_user("nobody")
        result = await access.remove_workspace_member(owner_id, u, workspace_id)
        assert result == Err(MembershipNotFound(u, ScopeKind.WORKSPACE, workspace_id))

    async def test_members_listed_by_rank(self, access, make_user, grant, owner_id, workspace_id):
        viewer = await make_user("viewer")
        admin = await make_user("admin")
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)

        members = await access.list_workspace_members(workspace_id)
        assert [(m.user_id, m.role) for m in members] == [
            (owner_id, Role.OWNER),
            (admin, Role.ADMIN),
            (viewer, Role.VIEWER),
        ]


# ---------------------------------------------------------------------------
# Project roles
# ---------------------------------------------------------------------------


class TestProjectRoles:
    async def test_workspace_admin_grants_below_own_rank(self, access, make_user, grant, workspace_id, project_id):
        admin = await make_user("admin")
        viewer = await make_user("viewer")
        await grant(admin, Role.ADMIN, workspace_id=workspace_id)
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)

        assert await access.assign_project_role(admin, viewer, project_id, Role.MEMBER) == Ok(None)
        assert await access.effective_role(viewer, workspace_id, project_id) == Ok(Role.MEMBER)

        result = await access.assign_project_role(admin, viewer, project_id, Role.ADMIN)
        assert result == Err(InsufficientRole(required=Role.OWNER, actual=Role.ADMIN))

    async def test_project_admin_can_manage_project(self, access, make_user, grant, workspace_id, project_id):
        lead = await make_user("lead")
        viewer = await make_user("viewer")
        await grant(lead, Role.MEMBER, workspace_id=workspace_id)
        await grant(lead, Role.ADMIN, project_id=project_id)
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)

        assert (await access.assign_project_role(lead, viewer, project_id, Role.MEMBER)).ok

    async def test_workspace_member_cannot_manage_project(self, access, make_user, grant, workspace_id, project_id):
        member = await make_user("member")
        viewer = await make_user("viewer")
        await grant(member, Role.MEMBER, workspace_id=workspace_id)
        await grant(viewer, Role.VIEWER, workspace_id=workspace_id)

        result = await access.assign_project_role(member, viewer, project_id, Role.MEMBER)
        assert result == Err(InsufficientRole(required=Role.ADMIN, actual=Role.MEMBER))

    async def test_target_must_belong_to_workspace(self, access, make_user, owner_id, workspace_id, project_id):
        outsider = await make_user("outsider")
        result = await access.assign_project_role(owner_id, outsider, project_id, Role.MEMBER)
        assert result == Err(NoMembership(outsider, workspace_id))

    async def test_no_owner_floor_at_project_scope(self, access, make_user, grant, owner_id, workspace_id, project_id):
        u = await make_user("u")
        await grant(u, Role.MEMBER, workspace_id=workspace_id)

        assert (await access.assign_project_role(owner_id, u, project_id, Role.OWNER)).ok
        assert await access.assign_project_role(owner_id, u, project_id, Role.VIEWER) == Ok(Role.OWNER)
        # the workspace role still applies
        assert await access.effective_role(u, workspace_id, project_id) == Ok(Role.MEMBER)

    async def test_remove_project_member(self, access, make_user, grant, owner_id, workspace_id, project_id):
        u = await make_user("u")
        await grant(u, Role.MEMBER, workspace_id=workspace_id)
        await grant(u, Role.ADMIN, project_id=project_id)

        assert [m.role for m in await access.list_project_members(project_id)] == [Role.ADMIN]
        assert await access.remove_project_member(owner_id, u, project_id) == Ok(Role.ADMIN)
        assert await access.effective_role(u, workspace_id, project_id) == Ok(Role.MEMBER)

        again = await access.remove_project_member(owner_id, u, project_id)
        assert again == Err(MembershipNotFound(u, ScopeKind.PROJECT, project_id))

    async def test_unknown_project(self, access, owner_id):
        missing = uuid.uuid4()
        result = await access.assign_project_role(owner_id, owner_id, missing, Role.ADMIN)
        assert result == Err(ScopeNotFound(ScopeKind.PROJECT, missing))
