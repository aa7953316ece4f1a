from __future__ import annotations

from approval_agent_loop.errors import AuthenticationError
from approval_agent_loop.memory.organizations import OrganizationDirectory
from approval_agent_loop.models import Identity


def resolve_identity(
    organizations: OrganizationDirectory,
    user_id: str | None,
    organization_id: str | None,
) -> Identity:
    """Map request headers onto an authenticated (user, organization) pair.

    Without an explicit organization the user's earliest membership is used.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise AuthenticationError("Missing X-User-Id header", public_message="Unauthorized")

    organization_id = (organization_id or "").strip() or organizations.default_organization(user_id)
    if not organization_id:
        raise AuthenticationError(f"User {user_id} belongs to no organization", public_message="No organization found")
    if not organizations.is_member(organization_id, user_id):
        raise AuthenticationError(
            f"User {user_id} is not a member of {organization_id}",
            public_message="Unauthorized",
        )
    return Identity(user_id=user_id, organization_id=organization_id)
