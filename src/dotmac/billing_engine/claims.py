"""
Authorization context forwarded to every store call.

The engine never inspects claims beyond the organization used for row scoping;
they are produced by the caller (or by ``build_service_role_claims`` for jobs).
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SERVICE_ROLE_SUBJECT = "service-role"


class AuthorizationClaims(BaseModel):
    """Caller claims. ``organization_id`` scopes rows when set."""

    model_config = ConfigDict(frozen=True)

    sub: str
    role: str = "authenticated"
    organization_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def can_access(self, organization_id: str) -> bool:
        return self.organization_id is None or self.organization_id == organization_id


def build_service_role_claims(
    organization_id: str | None = None, **overrides: Any
) -> AuthorizationClaims:
    """Claims used by background jobs acting on behalf of one organization."""
    data: dict[str, Any] = {"sub": SERVICE_ROLE_SUBJECT, "organization_id": organization_id}
    data.update(overrides)
    return AuthorizationClaims(**data)


__all__ = ["AuthorizationClaims", "build_service_role_claims", "SERVICE_ROLE_SUBJECT"]
