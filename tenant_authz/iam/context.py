"""
Tenant scope resolution from request headers.

Maps the authenticated principal plus the tenant selector headers to an
AgencyScope or SubAccountScope, or raises ContextError.

Headers:
    x-tenant-agency: target agency
    x-tenant-subaccount: act on behalf of a subaccount (must belong to the agency)

Rules:
- Agency API key: agency fixed; an optional subaccount header selects a sub-scope.
- Subaccount API key: subaccount fixed; a header, if present, must match.
- User session or user API key: headers must name an agency or a subaccount,
  and the user must hold an active membership there.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.core.scope import AgencyScope, SubAccountScope, TenantScope
from tenant_authz.iam.errors import ContextError
from tenant_authz.models.membership import AgencyMembership, SubAccountMembership
from tenant_authz.models.tenancy import SubAccount

logger = logging.getLogger(__name__)

AGENCY_HEADER = "x-tenant-agency"
SUBACCOUNT_HEADER = "x-tenant-subaccount"


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserSession:
    user_id: str


@dataclass(frozen=True)
class AgencyApiKey:
    agency_id: str
    allowed_subaccount_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SubAccountApiKey:
    subaccount_id: str
    agency_id: Optional[str] = None


@dataclass(frozen=True)
class UserApiKey:
    owner_user_id: str


Principal = Union[UserSession, AgencyApiKey, SubAccountApiKey, UserApiKey]
ResolvedScope = TenantScope


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup; blank values count as absent."""
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    if value is None:
        return None
    value = value.strip()
    return value or None


class ScopeResolver:
    """
    Resolves the effective tenant scope for one request.

    Usage:
        resolver = ScopeResolver(session)
        scope = await resolver.resolve_scope_from_headers(principal, request.headers)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _subaccount_agency_id(self, subaccount_id: str) -> Optional[str]:
        return await self.session.scalar(
            select(SubAccount.agency_id).where(SubAccount.id == subaccount_id)
        )

    async def _require_agency_membership(self, user_id: str, agency_id: str) -> None:
        membership_id = await self.session.scalar(
            select(AgencyMembership.id).where(
                AgencyMembership.user_id == user_id,
                AgencyMembership.agency_id == agency_id,
                AgencyMembership.is_active.is_(True),
            )
        )
        if membership_id is None:
            raise ContextError.forbidden("No agency membership for requested context")

    async def _require_subaccount_membership(self, user_id: str, subaccount_id: str) -> str:
        """Returns the subaccount's agency id."""
        result = await self.session.execute(
            select(SubAccount.agency_id)
            .join(SubAccountMembership, SubAccountMembership.subaccount_id == SubAccount.id)
            .where(
                SubAccountMembership.user_id == user_id,
                SubAccountMembership.subaccount_id == subaccount_id,
                SubAccountMembership.is_active.is_(True),
            )
            .limit(1)
        )
        agency_id = result.scalar_one_or_none()
        if agency_id is None:
            raise ContextError.forbidden("No subaccount membership for requested context")
        return agency_id

    async def _resolve_agency_key(
        self,
        key: AgencyApiKey,
        agency_id: Optional[str],
        subaccount_id: Optional[str],
    ) -> ResolvedScope:
        if not key.agency_id:
            raise ContextError.invalid("Agency api key missing agency id", status_code=500)
        if agency_id and agency_id != key.agency_id:
            raise ContextError.forbidden("Agency header does not match api key scope")
        if not subaccount_id:
            return AgencyScope(key.agency_id)

        if await self._subaccount_agency_id(subaccount_id) != key.agency_id:
            raise ContextError.invalid("Subaccount does not belong to agency")
        if key.allowed_subaccount_ids and subaccount_id not in key.allowed_subaccount_ids:
            raise ContextError.forbidden("Api key not allowed to access this subaccount")
        return SubAccountScope(key.agency_id, subaccount_id)

    async def _resolve_subaccount_key(
        self,
        key: SubAccountApiKey,
        subaccount_id: Optional[str],
    ) -> ResolvedScope:
        if not key.subaccount_id:
            raise ContextError.invalid("Subaccount api key missing subaccount id", status_code=500)
        if subaccount_id and subaccount_id != key.subaccount_id:
            raise ContextError.forbidden("Subaccount header does not match api key scope")

        agency_id = key.agency_id or await self._subaccount_agency_id(key.subaccount_id)
        if not agency_id:
            raise ContextError.invalid("Subaccount not found for api key")
        return SubAccountScope(agency_id, key.subaccount_id)

    async def _resolve_user(
        self,
        user_id: str,
        agency_id: Optional[str],
        subaccount_id: Optional[str],
    ) -> ResolvedScope:
        if not agency_id and not subaccount_id:
            raise ContextError.missing(f"Missing {AGENCY_HEADER} or {SUBACCOUNT_HEADER} header")

        if subaccount_id:
            owning_agency_id = await self._require_subaccount_membership(user_id, subaccount_id)
            if agency_id and agency_id != owning_agency_id:
                raise ContextError.forbidden("Agency header does not match subaccount agency")
            return SubAccountScope(owning_agency_id, subaccount_id)

        await self._require_agency_membership(user_id, agency_id)
        return AgencyScope(agency_id)

    async def resolve_scope_from_headers(
        self,
        principal: Principal,
        headers: Mapping[str, str],
    ) -> ResolvedScope:
        """
        Resolve the request scope.

        Raises:
            ContextError: MISSING, INVALID or FORBIDDEN with a status hint
        """
        agency_id = _header(headers, AGENCY_HEADER)
        subaccount_id = _header(headers, SUBACCOUNT_HEADER)

        try:
            if isinstance(principal, AgencyApiKey):
                return await self._resolve_agency_key(principal, agency_id, subaccount_id)
            if isinstance(principal, SubAccountApiKey):
                return await self._resolve_subaccount_key(principal, subaccount_id)
            if isinstance(principal, UserApiKey):
                return await self._resolve_user(principal.owner_user_id, agency_id, subaccount_id)
            if isinstance(principal, UserSession):
                return await self._resolve_user(principal.user_id, agency_id, subaccount_id)
        except ContextError as e:
            logger.warning(
                "Scope resolution failed",
                extra={
                    "principal": type(principal).__name__,
                    "code": e.code.value,
                    "agency_header": agency_id,
                    "subaccount_header": subaccount_id,
                },
            )
            raise

        raise TypeError(f"Unsupported principal: {type(principal).__name__}")
