"""
FastAPI boundary adapter.

Provides:
- context_error_handler / register_exception_handlers: ContextError -> JSON
  response carrying its status hint
- get_principal: authenticated principal placed on request.state by the
  authentication middleware
- get_resolved_scope: tenant scope from the x-tenant-* headers
- require_policy: dependency factory running the policy engine; denials are
  raised as HTTP 403, or HTTP 402 when paying would unlock the action

Defines no routes.
"""

import logging
from typing import Callable, Optional, Sequence

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.database.session import get_db_session
from tenant_authz.iam.context import (
    Principal,
    ResolvedScope,
    ScopeResolver,
    UserApiKey,
    UserSession,
)
from tenant_authz.iam.errors import ContextError
from tenant_authz.policy.engine import (
    CanPerformArgs,
    PolicyDecision,
    PolicyEngine,
    PolicyReason,
    UsageChecker,
)

logger = logging.getLogger(__name__)

# Denials a billing change can resolve
PAYMENT_REQUIRED_REASONS = frozenset({
    PolicyReason.NO_SUBSCRIPTION,
    PolicyReason.FEATURE_DISABLED,
    PolicyReason.INSUFFICIENT_CREDITS,
    PolicyReason.LIMIT_EXCEEDED,
})


async def context_error_handler(request: Request, exc: ContextError) -> JSONResponse:
    """Render a ContextError with its status hint."""
    logger.warning(
        "Context error",
        extra={"path": request.url.path, "code": exc.code.value, "status_code": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ContextError, context_error_handler)


def get_principal(request: Request) -> Principal:
    """
    Extract the authenticated principal from request state.

    Raises 401 if the authentication layer did not set one.
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        logger.error("Route handler accessed without principal", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return principal


def get_usage_checker(request: Request) -> Optional[UsageChecker]:
    """Metering collaborator installed on app.state at startup, if any."""
    return getattr(request.app.state, "usage_checker", None)


async def get_resolved_scope(
    request: Request,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_db_session),
) -> ResolvedScope:
    return await ScopeResolver(session).resolve_scope_from_headers(principal, request.headers)


def principal_user_id(principal: Principal) -> Optional[str]:
    if isinstance(principal, UserSession):
        return principal.user_id
    if isinstance(principal, UserApiKey):
        return principal.owner_user_id
    return None


def policy_status_code(decision: PolicyDecision) -> int:
    if decision.reason in PAYMENT_REQUIRED_REASONS:
        return status.HTTP_402_PAYMENT_REQUIRED
    return status.HTTP_403_FORBIDDEN


def require_policy(
    required_permission_key: Optional[str] = None,
    required_permission_keys: Sequence[str] = (),
    require_active_subscription: bool = True,
    feature_key: Optional[str] = None,
    quantity: int = 1,
    action_key: Optional[str] = None,
    billing_permission_keys: Sequence[str] = (),
) -> Callable:
    """
    Dependency factory enforcing a policy decision for the current user and scope.

    Usage:
        @router.get("/contacts")
        async def list_contacts(
            decision: PolicyDecision = Depends(require_policy("crm.customers.contact.read")),
        ):
            ...
    """

    async def dependency(
        request: Request,
        principal: Principal = Depends(get_principal),
        scope: ResolvedScope = Depends(get_resolved_scope),
        session: AsyncSession = Depends(get_db_session),
        usage_checker: Optional[UsageChecker] = Depends(get_usage_checker),
    ) -> PolicyDecision:
        user_id = principal_user_id(principal)
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="A user principal is required for this action",
            )
        if feature_key and usage_checker is None:
            logger.error("Usage checker not configured", extra={"feature_key": feature_key})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Usage checker not configured",
            )

        engine = PolicyEngine(session, usage_checker)
        decision = await engine.can_perform(
            CanPerformArgs(
                user_id=user_id,
                agency_id=scope.agency_id,
                subaccount_id=scope.subaccount_id,
                required_permission_key=required_permission_key,
                required_permission_keys=tuple(required_permission_keys),
                require_active_subscription=require_active_subscription,
                feature_key=feature_key,
                quantity=quantity,
                action_key=action_key,
                billing_permission_keys=tuple(billing_permission_keys),
            )
        )
        # Persist any access snapshots materialized while deciding
        await session.commit()

        if not decision.allowed:
            raise HTTPException(status_code=policy_status_code(decision), detail=decision.to_dict())
        request.state.policy_decision = decision
        return decision

    return dependency
