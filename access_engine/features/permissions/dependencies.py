"""
FastAPI dependencies for access decisions.

Implements:
- Engine lookup from application state
- Principal lookup from the X-User-ID header (set by the upstream identity layer)
- Request environment for ABAC conditions
- Route protection: require_permission, require_any_permission, require_all_permissions
- Subject checks: authorize_subject for decisions about other users
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException, Request, status

from access_engine.features.permissions.service import AccessEngine
from access_engine.utils import get_logger


log = get_logger(__name__)

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})


def get_access_engine(request: Request) -> AccessEngine:
    """Engine built at startup and stored on app.state."""
    engine: Optional[AccessEngine] = getattr(request.app.state, "access_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Access engine not ready")
    return engine


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> int:
    """
    Dependency to get the authenticated principal's id.

    Raises:
        HTTPException: 401 if the header is missing or not a positive integer
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )
    try:
        user_id = int(x_user_id)
    except ValueError:
        user_id = 0
    if user_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID",
        )
    return user_id


def _flatten(items) -> Dict[str, Any]:
    grouped: Dict[str, list] = {}
    for key, value in items:
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


def build_request_context(request: Request, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Environment attributes of an HTTP request.

    Example:
        {"method": "GET", "path": "/docs/7", "client_ip": "10.0.0.5",
         "user_agent": "curl/8.0", "time": "14:05", "day_of_week": "monday",
         "query_params": {...}, "path_params": {...}, "headers": {...}}
    """
    now = now or datetime.now().astimezone()
    context: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "user_agent": request.headers.get("user-agent", ""),
        "time": now.strftime("%H:%M"),
        "day_of_week": now.strftime("%A").lower(),
        "now": now.isoformat(),
    }
    if request.client is not None:
        context["client_ip"] = request.client.host

    if request.query_params:
        context["query_params"] = _flatten(request.query_params.multi_items())
    if request.path_params:
        context["path_params"] = {key: str(value) for key, value in request.path_params.items()}

    headers = _flatten(
        (key, value) for key, value in request.headers.items() if key.lower() not in SENSITIVE_HEADERS
    )
    if headers:
        context["headers"] = headers
    return context


# ============================================================================
# Route protection
# ============================================================================

def require_permission(resource: str, action: str):
    """
    Dependency factory requiring one permission.

    Usage:
        @router.delete("/docs/{doc_id}")
        async def delete_doc(user_id: int = Depends(require_permission("doc", "delete"))):
            ...

    Returns the caller's user id when allowed. A denial is 403; a
    ResolutionError propagates to the application's 500 handler.
    """
    async def dependency(
        request: Request,
        user_id: int = Depends(get_current_user_id),
        engine: AccessEngine = Depends(get_access_engine),
    ) -> int:
        decision = await engine.resolver.decide(user_id, resource, action, build_request_context(request))
        if not decision.allowed:
            log.warning("Permission denied: user %s on %s:%s (%s)", user_id, resource, action, decision.reason)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
        return user_id

    return dependency


async def authorize_subject(caller_id: int, subject_id: int, request: Request, engine: AccessEngine) -> None:
    """
    Allow a caller to ask about itself, or about anyone with permissions:manage
    or permissions:check.

    Raises:
        HTTPException: 403 if the caller may not ask about subject_id
    """
    if caller_id == subject_id:
        return
    context = build_request_context(request)
    for resource, action in (("permissions", "manage"), ("permissions", "check")):
        decision = await engine.resolver.decide(caller_id, resource, action, context)
        if decision.allowed:
            return
    log.warning("User %s may not query decisions of user %s", caller_id, subject_id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")


def require_any_permission(*permissions: Tuple[str, str]):
    """Dependency factory allowing the request if any (resource, action) pair is allowed."""
    async def dependency(
        request: Request,
        user_id: int = Depends(get_current_user_id),
        engine: AccessEngine = Depends(get_access_engine),
    ) -> int:
        context = build_request_context(request)
        for resource, action in permissions:
            decision = await engine.resolver.decide(user_id, resource, action, context)
            if decision.allowed:
                return user_id
        log.warning("No matching permission found for user %s", user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")

    return dependency


def require_all_permissions(*permissions: Tuple[str, str]):
    """Dependency factory requiring every (resource, action) pair to be allowed."""
    async def dependency(
        request: Request,
        user_id: int = Depends(get_current_user_id),
        engine: AccessEngine = Depends(get_access_engine),
    ) -> int:
        context = build_request_context(request)
        for resource, action in permissions:
            decision = await engine.resolver.decide(user_id, resource, action, context)
            if not decision.allowed:
                log.warning("Permission denied: user %s on %s:%s (%s)", user_id, resource, action, decision.reason)
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
        return user_id

    return dependency
