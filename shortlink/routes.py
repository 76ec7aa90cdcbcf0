"""API routes for the admin plane (users, sessions) and the link plane.

Endpoints
=========
::
    GET    /health                                       health check
    GET    /api/short-link/admin/v1/user/has-username    username availability
    POST   /api/short-link/admin/v1/user                 register
    POST   /api/short-link/admin/v1/user/login           login (reuses live token)
    GET    /api/short-link/admin/v1/user/check-login     session check
    DELETE /api/short-link/admin/v1/user/logout          logout (all tokens)
    PUT    /api/short-link/admin/v1/user                 update own profile
    GET    /api/short-link/admin/v1/user/{username}      user profile
    POST   /api/short-link/v1/create                     create short link
    GET    /{short_uri}                                  302 to origin url

Key Behaviours
===============
- Coordination errors are mapped to status codes by the exception handlers
  in ``shortlink.main``; routes only handle tagged results.
- Creating a short link requires the ``username`` / ``token`` headers of a
  live session.
- Redirects resolve ``{request host}/{short_uri}``.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from shortlink.dependencies import (
    RequestContext,
    get_current_user,
    get_link_service,
    get_request_context,
    get_user_service,
)
from shortlink.enums import HealthStatus, LogoutStatus
from shortlink.link_service import ShortLinkService
from shortlink.schemas import (
    HasUsernameResponse,
    HealthResponse,
    ShortLinkCreate,
    ShortLinkCreateResponse,
    UserLogin,
    UserLoginResponse,
    UserRegister,
    UserSnapshot,
    UserUpdate,
)
from shortlink.user_service import UserService

__all__ = ["router"]

router = APIRouter()

USER_PREFIX = "/api/short-link/admin/v1/user"


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.store.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.get(f"{USER_PREFIX}/has-username", response_model=HasUsernameResponse, tags=["users"])
async def has_username(username: str, service: UserService = Depends(get_user_service)) -> HasUsernameResponse:
    taken = await service.has_username(username)
    return HasUsernameResponse(username=username, available=not taken)


@router.post(USER_PREFIX, response_model=UserSnapshot, status_code=201, tags=["users"])
async def register(
    payload: UserRegister,
    ctx: RequestContext = Depends(get_request_context),
    service: UserService = Depends(get_user_service),
) -> UserSnapshot:
    user = await service.register(payload)
    ctx.logger.info(f"Registration completed for {user.username} in {ctx.get_duration():.1f}ms")
    return UserSnapshot.model_validate(user)


@router.post(f"{USER_PREFIX}/login", response_model=UserLoginResponse, tags=["users"])
async def login(payload: UserLogin, service: UserService = Depends(get_user_service)) -> UserLoginResponse:
    token = await service.login(payload)
    return UserLoginResponse(token=token)


@router.get(f"{USER_PREFIX}/check-login", tags=["users"])
async def check_login(username: str, token: str, service: UserService = Depends(get_user_service)) -> bool:
    return await service.check_login(username, token)


@router.delete(f"{USER_PREFIX}/logout", status_code=204, tags=["users"])
async def logout(username: str, token: str, service: UserService = Depends(get_user_service)) -> None:
    status = await service.logout(username, token)
    if status is LogoutStatus.SESSION_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Token does not exist or user is not logged in")


@router.put(USER_PREFIX, status_code=204, tags=["users"])
async def update_user(
    payload: UserUpdate,
    user: UserSnapshot = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
) -> None:
    if payload.username != user.username:
        raise HTTPException(status_code=403, detail="Users can only update their own profile")
    if not await service.update(payload):
        raise HTTPException(status_code=404, detail="User not found")


# Declared after the fixed-path GETs so it does not shadow them.
@router.get(f"{USER_PREFIX}/{{username}}", response_model=UserSnapshot, tags=["users"])
async def get_user(username: str, service: UserService = Depends(get_user_service)) -> UserSnapshot:
    user = await service.get_user(username)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserSnapshot.model_validate(user)


@router.post("/api/short-link/v1/create", response_model=ShortLinkCreateResponse, status_code=201, tags=["links"])
async def create_short_link(
    payload: ShortLinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    user: UserSnapshot = Depends(get_current_user),
    service: ShortLinkService = Depends(get_link_service),
) -> ShortLinkCreateResponse:
    link = await service.create_short_link(payload)
    ctx.logger.info(f"{user.username} created {link.full_short_url} in {ctx.get_duration():.1f}ms")
    return ShortLinkCreateResponse.model_validate(link)


@router.get("/{short_uri}", tags=["redirect"])
async def redirect(
    short_uri: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: ShortLinkService = Depends(get_link_service),
) -> RedirectResponse:
    full_short_url = f"{request.url.hostname}/{short_uri}"
    origin_url = await service.resolve(full_short_url)
    if origin_url is None:
        ctx.logger.info(f"Redirect miss for {full_short_url}")
        raise HTTPException(status_code=404, detail="Short link not found")

    await service.record_visit(full_short_url, ctx.user_agent, ctx.client_ip)
    return RedirectResponse(url=origin_url, status_code=302)
