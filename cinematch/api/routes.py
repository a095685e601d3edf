from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    Path,
    Query,
    Request,
    Response,
)
from fastapi.responses import RedirectResponse

from cinematch.api.schemas import (
    MAX_EMAIL_LENGTH,
    EmailRequest,
    FeedItem,
    FeedRequest,
    FeedResponse,
    ListsResponse,
    ListUpdateRequest,
    LoginRequest,
    MergeListsRequest,
    MergeListsResponse,
    OkResponse,
    PublicUser,
    ReactionRequest,
    ReactionsResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionResponse,
)
from cinematch.config import Settings
from cinematch.logging import get_logger
from cinematch.service.auth import AuthContext, IssuedTokens
from cinematch.service.recommend import CatalogItem
from cinematch.service.runtime import get_runtime
from cinematch.storage.models import User

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
me_router = APIRouter(prefix="/me", tags=["me"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _public_user(user: User) -> PublicUser:
    return PublicUser(id=user.id, email=user.email, display_name=user.display_name)


def _refresh_cookie_options(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": settings.refresh_cookie_samesite,
        "path": settings.refresh_cookie_path,
    }


def _set_refresh_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        token,
        max_age=settings.refresh_cookie_max_age_days * 24 * 60 * 60,
        **_refresh_cookie_options(settings),
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.refresh_cookie_name, **_refresh_cookie_options(settings))


def _session_response(response: Response, settings: Settings, issued: IssuedTokens) -> SessionResponse:
    _set_refresh_cookie(response, settings, issued.refresh_token)
    return SessionResponse(access_token=issued.access_token, user=_public_user(issued.user))


def _refresh_cookie_value(request: Request) -> Optional[str]:
    settings = get_runtime().settings
    return request.cookies.get(settings.refresh_cookie_name)


async def require_access(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Bearer access-token guard; decides from the token alone."""
    return get_runtime().auth.authenticate_bearer(authorization)


@auth_router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(body: RegisterRequest, background_tasks: BackgroundTasks):
    """Create an unverified account and mail its verification link.

    Raises:
        400: email or password missing
        409: email already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.password, body.display_name)
    background_tasks.add_task(runtime.auth.send_verification, user)
    return RegisterResponse(user_id=user.id, email=user.email)


@auth_router.post("/login", response_model=SessionResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Raises:
        400: email or password missing
        401: invalid credentials
        403: email not verified (``needsVerification: true``)
        429: email or IP budget exhausted (``Retry-After`` header)
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(body.email, body.password, _client_ip(request))
    return _session_response(response, runtime.settings, issued)


@auth_router.post("/refresh", response_model=SessionResponse)
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    issued = await runtime.auth.refresh(_refresh_cookie_value(request))
    return _session_response(response, runtime.settings, issued)


@auth_router.post("/logout", response_model=OkResponse)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(_refresh_cookie_value(request))
    _clear_refresh_cookie(response, runtime.settings)
    return OkResponse()


@auth_router.post("/resend-verification", response_model=OkResponse)
async def resend_verification(
    body: EmailRequest, request: Request, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    email = runtime.auth.require_email(body.email)
    background_tasks.add_task(runtime.auth.resend_verification, email, _client_ip(request))
    return OkResponse()


@auth_router.get("/verify-email", status_code=302)
async def verify_email(
    token: Optional[str] = Query(None, max_length=256),
    u: Optional[str] = Query(None, max_length=64),
):
    runtime = get_runtime()
    await runtime.auth.verify_email(token, u)
    target = f"{runtime.settings.client_origin.rstrip('/')}/verify-success"
    return RedirectResponse(target, status_code=302)


@auth_router.post("/forgot", response_model=OkResponse)
async def forgot_password(request: Request, background_tasks: BackgroundTasks):
    """Always ``{ok: true}``; the lookup and mail happen after the response.

    The body is parsed by hand so that no payload can turn into a 400.
    """
    runtime = get_runtime()
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    email = payload.get("email") if isinstance(payload, dict) else None
    if isinstance(email, str) and len(email) > MAX_EMAIL_LENGTH:
        email = None
    background_tasks.add_task(runtime.auth.forgot_password, email, _client_ip(request))
    return OkResponse()


@auth_router.post("/reset", response_model=OkResponse)
async def reset_password(body: ResetPasswordRequest):
    """Set a new password from a reset link and sign out every session."""
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.user_id, body.password)
    return OkResponse()


@me_router.get("/lists", response_model=ListsResponse)
async def get_lists(principal: AuthContext = Depends(require_access)):
    watched, to_watch = get_runtime().library.get_lists(principal.user_id)
    return ListsResponse(watched=watched, to_watch=to_watch)


@me_router.post("/lists/merge", response_model=MergeListsResponse)
async def merge_lists(body: MergeListsRequest, principal: AuthContext = Depends(require_access)):
    """Union client-side lists (e.g. from local storage) into the account."""
    watched, to_watch = get_runtime().library.merge_lists(
        principal.user_id, body.watched, body.to_watch
    )
    return MergeListsResponse(watched=watched, to_watch=to_watch)


@me_router.patch("/lists/{list_name}", status_code=204)
async def update_list(
    body: ListUpdateRequest,
    list_name: str = Path(..., max_length=32),
    principal: AuthContext = Depends(require_access),
):
    get_runtime().library.update_list(principal.user_id, list_name, body.action, body.id)
    return Response(status_code=204)


@me_router.get("/reactions", response_model=ReactionsResponse)
async def get_reactions(principal: AuthContext = Depends(require_access)):
    liked, disliked = get_runtime().library.get_reactions(principal.user_id)
    return ReactionsResponse(liked_tmdb_ids=liked, disliked_tmdb_ids=disliked)


@me_router.patch("/reactions/tmdb", response_model=ReactionsResponse)
async def set_reaction(body: ReactionRequest, principal: AuthContext = Depends(require_access)):
    liked, disliked = get_runtime().library.set_reaction(
        principal.user_id, body.tmdb_id, body.reaction
    )
    return ReactionsResponse(liked_tmdb_ids=liked, disliked_tmdb_ids=disliked)


@me_router.post("/feed", response_model=FeedResponse)
async def personal_feed(body: FeedRequest, principal: AuthContext = Depends(require_access)):
    """Rank the posted catalog against the caller's lists and reactions."""
    catalog = [
        CatalogItem(
            id=item.id,
            title=item.title,
            genres=list(item.genres),
            keywords=list(item.keywords),
            popularity=item.popularity,
            rating=item.rating,
        )
        for item in body.catalog
    ]
    ranked = get_runtime().library.personal_feed(principal.user_id, catalog, body.limit)
    return FeedResponse(
        items=[
            FeedItem(
                id=item.id,
                title=item.title,
                genres=item.genres,
                popularity=item.popularity,
                rating=item.rating,
                score=round(item.score, 4),
            )
            for item in ranked
        ]
    )
