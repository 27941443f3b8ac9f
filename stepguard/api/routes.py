from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, Request

from stepguard.api.schemas import (
    ChannelStatusResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    OAuthStartResponse,
    RegisterRequest,
    ResendRequest,
    ResendResponse,
    StepUpResponse,
    TokenRefreshRequest,
    TokenResponse,
    VerifyRequest,
    VerifyResponse,
)
from stepguard.logging import get_logger
from stepguard.service.auth import StepUpHandle
from stepguard.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    """The runtime built by the process entry point and attached to the app."""
    return request.app.state.runtime


def _step_up_response(handle: StepUpHandle) -> StepUpResponse:
    return StepUpResponse(
        session_id=handle.session_id,
        flow=handle.flow.value,
        expires_at=handle.expires_at,
        channels=[
            ChannelStatusResponse(
                channel=status.channel.value,
                destination=status.destination,
                delivered=status.delivered,
                resend_available_at=status.resend_available_at,
            )
            for status in handle.channels
        ],
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Start registration: creates a pending identity and sends passcodes.

    The identity becomes active once any one channel's code is verified.
    """
    handle = await runtime.auth.start_registration(
        body.email,
        body.password,
        phone=body.phone,
        name=body.name,
        channels=body.channels,
    )
    return Envelope(status="ok", data=_step_up_response(handle))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email or phone and password.

    Returns tokens directly when the identity has no second factor,
    otherwise a step-up session handle.

    Raises:
        401: If credentials are invalid
        423: If the identity is temporarily locked
    """
    result = await runtime.auth.start_login(
        body.identifier, body.password, channels=body.channels
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            subject_id=result.subject_id,
            step_up_required=result.step_up_required,
            tokens=TokenResponse(**result.tokens) if result.tokens else None,
            step_up=_step_up_response(result.step_up) if result.step_up else None,
        ),
    )


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(body: VerifyRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.verify(body.session_id, body.code, body.channel)
    return Envelope(
        status="ok",
        data=VerifyResponse(
            subject_id=result.subject_id,
            session_id=result.session_id,
            flow=result.flow.value,
            channel=result.channel.value,
            tokens=TokenResponse(**result.tokens),
        ),
    )


@router.post("/auth/resend", response_model=Envelope, tags=["auth"])
async def resend(body: ResendRequest, runtime: Runtime = Depends(get_runtime)):
    """Send a fresh code on one channel; the session expiry is unchanged."""
    result = await runtime.auth.resend(body.session_id, body.channel)
    return Envelope(
        status="ok",
        data=ResendResponse(
            session_id=result.session_id,
            channel=result.channel.value,
            destination=result.destination,
            expires_at=result.expires_at,
            resend_available_at=result.resend_available_at,
        ),
    )


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="Identity provider (google)"),
    runtime: Runtime = Depends(get_runtime),
):
    """Return the provider authorization URL and a one-time state value."""
    start = await runtime.auth.start_federated(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., max_length=32, description="Identity provider"),
    code: str = Query(..., max_length=512, description="Authorization code from the provider"),
    state: str = Query(..., max_length=128, description="State returned by the start call"),
    runtime: Runtime = Depends(get_runtime),
):
    """Complete the provider handshake and open a passcode step-up.

    Never returns tokens: the caller must verify the emailed code.
    """
    handle = await runtime.auth.handle_federated_callback(provider, code, state)
    return Envelope(status="ok", data=_step_up_response(handle))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**tokens))
