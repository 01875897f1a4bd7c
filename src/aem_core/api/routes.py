"""FastAPI routes for forwarding deep links and events to the AEM reporter."""
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..graph.exceptions import AEMError
from ..reporter.service import AEMReporter
from .auth import require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/aem", tags=["aem"])


class DeepLinkRequest(BaseModel):
    """Deep link opened by the host application."""

    url: str = Field(..., description="Full deep link URL including al_applink_data")


class DeepLinkResponse(BaseModel):
    """Response for a tracked deep link."""

    status: str = Field(..., description="Always 'tracked' on success")
    campaign_id: str = Field(..., description="Campaign of the stored invocation")


class EventRequest(BaseModel):
    """Host application event to attribute."""

    event_name: str = Field(..., min_length=1, description="App event name, e.g. fb_mobile_purchase")
    currency: Optional[str] = Field(None, description="ISO currency of value")
    value: Optional[float] = Field(None, description="Event value (e.g. purchase amount)")


class AcceptedResponse(BaseModel):
    """Immediate response for queued reporter work."""

    status: str = Field(..., description="Always 'queued' on acceptance")


class StatusResponse(BaseModel):
    """Reporter snapshot."""

    enabled: bool
    state: str
    invocations: int
    pending_invocations: int
    configs: dict[str, int]


def get_reporter(request: Request) -> AEMReporter:
    """Resolve the reporter owned by the application."""
    reporter = getattr(request.app.state, "reporter", None)
    if reporter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AEM reporter is not configured",
        )
    return reporter


async def _run_reporter_task(
    name: str, operation: Callable[..., Awaitable[Any]], *args: Any
) -> None:
    """Background task: run a reporter operation.

    This function MUST be exception-safe; all errors are caught and logged.
    """
    try:
        await operation(*args)
        logger.debug("Reporter task %s completed", name)
    except Exception as exc:
        logger.error("Reporter task %s failed: %s", name, exc, exc_info=True)


@router.post(
    "/deeplinks",
    response_model=DeepLinkResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
    summary="Track an App-Link deep link",
)
async def submit_deep_link(
    payload: DeepLinkRequest,
    reporter: AEMReporter = Depends(get_reporter),
) -> DeepLinkResponse:
    """Track the invocation carried by the URL before responding."""
    if not reporter.is_enabled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="AEM reporting is disabled",
        )

    try:
        invocation = await reporter.handle(payload.url)
    except AEMError as exc:
        logger.error("Failed to track deep link: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record invocation",
        ) from exc

    if invocation is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="URL carries no valid al_applink_data attribution payload",
        )

    return DeepLinkResponse(status="tracked", campaign_id=invocation.campaign_id)


@router.post(
    "/events",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_api_key)],
    summary="Record an app event for attribution",
)
async def submit_event(
    payload: EventRequest,
    background_tasks: BackgroundTasks,
    reporter: AEMReporter = Depends(get_reporter),
) -> AcceptedResponse:
    background_tasks.add_task(
        _run_reporter_task,
        "record_and_update",
        reporter.record_and_update,
        payload.event_name,
        payload.currency,
        payload.value,
    )
    return AcceptedResponse(status="queued")


@router.post(
    "/flush",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_api_key)],
    summary="Upload pending conversions now",
)
async def flush_conversions(
    background_tasks: BackgroundTasks,
    reporter: AEMReporter = Depends(get_reporter),
) -> AcceptedResponse:
    background_tasks.add_task(
        _run_reporter_task, "send_aggregation_request", reporter.send_aggregation_request
    )
    return AcceptedResponse(status="queued")


@router.post(
    "/enable",
    response_model=StatusResponse,
    dependencies=[Depends(require_api_key)],
    summary="Enable AEM reporting",
)
async def enable_reporting(reporter: AEMReporter = Depends(get_reporter)) -> StatusResponse:
    reporter.enable()
    return _status_of(reporter)


@router.get(
    "/status",
    response_model=StatusResponse,
    dependencies=[Depends(require_api_key)],
    summary="Reporter status",
)
async def reporter_status(reporter: AEMReporter = Depends(get_reporter)) -> StatusResponse:
    return _status_of(reporter)


def _status_of(reporter: AEMReporter) -> StatusResponse:
    return StatusResponse(
        enabled=reporter.is_enabled,
        state=reporter.state.value,
        invocations=len(reporter.invocations),
        pending_invocations=sum(
            1 for invocation in reporter.invocations if not invocation.is_aggregated
        ),
        configs={
            mode.value: len(config_list)
            for mode, config_list in reporter.configs.items()
        },
    )
