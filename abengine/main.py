import logging
from typing import List

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from starlette.middleware.sessions import SessionMiddleware

from abengine.core.auth import EventAuthorizer, require_auth_token
from abengine.core.context import VisitorContext
from abengine.core.errors import CorruptRecordError, StoreUnavailableError
from abengine.core.log_config import configure_logging
from abengine.core.settings import config_settings
from abengine.core.stores import (
    get_assignment_store,
    get_authorizer,
    get_counter_store,
    get_experiments_config,
    get_selection_policy,
    get_variation_repository,
)
from abengine.models.schemas.event import (
    EventSubmissionModel,
    PageviewSubmissionModel,
    RecordResultModel,
)
from abengine.models.schemas.experiment import (
    ExperimentResultModel,
    ExperimentsConfig,
    RenderResponseModel,
)
from abengine.repositories.assignment_repo import AssignmentStore
from abengine.repositories.counter_store import CounterStore
from abengine.repositories.experiment_repo import VariationRepository
from abengine.services.event_service import EventService
from abengine.services.experiment_service import ExperimentService
from abengine.services.selection import SelectionPolicy

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="abengine",
    description="Adaptive variation allocation engine for page experiments",
    version="0.1.0",
)
app.add_middleware(
    SessionMiddleware,
    secret_key=config_settings.SESSION_SECRET,
    https_only=config_settings.COOKIE_SECURE,
)


def get_visitor(request: Request) -> VisitorContext:
    """Builds the per-request visitor context from cookies, session and headers."""
    return VisitorContext(
        cookies=dict(request.cookies),
        session=request.session,
        user_agent=request.headers.get("user-agent"),
    )


def apply_cookie_writes(visitor: VisitorContext, response: Response) -> None:
    for write in visitor.cookie_writes:
        if write.value is None:
            response.delete_cookie(
                write.name,
                path=config_settings.COOKIE_PATH,
                domain=config_settings.COOKIE_DOMAIN,
            )
        else:
            response.set_cookie(
                write.name,
                write.value,
                max_age=write.max_age,
                path=config_settings.COOKIE_PATH,
                domain=config_settings.COOKIE_DOMAIN,
                secure=config_settings.COOKIE_SECURE,
                httponly=True,
                samesite="lax",
            )


def get_experiment_service(
    repository: VariationRepository = Depends(get_variation_repository),
    assignment_store: AssignmentStore = Depends(get_assignment_store),
    policy: SelectionPolicy = Depends(get_selection_policy),
    authorizer: EventAuthorizer = Depends(get_authorizer),
) -> ExperimentService:
    return ExperimentService(
        repository=repository,
        assignment_store=assignment_store,
        policy=policy,
        authorizer=authorizer,
        assignment_ttl=config_settings.ASSIGNMENT_TTL_SECONDS,
        detect_bots=config_settings.DETECT_BOTS,
    )


def get_event_service(
    counter_store: CounterStore = Depends(get_counter_store),
    authorizer: EventAuthorizer = Depends(get_authorizer),
    configured: ExperimentsConfig = Depends(get_experiments_config),
) -> EventService:
    return EventService(counter_store=counter_store, authorizer=authorizer, configured=configured)


@app.get(
    "/render",
    response_model=RenderResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Resolve variations for a page",
)
def render_page(
    response: Response,
    test_id: List[str] = Query(..., description="Test ids rendered on the page."),
    event: List[str] = Query(
        [], description="Event types to bind on elements outside the variation text."
    ),
    visitor: VisitorContext = Depends(get_visitor),
    experiment_service: ExperimentService = Depends(get_experiment_service),
):
    """
    Returns the visitor's variation for each requested test (sticky if already
    assigned), the session token and the signed pageview payload.
    """
    rendered = experiment_service.render(visitor, test_id, events=event)
    apply_cookie_writes(visitor, response)
    return rendered


@app.post(
    "/pageview",
    response_model=RecordResultModel,
    status_code=status.HTTP_200_OK,
    summary="Record pageviews for rendered variations",
)
def post_pageview(
    submission: PageviewSubmissionModel,
    visitor: VisitorContext = Depends(get_visitor),
    event_service: EventService = Depends(get_event_service),
):
    return RecordResultModel(recorded=event_service.record_pageviews(visitor, submission))


@app.post(
    "/event",
    response_model=RecordResultModel,
    status_code=status.HTTP_200_OK,
    summary="Record a success event for a variation",
)
def post_event(
    submission: EventSubmissionModel,
    visitor: VisitorContext = Depends(get_visitor),
    event_service: EventService = Depends(get_event_service),
):
    return RecordResultModel(recorded=event_service.record_event(visitor, submission))


@app.get(
    "/results",
    response_model=List[ExperimentResultModel],
    status_code=status.HTTP_200_OK,
    summary="Get counters and rankings for all tests",
    dependencies=[Depends(require_auth_token)],
)
def get_results(experiment_service: ExperimentService = Depends(get_experiment_service)):
    try:
        return experiment_service.get_experiment_results()
    except StoreUnavailableError as e:
        logger.error("Results unavailable: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Counter store unavailable. Please try again shortly.",
        )
    except CorruptRecordError as e:
        logger.exception("Corrupt counter record")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Corrupt counter record: {e}",
        )


if __name__ == "__main__":
    uvicorn.run("abengine.main:app", host="0.0.0.0", port=8000, reload=True)
