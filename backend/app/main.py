import logging
from typing import Optional

import nats
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from backend.app import cache, schemas
from backend.app.insights import SnapshotUnavailableError
from backend.app.metrics import MetricsMiddleware, request_window
from backend.app.predictive import ProductivityForecast, TaskCompletionPrediction, WorkloadCapacityPrediction
from backend.app.service import AnalyticsService
from shared.config import settings
from shared.database import Base, SessionLocal, engine
from shared.messaging import nats_dead_letter_sink
from shared.schemas import EventCreate, PerformanceMetricCreate

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Productivity Insights API",
    description="API for tracking workspace activity and generating productivity insights",
    version="1.0.0",
)

app.add_middleware(MetricsMiddleware)

redis_client = None
nats_client = None


@app.on_event("startup")
async def startup_event():
    global redis_client, nats_client
    Base.metadata.create_all(bind=engine)
    redis_client = cache.create_redis(settings.REDIS_URL)
    try:
        nats_client = await nats.connect(settings.NATS_URL)
    except Exception as e:
        logger.warning(f"NATS unavailable, dead-lettering disabled: {e}")
        nats_client = None

    app.state.service = AnalyticsService(
        SessionLocal,
        redis=redis_client,
        dead_letter=nats_dead_letter_sink(nats_client) if nats_client else None,
    )
    await app.state.service.start()


@app.on_event("shutdown")
async def shutdown_event():
    service = getattr(app.state, "service", None)
    if service:
        await service.stop()
    if redis_client:
        await redis_client.aclose()
    if nats_client:
        await nats_client.close()


def get_service(request: Request) -> AnalyticsService:
    return request.app.state.service


@app.exception_handler(SnapshotUnavailableError)
async def snapshot_unavailable_handler(request: Request, exc: SnapshotUnavailableError):
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.post("/events", response_model=schemas.EventsIngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_events(
        request: schemas.EventsIngestRequest,
        service: AnalyticsService = Depends(get_service),
):
    """
    Track a batch of events.

    Events are buffered in memory and written to the store on the next flush.
    Returns immediately. Maximum 5000 events per request.
    """
    await service.track_event_batch(request.events)
    return schemas.EventsIngestResponse(
        status="accepted",
        message="Events queued for processing",
        events_count=len(request.events),
    )


@app.post("/events/track", response_model=schemas.EventsIngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def track_event(event: EventCreate, service: AnalyticsService = Depends(get_service)):
    await service.track_event(event)
    return schemas.EventsIngestResponse(status="accepted", message="Event queued for processing", events_count=1)


@app.post("/metrics/performance", response_model=schemas.StatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def record_performance_metric(
        metric: PerformanceMetricCreate,
        service: AnalyticsService = Depends(get_service),
):
    await service.record_performance_metric(metric)
    return schemas.StatusResponse(status="accepted", message="Performance metric recorded")


@app.get("/users/{user_id}/dashboard", response_model=schemas.DashboardMetrics)
async def get_dashboard(
        user_id: str,
        params: schemas.DashboardQueryParams = Depends(),
        service: AnalyticsService = Depends(get_service),
):
    """
    Get a user's dashboard.

    Combines the user's task summary, productivity metrics, system health and
    latest insights for the requested time range. Cached for five minutes.
    """
    return await service.get_user_dashboard(user_id, params.time_range, params.start_date, params.end_date)


@app.post("/analytics/timeseries", response_model=schemas.TimeSeriesResponse)
async def get_time_series(query: schemas.AnalyticsQuery, service: AnalyticsService = Depends(get_service)):
    """
    Get event counts over time.

    Returns one series per event category, bucketed by hour, day, week or month.
    """
    series = await service.get_time_series_data(query)
    return schemas.TimeSeriesResponse(group_by=query.group_by, series=series)


@app.get("/users/{user_id}/insights", response_model=schemas.InsightsResponse)
async def get_insights(user_id: str, service: AnalyticsService = Depends(get_service)):
    insights = await service.get_insights(user_id)
    return schemas.InsightsResponse(user_id=user_id, data=insights)


@app.post("/users/{user_id}/insights/generate", response_model=schemas.InsightsResponse)
async def generate_insights(user_id: str, service: AnalyticsService = Depends(get_service)):
    """
    Generate insights for a user.

    Analyzes the last 30 days of activity and stores every insight whose
    confidence reaches the configured threshold.
    """
    insights = await service.generate_insights(user_id)
    return schemas.InsightsResponse(user_id=user_id, data=insights)


@app.post("/insights/trigger", response_model=schemas.StatusResponse)
async def trigger_insight_generation(service: AnalyticsService = Depends(get_service)):
    refreshed = await service.trigger_insight_generation()
    return schemas.StatusResponse(status="ok", message=f"Generated insights for {refreshed} active users")


@app.get("/realtime", response_model=schemas.RealtimeMetrics)
async def get_system_realtime_metrics(service: AnalyticsService = Depends(get_service)):
    return await service.get_realtime_metrics()


@app.get("/users/{user_id}/realtime", response_model=schemas.RealtimeMetrics)
async def get_user_realtime_metrics(user_id: str, service: AnalyticsService = Depends(get_service)):
    return await service.get_realtime_metrics(user_id)


@app.get("/users/{user_id}/predictions/task-completion", response_model=TaskCompletionPrediction)
async def get_task_completion_prediction(
        user_id: str,
        params: schemas.TaskPredictionParams = Depends(),
        service: AnalyticsService = Depends(get_service),
):
    return await service.get_task_completion_prediction(user_id, params.task_id, params.complexity)


@app.get("/users/{user_id}/predictions/productivity-forecast", response_model=ProductivityForecast)
async def get_productivity_forecast(
        user_id: str,
        params: schemas.ForecastParams = Depends(),
        service: AnalyticsService = Depends(get_service),
):
    return await service.get_productivity_forecast(user_id, params.days)


@app.get("/users/{user_id}/predictions/workload-capacity", response_model=WorkloadCapacityPrediction)
async def get_workload_capacity_prediction(user_id: str, service: AnalyticsService = Depends(get_service)):
    return await service.get_workload_capacity_prediction(user_id)


@app.post(
    "/users/{user_id}/predictions/train",
    response_model=schemas.StatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def train_predictive_models(user_id: str, service: AnalyticsService = Depends(get_service)):
    service.train_predictive_models(user_id)
    return schemas.StatusResponse(status="accepted", message="Model training started")


@app.websocket("/ws/analytics")
async def analytics_websocket(websocket: WebSocket, user_id: Optional[str] = None):
    await websocket.accept()
    subscription = websocket.app.state.service.subscribe(user_id)
    try:
        async for message in subscription:
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info(f"Real-time analytics client disconnected (user {user_id})")
    finally:
        subscription.close()


@app.get("/")
def root():
    return {
        "message": "Productivity Insights API",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "requests_last_hour": request_window.count(),
        "server_errors_last_hour": request_window.error_count(),
    }
