from __future__ import annotations

import asyncio
import datetime as dt
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from . import models
from .clock import local_date, now_ms, to_datetime
from .compliance import ComplianceResult, DayTotals, evaluate
from .config import Settings, settings
from .database import SessionFactory, SessionLocal, db_session, engine, get_db
from .driving import DrivingDetector, LocationSample, MotionSample, PushSource
from .engine import WorkTimeEngine, score_single_shift
from .schemas import (
    ComplianceEvaluateRequest,
    ComplianceResponse,
    ContextResponse,
    ContextUpdateRequest,
    DetectorResponse,
    EndShiftResponse,
    FinalizedShift,
    FinalizedShiftResponse,
    LiveView,
    LocationSampleRequest,
    MotionSampleRequest,
    PositionRequest,
    ShiftRecordResponse,
    SyncResponse,
    ViolationResponse,
)
from .sessions import (
    LocalSessionService,
    OfflineQueue,
    build_session_service,
    compliance_map,
    list_shifts_for_day,
    score_day,
)
from .state import RuntimeState
from .storage import build_snapshot_store
from .timer import TransitionRejected


logger = logging.getLogger(__name__)


def _recorded_day_scorer(session_factory: SessionFactory):
    def scorer(shift: FinalizedShift, user_id: str, timezone: str) -> Optional[ComplianceResult]:
        if not user_id or shift.session_id is None:
            return score_single_shift(shift, user_id, timezone)
        with db_session(session_factory) as db:
            return score_day(db, user_id, local_date(shift.shift_start_ms, timezone))

    return scorer


def create_work_engine(
    config: Settings,
    session_factory: SessionFactory,
    runtime_state: RuntimeState,
    clock=now_ms,
) -> WorkTimeEngine:
    detector = DrivingDetector(PushSource("location"), PushSource("motion"))
    session_service = build_session_service(config, session_factory)
    scorer = score_single_shift
    if isinstance(session_service, LocalSessionService):
        scorer = _recorded_day_scorer(session_factory)

    return WorkTimeEngine(
        context=runtime_state,
        store=build_snapshot_store(config, session_factory),
        session_service=session_service,
        detector=detector,
        offline_queue=OfflineQueue(session_factory),
        scorer=scorer,
        clock=clock,
    )


models.Base.metadata.create_all(bind=engine)

runtime_state = RuntimeState(settings)
with db_session() as session:
    try:
        runtime_state.load_from_db(session)
    except Exception as exc:
        logger.warning("Runtime context could not be loaded: %s", exc)

work_engine = create_work_engine(settings, SessionLocal, runtime_state)
work_engine.restore()


async def _background_loop(target: WorkTimeEngine, config: Settings) -> None:
    step = max(0.05, config.detector_interval_seconds)
    ticks_per_second = max(1, round(config.tick_interval_seconds / step))
    counter = 0
    while True:
        await asyncio.sleep(step)
        try:
            # engine calls may block on its lock during session I/O
            await asyncio.to_thread(target.step_detector)
            counter += 1
            if counter >= ticks_per_second:
                counter = 0
                await asyncio.to_thread(target.tick)
        except Exception as exc:  # pragma: no cover - keep the loop alive
            logger.warning("Background tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task: Optional[asyncio.Task] = None
    if settings.background_loop:
        task = asyncio.create_task(_background_loop(app.state.work_engine, settings))
    try:
        yield
    finally:
        app.state.work_engine.on_suspend_hint()
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.runtime_state = runtime_state
app.state.work_engine = work_engine
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def get_work_engine(request: Request) -> WorkTimeEngine:
    return request.app.state.work_engine


def get_runtime_state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


def _conflict(exc: TransitionRejected) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _compliance_response(day: dt.date, result: ComplianceResult) -> ComplianceResponse:
    return ComplianceResponse(
        date=day,
        score=result.score,
        violations=[
            ViolationResponse(
                kind=violation.kind.value,
                label=str(violation),
                informational=violation.informational,
                amount=violation.amount,
                title_key=violation.kind.title_key,
                tip_key=violation.kind.tip_key,
            )
            for violation in result.violations
        ],
    )


def _require_user(state: RuntimeState) -> str:
    user_id = state.snapshot()["user_id"]
    if not user_id:
        raise HTTPException(status_code=status.HTTP_412_PRECONDITION_FAILED, detail="No driver identity configured")
    return user_id


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/context", response_model=ContextResponse)
def get_context(state: RuntimeState = Depends(get_runtime_state)) -> ContextResponse:
    return ContextResponse(**state.snapshot())


@app.put("/context", response_model=ContextResponse)
def update_context(
    payload: ContextUpdateRequest,
    state: RuntimeState = Depends(get_runtime_state),
    db: Session = Depends(get_db),
) -> ContextResponse:
    updates = payload.model_dump(exclude_unset=True)
    state.apply(updates)
    current = state.snapshot()
    state.persist(db, {key: current[key] for key in updates})
    return ContextResponse(**current)


@app.get("/shift", response_model=LiveView)
def shift_status(work: WorkTimeEngine = Depends(get_work_engine)) -> LiveView:
    return work.view()


@app.post("/shift/start", response_model=LiveView, status_code=status.HTTP_201_CREATED)
def shift_start(
    payload: Optional[PositionRequest] = None,
    work: WorkTimeEngine = Depends(get_work_engine),
) -> LiveView:
    position = payload or PositionRequest()
    try:
        view = work.start_shift(position.latitude, position.longitude)
    except TransitionRejected as exc:
        raise _conflict(exc) from exc
    if view is None:
        raise HTTPException(status_code=status.HTTP_412_PRECONDITION_FAILED, detail="No driver identity configured")
    return view


@app.post("/shift/break", response_model=LiveView)
def shift_break(work: WorkTimeEngine = Depends(get_work_engine)) -> LiveView:
    try:
        return work.toggle_break()
    except TransitionRejected as exc:
        raise _conflict(exc) from exc


@app.post("/shift/poa", response_model=LiveView)
def shift_poa(work: WorkTimeEngine = Depends(get_work_engine)) -> LiveView:
    try:
        return work.toggle_poa()
    except TransitionRejected as exc:
        raise _conflict(exc) from exc


@app.post("/shift/end", response_model=EndShiftResponse)
def shift_end(
    payload: Optional[PositionRequest] = None,
    work: WorkTimeEngine = Depends(get_work_engine),
) -> EndShiftResponse:
    position = payload or PositionRequest()
    try:
        ended = work.end_shift(position.latitude, position.longitude)
    except TransitionRejected as exc:
        raise _conflict(exc) from exc
    shift = ended.shift
    return EndShiftResponse(
        shift=FinalizedShiftResponse(
            session_id=shift.session_id,
            start_time=to_datetime(shift.shift_start_ms),
            end_time=to_datetime(shift.end_ms),
            work_minutes=shift.work_minutes,
            poa_minutes=shift.poa_minutes,
            break_minutes=shift.break_minutes,
            driving_minutes=shift.driving_minutes,
        ),
        compliance=_compliance_response(ended.day, ended.compliance) if ended.compliance else None,
    )


@app.post("/shift/suspend", status_code=status.HTTP_204_NO_CONTENT)
def shift_suspend(work: WorkTimeEngine = Depends(get_work_engine)) -> None:
    work.on_suspend_hint()


@app.post("/shift/resume", response_model=LiveView)
def shift_resume(work: WorkTimeEngine = Depends(get_work_engine)) -> LiveView:
    return work.on_resume_hint()


@app.post("/sensors/location", response_model=DetectorResponse)
def sensor_location(
    payload: LocationSampleRequest,
    work: WorkTimeEngine = Depends(get_work_engine),
) -> DetectorResponse:
    source = work.detector.location_source
    if not isinstance(source, PushSource):
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Location is not push-fed")
    source.publish(
        LocationSample(
            speed_kmh=payload.speed_kmh,
            accuracy_m=payload.accuracy_m,
            sample_time_ms=payload.timestamp_ms if payload.timestamp_ms is not None else now_ms(),
        )
    )
    detector = work.detector
    return DetectorResponse(score=detector.score, is_driving=detector.is_driving, running=detector.running)


@app.post("/sensors/motion", response_model=DetectorResponse)
def sensor_motion(
    payload: MotionSampleRequest,
    work: WorkTimeEngine = Depends(get_work_engine),
) -> DetectorResponse:
    source = work.detector.motion_source
    if not isinstance(source, PushSource):
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Motion is not push-fed")
    timestamp = payload.timestamp_ms if payload.timestamp_ms is not None else now_ms()
    source.publish(MotionSample.from_acceleration(payload.x, payload.y, payload.z, timestamp))
    detector = work.detector
    return DetectorResponse(score=detector.score, is_driving=detector.is_driving, running=detector.running)


@app.post("/compliance/evaluate", response_model=ComplianceResponse)
def compliance_evaluate(payload: ComplianceEvaluateRequest) -> ComplianceResponse:
    day = DayTotals(
        date=payload.date,
        work_minutes=payload.work_minutes,
        driving_minutes=payload.driving_minutes,
        break_minutes=payload.break_minutes,
        first_session_start=payload.first_session_start,
        session_count=payload.session_count,
    )
    result = evaluate(
        day,
        payload.previous_day_last_session_end,
        payload.fortnightly_driving_minutes,
        payload.weekly_driving_extensions_used,
    )
    return _compliance_response(payload.date, result)


@app.get("/compliance/day/{day}", response_model=ComplianceResponse)
def compliance_day(
    day: dt.date,
    state: RuntimeState = Depends(get_runtime_state),
    db: Session = Depends(get_db),
) -> ComplianceResponse:
    user_id = _require_user(state)
    return _compliance_response(day, score_day(db, user_id, day))


@app.get("/compliance/range", response_model=list[ComplianceResponse])
def compliance_range(
    from_date: dt.date,
    to_date: dt.date,
    state: RuntimeState = Depends(get_runtime_state),
    db: Session = Depends(get_db),
) -> list[ComplianceResponse]:
    if to_date < from_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="to_date must not be before from_date")
    user_id = _require_user(state)
    results = compliance_map(db, user_id, from_date, to_date)
    return [_compliance_response(day, result) for day, result in results.items()]


@app.get("/shifts/day/{day}", response_model=list[ShiftRecordResponse])
def shifts_for_day(
    day: dt.date,
    state: RuntimeState = Depends(get_runtime_state),
    db: Session = Depends(get_db),
) -> list[ShiftRecordResponse]:
    user_id = _require_user(state)
    return list_shifts_for_day(db, user_id, day)


@app.post("/sync", response_model=SyncResponse)
def sync_pending(work: WorkTimeEngine = Depends(get_work_engine)) -> SyncResponse:
    delivered = work.sync_pending()
    pending = work.offline_queue.pending_count() if work.offline_queue is not None else 0
    return SyncResponse(delivered=delivered, pending=pending)
