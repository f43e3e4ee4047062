import logging
from datetime import datetime, time
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from domain import (
    Appointment,
    AppointmentStatus,
    BookingMode,
    BookingType,
    BusinessHours,
    DepartmentConfig,
    Doctor,
    DoctorStatus,
    HospitalConfig,
    Priority,
    QueueSnapshot,
    ResetFrequency,
    Visit,
    VisitStatus,
    default_business_hours,
    new_id,
)
from engine import QueueEngine
from errors import NotFound, QueueError
from events import InMemoryPublisher
from history import summarize
from settings import Settings, load_settings
from sql_storage import SqlStore
from storage import InMemoryStore

settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_engine(config: Settings) -> QueueEngine:
    if config.database_url:
        store = SqlStore(config.database_url)
        store.create_all()
    else:
        store = InMemoryStore()
    return QueueEngine(
        store,
        publisher=InMemoryPublisher(config.event_outbox_size),
        lock_timeout=config.lock_timeout_seconds,
        default_timezone=config.default_timezone,
    )


app = FastAPI(title="Clinic Queue Engine", docs_url=None)
engine = build_engine(settings)

# Errors a caller can fix by changing the request map to 4xx codes by kind.
HTTP_STATUS_BY_CATEGORY = {
    "validation": 400,
    "conflict": 409,
    "contention": 423,
    "configuration": 422,
}


def to_http_error(exc: QueueError) -> HTTPException:
    status_code = 404 if isinstance(exc, NotFound) else HTTP_STATUS_BY_CATEGORY[exc.category]
    return HTTPException(
        status_code=status_code,
        detail={"error": type(exc).__name__, "message": exc.message},
    )


class BusinessHoursModel(BaseModel):
    is_open: bool = True
    start: time = time(9, 0)
    end: time = time(17, 0)


class HospitalConfigRequest(BaseModel):
    booking_mode: BookingMode = BookingMode.TOKEN_ONLY
    default_consultation_duration: Optional[int] = None
    buffer_time: Optional[int] = None
    arrival_window: Optional[int] = None
    business_hours: Optional[Dict[str, BusinessHoursModel]] = None
    token_reset_frequency: Optional[ResetFrequency] = None
    auto_reassign_on_leave: bool = False
    max_queue_length: Optional[int] = None
    timezone: Optional[str] = None
    no_show_grace_period: Optional[int] = None


class DepartmentConfigRequest(BaseModel):
    booking_mode: Optional[BookingMode] = None
    default_consultation_duration: Optional[int] = None
    buffer_time: Optional[int] = None
    arrival_window: Optional[int] = None
    token_reset_frequency: Optional[ResetFrequency] = None
    max_queue_length: Optional[int] = None
    token_prefix: Optional[str] = None
    no_show_grace_period: Optional[int] = None


class PolicyResponse(BaseModel):
    hospital_id: str
    department_id: Optional[str]
    booking_mode: BookingMode
    consultation_duration: int
    buffer_time: int
    arrival_window: int
    token_reset_frequency: ResetFrequency
    max_queue_length: Optional[int]
    token_prefix: Optional[str]
    no_show_grace_period: int
    auto_reassign_on_leave: bool
    timezone: str


class CreateDoctorRequest(BaseModel):
    hospital_id: str
    department_id: str
    name: str
    id: Optional[str] = None
    consultation_duration: Optional[int] = None
    daily_patient_limit: Optional[int] = None


class DoctorResponse(BaseModel):
    id: str
    hospital_id: str
    department_id: str
    name: str
    status: DoctorStatus
    consultation_duration: Optional[int]
    daily_patient_limit: Optional[int]


class DoctorStatusRequest(BaseModel):
    status: DoctorStatus


class CreateAppointmentRequest(BaseModel):
    hospital_id: str
    patient_id: str
    scheduled_at: datetime
    department_id: Optional[str] = None
    doctor_id: Optional[str] = None
    booking_type: BookingType = BookingType.ONLINE


class AppointmentResponse(BaseModel):
    id: str
    hospital_id: str
    patient_id: str
    scheduled_at: datetime
    department_id: Optional[str]
    doctor_id: Optional[str]
    status: AppointmentStatus
    booking_type: BookingType


class CheckInRequest(BaseModel):
    hospital_id: str
    patient_id: str
    department_id: Optional[str] = None
    doctor_id: Optional[str] = None
    appointment_id: Optional[str] = None
    priority: Priority = Priority.NORMAL
    notes: Optional[str] = None


class VisitResponse(BaseModel):
    id: str
    hospital_id: str
    patient_id: str
    doctor_id: Optional[str]
    department_id: str
    appointment_id: Optional[str]
    token_number: int
    display_token: str
    status: VisitStatus
    priority: Priority
    checked_in_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    estimated_wait_minutes: Optional[int]
    is_carryover: bool
    carried_from_id: Optional[str]
    requeued_at: Optional[datetime]
    notes: Optional[str]


class QueueEntryResponse(BaseModel):
    position: int
    estimated_wait_minutes: int
    on_hold: bool
    visit: VisitResponse


class QueueResponse(BaseModel):
    hospital_id: str
    doctor_id: Optional[str]
    department_id: Optional[str]
    entries: List[QueueEntryResponse]
    in_progress: List[VisitResponse]
    total_count: int


class CompleteRequest(BaseModel):
    notes: Optional[str] = None


class ReassignRequest(BaseModel):
    new_doctor_id: str


class DoctorStatusResponse(BaseModel):
    doctor: DoctorResponse
    reassigned: List[VisitResponse]


class HistorySummaryResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    average_wait_minutes: Optional[float]
    average_consultation_minutes: Optional[float]


def to_visit_response(v: Visit) -> VisitResponse:
    return VisitResponse(
        id=v.id,
        hospital_id=v.hospital_id,
        patient_id=v.patient_id,
        doctor_id=v.doctor_id,
        department_id=v.department_id,
        appointment_id=v.appointment_id,
        token_number=v.token_number,
        display_token=v.display_token,
        status=v.status,
        priority=v.priority,
        checked_in_at=v.checked_in_at,
        started_at=v.started_at,
        completed_at=v.completed_at,
        estimated_wait_minutes=v.estimated_wait_minutes,
        is_carryover=v.is_carryover,
        carried_from_id=v.carried_from_id,
        requeued_at=v.requeued_at,
        notes=v.notes,
    )


def to_doctor_response(d: Doctor) -> DoctorResponse:
    return DoctorResponse(
        id=d.id,
        hospital_id=d.hospital_id,
        department_id=d.department_id,
        name=d.name,
        status=d.status,
        consultation_duration=d.consultation_duration,
        daily_patient_limit=d.daily_patient_limit,
    )


def to_queue_response(snapshot: QueueSnapshot) -> QueueResponse:
    return QueueResponse(
        hospital_id=snapshot.hospital_id,
        doctor_id=snapshot.doctor_id,
        department_id=snapshot.department_id,
        entries=[
            QueueEntryResponse(
                position=entry.position,
                estimated_wait_minutes=entry.visit.estimated_wait_minutes or 0,
                on_hold=entry.on_hold,
                visit=to_visit_response(entry.visit),
            )
            for entry in snapshot.entries
        ],
        in_progress=[to_visit_response(v) for v in snapshot.in_progress],
        total_count=len(snapshot),
    )


def _minutes(delta) -> Optional[float]:
    return round(delta.total_seconds() / 60, 1) if delta is not None else None


@app.put("/hospitals/{hospital_id}/config", response_model=PolicyResponse)
def put_hospital_config(hospital_id: str, body: HospitalConfigRequest) -> PolicyResponse:
    data = body.model_dump(exclude={"business_hours"})
    hours = default_business_hours()
    if body.business_hours:
        hours.update(
            {day: BusinessHours(**h.model_dump()) for day, h in body.business_hours.items()}
        )
    try:
        engine.save_hospital_config(
            HospitalConfig(hospital_id=hospital_id, business_hours=hours, **data)
        )
        return get_policy(hospital_id)
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.put(
    "/hospitals/{hospital_id}/departments/{department_id}/config",
    response_model=PolicyResponse,
)
def put_department_config(
    hospital_id: str, department_id: str, body: DepartmentConfigRequest
) -> PolicyResponse:
    try:
        engine.save_department_config(
            DepartmentConfig(
                hospital_id=hospital_id, department_id=department_id, **body.model_dump()
            )
        )
        return get_policy(hospital_id, department_id)
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.get("/hospitals/{hospital_id}/policy", response_model=PolicyResponse)
def get_policy(hospital_id: str, department_id: Optional[str] = None) -> PolicyResponse:
    try:
        policy = engine.resolve_policy(hospital_id, department_id)
    except QueueError as exc:
        raise to_http_error(exc) from exc
    data = {
        name: getattr(policy, name) for name in PolicyResponse.model_fields
    }
    return PolicyResponse(**data)


@app.post("/doctors", response_model=DoctorResponse)
def create_doctor(body: CreateDoctorRequest) -> DoctorResponse:
    doctor = Doctor(
        id=body.id or new_id(),
        hospital_id=body.hospital_id,
        department_id=body.department_id,
        name=body.name,
        consultation_duration=body.consultation_duration,
        daily_patient_limit=body.daily_patient_limit,
    )
    try:
        return to_doctor_response(engine.save_doctor(doctor))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.put("/doctors/{doctor_id}/status", response_model=DoctorStatusResponse)
def set_doctor_status(doctor_id: str, body: DoctorStatusRequest) -> DoctorStatusResponse:
    try:
        moved = engine.set_doctor_status(doctor_id, body.status)
        doctor = engine.get_doctor(doctor_id)
    except QueueError as exc:
        raise to_http_error(exc) from exc
    return DoctorStatusResponse(
        doctor=to_doctor_response(doctor),
        reassigned=[to_visit_response(v) for v in moved],
    )


@app.post("/appointments", response_model=AppointmentResponse)
def create_appointment(body: CreateAppointmentRequest) -> AppointmentResponse:
    appointment = Appointment(id=new_id(), **body.model_dump())
    try:
        saved = engine.save_appointment(appointment)
    except QueueError as exc:
        raise to_http_error(exc) from exc
    return AppointmentResponse(**vars(saved))


@app.post("/visits/check-in", response_model=VisitResponse)
def check_in(body: CheckInRequest) -> VisitResponse:
    try:
        visit = engine.check_in(**body.model_dump())
    except QueueError as exc:
        raise to_http_error(exc) from exc
    return to_visit_response(visit)


@app.get("/visits/{visit_id}", response_model=VisitResponse)
def get_visit(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.get_visit(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/doctors/{doctor_id}/call-next", response_model=VisitResponse)
def call_next(doctor_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.call_next(doctor_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/doctors/{doctor_id}/delay", response_model=VisitResponse)
def delay(doctor_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.delay(doctor_id=doctor_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/skip", response_model=VisitResponse)
def skip(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.skip(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/hold", response_model=VisitResponse)
def hold(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.hold(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/resume", response_model=VisitResponse)
def resume(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.resume(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/complete", response_model=VisitResponse)
def complete(visit_id: str, body: Optional[CompleteRequest] = None) -> VisitResponse:
    notes = body.notes if body else None
    try:
        return to_visit_response(engine.complete(visit_id, notes=notes))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/cancel", response_model=VisitResponse)
def cancel(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.cancel(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/no-show", response_model=VisitResponse)
def no_show(visit_id: str) -> VisitResponse:
    try:
        return to_visit_response(engine.mark_no_show(visit_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.post("/visits/{visit_id}/reassign", response_model=VisitResponse)
def reassign(visit_id: str, body: ReassignRequest) -> VisitResponse:
    try:
        return to_visit_response(engine.reassign(visit_id, body.new_doctor_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.get("/doctors/{doctor_id}/queue", response_model=QueueResponse)
def doctor_queue(doctor_id: str) -> QueueResponse:
    try:
        return to_queue_response(engine.current_queue(doctor_id=doctor_id))
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.get(
    "/hospitals/{hospital_id}/departments/{department_id}/queue",
    response_model=QueueResponse,
)
def department_queue(hospital_id: str, department_id: str) -> QueueResponse:
    try:
        snapshot = engine.current_queue(
            department_id=department_id, hospital_id=hospital_id
        )
    except QueueError as exc:
        raise to_http_error(exc) from exc
    return to_queue_response(snapshot)


@app.post("/hospitals/{hospital_id}/carry-over", response_model=List[VisitResponse])
def carry_over(hospital_id: str) -> List[VisitResponse]:
    try:
        return [to_visit_response(v) for v in engine.carry_over(hospital_id)]
    except QueueError as exc:
        raise to_http_error(exc) from exc


@app.get("/hospitals/{hospital_id}/history/summary", response_model=HistorySummaryResponse)
def history_summary(
    hospital_id: str, doctor_id: Optional[str] = None, since: Optional[datetime] = None
) -> HistorySummaryResponse:
    summary = summarize(engine.store, hospital_id, doctor_id=doctor_id, since=since)
    return HistorySummaryResponse(
        total=summary.total,
        by_status=summary.by_status,
        average_wait_minutes=_minutes(summary.average_wait),
        average_consultation_minutes=_minutes(summary.average_consultation),
    )


@app.get("/events/{topic}")
def recent_events(topic: str) -> List[dict]:
    """Recent change events for a topic such as ``doctor:<id>``."""
    return [event.to_dict() for event in engine.publisher.events(topic)]


@app.post("/admin/reset")
def reset_all() -> dict:
    """Start over with an empty engine (useful during development / simulation)."""
    global engine
    if isinstance(engine.store, SqlStore):
        engine.store.drop_all()
    engine = build_engine(settings)
    return {"detail": "State cleared"}


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui() -> object:
    """
    Serve Swagger UI with a custom page title that does not include 'Swagger UI'.
    Also hides version/OAS badges.
    """
    resp = get_swagger_ui_html(
        openapi_url=app.openapi_url,
        title="Clinic Queue Engine",
    )
    html = resp.body.decode("utf-8")
    css = """
<style>
  .swagger-ui .info .title small { display: none !important; }
  .swagger-ui .info .title .version-stamp { display: none !important; }
</style>
""".strip()
    html = html.replace("</head>", f"{css}</head>", 1)
    headers = dict(resp.headers)
    headers.pop("content-length", None)
    return HTMLResponse(html, status_code=resp.status_code, headers=headers)
