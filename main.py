import logging
import os
from datetime import date as Date, time
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import database
from database import count_documents, find_records, load_record, save_record
from errors import (
    CatalogMismatchError,
    EncounterError,
    FieldValueError,
    IllegalTransitionError,
    InterpretationError,
    InvariantViolationError,
    NotFoundError,
    PersistenceError,
    UnknownFieldPathError,
)
from fields import EXAMINATION_CONTEXT_HINT, EXAMINATION_FIELDS
from interpreter import Interpreter, get_interpreter
from schemas import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Examination,
    ExaminationStatus,
    SOAPNote,
    dump,
    utcnow,
    validate_record,
)
from workflow import (
    apply_free_text_update,
    begin_examination,
    cancel_appointment,
    check_in,
    complete_examination,
    draft_soap_note,
    sync_appointment_status,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Encounter API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

NO_SIGNAL_MESSAGE = "No relevant information found in your description. Please try again with more specific details."

# Error mapping

STATUS_CODES = [
    (NotFoundError, 404),
    (InvariantViolationError, 422),
    (FieldValueError, 422),
    (UnknownFieldPathError, 422),
    (IllegalTransitionError, 409),
    (CatalogMismatchError, 502),
    (InterpretationError, 503),
    (PersistenceError, 503),
]


def error_body(e: EncounterError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": str(e), "error": type(e).__name__}
    if isinstance(e, InvariantViolationError):
        body["violations"] = [v.to_dict() for v in e.violations]
    if isinstance(e, IllegalTransitionError):
        body.update({"entity": e.entity, "current": e.current, "target": e.target})
    return body


@app.exception_handler(EncounterError)
async def encounter_error_handler(request: Request, exc: EncounterError):
    status = next((code for kind, code in STATUS_CODES if isinstance(exc, kind)), 500)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=error_body(exc))


# Helpers

def get_assistant() -> Interpreter:
    return get_interpreter()


def persist_side_effect(record) -> Optional[str]:
    """Save a linked record; failures are reported, not raised."""
    try:
        save_record(record)
    except PersistenceError as e:
        logger.warning("Linked %s %s not saved: %s", type(record).__name__, record.id, e)
        return str(e)
    return None


@app.get("/")
def root():
    return {"message": "Encounter backend running"}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is not None:
        resp["database"] = "✅ Available"
        resp["connection_status"] = "Connected"
        try:
            resp["collections"] = db.list_collection_names()
            resp["database"] = "✅ Connected & Working"
        except Exception as e:
            resp["database"] = f"⚠️ Connected but error: {str(e)[:60]}"
    return resp


# Schema exposure for the database viewer
@app.get("/schema")
def get_schema():
    return {
        "appointment": Appointment.model_json_schema(by_alias=True),
        "examination": Examination.model_json_schema(by_alias=True),
        "soap_note": SOAPNote.model_json_schema(by_alias=True),
    }


# Appointments

def _require(model, candidate):
    result = validate_record(model, candidate)
    if isinstance(result, list):
        raise InvariantViolationError(result)
    return result


@app.post("/appointments", status_code=201)
def create_appointment(payload: Appointment):
    now = utcnow()
    record = _require(Appointment, payload.model_copy(update={
        "id": None,
        "status": AppointmentStatus.SCHEDULED,
        "created_at": now,
        "updated_at": now,
    }))
    return dump(save_record(record))


@app.get("/appointments")
def list_appointments(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    date: Optional[Date] = None,
):
    records = find_records(
        Appointment,
        patient_id=patient_id,
        doctor_id=doctor_id,
        status=status.value if status else None,
        date=date.isoformat() if date else None,
    )
    records.sort(key=lambda a: (a.date, a.start_time))
    return [dump(a) for a in records]


@app.get("/appointments/{appointment_id}")
def get_appointment(appointment_id: str):
    return dump(load_record(Appointment, appointment_id))


# Status moves go through the workflow endpoints, not through edits
class AppointmentUpdate(BaseModel):
    doctor_id: Optional[str] = Field(None, alias="doctorId")
    date: Optional[Date] = None
    start_time: Optional[time] = Field(None, alias="startTime")
    end_time: Optional[time] = Field(None, alias="endTime")
    type: Optional[AppointmentType] = None
    notes: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "forbid"}


@app.patch("/appointments/{appointment_id}")
def update_appointment(appointment_id: str, payload: AppointmentUpdate):
    current = load_record(Appointment, appointment_id)
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        return dump(current)
    candidate = current.model_copy(update={**updates, "updated_at": utcnow()})
    return dump(save_record(_require(Appointment, candidate)))


def _move_appointment(appointment_id: str, move):
    current = load_record(Appointment, appointment_id)
    updated = move(current)
    if updated is not current:
        save_record(updated)
    return dump(updated)


@app.post("/appointments/{appointment_id}/check-in")
def check_in_appointment(appointment_id: str):
    return _move_appointment(appointment_id, check_in)


@app.post("/appointments/{appointment_id}/cancel")
def cancel(appointment_id: str):
    return _move_appointment(appointment_id, cancel_appointment)


class BeginExaminationInput(BaseModel):
    doctor_id: Optional[str] = Field(None, alias="doctorId")

    model_config = {"populate_by_name": True}


@app.post("/appointments/{appointment_id}/begin-examination")
def begin(appointment_id: str, payload: Optional[BeginExaminationInput] = None):
    current = load_record(Appointment, appointment_id)
    updated, draft = begin_examination(current, doctor_id=payload.doctor_id if payload else None)
    # appointment is written before any examination write
    if updated is not current:
        save_record(updated)

    existing = find_records(Examination, appointment_id=appointment_id, limit=1)
    examination = existing[0] if existing else save_record(draft)
    return {"appointment": dump(updated), "examination": dump(examination)}


# Examinations

@app.post("/examinations", status_code=201)
def create_examination(payload: Examination):
    now = utcnow()
    record = _require(Examination, payload.model_copy(update={
        "id": None,
        "status": ExaminationStatus.IN_PROGRESS,
        "created_at": now,
        "updated_at": now,
    }))
    return dump(save_record(record))


@app.get("/examinations/{examination_id}")
def get_examination(examination_id: str):
    examination = load_record(Examination, examination_id)
    if examination.appointment_id:
        try:
            appointment = load_record(Appointment, examination.appointment_id)
        except PersistenceError as e:
            logger.warning("Linked appointment of examination %s unavailable: %s", examination_id, e)
        else:
            synced = sync_appointment_status(examination, appointment)
            if synced is not appointment:
                persist_side_effect(synced)
    return dump(examination)


@app.put("/examinations/{examination_id}")
def replace_examination(examination_id: str, payload: Examination):
    current = load_record(Examination, examination_id)
    candidate = payload.model_copy(update={
        "id": current.id,
        "status": current.status,
        "created_at": current.created_at,
        "updated_at": utcnow(),
    })
    return dump(save_record(_require(Examination, candidate)))


@app.post("/examinations/{examination_id}/complete")
def complete(examination_id: str):
    examination = load_record(Examination, examination_id)
    linked = None
    side_effect_error = None
    if examination.appointment_id:
        try:
            linked = load_record(Appointment, examination.appointment_id)
        except PersistenceError as e:
            side_effect_error = str(e)

    update = complete_examination(examination, linked)
    save_record(update.examination)

    if update.side_effect_error is not None:
        side_effect_error = str(update.side_effect_error)
    elif update.appointment is not None and update.appointment is not linked:
        side_effect_error = persist_side_effect(update.appointment)

    return {
        "examination": dump(update.examination),
        "appointment": dump(update.appointment) if update.appointment else None,
        "sideEffectError": side_effect_error,
    }


class FreeTextInput(BaseModel):
    text: str
    context_hint: Optional[str] = Field(None, alias="contextHint")

    model_config = {"populate_by_name": True}


@app.post("/examinations/{examination_id}/assist")
def assist(examination_id: str, payload: FreeTextInput, interpret: Interpreter = Depends(get_assistant)):
    if not payload.text.strip():
        raise HTTPException(status_code=400, detail="Text is empty")
    examination = load_record(Examination, examination_id)
    result = apply_free_text_update(
        examination,
        EXAMINATION_FIELDS,
        payload.text,
        interpret,
        context_hint=payload.context_hint or EXAMINATION_CONTEXT_HINT,
    )
    if result.found_nothing:
        return {"updated": False, "changedLabels": [], "message": NO_SIGNAL_MESSAGE, "examination": dump(examination)}
    saved = save_record(result.record)
    return {"updated": True, "changedLabels": result.changed_labels, "examination": dump(saved)}


@app.post("/examinations/{examination_id}/soap-note", status_code=201)
def create_soap_note(examination_id: str):
    examination = load_record(Examination, examination_id)
    if find_records(SOAPNote, examination_id=examination_id, limit=1):
        raise HTTPException(status_code=409, detail="SOAP note already exists for this examination")
    return dump(save_record(draft_soap_note(examination)))


@app.get("/examinations/{examination_id}/soap-note")
def get_soap_note(examination_id: str):
    notes = find_records(SOAPNote, examination_id=examination_id, limit=1)
    if not notes:
        raise HTTPException(status_code=404, detail="SOAP note not found")
    return dump(notes[0])


# Simple metrics for dashboard
@app.get("/metrics")
def get_metrics(doctor_id: Optional[str] = None):
    q_appt: Dict[str, Any] = {}
    if doctor_id:
        q_appt["doctor_id"] = doctor_id

    cards: List[Dict[str, Any]] = [
        {"label": "Total Appointments", "value": count_documents("appointment", q_appt)}
    ]
    for status in AppointmentStatus:
        cards.append({
            "label": status.value.replace("-", " ").title(),
            "value": count_documents("appointment", {**q_appt, "status": status.value}),
        })
    return {"cards": cards}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
