import hmac
import logging

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from equipment_cabinet.db.deps import get_db
from equipment_cabinet.db.session import SessionLocalCabinet
from equipment_cabinet.models.cabinet_models import City
from equipment_cabinet.schemas.borrows import ApproveReturnRequest, DirectBorrowDto, ReturnEquipmentRequest
from equipment_cabinet.schemas.requests import (
    CancelTokenRequest,
    ConfirmPickupRequest,
    CreateRequestDto,
    CreateRequestResponse,
    ExtendTokenRequest,
    ManageRequestDto,
    VerifyTokenRequest,
)
from equipment_cabinet.services.borrow_service import approve_return, direct_borrow, get_borrow, request_return
from equipment_cabinet.services.eligibility_service import check_overdue
from equipment_cabinet.services.errors import AuthenticationError, CabinetError
from equipment_cabinet.services.manager_access_service import ManagerAuthorizer, get_session
from equipment_cabinet.services.notification_service import EmailNotifier, MessagingClient, Notifier, PushNotifier
from equipment_cabinet.services.overdue_service import sweep_overdue
from equipment_cabinet.services.pickup_service import confirm_pickup
from equipment_cabinet.services.request_service import (
    approve_request,
    cancel_request,
    create_request,
    extend_token,
    get_city_request,
    list_city_requests,
    regenerate_token,
    reject_request,
    verify_request_token,
)
from equipment_cabinet.settings import CORS_ALLOW_ORIGINS, CRON_SECRET, LOG_LEVEL

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

REQUEST_LOGGER = logging.getLogger("equipment_cabinet.requests")
CRON_LOGGER = logging.getLogger("equipment_cabinet.cron")

app = FastAPI(title="Equipment Cabinet")

_CORS_ALLOW_CREDENTIALS = "*" not in CORS_ALLOW_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_AUTHORIZER = ManagerAuthorizer()
_NOTIFIER: Notifier | None = None
_MESSENGER: MessagingClient | None = None


def _manager_emails_for_city(city_id: int) -> list[str]:
    with SessionLocalCabinet() as db:
        email = db.execute(select(City.ManagerEmail).where(City.CityID == city_id)).scalar_one_or_none()
    return [email] if email else []


def get_notifier() -> Notifier:
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = Notifier(PushNotifier(), EmailNotifier(recipients_for_city=_manager_emails_for_city))
    return _NOTIFIER


def get_messenger() -> MessagingClient:
    global _MESSENGER
    if _MESSENGER is None:
        _MESSENGER = MessagingClient()
    return _MESSENGER


@app.exception_handler(CabinetError)
async def handle_cabinet_error(request: Request, exc: CabinetError):
    if exc.status_code >= 500:
        REQUEST_LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"error": "validation", "detail": "Invalid request.", "fields": exc.errors()}),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    REQUEST_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "unexpected", "detail": "Internal server error."})


def _require_manager_session_or_401(session_token: str | None) -> dict:
    session = get_session(session_token)
    if not session:
        raise AuthenticationError("Not logged in.")
    return session


def _require_cron_secret_or_401(authorization: str | None) -> None:
    supplied = (authorization or "").strip()
    if not CRON_SECRET or not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {CRON_SECRET}".encode("utf-8")):
        CRON_LOGGER.warning("Cron call rejected")
        raise AuthenticationError("Unauthorized.")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        return JSONResponse(status_code=503, content={"error": "db_unavailable", "detail": str(exc)})


@app.post("/api/requests/create", response_model=CreateRequestResponse)
def create_equipment_request(
    payload: CreateRequestDto,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return create_request(
        db,
        city_id=payload.cityID,
        requester_name=payload.requesterName,
        requester_phone=payload.requesterPhone,
        items=[item.model_dump() for item in payload.items],
        call_id=payload.callID,
        lat=payload.lat,
        lng=payload.lng,
        notifier=notifier,
    )


@app.post("/api/requests/verify")
def verify_equipment_request(payload: VerifyTokenRequest, db: Session = Depends(get_db)):
    return {"success": True, "request": verify_request_token(db, payload.token)}


@app.post("/api/requests/confirm-pickup")
def confirm_equipment_pickup(
    payload: ConfirmPickupRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return {"success": True, **confirm_pickup(db, payload.token, payload.signature, notifier=notifier)}


@app.get("/api/requests/manage")
def list_requests(
    city_id: int = Query(..., alias="cityId"),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_manager_session_or_401(x_session_token)
    _AUTHORIZER.require(session, city_id)
    return {"success": True, "requests": list_city_requests(db, city_id)}


@app.patch("/api/requests/manage")
def manage_request(
    payload: ManageRequestDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_manager_session_or_401(x_session_token)
    manager_name = _AUTHORIZER.require(session, payload.cityID)

    if payload.action == "approve":
        result = {"request": approve_request(db, payload.requestID, manager_name, city_id=payload.cityID)}
    elif payload.action == "reject":
        result = {"request": reject_request(db, payload.requestID, manager_name, payload.rejectedReason, city_id=payload.cityID)}
    elif payload.action == "cancel":
        result = {"request": cancel_request(db, payload.requestID, manager_name, payload.rejectedReason, city_id=payload.cityID)}
    else:
        result = regenerate_token(db, payload.requestID, manager_name, city_id=payload.cityID)

    REQUEST_LOGGER.info("Request managed request_id=%s action=%s manager=%s", payload.requestID, payload.action, manager_name)
    return {"success": True, **result}


@app.post("/api/requests/extend-token")
def extend_request_token(
    payload: ExtendTokenRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_manager_session_or_401(x_session_token)
    request = get_city_request(db, payload.requestID)
    manager_name = _AUTHORIZER.require(session, request.CityID)
    return {"success": True, **extend_token(db, payload.requestID, manager_name, payload.minutes, city_id=request.CityID)}


@app.post("/api/requests/cancel-token")
def cancel_request_token(
    payload: CancelTokenRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_manager_session_or_401(x_session_token)
    request = get_city_request(db, payload.requestID)
    manager_name = _AUTHORIZER.require(session, request.CityID)
    return {"success": True, "request": cancel_request(db, payload.requestID, manager_name, payload.reason, city_id=request.CityID)}


@app.get("/api/borrower/check-overdue")
def check_borrower_overdue(
    phone: str = Query(""),
    city_id: int | None = Query(None, alias="cityId"),
    db: Session = Depends(get_db),
):
    return check_overdue(db, phone, city_id=city_id)


@app.post("/api/direct-borrow")
def direct_borrow_equipment(
    payload: DirectBorrowDto,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return {
        "success": True,
        **direct_borrow(
            db,
            city_id=payload.cityID,
            borrower_name=payload.name,
            borrower_phone=payload.phone,
            items=[item.model_dump() for item in payload.items],
            notifier=notifier,
        ),
    }


@app.post("/api/equipment/return")
def return_equipment(payload: ReturnEquipmentRequest, db: Session = Depends(get_db)):
    return {"success": True, "borrow": request_return(db, payload.borrowID, payload.equipmentStatus, payload.faultyNotes)}


@app.post("/api/borrow-history/approve-return")
def approve_equipment_return(
    payload: ApproveReturnRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_manager_session_or_401(x_session_token)
    record = get_borrow(db, payload.borrowID)
    manager_name = _AUTHORIZER.require(session, record.CityID)
    return {"success": True, "borrow": approve_return(db, payload.borrowID, manager_name)}


@app.post("/api/cron/overdue-reminders")
def run_overdue_reminders(
    db: Session = Depends(get_db),
    messenger: MessagingClient = Depends(get_messenger),
    authorization: str | None = Header(None),
):
    _require_cron_secret_or_401(authorization)
    result = sweep_overdue(db, messenger)
    CRON_LOGGER.info("Overdue reminders run summary=%s", result["summary"])
    return {"success": True, **result}
