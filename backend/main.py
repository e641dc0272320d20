from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from config import ENABLE_DEMO_RESET
from database import create_db, engine, get_session
import models  # noqa: F401
from models import Appointment, Doctor, LabOrder, LabPayment, Patient, Prescription, User
from errors import LabWorkflowError
from routers.auth import router as auth_router
from routers.lab_tests import router as lab_tests_router
from services.auth import can_open_patient_channel, is_staff, resolve_user
from services.cache import view_cache
from ws import manager

logger = logging.getLogger("labflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db()
    yield


app = FastAPI(title="Labflow", version="0.1.0", lifespan=lifespan)


@app.exception_handler(LabWorkflowError)
async def lab_workflow_exception_handler(request: Request, exc: LabWorkflowError):
    if exc.retryable:
        logger.warning("Retryable failure for %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def no_cache_api_responses(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith(("/lab-tests", "/auth", "/api/v1/")):
        response.headers["Cache-Control"] = "no-store, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    return response


app.include_router(lab_tests_router)
app.include_router(auth_router)
app.include_router(lab_tests_router, prefix="/api/v1")
app.include_router(auth_router, prefix="/api/v1")


@app.get("/health")
def health():
    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
        return {
            "status": "ok",
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat(),
        }
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "error"})


@app.get("/demo/reset")
def demo_reset():
    if not ENABLE_DEMO_RESET:
        raise HTTPException(status_code=404, detail="Not found")

    logger.info("[DEMO] Reset triggered")
    create_db()
    with Session(engine) as session:
        session.exec(LabPayment.__table__.delete())  # type: ignore[arg-type]
        session.exec(LabOrder.__table__.delete())  # type: ignore[arg-type]
        session.exec(Prescription.__table__.delete())  # type: ignore[arg-type]
        session.exec(Appointment.__table__.delete())  # type: ignore[arg-type]
        session.exec(User.__table__.delete())  # type: ignore[arg-type]
        session.exec(Doctor.__table__.delete())  # type: ignore[arg-type]
        session.exec(Patient.__table__.delete())  # type: ignore[arg-type]
        session.commit()
    view_cache.clear()

    from seed import run_seed
    run_seed(seed_lab_tests=True)

    return {"status": "demo reset complete"}


async def _authenticate_ws(websocket: WebSocket, session: Session):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008)
        return None

    try:
        return resolve_user(token, session)
    except HTTPException:
        await websocket.close(code=1008)
        return None


@app.websocket("/ws/patients/{patient_id}")
async def patient_ws(websocket: WebSocket, patient_id: int, session: Session = Depends(get_session)):
    user = await _authenticate_ws(websocket, session)
    if user is None:
        return
    if not can_open_patient_channel(user, patient_id):
        await websocket.close(code=1008)
        return

    await manager.connect_patient(patient_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect_patient(patient_id, websocket)


@app.websocket("/ws/lab-board")
async def lab_board_ws(websocket: WebSocket, session: Session = Depends(get_session)):
    user = await _authenticate_ws(websocket, session)
    if user is None:
        return
    if not is_staff(user):
        await websocket.close(code=1008)
        return

    await manager.connect_board(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect_board(websocket)
