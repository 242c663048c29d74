import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import LOG_LEVEL
from app.core.exceptions import AgendaError
from app.database import create_db_and_tables
from app.routers import appointments, auth, business_hours, closed_days, notifications, payments, services, users
from app.services.availability import SlotLockRegistry

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Iniciando API de agendamentos...")
    create_db_and_tables()
    app.state.slot_locks = SlotLockRegistry()
    yield
    app.state.slot_locks.clear()
    logger.info("API encerrada")


app = FastAPI(title="Agenda de Reservas", lifespan=lifespan)
app.include_router(users.router)
app.include_router(auth.router)
app.include_router(services.router)
app.include_router(appointments.router)
app.include_router(business_hours.router)
app.include_router(closed_days.router)
app.include_router(payments.router)
app.include_router(notifications.router)


@app.exception_handler(AgendaError)
async def agenda_error_handler(request: Request, exc: AgendaError):
    if exc.status_code >= 500:
        logger.error("%s em %s: %s", type(exc).__name__, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.client_detail})


@app.get("/")
def root():
    return {"message": "API de agendamentos funcionando 🚀"}
