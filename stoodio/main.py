from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stoodio.core.config import settings
from stoodio.core.exceptions import DomainError
from stoodio.core.logging_config import setup_logging
from stoodio.database.db import Base, engine
from stoodio.models import bookings, events, users, wallet  # noqa: F401  register tables
from stoodio.routes import bookings as booking_routes
from stoodio.routes import jobs, sessions
from stoodio.routes import wallet as wallet_routes

setup_logging()

app = FastAPI(title="Stoodio booking core")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    http_exc = exc.to_http_exception()
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


# Create all tables (in production, use migrations such as Alembic)
Base.metadata.create_all(bind=engine)

app.include_router(booking_routes.router)
app.include_router(jobs.router)
app.include_router(sessions.router)
app.include_router(wallet_routes.router)
