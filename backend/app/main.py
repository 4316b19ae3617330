import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import program_offerings as program_offerings_api
from .api import student_applications as student_applications_api
from .api import student_profiles as student_profiles_api
from .config import ADMISSION_STORE, FRONTEND_ORIGINS
from .database import init_db
from .utils.error_handlers import register_error_handlers

app = FastAPI(title="Admission Portal")

app.include_router(program_offerings_api.router)
app.include_router(student_applications_api.router)
app.include_router(student_profiles_api.router)

register_error_handlers(app)

logger = logging.getLogger(__name__)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "Backend running",
        "service": "Admission Portal",
        "store": ADMISSION_STORE,
    }


_default_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=[*_default_origins, *FRONTEND_ORIGINS],
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    # The Strapi store owns its schema; only the SQL store needs tables here.
    if ADMISSION_STORE != "sql":
        logger.info("Admission store: %s (skipping local schema setup)", ADMISSION_STORE)
        return
    try:
        init_db()
    except Exception:
        logger.exception("Database initialization failed")
        raise
