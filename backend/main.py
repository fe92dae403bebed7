"""
FastAPI service for the school timetable engine.

Same operations as the batch CLI: regenerate a scope's weekly timetable
and read back what is persisted.
"""

import os
import time
import logging
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional

from catalogue import CatalogueDocument, to_catalogue
from config import configure_logging, load_settings
from errors import (
    ConfigurationError,
    InfeasibleScheduleError,
    InvariantViolation,
    OverAllocatedDemandError,
    TimetableError,
)
from regeneration import RegenerationManager, regenerate
from solver import generate_from_settings
from storage import create_db_engine, init_db, make_session_factory

settings = load_settings()

# Configure logging
configure_logging(settings.debug_solver)
logger = logging.getLogger(__name__)

if settings.debug_solver:
    logger.info("DEBUG_SOLVER is enabled - verbose logging active")

app = FastAPI(
    title="School Timetable API",
    description="Weekly timetable generation with atomic regeneration",
    version="1.0.0"
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
]

# Also allow origin from environment variable
if os.environ.get("FRONTEND_URL"):
    ALLOWED_ORIGINS.append(os.environ["FRONTEND_URL"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# HTTP status per failure kind
ERROR_STATUS = {
    ConfigurationError: 400,
    OverAllocatedDemandError: 422,
    InfeasibleScheduleError: 409,
    InvariantViolation: 500,
}

_manager: Optional[RegenerationManager] = None


def get_manager() -> RegenerationManager:
    """Process-wide manager, created on first use."""
    global _manager
    if _manager is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        _manager = RegenerationManager(make_session_factory(engine), settings)
    return _manager


class RegenerateRequest(BaseModel):
    scope: str
    catalogue: CatalogueDocument
    maxBacktracks: Optional[int] = None
    prove: Optional[bool] = None
    dryRun: bool = False


class RegenerateResponse(BaseModel):
    status: str
    scope: str
    entries: int
    teacherLoad: dict[str, int]
    backtracks: int
    elapsedSeconds: float
    replaced: Optional[int] = None
    inserted: Optional[int] = None
    generation: Optional[int] = None
    timetable: Optional[list] = None


@app.get("/")
async def root():
    return {"message": "School Timetable API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": time.time()}


@app.post("/regenerate", response_model=RegenerateResponse)
def regenerate_timetable(request: RegenerateRequest, manager: RegenerationManager = Depends(get_manager)):
    """
    Generate a full week for a scope and, unless dryRun is set, replace the
    persisted timetable of that scope in one transaction.
    """
    start_time = time.time()
    logger.info(
        f"=== REGENERATE REQUEST === Scope: {request.scope}, Classes: {len(request.catalogue.classes)}, "
        f"Teachers: {len(request.catalogue.teachers)}, DryRun: {request.dryRun}"
    )

    try:
        catalogue = to_catalogue(request.catalogue)
        if request.dryRun:
            timetable = generate_from_settings(
                catalogue, manager.settings,
                max_backtracks=request.maxBacktracks,
                prove_infeasibility=request.prove,
            )
            result = None
        else:
            timetable, result = regenerate(
                manager, request.scope, catalogue,
                max_backtracks=request.maxBacktracks,
                prove_infeasibility=request.prove,
            )
    except TimetableError as e:
        status_code = ERROR_STATUS.get(type(e), 500)
        logger.warning(f"REGENERATE FAILED ({status_code}): {e}")
        raise HTTPException(status_code=status_code, detail=e.to_dict())

    return RegenerateResponse(
        status="dry_run" if result is None else "success",
        scope=request.scope,
        entries=len(timetable),
        teacherLoad=timetable.teacher_load(),
        backtracks=timetable.backtracks,
        elapsedSeconds=time.time() - start_time,
        replaced=result.replaced if result else None,
        inserted=result.inserted if result else None,
        generation=result.generation if result else None,
        timetable=timetable.to_dict(manager.settings.days)['entries'] if result is None else None,
    )


@app.get("/timetable/{scope:path}")
def get_timetable(scope: str, manager: RegenerationManager = Depends(get_manager)):
    """Persisted rows of a scope with their clock times."""
    rows = manager.load(scope)
    return {
        "scope": scope,
        "generation": manager.generation(scope),
        "entries": [r.to_dict() for r in rows],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
