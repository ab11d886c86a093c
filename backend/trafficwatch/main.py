import logging

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from trafficwatch import __version__
from trafficwatch.api import traffic
from trafficwatch.config import configure_logging, get_settings
from trafficwatch.database import create_schema, get_db, get_engine
from trafficwatch.utils.timeutil import utcnow

log = logging.getLogger(__name__)

app = FastAPI(
    title="TrafficWatch",
    version=__version__,
    description="Reverse-proxy access log ingestion and threat screening",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(traffic.router)


@app.on_event("startup")
async def startup():
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    create_schema(get_engine())
    log.info("%s %s started", settings.APP_NAME, __version__)


@app.on_event("shutdown")
async def shutdown():
    get_engine().dispose()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        log.error("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "healthy", "version": __version__, "timestamp": utcnow().isoformat()}
