import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventpass.core.settings import settings
from db import get_db

router = APIRouter()
logger = logging.getLogger("app")


@router.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("health.db_error", extra={"error": str(e)})
        database = "error"
    body = {"status": "ok" if database == "ok" else "degraded", "database": database, "gateway": settings.PAYMENT_GATEWAY}
    return JSONResponse(body, status_code=200 if database == "ok" else 503)
