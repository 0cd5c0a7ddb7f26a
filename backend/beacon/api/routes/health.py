from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from beacon.core.config import settings
from beacon.db.session import get_db

router = APIRouter()

@router.get("")
@router.get("/")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "app": settings.app_name, "env": settings.env}
