import logging
from typing import Optional
from examprep.core.database import SessionLocal
from examprep.models.orm import ActivityLog

logger = logging.getLogger(__name__)

def write_activity_log(type: str, action: str, subject: Optional[str] = None,
                       details: Optional[dict] = None, actor_id: Optional[str] = None) -> str:
    db = SessionLocal()
    try:
        entry = ActivityLog(type=type, action=action, subject=subject, details=details or {}, actor_id=actor_id)
        db.add(entry)
        db.commit()
        return entry.id
    finally:
        db.close()
