from fastapi import Depends, Request
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.services.audit import AuditSink
from examprep.services.quota_ledger import TierQuotaLedger

def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink

def get_ledger(db: Session = Depends(get_db)) -> TierQuotaLedger:
    return TierQuotaLedger(db)
