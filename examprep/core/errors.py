"""
Error taxonomy shared by services and routers.

Business outcomes (missing entities, short pools, illegal transitions,
exhausted quotas) travel back to callers inside result objects tagged with
an ErrorKind. Only persistence faults on write paths are raised.
"""
from enum import Enum
from fastapi import HTTPException, status


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INSUFFICIENT_POOL = "insufficient_pool"
    INVALID_TRANSITION = "invalid_transition"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERSISTENCE_FAULT = "persistence_fault"
    INVALID_REQUEST = "invalid_request"


HTTP_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSUFFICIENT_POOL: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.QUOTA_EXCEEDED: status.HTTP_403_FORBIDDEN,
    ErrorKind.PERSISTENCE_FAULT: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
}


def http_error(kind: ErrorKind, message: str, **extra) -> HTTPException:
    detail = {"message": message, "type": kind.value}
    detail.update({k: v for k, v in extra.items() if v is not None})
    return HTTPException(status_code=HTTP_STATUS[kind], detail=detail)
