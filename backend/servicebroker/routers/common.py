from fastapi import HTTPException

from servicebroker.services.errors import (
    BrokerConflictError,
    BrokerError,
    BrokerNotFoundError,
    BrokerPermissionError,
    BrokerTransitionError,
)


def raise_broker_http_error(exc: BrokerError) -> None:
    if isinstance(exc, BrokerNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BrokerPermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, BrokerConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BrokerTransitionError):
        raise HTTPException(status_code=422, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
