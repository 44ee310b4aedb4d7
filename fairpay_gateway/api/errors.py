"""Translation of domain errors into HTTP responses"""

from fastapi import HTTPException

from fairpay_gateway.domain.exceptions import (
    AccessDenied,
    DomainException,
    InvalidRequest,
    InvalidTransition,
    MalformedMetadata,
    NotFound,
    PaymentProviderError,
)

STATUS_BY_ERROR = (
    (NotFound, 404),
    (AccessDenied, 403),
    (InvalidRequest, 400),
    (MalformedMetadata, 400),
    (InvalidTransition, 409),
    (PaymentProviderError, 502),
)


def to_http_exception(exc: DomainException) -> HTTPException:
    for error_cls, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
