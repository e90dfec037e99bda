"""
Translate decision engine errors into HTTP responses, in one place.
"""

import logging
from contextlib import contextmanager
from fastapi import HTTPException

from app.exceptions import (
    AuthorizationError, ConfigurationError, DecisionEngineError, EmptyBatchError, EmptyDataError,
    ExecutionConflictError, InvalidTransitionError, NotFoundError, RecommendationSchemaError,
)
from app.utils import safe_error_detail

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[DecisionEngineError], int]] = [
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConfigurationError, 409),
    (InvalidTransitionError, 409),
    (ExecutionConflictError, 409),
    (EmptyDataError, 422),
    (EmptyBatchError, 422),
    (RecommendationSchemaError, 502),
]


def to_http_exception(exc: DecisionEngineError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=safe_error_detail(exc))


@contextmanager
def translate_errors():
    """Wrap a service call: domain errors become HTTPExceptions, anything unexpected a sanitized 500."""
    try:
        yield
    except HTTPException:
        raise
    except DecisionEngineError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e)) from e
