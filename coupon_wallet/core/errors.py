from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)
STORAGE_PREFIX = "[STORAGE]"


class DomainError(Exception):
    """Base class for errors the core raises towards its callers."""

    status_code = 500
    code = "error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"


class CouponNotFoundError(NotFoundError):
    code = "coupon_not_found"

    def __init__(self, coupon_id: str) -> None:
        super().__init__(f"Coupon {coupon_id} not found")
        self.coupon_id = coupon_id


class ConflictError(DomainError):
    status_code = 409
    code = "conflict"


class TokenExpiredError(ConflictError):
    status_code = 410
    code = "token_expired"


class AccessDeniedError(DomainError):
    """The store subscription does not grant a feature.

    Carries the current subscription status so callers can explain why.
    """

    status_code = 402
    code = "subscription_required"

    def __init__(self, message: str, *, subscription_status: str, feature: str) -> None:
        super().__init__(message)
        self.subscription_status = subscription_status
        self.feature = feature

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["subscription_status"] = self.subscription_status
        payload["feature"] = self.feature
        return payload


class ScanRejectedError(DomainError):
    """A merchant scan that did not redeem; ``result`` names the outcome."""

    def __init__(self, result: str, message: str, *, status_code: int, **extra: Any) -> None:
        super().__init__(message, code=result)
        self.result = result
        self.status_code = status_code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["result"] = self.result
        payload.update({key: value for key, value in self.extra.items() if value is not None})
        return payload


class StorageError(DomainError):
    status_code = 500
    code = "storage_error"


@contextmanager
def storage_guard(db: Session | None, operation: str, **context: Any) -> Iterator[None]:
    """Translate SQLAlchemy failures into the domain taxonomy.

    Unique-key collisions become ``ConflictError(code="unique_violation")``;
    everything else is logged with the operation context and re-raised as
    ``StorageError``. The session is rolled back in both cases.
    """
    try:
        yield
    except IntegrityError as exc:
        if db is not None:
            db.rollback()
        logger.warning("%s integrity conflict operation=%s context=%s", STORAGE_PREFIX, operation, context)
        raise ConflictError(f"Unique constraint violated during {operation}", code="unique_violation") from exc
    except SQLAlchemyError as exc:
        if db is not None:
            db.rollback()
        logger.exception("%s operation failed operation=%s context=%s", STORAGE_PREFIX, operation, context)
        raise StorageError(f"Storage failure during {operation}") from exc


async def _domain_error_handler(_request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("domain error code=%s message=%s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
