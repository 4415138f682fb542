from __future__ import annotations

from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_STORE_ID_CTX: ContextVar[str | None] = ContextVar("store_id", default=None)
_USER_ID_CTX: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_request_context(
    *, request_id: str | None = None, store_id: str | None = None, user_id: str | None = None
) -> None:
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if store_id is not None:
        _STORE_ID_CTX.set(store_id)
    if user_id is not None:
        _USER_ID_CTX.set(user_id)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_store_id() -> str | None:
    return _STORE_ID_CTX.get()


def get_user_id() -> str | None:
    return _USER_ID_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _STORE_ID_CTX.set(None)
    _USER_ID_CTX.set(None)
