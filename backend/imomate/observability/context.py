from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator


_tenant_id: ContextVar[str | None] = ContextVar("imomate_tenant_id", default=None)
_actor_id: ContextVar[str | None] = ContextVar("imomate_actor_id", default=None)


def get_tenant_id() -> str | None:
    return _tenant_id.get()


def get_actor_id() -> str | None:
    return _actor_id.get()


@contextmanager
def bind_tenant(tenant_id: str | None, actor_id: str | None = None) -> Iterator[None]:
    """
    Bind the acting tenant (and optionally user) for the duration of a call so
    every log line emitted underneath carries them.
    """
    t_token = _tenant_id.set(str(tenant_id or "").strip() or None)
    a_token = _actor_id.set(str(actor_id or "").strip() or None) if actor_id else None
    try:
        yield
    finally:
        _tenant_id.reset(t_token)
        if a_token is not None:
            _actor_id.reset(a_token)
