from __future__ import annotations

import logging

import structlog

from imomate.observability import logging as obs_logging
from imomate.observability.context import bind_tenant, get_actor_id, get_tenant_id


def test_bind_tenant_is_scoped_to_the_block():
    assert get_tenant_id() is None
    with bind_tenant("t1", actor_id="u1"):
        assert get_tenant_id() == "t1"
        assert get_actor_id() == "u1"
        with bind_tenant("t2"):
            assert get_tenant_id() == "t2"
            assert get_actor_id() == "u1"
        assert get_tenant_id() == "t1"
    assert get_tenant_id() is None
    assert get_actor_id() is None


def test_log_events_carry_bound_tenant():
    with bind_tenant("t1", actor_id="u1"):
        event = obs_logging._add_tenant_context(None, "info", {"event": "client_created"})
    assert event == {"event": "client_created", "tenant_id": "t1", "actor_id": "u1"}

    # Explicit fields win over the bound context.
    with bind_tenant("t1"):
        event = obs_logging._add_tenant_context(None, "info", {"event": "x", "tenant_id": "t9"})
    assert event["tenant_id"] == "t9"
    assert "actor_id" not in event


def test_configure_logging_is_idempotent(monkeypatch):
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    monkeypatch.setattr(obs_logging, "_CONFIGURED", False)
    try:
        obs_logging.configure_logging(level="DEBUG")
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert root.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING

        obs_logging.configure_logging(level="ERROR")
        assert root.handlers == [handler]
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved[0]
        root.setLevel(saved[1])
        structlog.reset_defaults()
