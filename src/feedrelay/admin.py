from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    get_settings,
    get_state_db_path,
    settings_as_dict,
    update_settings,
)
from .db import connect_db
from .fanout import approve_obligations
from .locks import detect_lock_kind
from .service import (
    Relay,
    build_relay,
    default_gate,
    get_diagnostics,
    process_all_active_feeds,
    process_feed,
    run_schedule,
)
from .utils import configure_logging, log_event

app = FastAPI(title="feedrelay Admin API")
app.state.gate = None
app.state.lock_kind = None


def _logger() -> logging.Logger:
    return configure_logging("feedrelay.admin")


@app.on_event("startup")
def _startup() -> None:
    # Values already on app.state (set by an embedding process or a test) are kept.
    logger = _logger()
    if app.state.gate is None:
        app.state.gate = default_gate()
    if app.state.lock_kind is None:
        conn = connect_db(get_state_db_path())
        try:
            app.state.lock_kind = detect_lock_kind(conn, logger)
        finally:
            conn.close()


def get_relay(request: Request) -> Iterator[Relay]:
    state = request.app.state
    relay = build_relay(gate=state.gate, lock_kind=state.lock_kind, logger=_logger())
    try:
        yield relay
    finally:
        relay.conn.close()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("FR_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if not header or header != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class ApproveRequest(BaseModel):
    ids: list[int]


class SettingsRequest(BaseModel):
    settings: dict


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/feeds/process", dependencies=[Depends(_require_admin_token)])
def feeds_process_all(relay: Relay = Depends(get_relay)) -> dict[str, object]:
    results = process_all_active_feeds(relay)
    return {"results": [result.as_dict() for result in results]}


@app.post("/feeds/{feed_id}/process", dependencies=[Depends(_require_admin_token)])
def feeds_process(feed_id: str, relay: Relay = Depends(get_relay)) -> dict[str, object]:
    result = process_feed(relay, feed_id)
    if result.status == "not_found":
        raise HTTPException(status_code=404, detail="feed_not_found")
    return result.as_dict()


@app.post("/schedules/{schedule_id}/run", dependencies=[Depends(_require_admin_token)])
def schedules_run(schedule_id: str, relay: Relay = Depends(get_relay)) -> dict[str, object]:
    result = run_schedule(relay, schedule_id)
    if result.reason == "schedule not found":
        raise HTTPException(status_code=404, detail="schedule_not_found")
    log_event(relay.logger, logging.INFO, "schedule_run_requested", **result.as_dict())
    return result.as_dict()


@app.get("/schedules/{schedule_id}/diagnostics", dependencies=[Depends(_require_admin_token)])
def schedules_diagnostics(
    schedule_id: str, relay: Relay = Depends(get_relay)
) -> dict[str, object]:
    return get_diagnostics(relay, schedule_id)


@app.post("/obligations/approve", dependencies=[Depends(_require_admin_token)])
def obligations_approve(
    payload: ApproveRequest, relay: Relay = Depends(get_relay)
) -> dict[str, int]:
    approved = approve_obligations(relay.conn, payload.ids, relay.logger, relay.clock)
    return {"approved": approved}


@app.get("/settings", dependencies=[Depends(_require_admin_token)])
def settings_get(relay: Relay = Depends(get_relay)) -> dict[str, object]:
    try:
        settings = get_settings(relay.conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"settings": settings_as_dict(settings)}


@app.put("/settings", dependencies=[Depends(_require_admin_token)])
def settings_put(
    payload: SettingsRequest, relay: Relay = Depends(get_relay)
) -> dict[str, object]:
    try:
        settings = update_settings(relay.conn, payload.settings)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(relay.logger, logging.INFO, "settings_updated", keys=",".join(sorted(payload.settings)))
    return {"settings": settings_as_dict(settings)}


@app.get("/blackout", dependencies=[Depends(_require_admin_token)])
def blackout_status(relay: Relay = Depends(get_relay)) -> dict[str, object]:
    try:
        settings = get_settings(relay.conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return relay.gate.current_blackout(settings).as_dict()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("feedrelay")
    except Exception:  # noqa: BLE001
        return "unknown"
