from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .config import get_settings
from .delivery import CONNECTED_STATUSES
from .models import OBLIGATION_AWAITING_APPROVAL, OBLIGATION_PENDING, OBLIGATION_PROCESSING
from .storage import (
    count_obligations_by_status,
    get_feed,
    get_schedule,
    get_schedule_lock,
    get_template,
    list_targets_by_ids,
    oldest_obligation_created_at,
)

if TYPE_CHECKING:
    from .service import Relay


def get_schedule_diagnostics(relay: "Relay", schedule_id: str) -> dict[str, Any]:
    """Explain why a schedule is or is not delivering right now."""
    conn = relay.conn
    blocking: list[str] = []
    warnings: list[str] = []
    report: dict[str, Any] = {
        "schedule_id": schedule_id,
        "blocking_reasons": blocking,
        "warnings": warnings,
    }
    schedule = get_schedule(conn, schedule_id)
    if schedule is None:
        blocking.append("Schedule not found")
        report["ok"] = False
        return report

    report["schedule"] = {
        "id": schedule.id,
        "name": schedule.name,
        "active": schedule.active,
        "feed_id": schedule.feed_id,
        "template_id": schedule.template_id,
        "target_ids": schedule.target_ids,
        "delivery_mode": schedule.delivery_mode,
        "interval_minutes": schedule.interval_minutes,
        "fixed_times": schedule.fixed_times,
        "timezone": schedule.timezone or "UTC",
        "approval_required": schedule.approval_required,
        "last_run_at": schedule.last_run_at,
    }
    if not schedule.active:
        blocking.append("Schedule is inactive")

    feed = get_feed(conn, schedule.feed_id)
    if feed is None:
        blocking.append("Feed not found")
    else:
        report["feed"] = {
            "id": feed.id,
            "active": feed.active,
            "last_success_at": feed.last_success_at,
            "last_error": feed.last_error,
            "consecutive_failures": feed.consecutive_failures,
        }
        if not feed.active:
            warnings.append("Feed is inactive; no new items will be queued")
        if feed.last_error:
            warnings.append(f"Feed last error: {feed.last_error}")

    if relay.transport is None:
        report["transport"] = {"status": "unconfigured"}
        blocking.append("Transport is not configured")
    else:
        status = relay.transport.get_status() or {}
        report["transport"] = status
        if str(status.get("status") or "").lower() not in CONNECTED_STATUSES:
            blocking.append("Transport is not connected")

    settings = get_settings(conn)
    blackout = relay.gate.current_blackout(settings)
    report["blackout"] = blackout.as_dict()
    if blackout.active:
        blocking.append("Blackout window active")

    if schedule.template_id:
        template = get_template(conn, schedule.template_id)
        if template is None:
            blocking.append("Template not found")
        else:
            report["template"] = {"id": template.id, "name": template.name}
    else:
        warnings.append("No template set; the default title and link template is used")

    targets = list_targets_by_ids(conn, schedule.target_ids, active_only=False)
    active_targets = [target for target in targets if target.active]
    report["targets"] = {
        "total": len(schedule.target_ids),
        "found": len(targets),
        "active": len(active_targets),
        "inactive": len(targets) - len(active_targets),
    }
    if len(targets) < len(set(schedule.target_ids)):
        warnings.append("Some target ids do not exist")
    if not active_targets:
        blocking.append("No active targets on schedule")

    counts = count_obligations_by_status(conn, schedule.id)
    report["obligations"] = counts
    report["oldest_pending_at"] = oldest_obligation_created_at(
        conn, schedule.id, OBLIGATION_PENDING
    )
    if counts.get(OBLIGATION_AWAITING_APPROVAL):
        warnings.append(
            f"{counts[OBLIGATION_AWAITING_APPROVAL]} obligation(s) awaiting approval"
        )
    if counts.get(OBLIGATION_PROCESSING):
        warnings.append(f"{counts[OBLIGATION_PROCESSING]} obligation(s) in processing")

    report["lock"] = get_schedule_lock(conn, schedule.id)
    report["ok"] = not blocking
    return report
