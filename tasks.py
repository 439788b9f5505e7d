"""Mandatory social tasks (whitelist gate).

Routes:
- GET  /api/tasks
- POST /api/tasks/<task_id>/start

Assumptions:
- There is no proof: a task is "completed" once TASK_VERIFY_DELAY_SECONDS have
  passed since the user opened its link.
- Progress lives in the (signed or server-side) Flask session, never in the database.
- Restarting a task keeps the first start time.
"""

import math
import time

from flask import Blueprint, current_app, jsonify, session as flask_session

from errors import NotFoundError


tasks_api = Blueprint("tasks_api", __name__)

SESSION_TASKS_KEY = "whitelist_tasks"

TASK_STATUS_PENDING = "pending"
TASK_STATUS_VERIFYING = "verifying"
TASK_STATUS_COMPLETED = "completed"

# (task id, title, config key holding the link)
SOCIAL_TASKS = [
    ("x_follow", "Follow COPE on X", "X_PROFILE_URL"),
    ("telegram_join", "Join the COPE Telegram", "TELEGRAM_CHANNEL_URL"),
]


def _task_ids() -> list[str]:
    return [task_id for task_id, _, _ in SOCIAL_TASKS]


def _started_map() -> dict:
    started = flask_session.get(SESSION_TASKS_KEY)
    return started if isinstance(started, dict) else {}


def task_status(started_at, now: float, delay: int) -> tuple[str, int]:
    """Return (status, seconds_remaining) for a task started at `started_at`."""
    if started_at is None:
        return TASK_STATUS_PENDING, 0
    remaining = math.ceil(started_at + delay - now)
    if remaining > 0:
        return TASK_STATUS_VERIFYING, remaining
    return TASK_STATUS_COMPLETED, 0


def all_tasks_completed() -> bool:
    delay = int(current_app.config["TASK_VERIFY_DELAY_SECONDS"])
    started = _started_map()
    now = time.time()
    return all(task_status(started.get(t), now, delay)[0] == TASK_STATUS_COMPLETED for t in _task_ids())


def _task_payload(task_id: str, title: str, link_key: str, started, now: float) -> dict:
    status, remaining = task_status(started.get(task_id), now, int(current_app.config["TASK_VERIFY_DELAY_SECONDS"]))
    return {
        "id": task_id,
        "title": title,
        "link": current_app.config.get(link_key),
        "status": status,
        "secondsRemaining": remaining,
    }


@tasks_api.get("/api/tasks")
def get_tasks():
    started = _started_map()
    now = time.time()
    items = [_task_payload(task_id, title, link_key, started, now) for task_id, title, link_key in SOCIAL_TASKS]
    return jsonify(
        {
            "success": True,
            "tasks": items,
            "allCompleted": all(t["status"] == TASK_STATUS_COMPLETED for t in items),
        }
    )


@tasks_api.post("/api/tasks/<task_id>/start")
def start_task(task_id: str):
    task = next((t for t in SOCIAL_TASKS if t[0] == task_id), None)
    if task is None:
        raise NotFoundError("Unknown task")

    started = dict(_started_map())
    now = time.time()
    if started.get(task_id) is None:
        started[task_id] = now
        flask_session[SESSION_TASKS_KEY] = started

    return jsonify({"success": True, "task": _task_payload(*task, started, now)})
