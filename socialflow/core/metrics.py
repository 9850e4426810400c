"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_approval_transitions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_permission_overrides_total: Dict[str, int] = defaultdict(int)
_notifications_dispatched_total: Dict[Tuple[str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, kind: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(kind)] += 1


def record_approval_transition(*, team_id: str, outcome: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        key = (_normalize_label(team_id), _normalize_label(outcome))
        _approval_transitions_total[key] += int(count)


def record_permission_override(*, action: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _permission_overrides_total[_normalize_label(action)] += int(count)


def record_notification_dispatch(*, kind: str, status: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        key = (_normalize_label(kind), _normalize_label(status))
        _notifications_dispatched_total[key] += int(count)


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        approval_transitions = dict(_approval_transitions_total)
        permission_overrides = dict(_permission_overrides_total)
        notifications_dispatched = dict(_notifications_dispatched_total)

    lines = [
        "# HELP socialflow_build_info Build metadata.",
        "# TYPE socialflow_build_info gauge",
        (
            f'socialflow_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP socialflow_process_uptime_seconds Process uptime in seconds.",
        "# TYPE socialflow_process_uptime_seconds gauge",
        f"socialflow_process_uptime_seconds {uptime:.6f}",
        "# HELP socialflow_http_requests_total Total HTTP requests.",
        "# TYPE socialflow_http_requests_total counter",
    ]

    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'socialflow_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP socialflow_http_request_duration_seconds Request duration summary.",
            "# TYPE socialflow_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'socialflow_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'socialflow_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP socialflow_rate_limit_block_total Requests blocked by rate limiting.",
            "# TYPE socialflow_rate_limit_block_total counter",
        ]
    )
    for kind, value in sorted(rate_limit_total.items()):
        lines.append(f'socialflow_rate_limit_block_total{{kind="{_escape_label(kind)}"}} {value}')

    lines.extend(
        [
            "# HELP socialflow_approval_transitions_total Approval state machine outcomes.",
            "# TYPE socialflow_approval_transitions_total counter",
        ]
    )
    for (team_id, outcome), value in sorted(approval_transitions.items()):
        lines.append(
            (
                f'socialflow_approval_transitions_total{{team_id="{_escape_label(team_id)}",'
                f'outcome="{_escape_label(outcome)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP socialflow_permission_overrides_total Permission override mutations.",
            "# TYPE socialflow_permission_overrides_total counter",
        ]
    )
    for action, value in sorted(permission_overrides.items()):
        lines.append(f'socialflow_permission_overrides_total{{action="{_escape_label(action)}"}} {value}')

    lines.extend(
        [
            "# HELP socialflow_notifications_dispatched_total Outbox dispatch outcomes.",
            "# TYPE socialflow_notifications_dispatched_total counter",
        ]
    )
    for (kind, status), value in sorted(notifications_dispatched.items()):
        lines.append(
            (
                f'socialflow_notifications_dispatched_total{{kind="{_escape_label(kind)}",'
                f'status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _approval_transitions_total.clear()
        _permission_overrides_total.clear()
        _notifications_dispatched_total.clear()
    _started_at = time.time()
