"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"modledger_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"modledger_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

REDIS_UP = Gauge("modledger_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("modledger_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("modledger_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("modledger_postgres_latency_seconds", "Postgres ping latency (seconds)")

MOD_REPORTS_TOTAL = Counter(
	"modledger_mod_reports_total",
	"Moderation reports submitted",
	["reason", "source"],
)

MOD_REPORT_TRANSITIONS_TOTAL = Counter(
	"modledger_mod_report_transitions_total",
	"Moderation report status transitions",
	["transition"],
)

MOD_ACTIONS_TOTAL = Counter(
	"modledger_mod_actions_total",
	"Moderation actions recorded in the ledger",
	["kind"],
)

MOD_REVERSALS_TOTAL = Counter(
	"modledger_mod_reversals_total",
	"Moderation actions reversed",
	["kind", "self_reversal"],
)

MOD_IMMUTABILITY_VIOLATIONS_TOTAL = Counter(
	"modledger_mod_immutability_violations_total",
	"Rejected writes against reversed ledger entries",
	["operation"],
)

MOD_REJECTIONS_TOTAL = Counter(
	"modledger_mod_rejections_total",
	"Moderation requests rejected by the domain layer",
	["detail"],
)

RESTRICTIONS_ACTIVE_GAUGE = Gauge(
	"modledger_restrictions_active",
	"Active user restrictions tracked by this process",
	["kind"],
)

CAPABILITY_CHECKS_TOTAL = Counter(
	"modledger_capability_checks_total",
	"Capability checks answered",
	["capability", "result"],
)

SWEEPER_RUNS_TOTAL = Counter(
	"modledger_sweeper_runs_total",
	"Expiration sweeper runs",
	["job_type", "result"],
)

SWEEPER_EXPIRED_TOTAL = Counter(
	"modledger_sweeper_expired_total",
	"Restrictions deactivated by the expiration sweeper",
	["kind"],
)

SWEEPER_DURATION = Histogram(
	"modledger_sweeper_duration_seconds",
	"Expiration sweeper run duration",
	buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 60.0),
)

NOTIFICATIONS_TOTAL = Counter(
	"modledger_notifications_total",
	"Best-effort notifications handed to the notification sink",
	["result"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def inc_report(reason: str, *, moderator_flagged: bool) -> None:
	MOD_REPORTS_TOTAL.labels(reason=reason, source="moderator" if moderator_flagged else "user").inc()


def inc_report_transition(from_status: str, to_status: str) -> None:
	MOD_REPORT_TRANSITIONS_TOTAL.labels(transition=f"{from_status}->{to_status}").inc()


def inc_action(kind: str) -> None:
	MOD_ACTIONS_TOTAL.labels(kind=kind).inc()


def inc_reversal(kind: str, *, self_reversal: bool) -> None:
	MOD_REVERSALS_TOTAL.labels(kind=kind, self_reversal=str(self_reversal).lower()).inc()


def inc_immutability_violation(operation: str) -> None:
	MOD_IMMUTABILITY_VIOLATIONS_TOTAL.labels(operation=operation).inc()


def inc_rejection(detail: str) -> None:
	MOD_REJECTIONS_TOTAL.labels(detail=detail).inc()


def restriction_activated(kind: str) -> None:
	RESTRICTIONS_ACTIVE_GAUGE.labels(kind=kind).inc()


def restriction_deactivated(kind: str) -> None:
	RESTRICTIONS_ACTIVE_GAUGE.labels(kind=kind).dec()


def inc_capability_check(capability: str, *, allowed: bool) -> None:
	CAPABILITY_CHECKS_TOTAL.labels(capability=capability, result="allowed" if allowed else "blocked").inc()


def record_sweep(job_type: str, *, result: str, expired: int) -> None:
	SWEEPER_RUNS_TOTAL.labels(job_type=job_type, result=result).inc()
	if expired:
		SWEEPER_EXPIRED_TOTAL.labels(kind=job_type).inc(expired)


def observe_sweep_duration(seconds: float) -> None:
	SWEEPER_DURATION.observe(seconds)


def inc_notification(result: str) -> None:
	NOTIFICATIONS_TOTAL.labels(result=result).inc()
