from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

BILLING_PHASE_OUTCOMES = Counter(
    "billing_phase_outcomes_total",
    "Billing cycle phase outcomes",
    ["phase", "outcome"],
)

DUNNING_TRANSITIONS = Counter(
    "dunning_transitions_total",
    "Dunning level transitions written by the evaluator",
    ["direction", "to_level"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_phase_outcome(phase: str, outcome: str) -> None:
    BILLING_PHASE_OUTCOMES.labels(phase=phase, outcome=outcome).inc()


def record_dunning_transition(direction: str, to_level: int) -> None:
    DUNNING_TRANSITIONS.labels(direction=direction, to_level=str(to_level)).inc()
