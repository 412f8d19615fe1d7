from clusterwatch.services.health.catalog import (
    DEFAULT_HEALTH_CHECKS,
    ensure_default_health_checks,
)
from clusterwatch.services.health.dispatch import wait_for_background_runs
from clusterwatch.services.health.engine import (
    HealthCheckExecutionView,
    HealthCheckResultView,
    execute_health_check,
    get_execution,
    run_health_check,
)

__all__ = [
    "DEFAULT_HEALTH_CHECKS",
    "HealthCheckExecutionView",
    "HealthCheckResultView",
    "ensure_default_health_checks",
    "execute_health_check",
    "get_execution",
    "run_health_check",
    "wait_for_background_runs",
]
