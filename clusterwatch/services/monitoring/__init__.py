from clusterwatch.services.monitoring.sessions import (
    MonitoringSessionStatus,
    get_session_status,
    resume_active_sessions,
    run_monitoring_cycle,
    start_monitoring,
    stop_all_tasks,
    stop_monitoring,
)

__all__ = [
    "MonitoringSessionStatus",
    "get_session_status",
    "resume_active_sessions",
    "run_monitoring_cycle",
    "start_monitoring",
    "stop_all_tasks",
    "stop_monitoring",
]
