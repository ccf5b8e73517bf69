from feature_factory.worker.discovery import (
    DiscoveredWork,
    Diagnosis,
    create_work_from_diagnosis,
    determine_automation_tier,
    determine_priority,
    suggest_workflow,
)
from feature_factory.worker.policy import ApprovalDecision, ApprovalPolicy
from feature_factory.worker.queue import PersistentQueue, QueueStats
from feature_factory.worker.sources import (
    Alert,
    AlertClient,
    DebuggerAlertSource,
    DiagnosisAnalyzer,
    FileQueueSource,
    ValidationFailure,
    ValidationFailureSource,
    WorkSourceProvider,
    add_manual_item,
    classify_error_code,
    report_validation_failures,
    validation_inbox_path,
)
from feature_factory.worker.status import WorkerStats, WorkerStatus, load_worker_status
from feature_factory.worker.worker import (
    AutonomousWorker,
    WorkerLock,
    WorkflowResult,
    is_worker_locked,
    map_work_to_workflow,
    request_stop,
)

__all__ = [
    "Alert",
    "AlertClient",
    "ApprovalDecision",
    "ApprovalPolicy",
    "AutonomousWorker",
    "DebuggerAlertSource",
    "Diagnosis",
    "DiagnosisAnalyzer",
    "DiscoveredWork",
    "FileQueueSource",
    "PersistentQueue",
    "QueueStats",
    "ValidationFailure",
    "ValidationFailureSource",
    "WorkSourceProvider",
    "WorkerLock",
    "WorkerStats",
    "WorkerStatus",
    "WorkflowResult",
    "add_manual_item",
    "classify_error_code",
    "create_work_from_diagnosis",
    "determine_automation_tier",
    "determine_priority",
    "is_worker_locked",
    "load_worker_status",
    "map_work_to_workflow",
    "report_validation_failures",
    "request_stop",
    "suggest_workflow",
    "validation_inbox_path",
]
