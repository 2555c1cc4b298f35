"""Health subsystem: check executor, SQLite store, classifier, poller, ingestion."""

from .classifier import Classification, SeverityClassifier
from .engine import ProbeResult, execute_check
from .ingestion import DeployIngestor, ErrorIngestor
from .poller import HealthPoller, PollSummary
from .store import MonitorStore
