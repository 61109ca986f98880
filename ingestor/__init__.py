"""AMS stream ingestion worker and report dataset refresh."""

from ingestor.config import IngestorConfig, get_config
from ingestor.exceptions import ConfigurationError, IngestorError
from ingestor.models import ControlRecord, ReportDatasetMetadata, ReportKey, NextAction, DatasetStatus
from ingestor.worker import IngestionWorker
from ingestor.refresh import ReportRefreshOrchestrator
from ingestor.cli import main

__all__ = [
    "IngestorConfig",
    "get_config",
    "IngestorError",
    "ConfigurationError",
    "ControlRecord",
    "ReportDatasetMetadata",
    "ReportKey",
    "NextAction",
    "DatasetStatus",
    "IngestionWorker",
    "ReportRefreshOrchestrator",
    "main",
]
