"""
loan_config -- single public entrypoint for pipeline configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``PipelineConfig``.  YAML
    loading is internal tooling in ``loan_config.loader``.

Architecture position:
    Configuration -- sits above ``loan_kernel`` and beside ``loan_workers``.
    The kernel never imports from ``loan_config``; callers translate the
    config into constructor arguments (see ``loan_workers.orchestrator``).

Environment:
    LOAN_PIPELINE_CONFIG  Path of the YAML document to load (defaults to
                          ``loan_config/sets/default.yaml``).
    DATABASE_URL          Overrides ``database.url`` from the document.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ConfigurationError`` -- a value has the wrong type or range.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``loan_config_loaded`` log entry with the config id, version and
    checksum, tying a worker run to the exact document that configured it.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

from loan_config.loader import load_yaml_file, parse_pipeline_config
from loan_config.schema import (
    AuditConfig,
    DatabaseConfig,
    DecisionPolicyConfig,
    LoggingConfig,
    PipelineConfig,
    QueueConfig,
    WorkerPoolConfig,
)
from loan_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_PATH_ENV = "LOAN_PIPELINE_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> PipelineConfig:
    """
    Load, validate and return the active pipeline configuration.

    Args:
        config_path: Explicit document path.  Falls back to
            ``$LOAN_PIPELINE_CONFIG``, then the packaged default set.

    Raises:
        FileNotFoundError: If the document does not exist.
        ConfigurationError: If validation fails.
    """
    path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_PATH)
    config = parse_pipeline_config(load_yaml_file(path))

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        config = replace(config, database=replace(config.database, url=database_url))

    _logger.info(
        "loan_config_loaded",
        extra={
            "config_path": str(path),
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "database_url_from_env": bool(database_url),
        },
    )
    return config


__all__ = [
    "AuditConfig",
    "DatabaseConfig",
    "DecisionPolicyConfig",
    "LoggingConfig",
    "PipelineConfig",
    "QueueConfig",
    "WorkerPoolConfig",
    "get_active_config",
]
