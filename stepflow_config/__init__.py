"""
stepflow_config -- YAML job definitions.

The single entrypoint is ``load_job()``:

    job = load_job("jobs/nightly.yaml", components, job_repository=repo)

It loads the YAML document, parses it into a JobDefinition, validates it
and assembles a FlowJob.  The definition's checksum (SHA-256 of the
canonical JSON of the document) is logged so a run can be traced back to
the exact definition it executed.

Failure modes:
    - Missing file -> FileNotFoundError.
    - Unparseable or invalid definition -> BatchConfigError listing every
      problem found.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from stepflow_kernel.domain.clock import Clock
from stepflow_kernel.exceptions import BatchConfigError
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.job.job import FlowJob
from stepflow_batch.services.repository import JobRepository
from stepflow_batch.step.transaction import TransactionManager

from stepflow_config.assembler import ComponentRegistry, build_job
from stepflow_config.loader import compute_checksum, load_yaml_file, parse_job
from stepflow_config.schema import JobDefinition
from stepflow_config.validator import ConfigValidationResult, validate_job

__all__ = [
    "ComponentRegistry",
    "ConfigValidationResult",
    "JobDefinition",
    "build_job",
    "load_job",
    "load_job_definition",
    "validate_job",
]

_logger = get_logger("config")


def load_job_definition(path: str | Path) -> JobDefinition:
    """Load, parse and validate a job definition without assembling it.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        BatchConfigError: The document cannot be parsed or fails validation.
    """
    source = str(path)
    try:
        data = load_yaml_file(Path(path))
        definition = parse_job(data, compute_checksum(data))
    except (yaml.YAMLError, KeyError, TypeError, ValueError) as exc:
        detail = f"missing key {exc}" if isinstance(exc, KeyError) else str(exc)
        raise BatchConfigError(source, [detail]) from exc

    result = validate_job(definition)
    for warning in result.warnings:
        _logger.warning(
            "job_definition_warning",
            extra={"source": source, "job_name": definition.name, "warning": warning},
        )
    if not result.is_valid:
        raise BatchConfigError(source, result.errors)
    return definition


def load_job(
    path: str | Path,
    components: ComponentRegistry,
    *,
    job_repository: JobRepository | None = None,
    transaction_manager: TransactionManager | None = None,
    clock: Clock | None = None,
) -> FlowJob:
    """Build a FlowJob from the YAML definition at ``path``."""
    definition = load_job_definition(path)
    job = build_job(
        definition,
        components,
        job_repository=job_repository,
        transaction_manager=transaction_manager,
        clock=clock,
    )
    _logger.info(
        "STEPFLOW_CONFIG_TRACE",
        extra={
            "trace_type": "JOB_LOADED",
            "source": str(path),
            "job_name": definition.name,
            "checksum": definition.checksum,
            "step_count": len(definition.steps),
            "decision_count": len(definition.decisions),
        },
    )
    return job
