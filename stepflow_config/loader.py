"""
Job definition loader (``stepflow_config.loader``).

Responsibility
--------------
Loads a YAML job definition and parses it into the frozen dataclasses of
``stepflow_config.schema``.  The public entry point is
``stepflow_config.load_job()``; the functions here are its building blocks
and are also used directly by tests.

Document layout
---------------
::

    job:
      name: nightly_import
      restartable: true          # optional
      start: load                # optional, defaults to the first step
      ordering: specificity      # or: declaration
      listeners: [audit]
    steps:
      - name: load
        chunk: {reader: rows, processor: clean, writer: sink, size: 100}
        fault_tolerance:
          skip_limit: 10
          skippable: [myapp.errors.ParseError]
          retry_limit: 2
          retryable: [ConnectionError]
        transitions:
          - {on: FAILED, to: cleanup}
          - {on: "*", end: true}
      - name: cleanup
        tasklet: purge
        transitions:
          - {on: "*", end: FAILED}
    decisions:
      - name: route
        decider: router
        transitions: [...]

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Wrong value shapes  -> ``ValueError`` / ``TypeError`` propagate.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from stepflow_config.schema import (
    ChunkDefinition,
    DecisionDefinition,
    EndDefinition,
    FaultToleranceDefinition,
    JobDefinition,
    StepDefinition,
    TransitionDefinition,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty document yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Expected a mapping at the top of {path}, got {type(data).__name__}"
        )
    return data


def _names(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"'{field_name}' must be a list of names, got {value!r}")
    return tuple(str(v) for v in value)


def parse_transition(data: dict[str, Any]) -> TransitionDefinition:
    """Parse one transition.

    ``end: true`` ends the flow on the state itself; ``end: FAILED`` or
    ``end: {status: FAILED, exit_code: ...}`` ends it through an EndState.
    """
    # YAML 1.1 reads a bare ``on`` key as boolean True
    pattern = data.get("on", data.get(True, "*"))
    pattern = "*" if pattern is None else str(pattern)
    to = data.get("to")
    end = data.get("end")

    if to is not None and end is not None:
        raise ValueError(f"Transition on '{pattern}' has both 'to' and 'end'")
    if to is not None:
        return TransitionDefinition(on=pattern, to=str(to))
    if end is True:
        return TransitionDefinition(on=pattern)
    if isinstance(end, str):
        return TransitionDefinition(on=pattern, end=EndDefinition(status=end))
    if isinstance(end, dict):
        return TransitionDefinition(
            on=pattern,
            end=EndDefinition(
                status=str(end.get("status", "COMPLETED")),
                exit_code=str(end.get("exit_code", "")),
            ),
        )
    raise ValueError(f"Transition on '{pattern}' needs 'to' or 'end'")


def _parse_transitions(data: dict[str, Any]) -> tuple[TransitionDefinition, ...]:
    return tuple(parse_transition(t) for t in data.get("transitions") or ())


def parse_chunk(data: dict[str, Any]) -> ChunkDefinition:
    return ChunkDefinition(
        reader=data["reader"],
        writer=data["writer"],
        processor=data.get("processor"),
        size=int(data.get("size", 1)),
    )


def parse_fault_tolerance(data: dict[str, Any]) -> FaultToleranceDefinition:
    return FaultToleranceDefinition(
        skip_limit=int(data.get("skip_limit", 0)),
        skippable=_names(data.get("skippable"), "skippable"),
        non_skippable=_names(data.get("non_skippable"), "non_skippable"),
        retry_limit=int(data.get("retry_limit", 0)),
        retryable=_names(data.get("retryable"), "retryable"),
        non_retryable=_names(data.get("non_retryable"), "non_retryable"),
        no_rollback=_names(data.get("no_rollback"), "no_rollback"),
    )


def parse_step(data: dict[str, Any]) -> StepDefinition:
    chunk = data.get("chunk")
    fault_tolerance = data.get("fault_tolerance")
    start_limit = data.get("start_limit")
    return StepDefinition(
        name=data["name"],
        tasklet=data.get("tasklet"),
        chunk=parse_chunk(chunk) if chunk else None,
        fault_tolerance=parse_fault_tolerance(fault_tolerance) if fault_tolerance else None,
        start_limit=int(start_limit) if start_limit is not None else None,
        allow_start_if_complete=bool(data.get("allow_start_if_complete", False)),
        listeners=_names(data.get("listeners"), "listeners"),
        transitions=_parse_transitions(data),
    )


def parse_decision(data: dict[str, Any]) -> DecisionDefinition:
    return DecisionDefinition(
        name=data["name"],
        decider=data["decider"],
        transitions=_parse_transitions(data),
    )


def parse_job(data: dict[str, Any], checksum: str = "") -> JobDefinition:
    """Parse a whole job document."""
    job = data["job"]
    return JobDefinition(
        name=job["name"],
        steps=tuple(parse_step(s) for s in data.get("steps") or ()),
        decisions=tuple(parse_decision(d) for d in data.get("decisions") or ()),
        start=job.get("start"),
        restartable=bool(job.get("restartable", True)),
        listeners=_names(job.get("listeners"), "listeners"),
        ordering=str(job.get("ordering", "specificity")),
        checksum=checksum or compute_checksum(data),
    )


def _canonical(value: Any) -> Any:
    # YAML 1.1 turns a bare ``on`` key into True; keys must be strings to sort
    if isinstance(value, dict):
        return {
            ("on" if k is True else str(k)): _canonical(v) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialisation of ``data``."""
    canonical = json.dumps(_canonical(data), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
