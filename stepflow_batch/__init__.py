"""
stepflow_batch -- Flow-routed batch jobs with a fault-tolerant chunk engine.

A job is a Flow of named states connected by exit-code patterns.  Step
states run either a tasklet or a chunk-oriented read/process/write loop
with skip, retry and rollback classification.  Job instances, executions
and step executions are persisted through SQLAlchemy so that failed or
stopped jobs can be restarted where they left off.

Architecture:
    stepflow_batch/ depends on stepflow_kernel only.  stepflow_config
    builds stepflow_batch objects from YAML; the reverse import happens
    only lazily in BatchOrchestrator.load_job.

Layers:
    domain/    status vocabulary, execution records, chunks (zero I/O)
    flow/      pattern matching, transitions, states, Flow, FlowBuilder
    step/      item protocols, skip/retry policies, chunk processors, steps
    job/       step handler, job flow executor, FlowJob, JobRegistry
    models/    SQLAlchemy ORM models
    services/  SqlJobRepository, JobLauncher, JobOperator
"""
