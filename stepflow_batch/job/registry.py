"""JobRegistry -- jobs by name, one job per name."""

from __future__ import annotations

from stepflow_kernel.exceptions import NoSuchJobError

from stepflow_batch.job.job import Job


class JobRegistry:
    """Registry mapping job names to Job implementations.

    Contract:
        - ``register()`` adds a job; raises ValueError on duplicate.
        - ``get()`` retrieves by name; raises NoSuchJobError if missing.
        - ``job_names()`` returns all registered names.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def register(self, job: Job) -> None:
        """Register a job.

        Raises:
            ValueError: If a job with the same name is already registered.
        """
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job

    def unregister(self, name: str) -> None:
        self._jobs.pop(name, None)

    def get(self, name: str) -> Job:
        try:
            return self._jobs[name]
        except KeyError:
            raise NoSuchJobError(name, tuple(self._jobs)) from None

    def job_names(self) -> tuple[str, ...]:
        """Return all registered job names, sorted."""
        return tuple(sorted(self._jobs))

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs
