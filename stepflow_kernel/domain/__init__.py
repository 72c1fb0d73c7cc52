"""Pure kernel domain helpers (no I/O)."""

from stepflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
