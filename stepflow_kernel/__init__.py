"""
StepFlow Kernel - shared primitives for the batch engine.

- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with context propagation
- Injectable clock
- SQLAlchemy declarative base and engine/session plumbing
"""

__version__ = "0.1.0"
