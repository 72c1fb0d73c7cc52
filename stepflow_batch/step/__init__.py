"""
stepflow_batch.step -- Steps and the chunk engine.

Item protocols, skip and retry policies, exception classifiers,
listeners, transaction managers, chunk processors and the step
implementations that drive them.
"""

from stepflow_batch.step.base import (
    AbstractStep,
    ChunkOrientedStep,
    RepeatStatus,
    Step,
    TaskletStep,
)
from stepflow_batch.step.chunk_processor import (
    ChunkProcessor,
    FaultTolerantChunkProcessor,
    SimpleChunkProcessor,
)
from stepflow_batch.step.classifier import BinaryExceptionClassifier, SubclassClassifier
from stepflow_batch.step.item import (
    CallableItemProcessor,
    ItemProcessor,
    ItemReader,
    ItemStream,
    ItemWriter,
    ListItemReader,
    ListItemWriter,
)
from stepflow_batch.step.listeners import (
    CompositeListener,
    JobExecutionListener,
    RetryListener,
    SkipListener,
    StepExecutionListener,
)
from stepflow_batch.step.retry import NeverRetryPolicy, RetryPolicy, SimpleRetryPolicy
from stepflow_batch.step.skip import (
    AlwaysSkipItemSkipPolicy,
    CompositeSkipPolicy,
    ExceptionClassifierSkipPolicy,
    LimitCheckingItemSkipPolicy,
    NeverSkipItemSkipPolicy,
    SkipPolicy,
    should_skip,
)
from stepflow_batch.step.transaction import (
    ResourcelessTransactionManager,
    SessionTransactionManager,
    Transaction,
    TransactionManager,
)

__all__ = [
    "AbstractStep",
    "AlwaysSkipItemSkipPolicy",
    "BinaryExceptionClassifier",
    "CallableItemProcessor",
    "ChunkOrientedStep",
    "ChunkProcessor",
    "CompositeListener",
    "CompositeSkipPolicy",
    "ExceptionClassifierSkipPolicy",
    "FaultTolerantChunkProcessor",
    "ItemProcessor",
    "ItemReader",
    "ItemStream",
    "ItemWriter",
    "JobExecutionListener",
    "LimitCheckingItemSkipPolicy",
    "ListItemReader",
    "ListItemWriter",
    "NeverRetryPolicy",
    "NeverSkipItemSkipPolicy",
    "RepeatStatus",
    "ResourcelessTransactionManager",
    "RetryListener",
    "RetryPolicy",
    "SessionTransactionManager",
    "SimpleChunkProcessor",
    "SimpleRetryPolicy",
    "SkipListener",
    "SkipPolicy",
    "Step",
    "StepExecutionListener",
    "SubclassClassifier",
    "TaskletStep",
    "Transaction",
    "TransactionManager",
    "should_skip",
]
