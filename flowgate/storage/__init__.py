"""Execution and approval persistence."""

from flowgate.config import RuntimeConfig
from flowgate.storage.backend import (
    ApprovalStore,
    ExecutionStore,
    InMemoryApprovalStore,
    InMemoryExecutionStore,
)
from flowgate.storage.file_store import FileApprovalStore, FileExecutionStore


def create_stores(config: RuntimeConfig) -> tuple[ExecutionStore, ApprovalStore]:
    """Build the store pair selected by ``config.store_backend``."""
    if config.store_backend == "file":
        return FileExecutionStore(config.store_path), FileApprovalStore(config.store_path)
    if config.store_backend == "memory":
        return InMemoryExecutionStore(), InMemoryApprovalStore()
    raise ValueError(f"Unknown store backend '{config.store_backend}'")


__all__ = [
    "ApprovalStore",
    "ExecutionStore",
    "FileApprovalStore",
    "FileExecutionStore",
    "InMemoryApprovalStore",
    "InMemoryExecutionStore",
    "create_stores",
]
