"""
Execution Core
==============

Risk-bounded order execution across multiple trading venues.
"""

from execution_core.atomic_engine import (
    AtomicExecutionEngine,
    LegSpec,
    TransactionResult,
    TransactionStatus,
)
from execution_core.enums import ExecutionMode, OrderSide, OrderType, RequestMode, Urgency
from execution_core.errors import (
    CircularDependencyFault,
    DataUnavailableFault,
    ExecutionCoreError,
    RiskVeto,
    RollbackPartialFailure,
    UnknownTransactionError,
    ValidationFault,
    VenueRejection,
)
from execution_core.execution_rl import ExecutionPolicy
from execution_core.orchestrator import (
    ExecutionOrchestrator,
    ExecutionRequest,
    ExecutionResult,
    build_orchestrator,
)
from execution_core.slippage_gate import SlippageAnalysis, SlippageGate
from execution_core.tca_analyzer import TCAAnalyzer
from execution_core.venue import PaperVenueClient, VenueGateway

__all__ = [
    # Orchestration
    "ExecutionOrchestrator",
    "ExecutionRequest",
    "ExecutionResult",
    "build_orchestrator",
    # Components
    "AtomicExecutionEngine",
    "LegSpec",
    "TransactionResult",
    "TransactionStatus",
    "SlippageGate",
    "SlippageAnalysis",
    "TCAAnalyzer",
    "ExecutionPolicy",
    "VenueGateway",
    "PaperVenueClient",
    # Enums
    "OrderSide",
    "OrderType",
    "Urgency",
    "ExecutionMode",
    "RequestMode",
    # Faults
    "ExecutionCoreError",
    "ValidationFault",
    "CircularDependencyFault",
    "VenueRejection",
    "DataUnavailableFault",
    "RiskVeto",
    "RollbackPartialFailure",
    "UnknownTransactionError",
]
