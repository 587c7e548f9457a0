"""
Jig Ledger - Ownership Tracing

Output classification, forward tracing of spends, and the reconciliation
driver that folds traces into the ledger.
"""

from .exceptions import TraceError, TraceIncomplete, UnresolvableState
from .classifier import ClassifierRules, StateOutput, classify
from .tracer import ForwardTracer, Termination, TraceResult
from .reconciler import AssetStatus, ReconcileConfig, ReconcileSummary, Reconciler

__all__ = [
    'TraceError',
    'TraceIncomplete',
    'UnresolvableState',
    'ClassifierRules',
    'StateOutput',
    'classify',
    'ForwardTracer',
    'Termination',
    'TraceResult',
    'AssetStatus',
    'ReconcileConfig',
    'ReconcileSummary',
    'Reconciler',
]
