"""AI request routing.

Public API:
    Router                  - Admission, caching and model selection entry point
    RouteResult             - What route() hands back to the caller
    RoutingRequest          - Inbound request description
    ServiceLevel            - Critical / Standard
    classify                - Request type -> service level
    ProviderCatalog         - Providers, models and their attributes
    CriticalRateLimiter     - Per-user admission control for Critical requests
    QuotaLedger             - Daily token usage per provider
    ModelSelector           - Pure ranking policy
    ProviderCallExecutor    - Retry, fallback and degradation around a call
    execute_with_retry      - Exponential backoff helper
    DecisionLedger          - Decision storage interface
    RoutingMaintenance      - Timeout sweep and quota purge
"""

from airouter.routing.analytics import RoutingAnalytics, build_analytics
from airouter.routing.catalog import (
    ModelDescriptor,
    ProviderCatalog,
    ProviderProfile,
    SettingsCredentialProvider,
    StaticCredentialProvider,
    default_catalog,
)
from airouter.routing.classifier import RequestType, RoutingRequest, ServiceLevel, classify
from airouter.routing.decision import (
    CompletionReport,
    DecisionKind,
    DecisionStatus,
    RoutingDecision,
)
from airouter.routing.ledger import DecisionLedger, InMemoryDecisionLedger, SqlDecisionLedger
from airouter.routing.maintenance import MaintenanceReport, RoutingMaintenance
from airouter.routing.quota import QuotaAwareSelector, QuotaLedger
from airouter.routing.rate_limit import AdmissionResult, CriticalRateLimiter, RateLimitStatus
from airouter.routing.retry import (
    CallOutcome,
    ExecutionResult,
    ProviderCallExecutor,
    execute_with_retry,
)
from airouter.routing.router import CallTarget, RouteResult, Router
from airouter.routing.selector import ModelCandidate, ModelSelector, Selection

__all__ = [
    "AdmissionResult",
    "CallOutcome",
    "CallTarget",
    "CompletionReport",
    "CriticalRateLimiter",
    "DecisionKind",
    "DecisionLedger",
    "DecisionStatus",
    "ExecutionResult",
    "InMemoryDecisionLedger",
    "MaintenanceReport",
    "ModelCandidate",
    "ModelDescriptor",
    "ModelSelector",
    "ProviderCallExecutor",
    "ProviderCatalog",
    "ProviderProfile",
    "QuotaAwareSelector",
    "QuotaLedger",
    "RateLimitStatus",
    "RequestType",
    "RouteResult",
    "Router",
    "RoutingAnalytics",
    "RoutingDecision",
    "RoutingMaintenance",
    "RoutingRequest",
    "Selection",
    "ServiceLevel",
    "SettingsCredentialProvider",
    "SqlDecisionLedger",
    "StaticCredentialProvider",
    "build_analytics",
    "classify",
    "default_catalog",
    "execute_with_retry",
]
