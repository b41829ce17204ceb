"""
dispatch_core: Request/Future Coordination for a Remote Compute Service
========================================================================

Components:
    - RateLimiter / RateLimiterRegistry: shared server-directed backoff
    - Poller / RemoteFuture: drive submitted request ids to resolution
    - Sequencer: per-session ordered transmission
    - Combiner: merge chunked results with per-field reduction rules
    - ServiceClient / TrainingClient / SamplingClient: dispatcher facades

All fallible operations return Result (Ok | Err); see dispatch_core.errors.
"""

from .clients import SamplingClient, ServiceClient, TrainingClient
from .combiner import (
    Combiner,
    Reduction,
    combine_forward_backward_results,
    combine_results,
    reduce_metrics,
)
from .config import (
    DispatchCoreConfig,
    TrafficClass,
    get_config,
    load_config_from_env,
    set_config,
)
from .dispatch import BytesSemaphore, SamplingDispatch
from .errors import (
    CategoryScheme,
    DispatchError,
    Err,
    ErrorCategory,
    ErrorCode,
    Ok,
    Result,
    SequencerInvariantError,
    match_result,
)
from .future import FutureState, Poller, RemoteFuture
from .models import QueueState
from .queue_state import QueueStateLogger, QueueStateObserver
from .rate_limiter import RateLimiter, RateLimiterRegistry
from .sequencer import Sequencer
from .transport import HTTPTransport, Transport

__version__ = "0.1.0"

__all__ = [
    "BytesSemaphore",
    "CategoryScheme",
    "Combiner",
    "DispatchCoreConfig",
    "DispatchError",
    "Err",
    "ErrorCategory",
    "ErrorCode",
    "FutureState",
    "HTTPTransport",
    "Ok",
    "Poller",
    "QueueState",
    "QueueStateLogger",
    "QueueStateObserver",
    "RateLimiter",
    "RateLimiterRegistry",
    "Reduction",
    "RemoteFuture",
    "Result",
    "SamplingClient",
    "SamplingDispatch",
    "Sequencer",
    "SequencerInvariantError",
    "ServiceClient",
    "TrafficClass",
    "TrainingClient",
    "Transport",
    "combine_forward_backward_results",
    "combine_results",
    "get_config",
    "load_config_from_env",
    "match_result",
    "reduce_metrics",
    "set_config",
]
