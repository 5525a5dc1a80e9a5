"""
Message Exchange Core
=====================

[PIPELINE] Ядро обмена сообщениями между pods/peas.

Components:
- models: Envelope / Request / Document / Chunk / NdArray / Status
- codec: NdArray encode/decode with NONE / FP16 / UINT8 quantization
- routes: hop tracing on Envelope.routes
- status: Status aggregation across hops and parts
- gather: fan-in of partial requests sharing one request_id

[USAGE]
    from messaging.codec import encode_ndarray, decode_ndarray
    from messaging.gather import PartialRequestGatherer
"""

__version__ = "0.1.0"

from .models import (
    Chunk,
    ControlCommand,
    ControlRequest,
    Details,
    Document,
    Envelope,
    IndexRequest,
    Message,
    NdArray,
    QuantizationMode,
    Request,
    Route,
    Score,
    ScoredResult,
    SearchRequest,
    SpawnRequest,
    Status,
    StatusCode,
    TrainRequest,
    Version,
)

from .codec import (
    CodecError,
    MalformedTensor,
    TensorCodec,
    TensorDecoder,
    TensorEncoder,
    decode_ndarray,
    encode_ndarray,
)

from .routes import RouteTracer, UnbalancedRoute

from .status import StatusAggregator, aggregate_status, status_from_exception

from .gather import (
    DuplicateDocument,
    GatherState,
    GatherTable,
    InconsistentRequestFields,
    PartialRequestGatherer,
    merge_parts,
)

__all__ = [
    # Models
    "Chunk",
    "ControlCommand",
    "ControlRequest",
    "Details",
    "Document",
    "Envelope",
    "IndexRequest",
    "Message",
    "NdArray",
    "QuantizationMode",
    "Request",
    "Route",
    "Score",
    "ScoredResult",
    "SearchRequest",
    "SpawnRequest",
    "Status",
    "StatusCode",
    "TrainRequest",
    "Version",
    # Codec
    "CodecError",
    "MalformedTensor",
    "TensorCodec",
    "TensorDecoder",
    "TensorEncoder",
    "decode_ndarray",
    "encode_ndarray",
    # Routes
    "RouteTracer",
    "UnbalancedRoute",
    # Status
    "StatusAggregator",
    "aggregate_status",
    "status_from_exception",
    # Gather
    "DuplicateDocument",
    "GatherState",
    "GatherTable",
    "InconsistentRequestFields",
    "PartialRequestGatherer",
    "merge_parts",
]
