"""
Request Envelope Data Model
===========================

[WIRE] Структуры данных, которыми обмениваются pods/peas:

    Message
    ├── Envelope (sender/receiver, request_id, timeout, routes, status, num_part)
    └── Request  (request_id, body: Train | Index | Search | Control, status)
            └── Document[]
                    └── Chunk[]  (embedding: NdArray, topk_results: ScoredResult[])

[ONEOF] Поля-варианты (content документа/чанка, body запроса, match
результата) хранятся в ОДНОМ поле, тип значения определяет вариант:

    Chunk.content / Document.content : str | NdArray | bytes
    Request.body                     : TrainRequest | IndexRequest | SearchRequest | ControlRequest
    ScoredResult.match               : Chunk | Document
    SpawnRequest.body                : PeaSpawnRequest | PodSpawnRequest | MutablepodSpawnRequest

[SERIALIZATION] to_dict()/from_dict() используют имена полей wire-схемы,
bytes кодируются в base64.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union

PROTO_VERSION = "0.0.1"


class QuantizationMode(IntEnum):
    """
    Режим квантования NdArray.

    [WIRE] Значения стабильны.
    """
    NONE = 0    # stored in the original dtype
    FP16 = 1    # 2x smaller for float32
    UINT8 = 2   # 4x smaller, lossy


class StatusCode(IntEnum):
    """[WIRE] Status codes, values must not change."""
    SUCCESS = 0
    PENDING = 1             # more messages follow
    READY = 2
    ERROR = 3
    ERROR_DUPLICATE = 4     # pea/pod already running
    ERROR_NOTALLOWED = 5    # remote spawn not allowed


ERROR_CODES = frozenset({
    StatusCode.ERROR,
    StatusCode.ERROR_DUPLICATE,
    StatusCode.ERROR_NOTALLOWED,
})


class ControlCommand(IntEnum):
    TERMINATE = 0
    STATUS = 1
    IDLE = 3


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: Optional[str]) -> bytes:
    if not data:
        return b""
    return base64.b64decode(data)


# ============================================================================
# NdArray / Score
# ============================================================================

@dataclass
class NdArray:
    """
    (Квантованный) numpy массив в сериализованном виде.

    [INVARIANT]
    - quantization != NONE -> original_dtype хранит dtype до кодирования,
      dtype хранит тип в buffer
    - min_val <= max_val, scale >= 0
    """
    buffer: bytes = b""
    shape: List[int] = field(default_factory=list)
    dtype: str = ""
    quantization: QuantizationMode = QuantizationMode.NONE
    max_val: float = 0.0
    min_val: float = 0.0
    scale: float = 0.0
    original_dtype: str = ""

    @property
    def size(self) -> int:
        result = 1
        for dim in self.shape:
            result *= dim
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buffer": _b64encode(self.buffer),
            "shape": list(self.shape),
            "dtype": self.dtype,
            "quantization": int(self.quantization),
            "max_val": self.max_val,
            "min_val": self.min_val,
            "scale": self.scale,
            "original_dtype": self.original_dtype,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NdArray":
        return cls(
            buffer=_b64decode(data.get("buffer")),
            shape=[int(d) for d in data.get("shape", [])],
            dtype=data.get("dtype", ""),
            quantization=QuantizationMode(data.get("quantization", 0)),
            max_val=float(data.get("max_val", 0.0)),
            min_val=float(data.get("min_val", 0.0)),
            scale=float(data.get("scale", 0.0)),
            original_dtype=data.get("original_dtype", ""),
        )


@dataclass
class Score:
    """Score of a match; may be composed of nested operand scores."""
    value: float = 0.0
    op_name: str = ""
    description: str = ""
    operands: List["Score"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "op_name": self.op_name,
            "description": self.description,
            "operands": [op.to_dict() for op in self.operands],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Score":
        return cls(
            value=float(data.get("value", 0.0)),
            op_name=data.get("op_name", ""),
            description=data.get("description", ""),
            operands=[cls.from_dict(op) for op in data.get("operands", [])],
        )


# ============================================================================
# Content oneof
# ============================================================================

Content = Union[str, NdArray, bytes]


def content_type(content: Optional[Content]) -> Optional[str]:
    """Имя варианта content: 'text' | 'blob' | 'buffer' | None."""
    if content is None:
        return None
    if isinstance(content, str):
        return "text"
    if isinstance(content, NdArray):
        return "blob"
    if isinstance(content, (bytes, bytearray)):
        return "buffer"
    raise TypeError(f"Unsupported content type: {type(content).__name__}")


def _content_to_dict(content: Optional[Content]) -> Dict[str, Any]:
    kind = content_type(content)
    if kind == "text":
        return {"text": content}
    if kind == "blob":
        return {"blob": content.to_dict()}
    if kind == "buffer":
        return {"buffer": _b64encode(bytes(content))}
    return {}


def _content_from_dict(data: Dict[str, Any]) -> Optional[Content]:
    if "text" in data:
        return data["text"]
    if "blob" in data:
        return NdArray.from_dict(data["blob"])
    if "buffer" in data:
        return _b64decode(data["buffer"])
    return None


# ============================================================================
# Chunk / Document / ScoredResult
# ============================================================================

@dataclass
class ScoredResult:
    """A match against a Chunk or a Document, plus its score."""
    match: Union["Chunk", "Document", None] = None
    score: Score = field(default_factory=Score)

    @property
    def kind(self) -> Optional[str]:
        if self.match is None:
            return None
        if isinstance(self.match, Chunk):
            return "match_chunk"
        if isinstance(self.match, Document):
            return "match_doc"
        raise TypeError(f"Unsupported match type: {type(self.match).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"score": self.score.to_dict()}
        kind = self.kind
        if kind is not None:
            result[kind] = self.match.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoredResult":
        match: Union[Chunk, Document, None] = None
        if "match_chunk" in data:
            match = Chunk.from_dict(data["match_chunk"])
        elif "match_doc" in data:
            match = Document.from_dict(data["match_doc"])
        return cls(match=match, score=Score.from_dict(data.get("score", {})))


def sort_topk(results: List[ScoredResult]) -> List[ScoredResult]:
    """Упорядочить результаты по убыванию score (in-place, stable)."""
    results.sort(key=lambda r: r.score.value, reverse=True)
    return results


@dataclass
class Chunk:
    """
    Фрагмент документа.

    [IDENTITY] (doc_id, chunk_id) уникален в системе.
    """
    doc_id: int = 0
    chunk_id: int = 0
    content: Optional[Content] = None
    embedding: Optional[NdArray] = None
    offset: int = 0
    weight: float = 0.0
    length: int = 0
    meta_info: bytes = b""
    topk_results: List[ScoredResult] = field(default_factory=list)
    mime_type: str = ""
    field_name: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    location: List[int] = field(default_factory=list)

    @property
    def content_type(self) -> Optional[str]:
        return content_type(self.content)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "doc_id": self.doc_id,
            "chunk_id": self.chunk_id,
            "offset": self.offset,
            "weight": self.weight,
            "length": self.length,
            "meta_info": _b64encode(self.meta_info),
            "topk_results": [r.to_dict() for r in self.topk_results],
            "mime_type": self.mime_type,
            "field_name": self.field_name,
            "tags": dict(self.tags),
            "location": list(self.location),
        }
        result.update(_content_to_dict(self.content))
        if self.embedding is not None:
            result["embedding"] = self.embedding.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        embedding = data.get("embedding")
        return cls(
            doc_id=int(data.get("doc_id", 0)),
            chunk_id=int(data.get("chunk_id", 0)),
            content=_content_from_dict(data),
            embedding=NdArray.from_dict(embedding) if embedding else None,
            offset=int(data.get("offset", 0)),
            weight=float(data.get("weight", 0.0)),
            length=int(data.get("length", 0)),
            meta_info=_b64decode(data.get("meta_info")),
            topk_results=[ScoredResult.from_dict(r) for r in data.get("topk_results", [])],
            mime_type=data.get("mime_type", ""),
            field_name=data.get("field_name", ""),
            tags=dict(data.get("tags", {})),
            location=[int(x) for x in data.get("location", [])],
        )


@dataclass
class Document:
    """Документ, владеющий своими чанками."""
    doc_id: int = 0
    content: Optional[Content] = None
    chunks: List[Chunk] = field(default_factory=list)
    weight: float = 0.0
    length: int = 0
    meta_info: bytes = b""
    topk_results: List[ScoredResult] = field(default_factory=list)
    mime_type: str = ""
    uri: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> Optional[str]:
        return content_type(self.content)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "doc_id": self.doc_id,
            "chunks": [c.to_dict() for c in self.chunks],
            "weight": self.weight,
            "length": self.length,
            "meta_info": _b64encode(self.meta_info),
            "topk_results": [r.to_dict() for r in self.topk_results],
            "mime_type": self.mime_type,
            "uri": self.uri,
            "tags": dict(self.tags),
        }
        result.update(_content_to_dict(self.content))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            doc_id=int(data.get("doc_id", 0)),
            content=_content_from_dict(data),
            chunks=[Chunk.from_dict(c) for c in data.get("chunks", [])],
            weight=float(data.get("weight", 0.0)),
            length=int(data.get("length", 0)),
            meta_info=_b64decode(data.get("meta_info")),
            topk_results=[ScoredResult.from_dict(r) for r in data.get("topk_results", [])],
            mime_type=data.get("mime_type", ""),
            uri=data.get("uri", ""),
            tags=dict(data.get("tags", {})),
        )


# ============================================================================
# Status
# ============================================================================

@dataclass
class Details:
    """Per-hop error details."""
    pod: str = ""
    pod_id: str = ""
    executor: str = ""
    exception: str = ""
    traceback: str = ""
    time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pod": self.pod,
            "pod_id": self.pod_id,
            "executor": self.executor,
            "exception": self.exception,
            "traceback": self.traceback,
            "time": self.time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Details":
        return cls(
            pod=data.get("pod", ""),
            pod_id=data.get("pod_id", ""),
            executor=data.get("executor", ""),
            exception=data.get("exception", ""),
            traceback=data.get("traceback", ""),
            time=float(data.get("time", 0.0)),
        )


@dataclass
class Status:
    code: StatusCode = StatusCode.SUCCESS
    description: str = ""
    details: List[Details] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.code in ERROR_CODES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": int(self.code),
            "description": self.description,
            "details": [d.to_dict() for d in self.details],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Status":
        return cls(
            code=StatusCode(data.get("code", 0)),
            description=data.get("description", ""),
            details=[Details.from_dict(d) for d in data.get("details", [])],
        )


# ============================================================================
# Envelope
# ============================================================================

@dataclass
class Route:
    """One hop of a message through a pod."""
    pod: str = ""
    pod_id: str = ""
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pod": self.pod,
            "pod_id": self.pod_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Route":
        return cls(
            pod=data.get("pod", ""),
            pod_id=data.get("pod_id", ""),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
        )


@dataclass
class Version:
    jina: str = ""
    proto: str = PROTO_VERSION
    vcs: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"jina": self.jina, "proto": self.proto, "vcs": self.vcs}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        return cls(
            jina=data.get("jina", ""),
            proto=data.get("proto", ""),
            vcs=data.get("vcs", ""),
        )


@dataclass
class Envelope:
    """
    Транспортный конверт сообщения.

    [NUM_PART] Стек ожидаемых количеств частей: каждый fan-out добавляет
    значение, каждый fan-in (gather) снимает последнее.
    """
    sender_id: str = ""
    receiver_id: str = ""
    request_id: int = 0
    timeout: float = 0.0
    routes: List[Route] = field(default_factory=list)
    version: Version = field(default_factory=Version)
    status: Status = field(default_factory=Status)
    num_part: List[int] = field(default_factory=list)

    @property
    def expected_parts(self) -> int:
        if not self.num_part:
            return 1
        return max(1, self.num_part[-1])

    def fan_out(self, num: int) -> "Envelope":
        if num < 1:
            raise ValueError(f"num_part must be >= 1, got {num}")
        self.num_part.append(num)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "request_id": self.request_id,
            "timeout": self.timeout,
            "routes": [r.to_dict() for r in self.routes],
            "version": self.version.to_dict(),
            "status": self.status.to_dict(),
            "num_part": list(self.num_part),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        return cls(
            sender_id=data.get("sender_id", ""),
            receiver_id=data.get("receiver_id", ""),
            request_id=int(data.get("request_id", 0)),
            timeout=float(data.get("timeout", 0.0)),
            routes=[Route.from_dict(r) for r in data.get("routes", [])],
            version=Version.from_dict(data.get("version", {})),
            status=Status.from_dict(data.get("status", {})),
            num_part=[int(n) for n in data.get("num_part", [])],
        )


# ============================================================================
# Request bodies
# ============================================================================

@dataclass
class TrainRequest:
    docs: List[Document] = field(default_factory=list)
    flush: bool = False
    filter_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "docs": [d.to_dict() for d in self.docs],
            "flush": self.flush,
            "filter_by": list(self.filter_by),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainRequest":
        return cls(
            docs=[Document.from_dict(d) for d in data.get("docs", [])],
            flush=bool(data.get("flush", False)),
            filter_by=list(data.get("filter_by", [])),
        )


@dataclass
class IndexRequest:
    docs: List[Document] = field(default_factory=list)
    filter_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "docs": [d.to_dict() for d in self.docs],
            "filter_by": list(self.filter_by),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexRequest":
        return cls(
            docs=[Document.from_dict(d) for d in data.get("docs", [])],
            filter_by=list(data.get("filter_by", [])),
        )


@dataclass
class SearchRequest:
    docs: List[Document] = field(default_factory=list)
    top_k: int = 0
    filter_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "docs": [d.to_dict() for d in self.docs],
            "top_k": self.top_k,
            "filter_by": list(self.filter_by),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchRequest":
        return cls(
            docs=[Document.from_dict(d) for d in data.get("docs", [])],
            top_k=int(data.get("top_k", 0)),
            filter_by=list(data.get("filter_by", [])),
        )


@dataclass
class ControlRequest:
    command: ControlCommand = ControlCommand.TERMINATE
    args: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"command": int(self.command), "args": dict(self.args)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlRequest":
        return cls(
            command=ControlCommand(data.get("command", 0)),
            args=dict(data.get("args", {})),
        )


RequestBody = Union[TrainRequest, IndexRequest, SearchRequest, ControlRequest]

_BODY_KINDS = (
    ("train", TrainRequest),
    ("index", IndexRequest),
    ("search", SearchRequest),
    ("control", ControlRequest),
)


def body_kind(body: Optional[RequestBody]) -> Optional[str]:
    """Имя варианта body: 'train' | 'index' | 'search' | 'control' | None."""
    if body is None:
        return None
    for name, cls in _BODY_KINDS:
        if isinstance(body, cls):
            return name
    raise TypeError(f"Unsupported request body: {type(body).__name__}")


@dataclass
class Request:
    """
    Тело запроса.

    [GATHER] Несколько Request с одинаковым request_id собираются в один.
    """
    request_id: int = 0
    body: Optional[RequestBody] = None
    status: Status = field(default_factory=Status)

    @property
    def kind(self) -> Optional[str]:
        return body_kind(self.body)

    @property
    def docs(self) -> List[Document]:
        if self.body is None or isinstance(self.body, ControlRequest):
            return []
        return self.body.docs

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "request_id": self.request_id,
            "status": self.status.to_dict(),
        }
        kind = self.kind
        if kind is not None:
            result[kind] = self.body.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Request":
        body: Optional[RequestBody] = None
        for name, body_cls in _BODY_KINDS:
            if name in data:
                body = body_cls.from_dict(data[name])
                break
        return cls(
            request_id=int(data.get("request_id", 0)),
            body=body,
            status=Status.from_dict(data.get("status", {})),
        )


@dataclass
class Message:
    """
    Envelope + Request.

    [BOUNDARY] Envelope используется только внутри системы и отбрасывается
    перед возвратом клиенту (см. core.wire.strip_envelope).
    """
    envelope: Envelope = field(default_factory=Envelope)
    request: Request = field(default_factory=Request)

    @property
    def request_id(self) -> int:
        return self.request.request_id

    @property
    def docs(self) -> List[Document]:
        return self.request.docs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelope": self.envelope.to_dict(),
            "request": self.request.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            envelope=Envelope.from_dict(data.get("envelope", {})),
            request=Request.from_dict(data.get("request", {})),
        )


# ============================================================================
# Spawn (worker lifecycle channel)
# ============================================================================

@dataclass
class PeaSpawnRequest:
    args: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"args": list(self.args)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeaSpawnRequest":
        return cls(args=list(data.get("args", [])))


@dataclass
class PodSpawnRequest:
    args: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"args": list(self.args)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PodSpawnRequest":
        return cls(args=list(data.get("args", [])))


@dataclass
class MutablepodSpawnRequest:
    head: PeaSpawnRequest = field(default_factory=PeaSpawnRequest)
    tail: PeaSpawnRequest = field(default_factory=PeaSpawnRequest)
    peas: List[PeaSpawnRequest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "head": self.head.to_dict(),
            "tail": self.tail.to_dict(),
            "peas": [p.to_dict() for p in self.peas],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MutablepodSpawnRequest":
        return cls(
            head=PeaSpawnRequest.from_dict(data.get("head", {})),
            tail=PeaSpawnRequest.from_dict(data.get("tail", {})),
            peas=[PeaSpawnRequest.from_dict(p) for p in data.get("peas", [])],
        )


SpawnBody = Union[PeaSpawnRequest, PodSpawnRequest, MutablepodSpawnRequest]

_SPAWN_KINDS = (
    ("pea", PeaSpawnRequest),
    ("pod", PodSpawnRequest),
    ("mutable_pod", MutablepodSpawnRequest),
)


@dataclass
class SpawnRequest:
    body: Optional[SpawnBody] = None
    log_record: str = ""
    status: Status = field(default_factory=Status)

    @property
    def kind(self) -> Optional[str]:
        if self.body is None:
            return None
        for name, cls in _SPAWN_KINDS:
            if isinstance(self.body, cls):
                return name
        raise TypeError(f"Unsupported spawn body: {type(self.body).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "log_record": self.log_record,
            "status": self.status.to_dict(),
        }
        kind = self.kind
        if kind is not None:
            result[kind] = self.body.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpawnRequest":
        body: Optional[SpawnBody] = None
        for name, body_cls in _SPAWN_KINDS:
            if name in data:
                body = body_cls.from_dict(data[name])
                break
        return cls(
            body=body,
            log_record=data.get("log_record", ""),
            status=Status.from_dict(data.get("status", {})),
        )
