"""
NdArray Tensor Codec
====================

[NEURAL] Сериализация numpy массивов (embeddings, blobs) в NdArray с
опциональным lossy квантованием.

Режимы (QuantizationMode):
=========================

┌───────┬────────────────┬──────────────────────────────────────────────┐
│ Mode  │ Stored dtype   │ Reconstruction                               │
├───────┼────────────────┼──────────────────────────────────────────────┤
│ NONE  │ original       │ exact, raw native-endian bytes              │
│ FP16  │ float16        │ round-to-nearest-even, overflow -> ±inf     │
│ UINT8 │ uint8          │ x' = q * scale + min_val, |x - x'| <= scale/2│
└───────┴────────────────┴──────────────────────────────────────────────┘

UINT8:
    scale = (max_val - min_val) / 255
    q     = round_half_away((x - min_val) / scale), clipped to [0, 255]
    constant arrays: scale = 0, q = 0, decode -> min_val everywhere
    float originals decode to their dtype, integer/bool originals to float64

FP16 into integer dtypes: ±inf saturates to iinfo(dtype).min/max.

[SAFETY] Decoder проверяет длину buffer против shape/dtype и никогда не
доверяет метаданным вслепую.

[LIMITS]
- MAX_TENSOR_SIZE: 1GB (защита от OOM)
"""

import logging
from typing import Optional, Tuple, Union

import numpy as np

from config import config
from .models import Chunk, Document, NdArray, QuantizationMode

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

MAX_TENSOR_SIZE = 1024 * 1024 * 1024  # 1 GB max
UINT8_LEVELS = 255

# Numeric kinds: bool, signed, unsigned, float
_QUANTIZABLE_KINDS = "biuf"


class CodecError(Exception):
    """Tensor codec error."""
    pass


class MalformedTensor(CodecError):
    """Buffer length does not match shape/dtype, or dtype is unknown."""
    pass


class TensorTooLargeError(CodecError):
    """Tensor exceeds maximum size."""
    pass


QuantizationLike = Union[QuantizationMode, int, str, None]


def resolve_quantization(value: QuantizationLike = None) -> QuantizationMode:
    """
    Привести режим квантования к QuantizationMode.

    Accepts the enum, its wire code or its name ("fp16", "UINT8").
    None falls back to config.codec.quantization.
    """
    if value is None:
        value = config.codec.quantization
    if isinstance(value, QuantizationMode):
        return value
    if isinstance(value, int):
        try:
            return QuantizationMode(value)
        except ValueError:
            raise CodecError(f"Unknown quantization code: {value}") from None
    if isinstance(value, str):
        try:
            return QuantizationMode[value.strip().upper()]
        except KeyError:
            raise CodecError(f"Unknown quantization mode: {value!r}") from None
    raise CodecError(f"Unsupported quantization value: {value!r}")


def _dtype_tag(dtype: "np.dtype") -> str:
    if dtype.kind in _QUANTIZABLE_KINDS or dtype.kind == "c":
        return dtype.name
    return dtype.str


def _resolve_dtype(tag: str) -> "np.dtype":
    if not tag:
        raise MalformedTensor("Missing dtype")
    try:
        return np.dtype(tag)
    except TypeError:
        raise MalformedTensor(f"Unknown dtype: {tag!r}") from None


def _saturate_to_int(half: "np.ndarray", dtype: "np.dtype") -> "np.ndarray":
    """FP16 -> integer dtype; ±inf saturates to the dtype's range instead of wrapping."""
    info = np.iinfo(dtype)
    values = half.astype(np.float64)
    # finite float16 values are within ±65504
    finite = np.clip(
        np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0),
        max(float(info.min), -65504.0),
        min(float(info.max), 65504.0),
    )
    result = finite.astype(dtype)
    result[np.isposinf(values)] = info.max
    result[np.isneginf(values)] = info.min
    return result


def _numel(shape: Tuple[int, ...]) -> int:
    result = 1
    for dim in shape:
        if dim < 0:
            raise MalformedTensor(f"Negative dimension in shape {shape}")
        result *= dim
    return result


# ============================================================================
# Encoder
# ============================================================================

class TensorEncoder:
    """
    Encodes numpy arrays into NdArray.

    Stateless apart from the chosen mode; safe to share between threads.
    """

    def __init__(self, quantization: QuantizationLike = None):
        self.quantization = resolve_quantization(quantization)

    def encode(self, array) -> NdArray:
        """
        Encode array.

        Raises:
            CodecError: non-numeric array with a lossy mode, or
                non-finite values with UINT8
            TensorTooLargeError: if raw data > MAX_TENSOR_SIZE
        """
        arr = np.asarray(array)
        if arr.dtype == object:
            raise CodecError("Object arrays cannot be encoded")

        if not arr.dtype.isnative:
            arr = arr.astype(arr.dtype.newbyteorder("="))
        arr = np.ascontiguousarray(arr)

        if arr.nbytes > MAX_TENSOR_SIZE:
            raise TensorTooLargeError(
                f"Tensor too large: {arr.nbytes} > {MAX_TENSOR_SIZE}"
            )

        mode = self.quantization
        if mode == QuantizationMode.NONE:
            return self._encode_raw(arr)

        if arr.dtype.kind not in _QUANTIZABLE_KINDS:
            raise CodecError(f"Cannot quantize dtype {arr.dtype} with {mode.name}")

        if mode == QuantizationMode.FP16:
            return self._encode_fp16(arr)
        return self._encode_uint8(arr)

    def _encode_raw(self, arr: "np.ndarray") -> NdArray:
        tag = _dtype_tag(arr.dtype)
        return NdArray(
            buffer=arr.tobytes(),
            shape=list(arr.shape),
            dtype=tag,
            quantization=QuantizationMode.NONE,
            original_dtype=tag,
        )

    def _encode_fp16(self, arr: "np.ndarray") -> NdArray:
        # out-of-range values become ±inf
        with np.errstate(over="ignore"):
            half = arr.astype(np.float16)
        return NdArray(
            buffer=half.tobytes(),
            shape=list(arr.shape),
            dtype="float16",
            quantization=QuantizationMode.FP16,
            original_dtype=_dtype_tag(arr.dtype),
        )

    def _encode_uint8(self, arr: "np.ndarray") -> NdArray:
        values = arr.astype(np.float64)

        if values.size == 0:
            min_val = max_val = 0.0
        else:
            if not np.all(np.isfinite(values)):
                raise CodecError("UINT8 quantization requires finite values")
            min_val = float(values.min())
            max_val = float(values.max())

        if max_val == min_val:
            scale = 0.0
            quantized = np.zeros(arr.shape, dtype=np.uint8)
        else:
            scale = (max_val - min_val) / UINT8_LEVELS
            # values are >= 0 here, so floor(v + 0.5) rounds ties away from zero
            levels = np.floor((values - min_val) / scale + 0.5)
            quantized = np.clip(levels, 0, UINT8_LEVELS).astype(np.uint8)

        logger.debug(
            f"[CODEC] UINT8 {arr.dtype}{list(arr.shape)}: "
            f"min={min_val}, max={max_val}, scale={scale}"
        )

        return NdArray(
            buffer=quantized.tobytes(),
            shape=list(arr.shape),
            dtype="uint8",
            quantization=QuantizationMode.UINT8,
            max_val=max_val,
            min_val=min_val,
            scale=scale,
            original_dtype=_dtype_tag(arr.dtype),
        )


# ============================================================================
# Decoder
# ============================================================================

class TensorDecoder:
    """
    Decodes NdArray back to numpy arrays.

    [SECURITY]
    - Validates buffer length against shape and stored dtype
    - Enforces size limits
    """

    def decode(self, pb: NdArray) -> "np.ndarray":
        """
        Decode NdArray.

        Raises:
            MalformedTensor: If buffer length or dtype is inconsistent
        """
        shape = tuple(int(d) for d in pb.shape)
        numel = _numel(shape)

        if len(pb.buffer) > MAX_TENSOR_SIZE:
            raise TensorTooLargeError(
                f"Data too large: {len(pb.buffer)} > {MAX_TENSOR_SIZE}"
            )

        try:
            mode = QuantizationMode(pb.quantization)
        except ValueError:
            raise MalformedTensor(f"Unknown quantization code: {pb.quantization!r}") from None
        if mode == QuantizationMode.NONE:
            dtype = _resolve_dtype(pb.dtype)
            self._check_length(pb, numel * dtype.itemsize)
            return np.frombuffer(pb.buffer, dtype=dtype).reshape(shape).copy()

        original = _resolve_dtype(pb.original_dtype or "float32")

        if mode == QuantizationMode.FP16:
            self._check_length(pb, numel * 2)
            half = np.frombuffer(pb.buffer, dtype=np.float16).reshape(shape)
            if original.kind in "iu":
                return _saturate_to_int(half, original)
            return half.astype(original)

        self._check_length(pb, numel)
        if pb.scale < 0 or pb.min_val > pb.max_val:
            raise MalformedTensor(
                f"Invalid UINT8 metadata: min={pb.min_val}, max={pb.max_val}, scale={pb.scale}"
            )
        # q * scale + min_val is generally not integral: integer and bool
        # originals come back as float64 so the scale/2 bound holds
        target = original if original.kind == "f" else np.dtype(np.float64)
        if pb.scale == 0:
            return np.full(shape, pb.min_val, dtype=target)
        quantized = np.frombuffer(pb.buffer, dtype=np.uint8).reshape(shape)
        restored = quantized.astype(np.float64) * pb.scale + pb.min_val
        return restored.astype(target)

    @staticmethod
    def _check_length(pb: NdArray, expected: int) -> None:
        if len(pb.buffer) != expected:
            raise MalformedTensor(
                f"Buffer length {len(pb.buffer)} does not match shape {list(pb.shape)} "
                f"({QuantizationMode(pb.quantization).name}): expected {expected} bytes"
            )


# ============================================================================
# Convenience Functions
# ============================================================================

def encode_ndarray(array, quantization: QuantizationLike = None) -> NdArray:
    """
    Encode array to NdArray.

    Args:
        array: numpy array (or anything np.asarray accepts)
        quantization: NONE | FP16 | UINT8; None -> configured default
    """
    return TensorEncoder(quantization=quantization).encode(array)


def decode_ndarray(pb: NdArray) -> "np.ndarray":
    """Decode NdArray to numpy array."""
    return TensorDecoder().decode(pb)


class TensorCodec:
    """Stateless encode/decode pair."""

    @staticmethod
    def encode(array, mode: QuantizationLike = None) -> NdArray:
        return encode_ndarray(array, mode)

    @staticmethod
    def decode(pb: NdArray) -> "np.ndarray":
        return decode_ndarray(pb)


def set_embedding(chunk: Chunk, array, quantization: QuantizationLike = None) -> Chunk:
    """Encode array into chunk.embedding."""
    chunk.embedding = encode_ndarray(array, quantization)
    return chunk


def get_embedding(chunk: Chunk) -> Optional["np.ndarray"]:
    if chunk.embedding is None:
        return None
    return decode_ndarray(chunk.embedding)


def array_to_blob(
    target: Union[Chunk, Document],
    array,
    quantization: QuantizationLike = None,
) -> Union[Chunk, Document]:
    """Store array as the blob content of a Chunk or Document."""
    target.content = encode_ndarray(array, quantization)
    return target


def blob_to_array(target: Union[Chunk, Document]) -> Optional["np.ndarray"]:
    """Decode blob content; None when the content is text/buffer/unset."""
    if target.content_type != "blob":
        return None
    return decode_ndarray(target.content)
