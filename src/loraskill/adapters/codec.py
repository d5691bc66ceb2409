from __future__ import annotations

import json
import struct
from pathlib import Path
from typing import Any

import numpy as np

from ..errors import FormatError
from ..logging import get_logger
from .types import LoRAAdapter

logger = get_logger(__name__)

# WebAssembly magic + version 1, so containers can ship inside wasm tooling.
HEADER = b"\x00asm\x01\x00\x00\x00"
_LEN = struct.Struct("<I")
_F32 = np.dtype("<f4")

_UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")
_REQUIRED_META = ("skillId", "skillName", "version", "rank", "alpha")


def pack_float32(values: np.ndarray) -> bytes:
    return np.ascontiguousarray(values, dtype=_F32).tobytes()


def unpack_float32(data: bytes) -> np.ndarray:
    if len(data) % _F32.itemsize:
        raise FormatError(f"float32 block length {len(data)} is not a multiple of 4")
    return np.frombuffer(bytes(data), dtype=_F32).astype(np.float32)


def _metadata(adapter: LoRAAdapter) -> dict[str, Any]:
    return {
        "skillId": adapter.skill_id,
        "skillName": adapter.skill_name,
        "description": adapter.description,
        "baseModelCompatibility": adapter.base_model_compatibility,
        "version": adapter.version,
        "rank": adapter.rank,
        "alpha": adapter.alpha,
        "additionalMetadata": dict(adapter.additional_metadata),
    }


def encode_adapter(adapter: LoRAAdapter) -> bytes:
    meta = json.dumps(_metadata(adapter), ensure_ascii=False).encode("utf-8")
    weights_a = pack_float32(adapter.weights_a)
    weights_b = pack_float32(adapter.weights_b)
    out = bytearray(HEADER)
    for block in (meta, weights_a, weights_b):
        out += _LEN.pack(len(block))
        out += block
    logger.debug("adapter_encoded skill_id=%s bytes=%d", adapter.skill_id, len(out))
    return bytes(out)


def _read_block(payload: bytes, offset: int, what: str) -> tuple[bytes, int]:
    if offset + _LEN.size > len(payload):
        raise FormatError(f"truncated container: missing {what} length at offset {offset}")
    (size,) = _LEN.unpack_from(payload, offset)
    offset += _LEN.size
    end = offset + size
    if end > len(payload):
        raise FormatError(f"truncated container: {what} needs {size} bytes, {len(payload) - offset} left")
    return payload[offset:end], end


def _decode_metadata(raw: bytes) -> dict[str, Any]:
    encoding = "utf-16" if raw[:2] in _UTF16_BOMS else "utf-8"
    try:
        meta = json.loads(raw.decode(encoding))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError(f"metadata block is not valid JSON: {exc}") from exc
    if not isinstance(meta, dict):
        raise FormatError("metadata block is not a JSON object")
    missing = [key for key in _REQUIRED_META if meta.get(key) is None]
    if missing:
        raise FormatError(f"metadata missing fields: {','.join(missing)}")
    extra = meta.get("additionalMetadata") or {}
    if not isinstance(extra, dict):
        raise FormatError("additionalMetadata is not a JSON object")
    return meta


def decode_adapter(payload: bytes) -> LoRAAdapter:
    payload = bytes(payload)
    if payload[: len(HEADER)] != HEADER:
        raise FormatError("Invalid adapter container header")
    offset = len(HEADER)
    meta_raw, offset = _read_block(payload, offset, "metadata")
    meta = _decode_metadata(meta_raw)
    raw_a, offset = _read_block(payload, offset, "weightsA")
    raw_b, offset = _read_block(payload, offset, "weightsB")
    if offset != len(payload):
        raise FormatError(f"{len(payload) - offset} trailing bytes after weightsB")
    try:
        return LoRAAdapter(
            skill_id=str(meta["skillId"]),
            skill_name=str(meta["skillName"]),
            description=str(meta.get("description") or ""),
            base_model_compatibility=str(meta.get("baseModelCompatibility") or ""),
            version=int(meta["version"]),
            rank=int(meta["rank"]),
            alpha=float(meta["alpha"]),
            weights_a=unpack_float32(raw_a),
            weights_b=unpack_float32(raw_b),
            additional_metadata=dict(meta.get("additionalMetadata") or {}),
        )
    except FormatError:
        raise
    except (TypeError, ValueError) as exc:
        raise FormatError(f"invalid adapter metadata: {exc}") from exc


def write_container(path: str | Path, adapter: LoRAAdapter) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(encode_adapter(adapter))
    tmp.replace(path)
    return path


def read_container(path: str | Path) -> LoRAAdapter:
    return decode_adapter(Path(path).read_bytes())
