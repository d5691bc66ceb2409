"""Wire messages exchanged with the router and host runtimes.

Field numbers are part of the compatibility contract with the protobuf schema
and are kept here next to the Python shapes. Messages are plain dicts keyed
by field name; weights travel as packed little-endian float32 bytes, or as
base64 text in the JSON form used over HTTP.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Mapping

from ..errors import FormatError
from .codec import pack_float32, unpack_float32
from .types import LoRAAdapter

LORA_ADAPTER_SKILL_FIELDS: dict[str, int] = {
    "skill_id": 1,
    "skill_name": 2,
    "description": 3,
    "base_model_compatibility": 4,
    "version": 5,
    "rank": 6,
    "alpha": 7,
    "weights_a": 8,
    "weights_b": 9,
    "additional_metadata": 10,
}

SKILL_INVOCATION_REQUEST_FIELDS: dict[str, int] = {
    "invocation_id": 1,
    "skill_id": 2,
    "parameters": 3,
    "agent_core_id": 4,
}

SKILL_INVOCATION_RESPONSE_FIELDS: dict[str, int] = {
    "invocation_id": 1,
    "status": 2,
    "skill": 3,
    "error_message": 4,
}


class InvocationStatus(IntEnum):
    UNSPECIFIED = 0
    SUCCESS = 1
    FAILURE = 2
    NOT_FOUND = 3

    @classmethod
    def parse(cls, value: Any) -> "InvocationStatus":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise FormatError(f"unknown invocation status: {value!r}") from None
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise FormatError(f"unknown invocation status: {value!r}") from None
        raise FormatError(f"invalid invocation status type: {type(value).__name__}")


def _require(data: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    if key not in data or data[key] is None:
        raise FormatError(f"wire field missing: {key}")
    value = data[key]
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is not bool):
        raise FormatError(f"wire field {key} has type {type(value).__name__}")
    return value


def _bytes_field(data: Mapping[str, Any], key: str) -> bytes:
    value = _require(data, key, (bytes, bytearray, memoryview, str))
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise FormatError(f"wire field {key} is not valid base64") from exc
    return bytes(value)


def _string_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise FormatError(f"wire field {key} is not a map")
    return {str(k): str(v) for k, v in value.items()}


def adapter_to_wire(adapter: LoRAAdapter, *, json_safe: bool = False) -> dict[str, Any]:
    """Render ``adapter`` as a LoRaAdapterSkill message dict.

    With ``json_safe`` the packed weight blocks are base64 text instead of
    raw bytes.
    """
    weights_a: bytes | str = pack_float32(adapter.weights_a)
    weights_b: bytes | str = pack_float32(adapter.weights_b)
    if json_safe:
        weights_a = base64.b64encode(weights_a).decode("ascii")
        weights_b = base64.b64encode(weights_b).decode("ascii")
    return {
        "skill_id": adapter.skill_id,
        "skill_name": adapter.skill_name,
        "description": adapter.description,
        "base_model_compatibility": adapter.base_model_compatibility,
        "version": adapter.version,
        "rank": adapter.rank,
        "alpha": adapter.alpha,
        "weights_a": weights_a,
        "weights_b": weights_b,
        "additional_metadata": dict(adapter.additional_metadata),
    }


def adapter_from_wire(data: Mapping[str, Any]) -> LoRAAdapter:
    if not isinstance(data, Mapping):
        raise FormatError("LoRaAdapterSkill message is not a mapping")
    rank = _require(data, "rank", int)
    alpha = _require(data, "alpha", (int, float))
    version = data.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 0:
        raise FormatError(f"wire field version is not a uint32: {version!r}")
    try:
        return LoRAAdapter(
            skill_id=_require(data, "skill_id", str),
            skill_name=str(data.get("skill_name") or ""),
            description=str(data.get("description") or ""),
            base_model_compatibility=str(data.get("base_model_compatibility") or ""),
            version=version,
            rank=rank,
            alpha=float(alpha),
            weights_a=unpack_float32(_bytes_field(data, "weights_a")),
            weights_b=unpack_float32(_bytes_field(data, "weights_b")),
            additional_metadata=_string_map(data.get("additional_metadata"), "additional_metadata"),
        )
    except FormatError:
        raise
    except ValueError as exc:
        raise FormatError(f"invalid LoRaAdapterSkill message: {exc}") from exc


def looks_like_adapter(data: Any) -> bool:
    return isinstance(data, Mapping) and "skill_id" in data and "weights_a" in data and "weights_b" in data


@dataclass(frozen=True)
class SkillInvocationRequest:
    invocation_id: str
    skill_id: str
    parameters: dict[str, str] = field(default_factory=dict)
    agent_core_id: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "skill_id": self.skill_id,
            "parameters": {str(k): str(v) for k, v in self.parameters.items()},
            "agent_core_id": self.agent_core_id,
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "SkillInvocationRequest":
        if not isinstance(data, Mapping):
            raise FormatError("SkillInvocationRequest message is not a mapping")
        return cls(
            invocation_id=_require(data, "invocation_id", str),
            skill_id=_require(data, "skill_id", str),
            parameters=_string_map(data.get("parameters"), "parameters"),
            agent_core_id=str(data.get("agent_core_id") or ""),
        )


@dataclass(frozen=True)
class SkillInvocationResponse:
    invocation_id: str
    status: InvocationStatus
    skill: LoRAAdapter | None = None
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is InvocationStatus.SUCCESS

    def to_wire(self, *, json_safe: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "invocation_id": self.invocation_id,
            "status": self.status.name if json_safe else int(self.status),
            "error_message": self.error_message,
        }
        if self.skill is not None:
            data["skill"] = adapter_to_wire(self.skill, json_safe=json_safe)
        return data

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "SkillInvocationResponse":
        if not isinstance(data, Mapping):
            raise FormatError("SkillInvocationResponse message is not a mapping")
        skill_raw = data.get("skill")
        return cls(
            invocation_id=_require(data, "invocation_id", str),
            status=InvocationStatus.parse(data.get("status", 0)),
            skill=adapter_from_wire(skill_raw) if skill_raw is not None else None,
            error_message=str(data.get("error_message") or ""),
        )
