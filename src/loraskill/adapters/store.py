from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable

from ..errors import FormatError, NotFoundError
from ..logging import get_logger
from .codec import decode_adapter, encode_adapter, read_container, write_container
from .compose import compose_adapters
from .types import LoRAAdapter, SkillChain
from .wire import InvocationStatus, SkillInvocationResponse

logger = get_logger(__name__)

CONTAINER_SUFFIX = ".lora"


def _invocation_id() -> str:
    return f"lora-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class AdapterStore:
    """Registry of adapters keyed by ``skill_id``.

    Adapters are immutable, so swapping a reference under the lock is enough
    for readers to see either nothing or a fully built adapter.
    """

    def __init__(self, adapters: Iterable[LoRAAdapter] = ()):
        self._lock = threading.Lock()
        self._adapters: dict[str, LoRAAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.skill_id] = adapter

    def __len__(self) -> int:
        with self._lock:
            return len(self._adapters)

    def __contains__(self, skill_id: object) -> bool:
        with self._lock:
            return skill_id in self._adapters

    def get(self, skill_id: str) -> LoRAAdapter | None:
        with self._lock:
            return self._adapters.get(str(skill_id))

    def require(self, skill_id: str) -> LoRAAdapter:
        adapter = self.get(skill_id)
        if adapter is None:
            raise NotFoundError(str(skill_id))
        return adapter

    def set(self, adapter: LoRAAdapter) -> LoRAAdapter:
        with self._lock:
            self._adapters[adapter.skill_id] = adapter
        logger.debug("adapter_stored skill_id=%s", adapter.skill_id)
        return adapter

    def add(self, adapter: LoRAAdapter) -> LoRAAdapter:
        with self._lock:
            if adapter.skill_id in self._adapters:
                raise ValueError(f"adapter_exists:{adapter.skill_id}")
            self._adapters[adapter.skill_id] = adapter
        return adapter

    def remove(self, skill_id: str) -> bool:
        with self._lock:
            removed = self._adapters.pop(str(skill_id), None) is not None
        if removed:
            logger.info("adapter_removed skill_id=%s", skill_id)
        return removed

    def list(self) -> list[LoRAAdapter]:
        with self._lock:
            return list(self._adapters.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._adapters.keys())

    def clear(self) -> None:
        with self._lock:
            self._adapters = {}

    def _free_id(self, candidate: str) -> str:
        if candidate not in self._adapters:
            return candidate
        n = 2
        while f"{candidate}-{n}" in self._adapters:
            n += 1
        return f"{candidate}-{n}"

    def unique_id(self, candidate: str) -> str:
        with self._lock:
            return self._free_id(candidate)

    def insert_unique(self, adapter: LoRAAdapter) -> LoRAAdapter:
        """Store ``adapter``, renaming it with a numeric suffix if its id is taken."""
        with self._lock:
            free = self._free_id(adapter.skill_id)
            if free != adapter.skill_id:
                adapter = adapter.replace(skill_id=free)
            self._adapters[adapter.skill_id] = adapter
        return adapter

    def compose(self, skill_ids: list[str], strategy: str = "merge", *, now: datetime | None = None) -> LoRAAdapter:
        logger.info("compose_adapters ids=%s strategy=%s", ",".join(skill_ids), strategy)
        if not skill_ids:
            raise ValueError("No adapters provided for composition")
        adapters = [self.require(sid) for sid in skill_ids]
        if len(adapters) == 1:
            return adapters[0]
        composed = compose_adapters(adapters, strategy, now=now)
        composed = self.insert_unique(composed)
        logger.info("adapters_composed skill_id=%s strategy=%s", composed.skill_id, strategy)
        return composed

    def create_skill_chain(self, skill_ids: list[str]) -> SkillChain:
        sources = tuple(self.require(sid) for sid in skill_ids)
        chained = self.compose(list(skill_ids), "chain")
        return SkillChain(chain_id=chained.skill_id, skills=sources, merged_adapter=chained)

    def skill_chains(self) -> list[SkillChain]:
        chains: list[SkillChain] = []
        for adapter in self.list():
            if not adapter.is_composed:
                continue
            sources = tuple(a for a in (self.get(sid) for sid in adapter.source_ids) if a is not None)
            try:
                updated = datetime.fromisoformat(adapter.additional_metadata.get("timestamp", ""))
            except ValueError:
                updated = datetime.now().astimezone()
            chains.append(SkillChain(chain_id=adapter.skill_id, skills=sources, merged_adapter=adapter, last_updated=updated))
        return chains

    def filter(
        self,
        *,
        base_model: str | None = None,
        min_rank: int | None = None,
        max_rank: int | None = None,
        capabilities: list[str] | None = None,
    ) -> list[LoRAAdapter]:
        out: list[LoRAAdapter] = []
        for adapter in self.list():
            if base_model and adapter.base_model_compatibility != base_model:
                continue
            if min_rank is not None and adapter.rank < int(min_rank):
                continue
            if max_rank is not None and adapter.rank > int(max_rank):
                continue
            if capabilities:
                have = set(adapter.capabilities)
                if not all(cap in have for cap in capabilities):
                    continue
            out.append(adapter)
        return out

    def export(self, skill_id: str) -> bytes:
        return encode_adapter(self.require(skill_id))

    def load(self, payload: bytes) -> LoRAAdapter:
        adapter = decode_adapter(payload)
        logger.info("adapter_loaded skill_id=%s", adapter.skill_id)
        return self.set(adapter)

    def invoke(self, skill_id: str) -> SkillInvocationResponse:
        invocation_id = _invocation_id()
        try:
            adapter = self.require(skill_id)
        except NotFoundError as exc:
            logger.info("adapter_invoke_not_found invocation_id=%s skill_id=%s", invocation_id, skill_id)
            return SkillInvocationResponse(
                invocation_id=invocation_id,
                status=InvocationStatus.NOT_FOUND,
                error_message=f"Skill {exc.skill_id} not found",
            )
        logger.info("adapter_invoked invocation_id=%s skill_id=%s", invocation_id, skill_id)
        return SkillInvocationResponse(invocation_id=invocation_id, status=InvocationStatus.SUCCESS, skill=adapter)

    def save_dir(self, root: str | Path) -> list[Path]:
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        return [write_container(root / f"{adapter.skill_id}{CONTAINER_SUFFIX}", adapter) for adapter in self.list()]

    def load_dir(self, root: str | Path) -> tuple[list[LoRAAdapter], list[str]]:
        root = Path(root)
        loaded: list[LoRAAdapter] = []
        errors: list[str] = []
        if not root.exists():
            return loaded, errors
        for path in sorted(root.glob(f"*{CONTAINER_SUFFIX}"), key=lambda p: p.name):
            try:
                adapter = read_container(path)
            except (OSError, FormatError) as exc:
                errors.append(f"container_invalid:{path.name}:{exc}")
                continue
            loaded.append(self.set(adapter))
        if errors:
            logger.warning("adapter_load_dir_errors root=%s errors=%d", root, len(errors))
        return loaded, errors
