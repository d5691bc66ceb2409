from __future__ import annotations


class LoRASkillError(Exception):
    """Base class for every error raised by loraskill."""


class FormatError(LoRASkillError, ValueError):
    """Malformed adapter container or wire payload. Never recovered."""


class NotFoundError(LoRASkillError, LookupError):
    """An adapter id referenced by composition or invocation is not stored."""

    def __init__(self, skill_id: str):
        super().__init__(f"Adapter {skill_id} not found")
        self.skill_id = skill_id


class TransportError(LoRASkillError, RuntimeError):
    """Network or response-parsing failure talking to an external service."""


class ServiceError(LoRASkillError, RuntimeError):
    """An external service answered, but with a non-2xx status."""


class DiscoveryError(ServiceError):
    """Discovery or error-node submission returned a failure status."""
