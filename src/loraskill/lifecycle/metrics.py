from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable


def _escape_label_value(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@dataclass
class LifecycleMetrics:
    lock: threading.Lock = field(default_factory=threading.Lock)
    adapters_stored: int = 0
    submissions_total: int = 0
    discoveries_total: dict[str, int] = field(default_factory=dict)
    invocations_total: dict[str, int] = field(default_factory=dict)
    inventory: Callable[[], int] | None = None

    def set_inventory(self, *, adapters_stored: int) -> None:
        with self.lock:
            self.adapters_stored = max(0, int(adapters_stored))

    def track_inventory(self, source: Callable[[], int] | None) -> None:
        """Read the stored-adapter gauge from ``source`` at render time."""
        with self.lock:
            self.inventory = source

    def observe_discovery(self, outcome: str) -> None:
        with self.lock:
            key = str(outcome)
            self.discoveries_total[key] = int(self.discoveries_total.get(key, 0)) + 1

    def observe_submission(self) -> None:
        with self.lock:
            self.submissions_total += 1

    def observe_invocation(self, *, success: bool) -> None:
        with self.lock:
            key = "success" if success else "failure"
            self.invocations_total[key] = int(self.invocations_total.get(key, 0)) + 1

    def render_prometheus(self) -> str:
        source = self.inventory
        if source is not None:
            self.set_inventory(adapters_stored=source())
        with self.lock:
            lines: list[str] = [
                "# HELP lora_adapters_stored Adapters held by the adapter store.",
                "# TYPE lora_adapters_stored gauge",
                f"lora_adapters_stored {int(self.adapters_stored)}",
                "# HELP skill_error_submissions_total Error nodes submitted for future resolution.",
                "# TYPE skill_error_submissions_total counter",
                f"skill_error_submissions_total {int(self.submissions_total)}",
                "# HELP skill_discoveries_total Discovery rounds by outcome.",
                "# TYPE skill_discoveries_total counter",
            ]
            for outcome, count in sorted(self.discoveries_total.items(), key=lambda kv: kv[0]):
                lines.append(f'skill_discoveries_total{{outcome="{_escape_label_value(outcome)}"}} {int(count)}')
            lines.extend(
                [
                    "# HELP skill_invocations_total Router invocations by outcome.",
                    "# TYPE skill_invocations_total counter",
                ]
            )
            for outcome, count in sorted(self.invocations_total.items(), key=lambda kv: kv[0]):
                lines.append(f'skill_invocations_total{{outcome="{_escape_label_value(outcome)}"}} {int(count)}')
            return "\n".join(lines) + "\n"
