"""Batched JSONL audit trail of session events."""

from __future__ import annotations

from pathlib import Path

from tabpilot.event_bus import EventBus, SessionEvent


class AuditLogger:
    def __init__(self, log_file: str | Path = "audit.jsonl", batch_size: int = 10):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self._buffer: list[str] = []

    def attach(self, bus: EventBus) -> "AuditLogger":
        bus.subscribe(self.log)
        return self

    def detach(self, bus: EventBus) -> None:
        bus.unsubscribe(self.log)
        self.flush()

    def log(self, event: SessionEvent) -> None:
        self._buffer.append(event.model_dump_json() + "\n")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a") as f:
            f.writelines(self._buffer)
        self._buffer.clear()
