"""
Processor Registry - מיפוי hook_name ל-processor
"""
from __future__ import annotations

from app.domain.processors.base import QueueProcessor


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: dict[str, QueueProcessor] = {}

    def register(self, processor: QueueProcessor) -> None:
        if not processor.hook_name:
            raise ValueError(f"Processor {processor.name} has no hook_name")
        if processor.hook_name in self._processors:
            raise ValueError(f"Hook {processor.hook_name} is already registered")
        self._processors[processor.hook_name] = processor

    def get(self, hook_name: str) -> QueueProcessor | None:
        return self._processors.get(hook_name)

    def hook_names(self) -> list[str]:
        return sorted(self._processors)

    def __contains__(self, hook_name: str) -> bool:
        return hook_name in self._processors
