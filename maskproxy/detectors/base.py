from __future__ import annotations

from abc import ABC, abstractmethod

from maskproxy.models.entities import Span


class Detector(ABC):
    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def detect(self, text: str, language: str) -> list[Span]:
        raise NotImplementedError
