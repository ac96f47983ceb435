from __future__ import annotations

from typing import Any

from maskproxy.core.masking.placeholders import PlaceholderFormat


class PlaceholderCollisionError(RuntimeError):
    pass


class PlaceholderContext:
    """Bidirectional placeholder <-> original ledger for one request or conversation.

    Not safe for concurrent use. Create one per request and discard it once
    the response has been unmasked.
    """

    __slots__ = ("mapping", "reverse_mapping", "counters")

    def __init__(self) -> None:
        self.mapping: dict[str, str] = {}
        self.reverse_mapping: dict[str, str] = {}
        self.counters: dict[str, int] = {}

    def placeholder_for(self, entity_type: str, original: str, fmt: PlaceholderFormat) -> str:
        existing = self.reverse_mapping.get(original)
        if existing is not None:
            return existing

        count = self.counters.get(entity_type, 0) + 1
        self.counters[entity_type] = count
        placeholder = fmt.render(entity_type, count)

        bound = self.mapping.get(placeholder)
        if bound is not None and bound != original:
            raise PlaceholderCollisionError(f"placeholder {placeholder} is already bound to another value")

        self.mapping[placeholder] = original
        self.reverse_mapping[original] = placeholder
        return placeholder

    def lookup(self, placeholder: str) -> str | None:
        return self.mapping.get(placeholder)

    @property
    def is_empty(self) -> bool:
        return not self.mapping

    @property
    def max_token_length(self) -> int:
        return max((len(key) for key in self.mapping), default=0)

    def __len__(self) -> int:
        return len(self.mapping)

    def __repr__(self) -> str:
        # Originals are sensitive; never render them.
        return f"PlaceholderContext(placeholders={len(self.mapping)}, counters={self.counters!r})"

    def to_payload(self) -> dict[str, Any]:
        return {
            "mapping": dict(self.mapping),
            "counters": dict(self.counters),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PlaceholderContext:
        context = cls()
        for placeholder, original in dict(payload.get("mapping", {})).items():
            context.mapping[str(placeholder)] = str(original)
            context.reverse_mapping[str(original)] = str(placeholder)
        context.counters = {str(key): int(value) for key, value in dict(payload.get("counters", {})).items()}
        return context
