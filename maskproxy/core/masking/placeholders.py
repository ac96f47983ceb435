from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class PlaceholderFormat:
    """Delimiters wrapped around ``TYPE_N`` to form a placeholder token.

    The delimiter pair must not occur in ordinary prose and must survive the
    transport encoding (JSON, SSE, HTML rendering) unchanged.
    """

    open: str
    close: str
    prefix: str = ""

    def __post_init__(self) -> None:
        if not self.open or not self.close:
            raise ValueError("placeholder delimiters must be non-empty")

    def render(self, entity_type: str, n: int) -> str:
        return f"{self.open}{self.prefix}{entity_type}_{n}{self.close}"

    def partial_open_suffix(self, text: str) -> int:
        """Length of the longest tail of ``text`` that is a proper prefix of ``open``."""
        for size in range(min(len(self.open) - 1, len(text)), 0, -1):
            if text.endswith(self.open[:size]):
                return size
        return 0


ANGLE_FORMAT = PlaceholderFormat(open="<", close=">")
# Angle brackets get entity-encoded when a response is rendered as HTML.
BRACKET_FORMAT = PlaceholderFormat(open="[[", close="]]")
SECRET_FORMAT = PlaceholderFormat(open="[[", close="]]", prefix="SECRET_REDACTED_")

_STYLES: dict[str, PlaceholderFormat] = {
    "angle": ANGLE_FORMAT,
    "bracket": BRACKET_FORMAT,
    "secret": SECRET_FORMAT,
}


def format_for_style(style: str) -> PlaceholderFormat:
    try:
        return _STYLES[style]
    except KeyError as exc:
        raise ValueError(f"unknown placeholder style '{style}', expected one of: {', '.join(_STYLES)}") from exc
