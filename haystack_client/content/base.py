"""Codec interface shared by the grid wire encodings."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..grid import Grid

ZINC = "text/zinc"
JSON = "application/json"

DEFAULT_VERSION = "3.0"


class GridCodec(ABC):
    """Bidirectional mapping between grids and wire text."""

    content_type: str

    @abstractmethod
    def encode(self, grid: Grid, version: str | None = None) -> str:
        """Serialize a grid.

        ``version`` overrides the grid's own version; both default to 3.0.
        """

    @abstractmethod
    def decode(self, text: str) -> tuple[Grid, str | None]:
        """Parse wire text.

        Returns the grid and, when the server flagged the grid with ``err``,
        its error message. Malformed text raises ``GridError``.
        """
