"""Content analysis collaborator interface (vision / AI backends live elsewhere)."""
from __future__ import annotations

import abc
from typing import Optional


class ContentAnalyzer(abc.ABC):
    """Turns validated image bytes into plain text, or None when nothing usable came back."""

    @abc.abstractmethod
    async def analyze(self, image: bytes) -> Optional[str]:
        ...
