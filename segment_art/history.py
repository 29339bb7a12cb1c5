from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from segment_art.errors import PreconditionError
from segment_art.state import Layer

HISTORY_LIMIT = 100


@dataclass
class Snapshot:
    """Document state captured before a destructive operation.

    Layers are cloned; their pixel arrays are read-only and therefore shared.
    """

    layers: List[Layer] = field(default_factory=list)
    label: str = ""

    @property
    def base_image(self) -> Optional[np.ndarray]:
        if self.layers and self.layers[0].is_base_layer:
            return self.layers[0].image
        return None


class History:
    """Linear undo/redo stacks; recording a new snapshot discards the redo branch."""

    def __init__(self, limit: int = HISTORY_LIMIT):
        self.limit = max(1, int(limit))
        self._undo: List[Snapshot] = []
        self._redo: List[Snapshot] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def __len__(self) -> int:
        return len(self._undo)

    def record(self, snapshot: Snapshot) -> None:
        self._undo.append(snapshot)
        if len(self._undo) > self.limit:
            del self._undo[0]
        self._redo.clear()

    def undo(self, current: Snapshot) -> Snapshot:
        if not self._undo:
            raise PreconditionError("Nothing to undo")
        self._redo.append(current)
        return self._undo.pop()

    def redo(self, current: Snapshot) -> Snapshot:
        if not self._redo:
            raise PreconditionError("Nothing to redo")
        self._undo.append(current)
        return self._redo.pop()

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
