"""The editing session: one document, its history, and the async flows around it."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np

from segment_art.brush import BrushMaskBuilder
from segment_art.clients import InpaintingClient, PromptParserClient, SegmentationClient
from segment_art.compositor import LayerStack
from segment_art.errors import PreconditionError
from segment_art.export import build_export, save_layered_document
from segment_art.extractor import DEFAULT_THRESHOLDS, Extraction, ExtractionThresholds, extract_region
from segment_art.fill import InpaintFillStrategy, LocalFillStrategy
from segment_art.history import HISTORY_LIMIT, History, Snapshot
from segment_art.io import ImageSource, decode_image, decode_mask, encode_png
from segment_art.mask_ops import FILL_ALPHA_THRESHOLD, dashed_outline, detect_edges
from segment_art.prompts import fill_prompt, resolve_labels
from segment_art.selection import LassoSelection, Point, PointsLike, ViewTransform, hit_test_regions, lasso_mask
from segment_art.settings import Settings, get_settings
from segment_art.state import BrushSettings, DetectedRegion, Layer

logger = logging.getLogger(__name__)

T = TypeVar("T")

FillStrategy = Union[LocalFillStrategy, InpaintFillStrategy]


class EditorSession:
    """Owns the base image, layer stack, detected regions and undo history.

    Async results are tied to the generation they started in; ``load_image``
    and ``reset`` bump it so late results are dropped instead of applied.
    Extractions run one at a time, each against the base left by the previous.
    """

    def __init__(
        self,
        segmenter: Optional[SegmentationClient] = None,
        inpainter: Optional[InpaintingClient] = None,
        prompt_parser: Optional[PromptParserClient] = None,
        settings: Optional[Settings] = None,
        thresholds: ExtractionThresholds = DEFAULT_THRESHOLDS,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.settings = settings or get_settings()
        self.segmenter = segmenter
        self.inpainter = inpainter
        self.prompt_parser = prompt_parser
        self.thresholds = thresholds

        self.stack = LayerStack()
        self.history = History(history_limit)
        self.generation = 0
        self._extract_lock = asyncio.Lock()

        self.regions: List[DetectedRegion] = []
        self.image_type: Optional[str] = None
        self.view: Optional[ViewTransform] = None
        self.lasso = LassoSelection()
        self.brush: Optional[BrushMaskBuilder] = None
        self.brush_settings = BrushSettings()
        self.hovered: Optional[int] = None
        self._mask_cache: Dict[int, np.ndarray] = {}
        self._outline_cache: Dict[int, np.ndarray] = {}

    # Document access

    @property
    def has_image(self) -> bool:
        return self.stack.base is not None

    @property
    def base_image(self) -> Optional[np.ndarray]:
        base = self.stack.base
        return base.image if base is not None else None

    @property
    def layers(self) -> List[Layer]:
        return self.stack.layers

    def _require_base(self) -> Layer:
        base = self.stack.base
        if base is None:
            raise PreconditionError("No image loaded")
        return base

    def _view(self) -> ViewTransform:
        if self.view is not None:
            return self.view
        return ViewTransform.identity(self._require_base().size)

    def _is_stale(self, operation: str, generation: int, source: Optional[np.ndarray] = None) -> bool:
        """True when a result no longer applies to the document.

        ``source`` is the base array the work started from; an undo, fill or
        other commit in the meantime replaces it.
        """
        if generation != self.generation:
            logger.warning("Discarding stale %s result (generation %d, now %d)", operation, generation, self.generation)
            return True
        if source is not None:
            current = self.stack.base
            if current is None or current.image is not source:
                logger.warning("Discarding %s result: the base image changed while it ran", operation)
                return True
        return False

    def _clear_selection(self) -> None:
        self.lasso.clear()
        self.brush = None
        self.hovered = None

    def _clear_regions(self) -> None:
        self.regions = []
        self.image_type = None
        self._mask_cache.clear()
        self._outline_cache.clear()

    # Lifecycle

    def reset(self) -> None:
        self.generation += 1
        self.stack.clear()
        self.history.clear()
        self._clear_regions()
        self._clear_selection()
        self.view = None

    async def load_image(self, data: ImageSource, viewport_size: Optional[Tuple[float, float]] = None) -> Optional[Layer]:
        """Start a new document from encoded image bytes.

        A payload that fails to decode leaves the current document in place.
        Starting a load makes every earlier load and in-flight result stale.
        """
        self.generation += 1
        generation = self.generation
        image = await asyncio.to_thread(decode_image, data)
        if self._is_stale("image decode", generation):
            return None
        self.reset()
        base = self.stack.set_base(image)
        if viewport_size is not None:
            self.set_viewport(viewport_size)
        logger.info("Loaded %dx%d image", base.width, base.height)
        return base

    def set_viewport(self, viewport_size: Tuple[float, float]) -> ViewTransform:
        self.view = ViewTransform.fit(self._require_base().size, viewport_size)
        self.brush = None
        return self.view

    # Detection

    async def detect_regions(self) -> Optional[List[DetectedRegion]]:
        if self.segmenter is None:
            raise PreconditionError("No segmentation service configured")
        base = self._require_base()
        generation = self.generation
        payload = await asyncio.to_thread(encode_png, base.image)
        result = await self.segmenter.segment(payload)
        if self._is_stale("segmentation", generation):
            return None
        self._clear_regions()
        self.regions = list(result.regions)
        self.image_type = result.image_type
        return self.regions

    def _region(self, index: int) -> DetectedRegion:
        if not 0 <= index < len(self.regions):
            raise PreconditionError(f"No detected region at index {index}")
        return self.regions[index]

    def region_mask(self, index: int) -> np.ndarray:
        mask = self._mask_cache.get(index)
        if mask is None:
            mask = decode_mask(self._region(index).mask)
            self._mask_cache[index] = mask
        return mask

    def hover(self, point: Point) -> Optional[int]:
        """Region under a display-space point; later (smaller) regions win."""
        if not self.regions or not self.has_image:
            self.hovered = None
            return None
        masks = [self.region_mask(i) for i in range(len(self.regions))]
        self.hovered = hit_test_regions(masks, point, self._view())
        return self.hovered

    def outline(self, index: int) -> np.ndarray:
        """Dashed RGBA outline of a region's mask, at mask resolution."""
        cached = self._outline_cache.get(index)
        if cached is None:
            cached = dashed_outline(detect_edges(self.region_mask(index)))
            self._outline_cache[index] = cached
        return cached

    # Extraction

    def _snapshot(self, label: str = "") -> Snapshot:
        return Snapshot(layers=self.stack.snapshot_layers(), label=label)

    def _layer_name(self, label: str) -> str:
        extracted = sum(1 for l in self.stack.layers if not l.is_base_layer)
        text = (label or "layer").replace("_", " ")
        return f"{text[:1].upper()}{text[1:]} {extracted + 1}"

    def _commit(self, extractions: Sequence[Tuple[Extraction, str]], label: str) -> List[Layer]:
        self.history.record(self._snapshot(label))
        added: List[Layer] = []
        for extraction, kind in extractions:
            layer = Layer(name=self._layer_name(extraction.label), image=extraction.layer_image, kind=kind)
            self.stack.append(layer)
            self.stack.replace_base_image(extraction.base_image)
            added.append(layer)
            logger.info("Extracted '%s' (inverted=%s)", layer.name, extraction.inverted)
        return added

    async def extract_mask(
        self,
        mask: np.ndarray,
        label: str,
        kind: Optional[str] = None,
        invert: Optional[bool] = None,
    ) -> Optional[Layer]:
        async with self._extract_lock:
            generation = self.generation
            source = self._require_base().image
            extraction = await asyncio.to_thread(extract_region, source, mask, label, invert, self.thresholds)
            if self._is_stale("extraction", generation, source):
                return None
            return self._commit([(extraction, kind or label)], f"extract {label}")[0]

    async def extract_region(self, index: int, invert: Optional[bool] = None) -> Optional[Layer]:
        region = self._region(index)
        mask = self.region_mask(index)
        return await self.extract_mask(mask, region.label, kind=region.label, invert=invert)

    async def extract_matching(self, prompt: str) -> Optional[List[Layer]]:
        """Extract every detected region the request refers to, under one undo step."""
        if not self.regions:
            raise PreconditionError("No detected regions to match against")
        labels = [r.label for r in self.regions]
        parsed = None
        if self.prompt_parser is not None:
            parsed = await self.prompt_parser.parse(prompt, labels)
        wanted = set(resolve_labels(prompt, labels, parsed))
        indices = [i for i, r in enumerate(self.regions) if r.label in wanted]
        if not indices:
            raise PreconditionError(f"No detected region matches '{prompt}'")
        masks = [(self.regions[i].label, self.region_mask(i)) for i in indices]

        async with self._extract_lock:
            generation = self.generation
            source = self._require_base().image

            def run() -> List[Extraction]:
                out: List[Extraction] = []
                current = source
                for label, mask in masks:
                    extraction = extract_region(current, mask, label, None, self.thresholds)
                    out.append(extraction)
                    current = extraction.base_image
                return out

            extractions = await asyncio.to_thread(run)
            if self._is_stale("prompt extraction", generation, source):
                return None
            return self._commit([(e, e.label) for e in extractions], f"extract '{prompt}'")

    # Lasso

    def add_lasso_point(self, x: float, y: float) -> None:
        self.lasso.add_point(x, y)

    def clear_lasso(self) -> None:
        self.lasso.clear()

    async def extract_lasso(self, points: Optional[PointsLike] = None) -> Optional[Layer]:
        mask = lasso_mask(self.lasso.points if points is None else points, self._view())
        layer = await self.extract_mask(mask, "lasso", kind="lasso", invert=False)
        self.lasso.clear()
        return layer

    # Brush

    def begin_brush(self, point: Point, settings: Optional[BrushSettings] = None) -> np.ndarray:
        if self.brush is None:
            self.brush = BrushMaskBuilder(self._view())
        return self.brush.begin_stroke(point, settings or self.brush_settings)

    def extend_brush(self, point: Point) -> np.ndarray:
        if self.brush is None:
            raise PreconditionError("No brush stroke in progress")
        return self.brush.extend_stroke(point)

    def end_brush(self) -> np.ndarray:
        if self.brush is None:
            raise PreconditionError("No brush stroke in progress")
        return self.brush.end_stroke()

    def clear_brush(self) -> None:
        if self.brush is not None:
            self.brush.clear()

    async def extract_brush(self) -> Optional[Layer]:
        if self.brush is None:
            raise PreconditionError("Nothing has been painted")
        mask = self.brush.commit_mask()
        layer = await self.extract_mask(mask, "brush", kind="brush", invert=False)
        self.brush.clear()
        return layer

    # Layer operations

    def _mutate(self, label: str, action: Callable[[], T]) -> T:
        snapshot = self._snapshot(label)
        result = action()
        self.history.record(snapshot)
        return result

    def delete_layer(self, layer_id: str) -> Layer:
        return self._mutate("delete", lambda: self.stack.remove(layer_id))

    def merge_layers(self, layer_ids: Iterable[str]) -> Layer:
        ids = list(layer_ids)
        return self._mutate("merge", lambda: self.stack.merge(ids))

    def move_layer(self, layer_id: str, to_index: int) -> None:
        self._mutate("move", lambda: self.stack.move(layer_id, to_index))

    def set_visibility(self, layer_id: str, visible: bool) -> None:
        self.stack.set_visibility(layer_id, visible)

    def set_opacity(self, layer_id: str, opacity: float) -> None:
        self.stack.set_opacity(layer_id, opacity)

    def rename_layer(self, layer_id: str, name: str) -> None:
        self.stack.rename(layer_id, name)

    def set_locked(self, layer_id: str, locked: bool) -> None:
        self.stack.set_locked(layer_id, locked)

    # Fill

    def fill_strategy(self, kind: str = "local", prompt: str = "", auto_prompt: bool = True) -> FillStrategy:
        if kind == "local":
            return LocalFillStrategy()
        if kind == "inpaint":
            if self.inpainter is None:
                raise PreconditionError("No inpainting service configured")
            text = fill_prompt([r.label for r in self.regions], prompt, auto_prompt)
            return InpaintFillStrategy(
                self.inpainter,
                text,
                expand_pixels=self.settings.fill_expand_pixels,
                feather_radius=self.settings.fill_feather_radius,
            )
        raise ValueError(f"Unknown fill strategy: {kind}")

    async def fill(
        self,
        strategy: Union[str, FillStrategy] = "local",
        prompt: str = "",
        auto_prompt: bool = True,
    ) -> Optional[np.ndarray]:
        """Fill the transparent gaps of the base image; layers are untouched.

        Collaborator errors propagate with the document unchanged. A result for a
        base that changed while the fill ran is dropped.
        """
        base = self._require_base()
        if not np.any(base.image[..., 3] < FILL_ALPHA_THRESHOLD):
            raise PreconditionError("The base image has no transparent gaps to fill")
        if isinstance(strategy, str):
            strategy = self.fill_strategy(strategy, prompt, auto_prompt)

        generation = self.generation
        source = base.image
        filled = await strategy.fill(source)
        if self._is_stale(f"{strategy.name} fill", generation, source):
            return None

        self.history.record(self._snapshot(f"{strategy.name} fill"))
        new_base = self.stack.replace_base_image(filled)
        logger.info("Committed %s fill", strategy.name)
        return new_base.image

    # History

    def undo(self) -> None:
        restored = self.history.undo(self._snapshot("redo"))
        self.stack.restore(restored.layers)

    def redo(self) -> None:
        restored = self.history.redo(self._snapshot("undo"))
        self.stack.restore(restored.layers)

    # Output

    def render(self, out_size: Optional[Tuple[int, int]] = None) -> np.ndarray:
        return self.stack.render(out_size)

    def export(self, target) -> None:
        save_layered_document(target, build_export(self.stack))
