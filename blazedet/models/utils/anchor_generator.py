"""SSD anchor lattice for single-shot detectors (BlazePose, BlazeFace, palm).

A single-shot detector predicts one score and one set of box offsets for every
anchor on every feature-map cell. The raw output tensor is flat, so a decoder
pairs ``anchors[i]`` with ``raw_output[i]`` purely by position. This module
reproduces the anchor layout those detectors were trained with:

    * Runs of consecutive equal strides are merged into a single feature map
      whose anchor types are accumulated in stride order.
    * Scales are interpolated linearly over the *global* stride index.
    * The lowest layer can optionally use three fixed anchor types.
    * An extra anchor per layer can sit between this scale and the next one.

Anchors are returned in normalised ``(x_center, y_center, w, h)`` form, grouped
by merged layer, then grid row, grid column and anchor type. The ordering is
part of the contract with the decoder and must not change.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
from typing import Any, NamedTuple

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float
from ml_collections import ConfigDict

logger = logging.getLogger(__name__)

AnchorArray = Float[Array, "num_anchors 4"]
AnchorShape = tuple[float, float]

_REDUCED_LOWEST_LAYER_SCALE = 0.1


class Anchor(NamedTuple):
    """A single anchor box in normalised feature-map coordinates."""

    x_center: float
    y_center: float
    w: float
    h: float


@dataclass(frozen=True, kw_only=True)
class AnchorConfig:
    """Static SSD anchor options of a particular detector model.

    Attributes:
        strides: Downsampling factor of every output layer. Consecutive equal
            values share one feature map.
        aspect_ratios: Width/height ratios emitted on every layer.
        min_scale: Scale of the first stride layer.
        max_scale: Scale of the last stride layer.
        input_size_width: Model input width in pixels.
        input_size_height: Model input height in pixels.
        anchor_offset_x: Horizontal offset of the anchor center within a cell.
        anchor_offset_y: Vertical offset of the anchor center within a cell.
        reduce_boxes_in_lowest_layer: Replace the first layer's anchor types by
            ``(1.0, 0.1), (2.0, scale), (0.5, scale)``.
        interpolated_scale_aspect_ratio: Aspect ratio of the additional anchor
            placed between consecutive scales. ``<= 0`` disables it.
        fixed_anchor_size: Emit ``w = h = 1`` for every anchor.
        feature_map_width: Explicit grid widths, one per merged layer.
        feature_map_height: Explicit grid heights, one per merged layer.
    """

    strides: Sequence[int]
    aspect_ratios: Sequence[float] = (1.0,)
    min_scale: float
    max_scale: float
    input_size_width: int
    input_size_height: int
    anchor_offset_x: float = 0.5
    anchor_offset_y: float = 0.5
    reduce_boxes_in_lowest_layer: bool = False
    interpolated_scale_aspect_ratio: float = 1.0
    fixed_anchor_size: bool = False
    feature_map_width: Sequence[int] = ()
    feature_map_height: Sequence[int] = ()

    def __post_init__(self) -> None:
        # Store sequences as tuples; the config is shared read-only.
        for name in ("strides", "aspect_ratios", "feature_map_width", "feature_map_height"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def num_strides(self) -> int:
        return len(self.strides)

    def validate(self) -> AnchorConfig:
        """Check the options for consistency.

        :func:`generate_anchors` trusts its input; call this when the options
        come from somewhere other than a vetted preset.

        Returns:
            ``self`` so the call can be chained.

        Raises:
            ValueError: If any option is out of range or the explicit feature
                map sizes do not line up with the merged stride layers.
        """
        if not self.strides:
            raise ValueError("strides must contain at least one value.")
        if any(s <= 0 for s in self.strides):
            raise ValueError(f"strides must be positive; received {self.strides}.")
        if any(r <= 0 for r in self.aspect_ratios):
            raise ValueError(f"aspect_ratios must be positive; received {self.aspect_ratios}.")
        if not 0 < self.min_scale <= self.max_scale:
            raise ValueError(
                f"scales must satisfy 0 < min_scale <= max_scale; received min_scale={self.min_scale}, max_scale={self.max_scale}."
            )
        if self.input_size_width <= 0 or self.input_size_height <= 0:
            raise ValueError(
                f"input size must be positive; received ({self.input_size_width}, {self.input_size_height})."
            )
        if len(self.feature_map_width) != len(self.feature_map_height):
            raise ValueError(
                "feature_map_width and feature_map_height must share the same length; "
                f"got {len(self.feature_map_width)} and {len(self.feature_map_height)}."
            )
        num_layers = len(merge_stride_layers(self.strides))
        if self.feature_map_height and len(self.feature_map_height) != num_layers:
            raise ValueError(
                f"explicit feature map sizes must provide one entry per merged layer; expected {num_layers}, "
                f"got {len(self.feature_map_height)}."
            )
        if any(v < 0 for v in (*self.feature_map_width, *self.feature_map_height)):
            raise ValueError("feature map sizes must be non-negative.")
        return self

    @classmethod
    def from_config(cls, config: ConfigDict | Mapping[str, Any]) -> AnchorConfig:
        """Build validated options from a ``ConfigDict`` or plain mapping."""
        values = config.to_dict() if isinstance(config, ConfigDict) else dict(config)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown anchor options: {unknown}")
        return cls(**values).validate()


def calculate_scale(min_scale: float, max_scale: float, stride_index: int, num_strides: int) -> float:
    """Return the anchor scale of the ``stride_index``-th stride layer."""
    if num_strides == 1:
        return (min_scale + max_scale) * 0.5
    return min_scale + (max_scale - min_scale) * stride_index / (num_strides - 1)


def merge_stride_layers(strides: Sequence[int]) -> tuple[range, ...]:
    """Group runs of consecutive equal strides.

    Each run is returned as the ``range`` of global stride indices it covers.
    Equal strides that are not adjacent stay in separate layers.
    """
    layers = []
    start = 0
    while start < len(strides):
        stop = start
        while stop < len(strides) and strides[stop] == strides[start]:
            stop += 1
        layers.append(range(start, stop))
        start = stop
    return tuple(layers)


@dataclass(frozen=True)
class AnchorGenerator:
    """Generate the SSD anchor lattice described by an :class:`AnchorConfig`."""

    config: AnchorConfig

    @property
    def layers(self) -> tuple[range, ...]:
        return merge_stride_layers(self.config.strides)

    def anchor_shapes(self, layer: range) -> tuple[AnchorShape, ...]:
        """Return the ``(aspect_ratio, scale)`` pairs of a merged layer."""
        cfg = self.config
        shapes: list[AnchorShape] = []
        for index in layer:
            scale = calculate_scale(cfg.min_scale, cfg.max_scale, index, cfg.num_strides)
            if index == 0 and cfg.reduce_boxes_in_lowest_layer:
                shapes.extend(((1.0, _REDUCED_LOWEST_LAYER_SCALE), (2.0, scale), (0.5, scale)))
                continue
            shapes.extend((ratio, scale) for ratio in cfg.aspect_ratios)
            if cfg.interpolated_scale_aspect_ratio > 0.0:
                if index == cfg.num_strides - 1:
                    scale_next = 1.0
                else:
                    scale_next = calculate_scale(cfg.min_scale, cfg.max_scale, index + 1, cfg.num_strides)
                shapes.append((cfg.interpolated_scale_aspect_ratio, math.sqrt(scale * scale_next)))
        return tuple(shapes)

    def anchor_sizes(self, layer: range) -> tuple[AnchorShape, ...]:
        """Return the ``(width, height)`` of every anchor type of a merged layer."""
        sizes = []
        for ratio, scale in self.anchor_shapes(layer):
            ratio_sqrt = math.sqrt(ratio)
            sizes.append((scale * ratio_sqrt, scale / ratio_sqrt))
        return tuple(sizes)

    def feature_map_shape(self, position: int, layer: range) -> tuple[int, int]:
        """Return the ``(height, width)`` grid of the merged layer at ``position``."""
        cfg = self.config
        if cfg.feature_map_height:
            return cfg.feature_map_height[position], cfg.feature_map_width[position]
        stride = cfg.strides[layer.start]
        return math.ceil(cfg.input_size_height / stride), math.ceil(cfg.input_size_width / stride)

    @property
    def anchors_per_layer(self) -> tuple[int, ...]:
        """Number of anchors emitted by each merged layer."""
        counts = []
        for position, layer in enumerate(self.layers):
            height, width = self.feature_map_shape(position, layer)
            counts.append(height * width * len(self.anchor_shapes(layer)))
        return tuple(counts)

    @property
    def num_anchors(self) -> int:
        return sum(self.anchors_per_layer)

    def generate_array(self, *, per_layer: bool = False) -> AnchorArray | list[AnchorArray]:
        """Generate anchors as ``[N, 4]`` arrays of ``(x_center, y_center, w, h)``.

        Args:
            per_layer: If ``True``, return one array per merged layer instead
                of their concatenation.
        """
        arrays = []
        for position, layer in enumerate(self.layers):
            height, width = self.feature_map_shape(position, layer)
            sizes = self.anchor_sizes(layer)
            arrays.append(self._generate_layer_anchors(height, width, sizes))
            logger.debug(
                "stride %d layer (indices %d-%d): %dx%d grid, %d anchor types",
                self.config.strides[layer.start],
                layer.start,
                layer.stop - 1,
                height,
                width,
                len(sizes),
            )

        if per_layer:
            return arrays
        return jnp.concatenate(arrays, axis=0) if arrays else jnp.zeros((0, 4), dtype=jnp.float32)

    def generate(self) -> tuple[Anchor, ...]:
        """Generate the ordered anchor sequence."""
        rows = np.asarray(self.generate_array(), dtype=np.float32).tolist()
        return tuple(Anchor(*row) for row in rows)

    def _generate_layer_anchors(self, height: int, width: int, sizes: Sequence[AnchorShape]) -> AnchorArray:
        """Lay the anchor types of one merged layer over its feature map grid."""
        num_types = len(sizes)
        if height <= 0 or width <= 0 or num_types == 0:
            return jnp.zeros((0, 4), dtype=jnp.float32)

        cfg = self.config
        grid_x = (jnp.arange(width, dtype=jnp.float32) + cfg.anchor_offset_x) / width
        grid_y = (jnp.arange(height, dtype=jnp.float32) + cfg.anchor_offset_y) / height
        # "xy" indexing flattens row-major: y outer, x inner.
        centers_x, centers_y = jnp.meshgrid(grid_x, grid_y, indexing="xy")
        centers = jnp.stack((centers_x.reshape(-1), centers_y.reshape(-1)), axis=-1)

        if cfg.fixed_anchor_size:
            wh = jnp.ones((num_types, 2), dtype=jnp.float32)
        else:
            wh = jnp.asarray(sizes, dtype=jnp.float32)

        num_cells = centers.shape[0]
        centers = jnp.broadcast_to(centers[:, None, :], (num_cells, num_types, 2))
        wh = jnp.broadcast_to(wh[None, :, :], (num_cells, num_types, 2))
        return jnp.concatenate((centers, wh), axis=-1).reshape(-1, 4)


def generate_anchors(config: AnchorConfig) -> tuple[Anchor, ...]:
    """Functional API for anchor generation.

    Args:
        config: Anchor options of the detector whose output will be decoded.

    Returns:
        Anchors ordered by merged layer, grid row, grid column and anchor type.
    """
    return AnchorGenerator(config).generate()


__all__ = [
    "Anchor",
    "AnchorConfig",
    "AnchorGenerator",
    "calculate_scale",
    "generate_anchors",
    "merge_stride_layers",
]
