"""Intersection-over-Union for boxes stored as two arbitrary corner points.

Detection decoders store a region as a ``topleft`` and a ``btmright`` corner,
but nothing guarantees those are actually the min/max corners (flipped or
mirrored inputs swap them). Every function here normalises each box to
per-axis min/max before measuring it. A box with zero (or negative) area never
overlaps anything: its IoU with any box, itself included, is ``0``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

if TYPE_CHECKING:
    from .nms import ScoredRegion

Boxes = Float[Array, "num_boxes 4"]
IoUMatrix = Float[Array, "num_boxes1 num_boxes2"]


def _normalize_box(box: Float[Array, 4]) -> Float[Array, 4]:
    """Reorder a box's corners into ``(xmin, ymin, xmax, ymax)``."""
    return jnp.stack(
        (
            jnp.minimum(box[0], box[2]),
            jnp.minimum(box[1], box[3]),
            jnp.maximum(box[0], box[2]),
            jnp.maximum(box[1], box[3]),
        )
    )


def _box_area(box: Float[Array, 4]) -> Float[Array, ""]:
    return (box[3] - box[1]) * (box[2] - box[0])


def _validate_boxes(name: str, boxes: jnp.ndarray) -> Boxes:
    """Validate box tensor shape."""
    if boxes.ndim != 2 or boxes.shape[-1] != 4:
        raise ValueError(f"{name} must have shape (N, 4); received {boxes.shape}.")
    return boxes


def box_iou(boxes1: Boxes, boxes2: Boxes) -> IoUMatrix:
    """Compute the pairwise IoU between two sets of ``(x1, y1, x2, y2)`` boxes."""
    boxes1 = _validate_boxes("boxes1", jnp.asarray(boxes1, dtype=jnp.float32))
    boxes2 = _validate_boxes("boxes2", jnp.asarray(boxes2, dtype=jnp.float32))

    if boxes1.shape[0] == 0 or boxes2.shape[0] == 0:
        return jnp.zeros((boxes1.shape[0], boxes2.shape[0]), dtype=jnp.float32)

    boxes1 = jax.vmap(_normalize_box)(boxes1)
    boxes2 = jax.vmap(_normalize_box)(boxes2)
    areas1 = jax.vmap(_box_area)(boxes1)
    areas2 = jax.vmap(_box_area)(boxes2)

    def pairwise(box1: Float[Array, 4], area1: Float[Array, ""]) -> Any:
        def iou_with(box2: Float[Array, 4], area2: Float[Array, ""]) -> Float[Array, ""]:
            intersection_w = jnp.maximum(jnp.minimum(box1[2], box2[2]) - jnp.maximum(box1[0], box2[0]), 0.0)
            intersection_h = jnp.maximum(jnp.minimum(box1[3], box2[3]) - jnp.maximum(box1[1], box2[1]), 0.0)
            intersection = intersection_w * intersection_h
            degenerate = jnp.logical_or(area1 <= 0.0, area2 <= 0.0)
            union = jnp.where(degenerate, 1.0, area1 + area2 - intersection)
            return jnp.where(degenerate, 0.0, intersection / union)

        return jax.vmap(iou_with, in_axes=(0, 0))(boxes2, areas2)

    return jax.vmap(pairwise, in_axes=(0, 0))(boxes1, areas1)


def calc_iou(region0: ScoredRegion, region1: ScoredRegion) -> float:
    """IoU of two scored regions, computed on the host in double precision."""
    xmin0, xmax0 = sorted((region0.topleft.x, region0.btmright.x))
    ymin0, ymax0 = sorted((region0.topleft.y, region0.btmright.y))
    xmin1, xmax1 = sorted((region1.topleft.x, region1.btmright.x))
    ymin1, ymax1 = sorted((region1.topleft.y, region1.btmright.y))

    area0 = (ymax0 - ymin0) * (xmax0 - xmin0)
    area1 = (ymax1 - ymin1) * (xmax1 - xmin1)
    if area0 <= 0 or area1 <= 0:
        return 0.0

    intersect_w = max(min(xmax0, xmax1) - max(xmin0, xmin1), 0.0)
    intersect_h = max(min(ymax0, ymax1) - max(ymin0, ymin1), 0.0)
    intersect_area = intersect_w * intersect_h
    return intersect_area / (area0 + area1 - intersect_area)


__all__ = ["box_iou", "calc_iou"]
