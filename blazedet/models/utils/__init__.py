"""Utility modules for single-shot detection models."""

from .anchor_generator import (
    Anchor,
    AnchorConfig,
    AnchorGenerator,
    calculate_scale,
    generate_anchors,
    merge_stride_layers,
)
from .iou import box_iou, calc_iou
from .nms import DEFAULT_MAX_POSE_NUM, NMSResult, Point, ScoredRegion, nms, non_max_suppression

__all__ = [
    "DEFAULT_MAX_POSE_NUM",
    "Anchor",
    "AnchorConfig",
    "AnchorGenerator",
    "NMSResult",
    "Point",
    "ScoredRegion",
    "box_iou",
    "calc_iou",
    "calculate_scale",
    "generate_anchors",
    "merge_stride_layers",
    "nms",
    "non_max_suppression",
]
