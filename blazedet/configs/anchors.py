"""SSD anchor presets of the MediaPipe single-shot detectors.

Each preset mirrors the ``SsdAnchorsCalculatorOptions`` a detector was trained
with, plus the suppression settings used on its output. The values must match
the model whose raw tensors will be decoded against the anchors.
"""

from __future__ import annotations

from collections.abc import Callable

from ml_collections import ConfigDict

from blazedet.models.utils.anchor_generator import AnchorConfig


def _blaze_anchor_options(input_size: int, strides: list[int]) -> ConfigDict:
    return ConfigDict(
        {
            "strides": strides,
            "aspect_ratios": [1.0],
            "min_scale": 0.1484375,
            "max_scale": 0.75,
            "input_size_width": input_size,
            "input_size_height": input_size,
            "anchor_offset_x": 0.5,
            "anchor_offset_y": 0.5,
            "reduce_boxes_in_lowest_layer": False,
            "interpolated_scale_aspect_ratio": 1.0,
            "fixed_anchor_size": True,
        }
    )


def pose_detection() -> ConfigDict:
    """Upper-body BlazePose detector, 128x128 input, 896 anchors."""
    config = ConfigDict()
    config.anchors = _blaze_anchor_options(128, [8, 16, 16, 16])
    config.nms = ConfigDict({"iou_threshold": 0.3, "max_count": 100})
    return config


def pose_detection_full() -> ConfigDict:
    """Full-body BlazePose detector, 224x224 input, 2254 anchors."""
    config = ConfigDict()
    config.anchors = _blaze_anchor_options(224, [8, 16, 32, 32, 32])
    config.nms = ConfigDict({"iou_threshold": 0.3, "max_count": 100})
    return config


def face_detection_front() -> ConfigDict:
    """Front-camera BlazeFace, 128x128 input, 896 anchors."""
    config = ConfigDict()
    config.anchors = _blaze_anchor_options(128, [8, 16, 16, 16])
    config.nms = ConfigDict({"iou_threshold": 0.3, "max_count": 100})
    return config


def palm_detection() -> ConfigDict:
    """Palm detector, 256x256 input, 2944 anchors."""
    config = ConfigDict()
    config.anchors = _blaze_anchor_options(256, [8, 16, 32, 32, 32])
    config.nms = ConfigDict({"iou_threshold": 0.3, "max_count": 4})
    return config


_PRESETS: dict[str, Callable[[], ConfigDict]] = {
    "pose_detection": pose_detection,
    "pose_detection_full": pose_detection_full,
    "face_detection_front": face_detection_front,
    "palm_detection": palm_detection,
}


def available_presets() -> list[str]:
    return sorted(_PRESETS)


def get_config(name: str = "pose_detection") -> ConfigDict:
    """Return a fresh copy of the named preset.

    Raises:
        KeyError: If ``name`` is not a known preset.
    """
    try:
        factory = _PRESETS[name]
    except KeyError as exc:
        raise KeyError(f"Unknown detector preset {name!r}; available: {available_presets()}") from exc
    return factory()


def get_anchor_config(name: str = "pose_detection") -> AnchorConfig:
    """Return the validated :class:`AnchorConfig` of the named preset."""
    return AnchorConfig.from_config(get_config(name).anchors)


__all__ = ["available_presets", "get_anchor_config", "get_config"]
