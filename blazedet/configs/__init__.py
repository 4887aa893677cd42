"""Detector configuration presets."""

from .anchors import available_presets, get_anchor_config, get_config

__all__ = ["available_presets", "get_anchor_config", "get_config"]
