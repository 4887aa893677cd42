#!/usr/bin/env python3
"""Build the SSD anchor lattice of a detector preset.

The anchors depend only on the detector's static options, so they can be
computed once and shipped next to the model. This script prints a per-layer
summary and can save the ``[N, 4]`` array of ``(x_center, y_center, w, h)``.

Usage:
    # Summary for the default BlazePose detector
    python generate_anchors.py

    # Palm detector anchors saved for a decoder
    python generate_anchors.py --preset palm_detection --output palm_anchors.npy

    # Show the first 8 anchors
    python generate_anchors.py --preset face_detection_front --show 8
"""

import argparse
import logging

import numpy as np

from blazedet.configs import available_presets, get_anchor_config
from blazedet.models.utils import AnchorGenerator


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Generate SSD anchors for a single-shot detector preset")

    parser.add_argument("--preset", type=str, default="pose_detection", help="Detector preset (default: pose_detection)")
    parser.add_argument("--list-presets", action="store_true", help="List available presets and exit")
    parser.add_argument("--output", type=str, default=None, help="Save anchors to this .npy file")
    parser.add_argument("--show", type=int, default=0, help="Print the first N anchors (default: 0)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if not args.list_presets and args.preset not in available_presets():
        parser.error(f"Unknown preset {args.preset!r}; choose from {', '.join(available_presets())}")
    if args.show < 0:
        parser.error("--show must be non-negative")

    return args


def main(argv=None):
    args = parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if args.list_presets:
        for name in available_presets():
            print(name)
        return 0

    config = get_anchor_config(args.preset)
    generator = AnchorGenerator(config)

    print("=" * 70)
    print(f"SSD anchors: {args.preset}")
    print("=" * 70)
    print(f"Input size: {config.input_size_width}x{config.input_size_height}")
    print(f"Strides: {list(config.strides)}")

    for position, (layer, count) in enumerate(zip(generator.layers, generator.anchors_per_layer)):
        height, width = generator.feature_map_shape(position, layer)
        num_types = len(generator.anchor_shapes(layer))
        print(f"  layer {position}: stride {config.strides[layer.start]}, grid {height}x{width}, {num_types} anchor types, {count} anchors")

    anchors = np.asarray(generator.generate_array())
    print(f"Total anchors: {anchors.shape[0]}")

    if args.show:
        print("\nx_center   y_center   w          h")
        for row in anchors[: args.show]:
            print("  ".join(f"{value:<9.6f}" for value in row))

    if args.output:
        np.save(args.output, anchors)
        print(f"\nSaved anchors to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
