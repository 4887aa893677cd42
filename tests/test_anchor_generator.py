"""Tests for the SSD anchor generator."""

from __future__ import annotations

import math

import numpy as np
import pytest

from blazedet.models.utils import (
    Anchor,
    AnchorConfig,
    AnchorGenerator,
    calculate_scale,
    generate_anchors,
    merge_stride_layers,
)


def _config(**overrides) -> AnchorConfig:
    options = dict(
        strides=(8, 16),
        aspect_ratios=(1.0,),
        min_scale=0.2,
        max_scale=0.8,
        input_size_width=16,
        input_size_height=16,
        interpolated_scale_aspect_ratio=0.0,
    )
    options.update(overrides)
    return AnchorConfig(**options)


def test_single_stride_uses_mid_scale() -> None:
    anchors = generate_anchors(_config(strides=(8,)))

    assert len(anchors) == 4
    for anchor in anchors:
        assert anchor.w == pytest.approx(0.5, rel=1e-6)
        assert anchor.h == pytest.approx(0.5, rel=1e-6)


def test_scale_interpolates_over_global_stride_index() -> None:
    assert calculate_scale(0.1, 0.7, 0, 3) == pytest.approx(0.1)
    assert calculate_scale(0.1, 0.7, 1, 3) == pytest.approx(0.4)
    assert calculate_scale(0.1, 0.7, 2, 3) == pytest.approx(0.7)
    assert calculate_scale(0.1, 0.7, 0, 1) == pytest.approx(0.4)

    anchors = generate_anchors(_config(strides=(8, 16, 32), min_scale=0.1, max_scale=0.7, input_size_width=32, input_size_height=32))
    assert anchors[0].w == pytest.approx(0.1, rel=1e-6)
    assert anchors[-1].w == pytest.approx(0.7, rel=1e-6)


def test_merge_only_consecutive_equal_strides() -> None:
    assert merge_stride_layers([8, 16, 16, 16]) == (range(0, 1), range(1, 4))
    assert merge_stride_layers([8, 16, 8]) == (range(0, 1), range(1, 2), range(2, 3))
    assert merge_stride_layers([]) == ()


def test_merged_layer_scale_uses_global_index() -> None:
    generator = AnchorGenerator(_config(strides=(8, 16, 16), min_scale=0.2, max_scale=0.8))
    _, merged = generator.layers

    np.testing.assert_allclose(generator.anchor_shapes(merged), [(1.0, 0.5), (1.0, 0.8)])


def test_reduce_boxes_in_lowest_layer_forces_three_types() -> None:
    generator = AnchorGenerator(
        _config(
            aspect_ratios=(1.0, 2.0, 0.5, 3.0),
            reduce_boxes_in_lowest_layer=True,
            interpolated_scale_aspect_ratio=1.0,
        )
    )
    lowest, upper = generator.layers

    np.testing.assert_allclose(generator.anchor_shapes(lowest), [(1.0, 0.1), (2.0, 0.2), (0.5, 0.2)])
    assert len(generator.anchor_shapes(upper)) == 5


def test_interpolated_anchor_sits_between_scales() -> None:
    generator = AnchorGenerator(_config(interpolated_scale_aspect_ratio=1.0))
    lowest, upper = generator.layers

    assert generator.anchor_shapes(lowest)[-1] == pytest.approx((1.0, math.sqrt(0.2 * 0.8)))
    # The last stride interpolates towards a scale of 1.0.
    assert generator.anchor_shapes(upper)[-1] == pytest.approx((1.0, math.sqrt(0.8)))

    anchors = generator.generate()
    assert anchors[1].w == pytest.approx(0.4, rel=1e-6)
    assert anchors[-1].w == pytest.approx(math.sqrt(0.8), rel=1e-6)


def test_anchor_dimensions_follow_aspect_ratio() -> None:
    anchors = generate_anchors(_config(strides=(16,), aspect_ratios=(2.0,), min_scale=0.4, max_scale=0.4))

    assert len(anchors) == 1
    np.testing.assert_allclose(anchors[0].w, 0.4 * math.sqrt(2.0), rtol=1e-6)
    np.testing.assert_allclose(anchors[0].h, 0.4 / math.sqrt(2.0), rtol=1e-6)


def test_anchor_ordering_is_row_major_then_anchor_type() -> None:
    anchors = generate_anchors(_config(strides=(8, 16, 16), interpolated_scale_aspect_ratio=1.0))

    # 2x2 grid with 2 types, then a merged 1x1 grid with 4 types.
    assert len(anchors) == 12
    centers = [(a.x_center, a.y_center) for a in anchors]
    assert centers[:8] == [
        (0.25, 0.25),
        (0.25, 0.25),
        (0.75, 0.25),
        (0.75, 0.25),
        (0.25, 0.75),
        (0.25, 0.75),
        (0.75, 0.75),
        (0.75, 0.75),
    ]
    assert centers[8:] == [(0.5, 0.5)] * 4

    widths = [a.w for a in anchors[8:]]
    np.testing.assert_allclose(widths, [0.5, math.sqrt(0.5 * 0.8), 0.8, math.sqrt(0.8)], rtol=1e-6)


def test_total_count_matches_grid_times_types() -> None:
    config = _config(strides=(8, 16, 32, 32), aspect_ratios=(1.0, 2.0), interpolated_scale_aspect_ratio=1.0, input_size_width=64, input_size_height=48)
    generator = AnchorGenerator(config)

    expected = [6 * 8 * 3, 3 * 4 * 3, 2 * 2 * 6]
    assert generator.anchors_per_layer == tuple(expected)
    assert generator.num_anchors == sum(expected)
    assert len(generator.generate()) == sum(expected)


def test_grid_size_rounds_up() -> None:
    generator = AnchorGenerator(_config(strides=(16,), input_size_width=40, input_size_height=20))

    assert generator.feature_map_shape(0, generator.layers[0]) == (2, 3)


def test_explicit_feature_map_overrides_stride() -> None:
    config = _config(
        strides=(8, 16, 16),
        interpolated_scale_aspect_ratio=1.0,
        feature_map_height=(3, 1),
        feature_map_width=(5, 2),
    )
    generator = AnchorGenerator(config)

    assert generator.anchors_per_layer == (3 * 5 * 2, 1 * 2 * 4)
    anchors = generator.generate()
    assert anchors[0].x_center == pytest.approx(0.1)
    assert anchors[0].y_center == pytest.approx(0.5 / 3)


def test_fixed_anchor_size_emits_unit_boxes() -> None:
    array = np.asarray(AnchorGenerator(_config(fixed_anchor_size=True, interpolated_scale_aspect_ratio=1.0)).generate_array())

    np.testing.assert_array_equal(array[:, 2:], np.ones((array.shape[0], 2), dtype=np.float32))


def test_anchor_offset_shifts_centers() -> None:
    anchors = generate_anchors(_config(strides=(8,), anchor_offset_x=0.0, anchor_offset_y=1.0))

    assert anchors[0].x_center == 0.0
    assert anchors[0].y_center == pytest.approx(0.5)


def test_empty_aspect_ratios_yield_no_anchors() -> None:
    generator = AnchorGenerator(_config(aspect_ratios=()))

    assert generator.generate() == ()
    assert generator.generate_array().shape == (0, 4)
    assert generator.num_anchors == 0


def test_per_layer_arrays_concatenate_to_full_array() -> None:
    generator = AnchorGenerator(_config(strides=(8, 16, 16), interpolated_scale_aspect_ratio=1.0))
    per_layer = generator.generate_array(per_layer=True)
    full = np.asarray(generator.generate_array())

    assert [arr.shape[0] for arr in per_layer] == list(generator.anchors_per_layer)
    np.testing.assert_array_equal(np.concatenate([np.asarray(a) for a in per_layer]), full)


def test_generation_is_deterministic() -> None:
    config = _config(strides=(8, 16, 16, 16), interpolated_scale_aspect_ratio=1.0, input_size_width=128, input_size_height=128)

    first = AnchorGenerator(config).generate_array()
    second = AnchorGenerator(config).generate_array()

    assert np.asarray(first).tobytes() == np.asarray(second).tobytes()
    assert generate_anchors(config) == generate_anchors(config)
    assert all(isinstance(anchor, Anchor) for anchor in generate_anchors(config))


def test_config_freezes_sequences() -> None:
    strides = [8, 16]
    config = _config(strides=strides)
    strides.append(32)

    assert config.strides == (8, 16)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"strides": ()}, "at least one"),
        ({"strides": (8, 0)}, "strides must be positive"),
        ({"aspect_ratios": (1.0, -2.0)}, "aspect_ratios must be positive"),
        ({"min_scale": 0.9}, "min_scale <= max_scale"),
        ({"input_size_width": 0}, "input size"),
        ({"feature_map_height": (2,), "feature_map_width": ()}, "same length"),
        ({"feature_map_height": (2, 1, 1), "feature_map_width": (2, 1, 1)}, "one entry per merged layer"),
        ({"feature_map_height": (-1, 1), "feature_map_width": (1, 1)}, "non-negative"),
    ],
)
def test_validate_rejects_inconsistent_options(overrides: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _config(**overrides).validate()


def test_from_config_builds_validated_options() -> None:
    config = AnchorConfig.from_config({"strides": [8, 16], "min_scale": 0.2, "max_scale": 0.8, "input_size_width": 16, "input_size_height": 16})

    assert config.strides == (8, 16)
    assert config.anchor_offset_x == 0.5

    with pytest.raises(ValueError, match="Unknown anchor options"):
        AnchorConfig.from_config({"strides": [8], "min_scale": 0.2, "max_scale": 0.8, "input_size_width": 16, "input_size_height": 16, "num_layers": 1})
