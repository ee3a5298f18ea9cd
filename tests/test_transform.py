import math

import numpy as np
import pytest

from transform import ROTATION_EPSILON, Transform


def _random_transform(rng) -> Transform:
    rotation = rng.normal(size=4)
    rotation /= np.linalg.norm(rotation)
    return Transform.from_trs(rng.uniform(-5, 5, 3), rotation, rng.uniform(0.2, 3.0, 3))


def test_composition_is_associative():
    rng = np.random.default_rng(7)
    for _ in range(20):
        a, b, c = (_random_transform(rng) for _ in range(3))
        assert ((a * b) * c).is_close(a * (b * c))


def test_decompose_recovers_translation_rotation_and_scale():
    rng = np.random.default_rng(11)
    for _ in range(20):
        translation = rng.uniform(-10, 10, 3)
        rotation = rng.normal(size=4)
        rotation /= np.linalg.norm(rotation)
        scale = rng.uniform(0.1, 4.0, 3)

        got_t, got_r, got_s = Transform.from_trs(translation, rotation, scale).decomposed()

        assert np.allclose(got_t, translation, atol=1e-4)
        assert np.allclose(got_s, scale, atol=1e-4)
        # q and -q encode the same rotation
        assert np.allclose(got_r, rotation, atol=1e-4) or np.allclose(got_r, -rotation, atol=1e-4)


def test_mirrored_node_gets_negative_last_scale_axis():
    translation, rotation, scale = Transform.from_trs(scale=(2.0, 3.0, -4.0)).decomposed()

    assert translation == (0.0, 0.0, 0.0)
    assert scale == pytest.approx((2.0, 3.0, -4.0))
    assert rotation == pytest.approx((0.0, 0.0, 0.0, 1.0))


def test_rotation_equality_is_reflexive():
    rng = np.random.default_rng(3)
    transform = _random_transform(rng)
    assert transform.has_equal_rotation(transform)


def test_rotation_equality_tolerates_only_epsilon():
    identity = Transform.identity()
    # z component of the quaternion is sin(angle / 2)
    slightly = Transform.from_axis_angle((0.0, 0.0, 1.0), 2 * math.asin(ROTATION_EPSILON / 2))
    clearly = Transform.from_axis_angle((0.0, 0.0, 1.0), 2 * math.asin(ROTATION_EPSILON * 5))

    assert identity.has_equal_rotation(slightly)
    assert not identity.has_equal_rotation(clearly)


def test_rotation_equality_ignores_translation_and_scale():
    a = Transform.from_trs((1.0, 2.0, 3.0), (0.0, 0.0, 0.0, 1.0), (2.0, 2.0, 2.0))
    assert a.has_equal_rotation(Transform.identity())


def test_world_is_parent_times_local():
    parent = Transform.from_trs((1.0, 0.0, 0.0), Transform.from_axis_angle((0, 0, 1), math.pi / 2).rotation())
    local = Transform.from_translation((1.0, 0.0, 0.0))

    # the parent's 90 degree turn about Z swings the child's +X offset onto +Y
    assert np.allclose((parent * local).position(), (1.0, 1.0, 0.0))


def test_from_column_major_reads_gltf_layout():
    values = [1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0, 4, 5, 6, 1]
    assert np.allclose(Transform.from_column_major(values).position(), (4.0, 5.0, 6.0))


def test_from_column_major_rejects_wrong_length():
    with pytest.raises(ValueError):
        Transform.from_column_major([1.0] * 15)


def test_constructor_rejects_non_square_matrix():
    with pytest.raises(ValueError):
        Transform(np.eye(3))
