"""4x4 affine transforms for scene graph nodes."""

from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

ROTATION_EPSILON = 1e-4

Vector3 = Tuple[float, float, float]
Quaternion = Tuple[float, float, float, float]  # (x, y, z, w)


def quaternion_to_matrix(rotation: Sequence[float]) -> np.ndarray:
    """Convert an (x, y, z, w) quaternion into a 3x3 rotation matrix."""
    x, y, z, w = (float(v) for v in rotation)
    norm = math.sqrt(x * x + y * y + z * z + w * w)
    if norm < 1e-12:
        return np.eye(3, dtype=np.float64)
    x, y, z, w = x / norm, y / norm, z / norm, w / norm
    return np.array(
        [
            [1 - 2 * y * y - 2 * z * z, 2 * x * y - 2 * z * w, 2 * x * z + 2 * y * w],
            [2 * x * y + 2 * z * w, 1 - 2 * x * x - 2 * z * z, 2 * y * z - 2 * x * w],
            [2 * x * z - 2 * y * w, 2 * y * z + 2 * x * w, 1 - 2 * x * x - 2 * y * y],
        ],
        dtype=np.float64,
    )


def matrix_to_quaternion(rot: np.ndarray) -> Quaternion:
    """Convert a 3x3 rotation matrix to an (x, y, z, w) quaternion (Shepperd's method)."""
    trace = rot[0, 0] + rot[1, 1] + rot[2, 2]

    if trace > 0:
        s = 0.5 / math.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (rot[2, 1] - rot[1, 2]) * s
        y = (rot[0, 2] - rot[2, 0]) * s
        z = (rot[1, 0] - rot[0, 1]) * s
    elif rot[0, 0] > rot[1, 1] and rot[0, 0] > rot[2, 2]:
        s = 2.0 * math.sqrt(1.0 + rot[0, 0] - rot[1, 1] - rot[2, 2])
        w = (rot[2, 1] - rot[1, 2]) / s
        x = 0.25 * s
        y = (rot[0, 1] + rot[1, 0]) / s
        z = (rot[0, 2] + rot[2, 0]) / s
    elif rot[1, 1] > rot[2, 2]:
        s = 2.0 * math.sqrt(1.0 + rot[1, 1] - rot[0, 0] - rot[2, 2])
        w = (rot[0, 2] - rot[2, 0]) / s
        x = (rot[0, 1] + rot[1, 0]) / s
        y = 0.25 * s
        z = (rot[1, 2] + rot[2, 1]) / s
    else:
        s = 2.0 * math.sqrt(1.0 + rot[2, 2] - rot[0, 0] - rot[1, 1])
        w = (rot[1, 0] - rot[0, 1]) / s
        x = (rot[0, 2] + rot[2, 0]) / s
        y = (rot[1, 2] + rot[2, 1]) / s
        z = 0.25 * s

    return (float(x), float(y), float(z), float(w))


class Transform:
    """A 4x4 affine matrix.

    Composition follows parent-then-local order, ``world = parent * local``.
    """

    __slots__ = ("matrix",)

    def __init__(self, matrix: Optional[np.ndarray] = None):
        if matrix is None:
            matrix = np.eye(4, dtype=np.float64)
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got shape {matrix.shape}")
        self.matrix = matrix

    @classmethod
    def identity(cls) -> Transform:
        return cls()

    @classmethod
    def from_translation(cls, translation: Sequence[float]) -> Transform:
        matrix = np.eye(4, dtype=np.float64)
        matrix[:3, 3] = [float(v) for v in translation]
        return cls(matrix)

    @classmethod
    def from_quaternion(cls, rotation: Sequence[float]) -> Transform:
        matrix = np.eye(4, dtype=np.float64)
        matrix[:3, :3] = quaternion_to_matrix(rotation)
        return cls(matrix)

    @classmethod
    def from_axis_angle(cls, axis: Sequence[float], angle: float) -> Transform:
        axis = np.asarray(axis, dtype=np.float64)
        axis = axis / np.linalg.norm(axis)
        half = angle / 2.0
        sin_half = math.sin(half)
        return cls.from_quaternion(
            (axis[0] * sin_half, axis[1] * sin_half, axis[2] * sin_half, math.cos(half))
        )

    @classmethod
    def from_trs(
        cls,
        translation: Optional[Sequence[float]] = None,
        rotation: Optional[Sequence[float]] = None,
        scale: Optional[Sequence[float]] = None,
    ) -> Transform:
        """Build ``T * R * S`` from optional translation, rotation and scale."""
        trans_mat = np.eye(4, dtype=np.float64)
        if translation is not None:
            trans_mat[:3, 3] = [float(v) for v in translation]
        rot_mat = np.eye(4, dtype=np.float64)
        if rotation is not None:
            rot_mat[:3, :3] = quaternion_to_matrix(rotation)
        scale_mat = np.eye(4, dtype=np.float64)
        if scale is not None:
            scale_mat[0, 0], scale_mat[1, 1], scale_mat[2, 2] = (float(v) for v in scale)
        return cls(trans_mat @ rot_mat @ scale_mat)

    @classmethod
    def from_column_major(cls, values: Iterable[float]) -> Transform:
        """Parse the 16-float column-major layout used by glTF ``node.matrix``."""
        data = [float(v) for v in values]
        if len(data) != 16:
            raise ValueError(f"Expected 16 matrix elements, got {len(data)}")
        return cls(np.array(data, dtype=np.float64).reshape(4, 4).T)

    def __mul__(self, other: Transform) -> Transform:
        if not isinstance(other, Transform):
            return NotImplemented
        return Transform(self.matrix @ other.matrix)

    def __repr__(self) -> str:
        translation, rotation, scale = self.decomposed()
        return f"Transform(translation={translation}, rotation={rotation}, scale={scale})"

    def decomposed(self) -> Tuple[Vector3, Quaternion, Vector3]:
        """Split into translation, rotation quaternion (x, y, z, w) and per-axis scale.

        A negative determinant of the upper 3x3 block flips the sign of the last
        scale axis so mirrored nodes still yield a proper rotation.
        """
        m = self.matrix
        translation = (float(m[0, 3]), float(m[1, 3]), float(m[2, 3]))

        basis = m[:3, :3]
        sx = float(np.linalg.norm(basis[:, 0]))
        sy = float(np.linalg.norm(basis[:, 1]))
        sz = float(np.linalg.norm(basis[:, 2]))
        if np.linalg.det(basis) < 0:
            sz = -sz

        rot = np.zeros((3, 3), dtype=np.float64)
        for column, factor in enumerate((sx, sy, sz)):
            rot[:, column] = basis[:, column] / factor if abs(factor) > 1e-10 else basis[:, column]

        return translation, matrix_to_quaternion(rot), (sx, sy, sz)

    def position(self) -> np.ndarray:
        """Apply the transform to the origin."""
        return self.transform_point((0.0, 0.0, 0.0))

    def transform_point(self, point: Sequence[float]) -> np.ndarray:
        homogeneous = np.array([point[0], point[1], point[2], 1.0], dtype=np.float64)
        result = self.matrix @ homogeneous
        return result[:3] / result[3]

    def rotation(self) -> Quaternion:
        return self.decomposed()[1]

    def has_equal_rotation(self, other: Transform, epsilon: float = ROTATION_EPSILON) -> bool:
        """Compare rotation quaternions component-wise within ``epsilon``."""
        mine = self.rotation()
        theirs = other.rotation()
        return all(abs(a - b) < epsilon for a, b in zip(mine, theirs))

    def is_close(self, other: Transform, epsilon: float = ROTATION_EPSILON) -> bool:
        return bool(np.allclose(self.matrix, other.matrix, atol=epsilon))
