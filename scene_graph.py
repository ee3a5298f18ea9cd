"""Extract camera, mesh and light placement from a glTF scene graph.

Nodes are walked depth-first in pre-order, keeping sibling order, from each root
of the default scene. Every match is recorded as ``(parent_transform,
local_transform)`` where the parent transform is the composition of all ancestor
transforms, so callers can recompose ``world = parent * local`` after adjusting
either half.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar, Union

from pygltflib import GLTF2, Node

from gltf_loader import default_scene_roots
from render_errors import ParsingError
from transform import Transform

logger = logging.getLogger("preview_renderer.scene_graph")

LIGHTS_EXTENSION = "KHR_lights_punctual"
DEFAULT_ZFAR = 100.0
DEFAULT_ASPECT_RATIO = 1.0

T = TypeVar("T")


@dataclass
class CameraNode:
    parent_transform: Transform
    local_transform: Transform
    aspect_ratio: float
    yfov: float
    zfar: float
    znear: float

    @property
    def world_transform(self) -> Transform:
        return self.parent_transform * self.local_transform


@dataclass
class MeshNode:
    parent_transform: Transform
    local_transform: Transform
    mesh_index: int

    @property
    def world_transform(self) -> Transform:
        return self.parent_transform * self.local_transform


@dataclass(frozen=True)
class Directional:
    pass


@dataclass(frozen=True)
class Point:
    pass


@dataclass(frozen=True)
class Spot:
    inner_cone_angle: float
    outer_cone_angle: float


LightKind = Union[Directional, Point, Spot]


@dataclass
class LightNode:
    kind: LightKind
    parent_transform: Transform
    local_transform: Transform
    color: Tuple[int, int, int]
    intensity: float

    @property
    def world_transform(self) -> Transform:
        return self.parent_transform * self.local_transform


def node_transform(node: Node) -> Transform:
    if node.matrix:
        return Transform.from_column_major(node.matrix)
    return Transform.from_trs(node.translation, node.rotation, node.scale)


def walk(document: GLTF2) -> Iterator[Tuple[Node, Transform]]:
    """Yield ``(node, parent_transform)`` for the default scene in depth-first pre-order."""
    nodes = document.nodes or []
    roots = default_scene_roots(document)
    stack: List[Tuple[int, Transform]] = [(index, Transform.identity()) for index in reversed(roots)]
    visited = set()

    while stack:
        index, carry = stack.pop()
        if not isinstance(index, int) or not 0 <= index < len(nodes):
            raise ParsingError(f"Scene references missing node {index}.")
        if index in visited:
            raise ParsingError(f"Node {index} appears more than once in the scene hierarchy.")
        visited.add(index)

        node = nodes[index]
        yield node, carry

        child_carry = carry * node_transform(node)
        for child in reversed(node.children or []):
            stack.append((child, child_carry))


def _extract_first(document: GLTF2, parse_fn: Callable[[GLTF2, Node, Transform], Optional[T]]) -> Optional[T]:
    for node, carry in walk(document):
        found = parse_fn(document, node, carry)
        if found is not None:
            return found
    return None


def _extract_all(document: GLTF2, parse_fn: Callable[[GLTF2, Node, Transform], Optional[T]]) -> List[T]:
    result = []
    for node, carry in walk(document):
        found = parse_fn(document, node, carry)
        if found is not None:
            result.append(found)
    return result


def get_camera(document: GLTF2, node: Node, carry: Transform) -> Optional[CameraNode]:
    if node.camera is None:
        return None
    try:
        camera = document.cameras[node.camera]
    except (IndexError, TypeError) as exc:
        raise ParsingError(f"Node references missing camera {node.camera}.") from exc
    if camera.type != "perspective" or camera.perspective is None:
        return None

    perspective = camera.perspective
    return CameraNode(
        parent_transform=carry,
        local_transform=node_transform(node),
        aspect_ratio=perspective.aspectRatio or DEFAULT_ASPECT_RATIO,
        yfov=perspective.yfov,
        zfar=perspective.zfar if perspective.zfar is not None else DEFAULT_ZFAR,
        znear=perspective.znear,
    )


def get_mesh(document: GLTF2, node: Node, carry: Transform) -> Optional[MeshNode]:
    if node.mesh is None:
        return None
    return MeshNode(parent_transform=carry, local_transform=node_transform(node), mesh_index=node.mesh)


def _color_to_uint8(color) -> Tuple[int, int, int]:
    channels = list(color or (1.0, 1.0, 1.0))[:3]
    return tuple(int(round(min(max(float(c), 0.0), 1.0) * 255)) for c in channels)


def get_light(document: GLTF2, node: Node, carry: Transform) -> Optional[LightNode]:
    node_extension = (node.extensions or {}).get(LIGHTS_EXTENSION)
    if not node_extension or node_extension.get("light") is None:
        return None

    lights = ((document.extensions or {}).get(LIGHTS_EXTENSION) or {}).get("lights") or []
    index = node_extension["light"]
    if not isinstance(index, int) or not 0 <= index < len(lights):
        raise ParsingError(f"Node references missing light {index}.")
    light = lights[index]

    light_type = light.get("type")
    if light_type == "directional":
        kind: LightKind = Directional()
    elif light_type == "point":
        kind = Point()
    elif light_type == "spot":
        spot = light.get("spot") or {}
        kind = Spot(
            inner_cone_angle=float(spot.get("innerConeAngle", 0.0)),
            outer_cone_angle=float(spot.get("outerConeAngle", math.pi / 4.0)),
        )
    else:
        logger.warning("Ignoring light %s with unknown type %r", index, light_type)
        return None

    return LightNode(
        kind=kind,
        parent_transform=carry,
        local_transform=node_transform(node),
        color=_color_to_uint8(light.get("color")),
        intensity=float(light.get("intensity", 1.0)),
    )


def extract_camera(document: GLTF2) -> Optional[CameraNode]:
    return _extract_first(document, get_camera)


def extract_all_meshes(document: GLTF2) -> List[MeshNode]:
    return _extract_all(document, get_mesh)


def extract_light(document: GLTF2) -> Optional[LightNode]:
    return _extract_first(document, get_light)
