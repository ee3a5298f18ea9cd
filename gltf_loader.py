"""Parse glTF/GLB documents and decode mesh primitives into trimesh geometry."""

import base64
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import trimesh
from pygltflib import GLTF2

from asset_resolver import ResolvedAsset
from render_errors import AssetLoadingError, NoDefaultScene, ParsingError

logger = logging.getLogger("preview_renderer.gltf")

GLB_MAGIC = b"glTF"
TRIANGLES = 4

COMPONENT_DTYPES = {
    5120: np.int8,
    5121: np.uint8,
    5122: np.int16,
    5123: np.uint16,
    5125: np.uint32,
    5126: np.float32,
}
TYPE_WIDTHS = {"SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4, "MAT2": 4, "MAT3": 9, "MAT4": 16}
NORMALIZED_DIVISORS = {np.uint8: 255.0, np.uint16: 65535.0, np.int8: 127.0, np.int16: 32767.0}


@dataclass
class Primitive:
    """One drawable primitive group, tagged with the mesh node it belongs to."""

    mesh_node_index: int
    mesh: trimesh.Trimesh


def load_document(asset: ResolvedAsset) -> GLTF2:
    """Parse GLB or JSON glTF bytes."""
    data = asset.data
    try:
        if data[:4] == GLB_MAGIC:
            document = GLTF2.load_from_bytes(data)
        else:
            document = GLTF2.from_json(data.decode("utf-8"))
    except (ValueError, KeyError, TypeError, UnicodeDecodeError, struct.error) as exc:
        raise ParsingError(f"Gltf parsing error in {asset.name}: {exc}") from exc
    if document is None:
        raise ParsingError(f"Gltf parsing error in {asset.name}: empty document")
    return document


def default_scene_roots(document: GLTF2) -> List[int]:
    if document.scene is None or not document.scenes or document.scene >= len(document.scenes):
        raise NoDefaultScene()
    return list(document.scenes[document.scene].nodes or [])


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if ";base64" not in header:
        raise AssetLoadingError("Only base64 data URIs are supported for glTF buffers.")
    return base64.b64decode(payload)


def load_buffers(document: GLTF2, asset: ResolvedAsset) -> List[bytes]:
    """Return the raw bytes of every buffer the document declares."""
    buffers = []
    for index, buffer in enumerate(document.buffers or []):
        uri = buffer.uri
        if uri is None:
            blob = document.binary_blob()
            if blob is None:
                raise AssetLoadingError(f"Buffer {index} has no uri and the document has no binary chunk.")
            buffers.append(bytes(blob))
        elif uri.startswith("data:"):
            buffers.append(_decode_data_uri(uri))
        else:
            if asset.path is None:
                raise AssetLoadingError(f"Cannot locate external buffer '{uri}' for an in-memory document.")
            external = Path(asset.path).parent / uri
            try:
                buffers.append(external.read_bytes())
            except OSError as exc:
                raise AssetLoadingError(f"Cannot read external buffer {external}: {exc}") from exc
    return buffers


def read_accessor(document: GLTF2, buffers: Sequence[bytes], index: int) -> np.ndarray:
    """Decode an accessor into a ``(count, width)`` array, honouring byte strides."""
    try:
        accessor = document.accessors[index]
        dtype = np.dtype(COMPONENT_DTYPES[accessor.componentType])
        width = TYPE_WIDTHS[accessor.type]
    except (IndexError, KeyError, TypeError) as exc:
        raise AssetLoadingError(f"Invalid accessor {index}: {exc}") from exc

    count = accessor.count
    if accessor.bufferView is None:
        return np.zeros((count, width), dtype=dtype)

    view = document.bufferViews[accessor.bufferView]
    data = buffers[view.buffer]
    offset = (view.byteOffset or 0) + (accessor.byteOffset or 0)
    element_size = dtype.itemsize * width
    stride = view.byteStride or element_size
    if count and offset + stride * (count - 1) + element_size > len(data):
        raise AssetLoadingError(f"Accessor {index} reads past the end of buffer {view.buffer}.")

    array = np.ndarray(
        shape=(count, width),
        dtype=dtype,
        buffer=data,
        offset=offset,
        strides=(stride, dtype.itemsize),
    ).copy()

    if accessor.normalized and dtype.type in NORMALIZED_DIVISORS:
        array = array.astype(np.float32) / NORMALIZED_DIVISORS[dtype.type]
    return array


def _decode_primitive(document: GLTF2, buffers: Sequence[bytes], primitive) -> Optional[trimesh.Trimesh]:
    mode = TRIANGLES if primitive.mode is None else primitive.mode
    if mode != TRIANGLES:
        logger.warning("Skipping primitive with unsupported mode %s", mode)
        return None

    attributes = primitive.attributes
    if attributes.POSITION is None:
        raise AssetLoadingError("Mesh primitive has no POSITION attribute.")
    positions = read_accessor(document, buffers, attributes.POSITION).astype(np.float64)

    if primitive.indices is not None:
        indices = read_accessor(document, buffers, primitive.indices).reshape(-1).astype(np.int64)
    else:
        indices = np.arange(len(positions), dtype=np.int64)
    faces = indices[: len(indices) - len(indices) % 3].reshape(-1, 3)

    if attributes.TEXCOORD_0 is not None:
        uv = read_accessor(document, buffers, attributes.TEXCOORD_0).astype(np.float64)
        # trimesh keeps the UV origin at the bottom-left corner
        uv[:, 1] = 1.0 - uv[:, 1]
    else:
        uv = np.zeros((len(positions), 2), dtype=np.float64)

    return trimesh.Trimesh(
        vertices=positions,
        faces=faces,
        visual=trimesh.visual.TextureVisuals(uv=uv),
        process=False,
    )


def load_primitives(document: GLTF2, asset: ResolvedAsset, mesh_indices: Sequence[int]) -> List[Primitive]:
    """Decode the primitives of each mesh, in the order of ``mesh_indices``.

    ``mesh_indices[i]`` is the glTF mesh referenced by extracted mesh node ``i``;
    the returned primitives keep that node order, then the mesh's primitive order.
    """
    buffers = load_buffers(document, asset)
    cache: Dict[int, List[trimesh.Trimesh]] = {}
    primitives = []
    for node_position, mesh_index in enumerate(mesh_indices):
        if mesh_index not in cache:
            try:
                gltf_mesh = document.meshes[mesh_index]
            except (IndexError, TypeError) as exc:
                raise AssetLoadingError(f"Node references missing mesh {mesh_index}.") from exc
            decoded = [_decode_primitive(document, buffers, p) for p in gltf_mesh.primitives or []]
            cache[mesh_index] = [mesh for mesh in decoded if mesh is not None]
        for mesh in cache[mesh_index]:
            primitives.append(Primitive(mesh_node_index=node_position, mesh=mesh))
    return primitives
