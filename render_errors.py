"""Error kinds raised by the render pipeline.

Every failure carries the HTTP status the boundary should answer with and a
coarse category so callers can tell bad input from upstream trouble.
"""

from typing import Any, Dict, Optional

BAD_INPUT = "bad_input"
UPSTREAM = "upstream"
INTERNAL = "internal"


class RenderServiceError(Exception):
    """Base class for failures that end a render job."""

    status_code = 500
    category = INTERNAL

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category,
            "message": str(self) or type(self).__name__,
        }


class MissingField(RenderServiceError):
    """Raised when a request lacks a required field."""

    status_code = 400
    category = BAD_INPUT

    def __init__(self, field: str):
        super().__init__(f"Error while parsing form data: missing field '{field}'")
        self.field = field


class AssetLoadingError(RenderServiceError):
    """Raised when asset bytes cannot be read or decoded."""

    status_code = 400
    category = BAD_INPUT


class ParsingError(RenderServiceError):
    """Raised when the glTF document is malformed."""

    status_code = 400
    category = BAD_INPUT


class NoDefaultScene(RenderServiceError):
    """Raised when the glTF document declares no default scene."""

    status_code = 422
    category = BAD_INPUT

    def __init__(self, message: str = "No default scene"):
        super().__init__(message)


class NoCamera(RenderServiceError):
    """Raised when the scene has no perspective camera."""

    status_code = 422
    category = BAD_INPUT

    def __init__(self, message: str = "No camera"):
        super().__init__(message)


class NoMesh(RenderServiceError):
    """Raised when the scene has no mesh-bearing node."""

    status_code = 422
    category = BAD_INPUT

    def __init__(self, message: str = "No mesh"):
        super().__init__(message)


class NoTextures(RenderServiceError):
    """Raised when a render is requested without any texture."""

    status_code = 422
    category = BAD_INPUT

    def __init__(self, message: str = "No textures"):
        super().__init__(message)


class NoLocalModel(RenderServiceError):
    """Raised when a cache-only lookup misses."""

    status_code = 404
    category = BAD_INPUT

    def __init__(self, path: str):
        super().__init__(f"No local model found at: {path}")
        self.path = path


class AssetDownloadError(RenderServiceError):
    """Raised when a remote origin answers with a non-success status."""

    status_code = 502
    category = UPSTREAM

    def __init__(self, status: Optional[int], message: str):
        super().__init__(f"Asset download failed (status={status}): {message}")
        self.status = status
        self.message = message


class RasterizerError(RenderServiceError):
    """Raised when the GPU context fails to produce an image."""


class RenderTimeout(RenderServiceError):
    """Raised when a caller gives up waiting for its job."""

    status_code = 504
