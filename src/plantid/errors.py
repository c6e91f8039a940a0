"""Error taxonomy shared by the image sources, the pipeline and the API.

Each error carries a short ``user_message`` that is safe to show in the
display state; the exception text itself is only logged.
"""

from __future__ import annotations


class PlantIdError(Exception):
    """Base class for all PlantID failures."""

    user_message: str = "Something went wrong"


class CapabilityUnavailable(PlantIdError):  # noqa: N818
    """The requested image source cannot be used on this host."""

    user_message = "Camera unavailable"


class PreprocessError(PlantIdError):
    """Image bytes could not be decoded or converted to a model input."""

    user_message = "Could not read image"


class ModelLoadError(PlantIdError):
    """The classifier asset is missing or malformed."""

    user_message = "Failed to load model"


class InferenceError(PlantIdError):
    """Running the classifier failed."""

    user_message = "Identification failed"


class InferencePoolBusy(InferenceError):
    """No inference slot became free in time."""

    user_message = "Busy, please try again"
