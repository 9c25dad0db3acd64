from .application import (
    ApplicationDescriptor,
    ApplicationRef,
    OperationResult,
    RenderedManifests,
    load_descriptor,
    load_ref,
)

__all__ = [
    "ApplicationDescriptor",
    "ApplicationRef",
    "OperationResult",
    "RenderedManifests",
    "load_descriptor",
    "load_ref",
]
