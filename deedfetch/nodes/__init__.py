from .resolve_node import ResolveNode
from .fetch_node import FetchNode
from .document_processor_node import DocumentProcessorNode
from .classify_node import ClassifyNode
from .finalize_node import FinalizeNode

__all__ = [
    "ResolveNode",
    "FetchNode",
    "DocumentProcessorNode",
    "ClassifyNode",
    "FinalizeNode",
]
