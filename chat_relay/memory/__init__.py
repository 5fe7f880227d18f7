from .buffer import MemoryBuffer
from .curation import MemoryCurationGateway, parse_indices
from .pipeline import MemoryPipeline
from .triggers import MemoryTriggerFilter

__all__ = [
    "MemoryBuffer",
    "MemoryCurationGateway",
    "MemoryPipeline",
    "MemoryTriggerFilter",
    "parse_indices",
]
