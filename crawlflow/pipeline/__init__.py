"""Record processing chain and bundled stages."""

from .base import ProcessingStage, Stage
from .chain import StageChain, build_chain
from .stages import FileExportStage, ValidationStage, load_stage

__all__ = [
    "FileExportStage",
    "ProcessingStage",
    "Stage",
    "StageChain",
    "ValidationStage",
    "build_chain",
    "load_stage",
]
