"""Case types handled by the workflow engine."""

from ..workflow.actions import AdapterRegistry
from .batch_record import BATCH_RECORD_GRAPH, STEP_GRAPH, BatchRecordSteps, build_batch_record_adapter
from .deviation import DEVIATION_GRAPH, build_deviation_adapter
from .models import BatchDeviation, BatchRecord, BatchRecordStep, OOSCase
from .oos import OOS_GRAPH, build_oos_adapter


def build_adapters() -> AdapterRegistry:
    """Registry holding the OOS, batch record and deviation adapters."""
    return AdapterRegistry(
        [build_oos_adapter(), build_batch_record_adapter(), build_deviation_adapter()]
    )


__all__ = [
    "build_adapters",
    "build_oos_adapter",
    "build_batch_record_adapter",
    "build_deviation_adapter",
    "BatchRecordSteps",
    "OOS_GRAPH",
    "BATCH_RECORD_GRAPH",
    "STEP_GRAPH",
    "DEVIATION_GRAPH",
    "OOSCase",
    "BatchRecord",
    "BatchRecordStep",
    "BatchDeviation",
]
