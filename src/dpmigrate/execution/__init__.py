"""dpmigrate Execution — bounded export→import scheduling of parfile units.

ARCHITECTURE
────────────
::

    PipelineDriver (pipeline.py)        two stages per unit, one bound
      ├── JobRegistry (registry.py)     pid → Job, len == live count
      ├── ConcurrencyGate (concurrency.py)
      └── CompletionWaiter (waiter.py)  single suspension point

    run_parallel (parallel.py)          one stage per item (network link)
    DataPumpRunner (runners.py)         expdp / impdp work functions
    markers.py                          <base>.READY marker files
"""

from dpmigrate.execution.concurrency import ConcurrencyGate
from dpmigrate.execution.models import (
    Completion,
    Job,
    JobStage,
    PipelineCounters,
    PipelineResult,
    ProcessHandle,
    RunStatus,
    Unit,
    UnitStage,
)
from dpmigrate.execution.parallel import ParallelSummary, run_parallel
from dpmigrate.execution.pipeline import PipelineDriver
from dpmigrate.execution.registry import JobRegistry
from dpmigrate.execution.runners import DataPumpRunner, build_units, list_parfiles, new_session_id
from dpmigrate.execution.waiter import CompletionWaiter

__all__ = [
    "Completion",
    "CompletionWaiter",
    "ConcurrencyGate",
    "DataPumpRunner",
    "Job",
    "JobRegistry",
    "JobStage",
    "ParallelSummary",
    "PipelineCounters",
    "PipelineDriver",
    "PipelineResult",
    "ProcessHandle",
    "RunStatus",
    "Unit",
    "UnitStage",
    "build_units",
    "list_parfiles",
    "new_session_id",
    "run_parallel",
]
