from .agents import FunctionAgent as FunctionAgent
from .checkpoint import Checkpoint as Checkpoint, CheckpointStore as CheckpointStore
from .consensus import compute_consensus as compute_consensus
from .errors import (
    AgentFailure as AgentFailure,
    ApprovalError as ApprovalError,
    CancellationError as CancellationError,
    ConsensusFailure as ConsensusFailure,
    FleetFlowError as FleetFlowError,
    PersistenceError as PersistenceError,
    RunNotFoundError as RunNotFoundError,
    StepExecutionError as StepExecutionError,
    ValidationError as ValidationError,
)
from .fleet import FleetCoordinator as FleetCoordinator
from .loader import (
    load_definition as load_definition,
    load_definitions as load_definitions,
    load_fleet as load_fleet,
    load_workflow as load_workflow,
)
from .models import (
    AgentMember as AgentMember,
    AgentResult as AgentResult,
    AgentTask as AgentTask,
    ConsensusConfig as ConsensusConfig,
    ConsensusResult as ConsensusResult,
    FleetDef as FleetDef,
    FleetResult as FleetResult,
)
from .persistence import FileBackend as FileBackend, InMemoryBackend as InMemoryBackend
from .registry import Registry as Registry
from .runtime import RunStatus as RunStatus, Runtime as Runtime
from .workflow import (
    WorkflowDef as WorkflowDef,
    WorkflowExecutor as WorkflowExecutor,
    WorkflowRun as WorkflowRun,
    WorkflowStatus as WorkflowStatus,
)

__version__ = "0.1.0"
