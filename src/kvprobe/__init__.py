from kvprobe.concurrency import BatchOutcome, BatchResult, ConcurrencyTester
from kvprobe.config import (
    HarnessConfig,
    PlatformConfig,
    ScenarioConfig,
    StoreConfig,
    discover_config,
    load_config,
)
from kvprobe.errors import (
    ConfigurationError,
    HarnessError,
    InjectionError,
    LeaderChangedError,
    LeaderQueryError,
    NoLeaderError,
    RecoveryTimeoutError,
    TerminationFailedError,
    TransientStoreError,
    VerificationMismatchError,
)
from kvprobe.injector import FailureInjector
from kvprobe.leader import LeaderChange, LeaderInfo, LeaderState, LeaderTracker
from kvprobe.partition import PartitionMapper, partition_of
from kvprobe.platform import ClusterPlatform, KubernetesPlatform
from kvprobe.recovery import RecoveryDetector, RecoveryPhase, RecoveryTransition
from kvprobe.report import Report, ResultAggregator
from kvprobe.store import HttpStore, KeyValueStore
from kvprobe.trial import (
    DEFAULT_PLANS,
    ReadMode,
    Scenario,
    ScenarioPlan,
    TrialOutcome,
    TrialResult,
    TrialRunner,
)
from kvprobe.verify import (
    ConsistencyVerdict,
    Guarantee,
    ReadAvailability,
    check_failover_durability,
    check_immediate_read,
    check_linearizability,
    check_no_lost_updates,
    check_read_your_writes,
)
from kvprobe.workload import (
    ClientBatch,
    OperationKind,
    OperationRecord,
    SequenceCounter,
    WorkloadDriver,
)

__all__ = [
    # Configuration
    "HarnessConfig",
    "PlatformConfig",
    "ScenarioConfig",
    "StoreConfig",
    "discover_config",
    "load_config",
    # Errors
    "ConfigurationError",
    "HarnessError",
    "InjectionError",
    "LeaderChangedError",
    "LeaderQueryError",
    "NoLeaderError",
    "RecoveryTimeoutError",
    "TerminationFailedError",
    "TransientStoreError",
    "VerificationMismatchError",
    # Partitions and leadership
    "PartitionMapper",
    "partition_of",
    "LeaderChange",
    "LeaderInfo",
    "LeaderState",
    "LeaderTracker",
    # Collaborators
    "ClusterPlatform",
    "KubernetesPlatform",
    "HttpStore",
    "KeyValueStore",
    # Injection and recovery
    "FailureInjector",
    "RecoveryDetector",
    "RecoveryPhase",
    "RecoveryTransition",
    # Workload
    "ClientBatch",
    "OperationKind",
    "OperationRecord",
    "SequenceCounter",
    "WorkloadDriver",
    # Verification
    "ConsistencyVerdict",
    "Guarantee",
    "ReadAvailability",
    "check_failover_durability",
    "check_immediate_read",
    "check_linearizability",
    "check_no_lost_updates",
    "check_read_your_writes",
    # Trials and batches
    "DEFAULT_PLANS",
    "ReadMode",
    "Scenario",
    "ScenarioPlan",
    "TrialOutcome",
    "TrialResult",
    "TrialRunner",
    "BatchOutcome",
    "BatchResult",
    "ConcurrencyTester",
    # Reporting
    "Report",
    "ResultAggregator",
]
