"""Data models for the agent swarm.

Uses Pydantic for validation. Every document under .swarm/ is one of these
models dumped as JSON, so a corrupted file fails loudly at load time.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AgentRole(str, Enum):
    """Specialist role a worker is spawned for."""
    BACKEND = "backend"
    FRONTEND = "frontend"
    QA = "qa"
    UX = "ux"
    GENERAL = "general"


class AgentStatus(str, Enum):
    """Lifecycle status of a worker.

    RUNNING is the only non-terminal value. Once a worker reaches any of the
    other values its record never transitions again.
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self != AgentStatus.RUNNING


class SessionStatus(str, Enum):
    """Status of a swarm session."""
    ACTIVE = "active"
    COMPLETED = "completed"


class MessageType(str, Enum):
    """Kind of message a worker posts to the bus."""
    QUESTION = "question"
    STATUS = "status"
    PROGRESS = "progress"
    DECISION = "decision"


class MessagePriority(str, Enum):
    """Urgency of a message."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CoordinationState(str, Enum):
    """Overall state of a coordination run."""
    INITIALIZING = "initializing"
    COORDINATING = "coordinating"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class CoordinationPhase(str, Enum):
    """Phase a coordination run is in, following the tier order."""
    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    BACKEND_IMPLEMENTATION = "backend_implementation"
    FRONTEND_INTEGRATION = "frontend_integration"
    QA_VALIDATION = "qa_validation"
    COMPLETION = "completion"


# =============================================================================
# Session document
# =============================================================================


class AgentRecord(BaseModel):
    """A worker tracked by the current session."""
    role: AgentRole
    pid: int = Field(..., description="OS process id of the worker script")
    worktree_path: Optional[str] = Field(
        default=None,
        description="Absolute path of the worker's git worktree"
    )
    task: Optional[str] = Field(default=None, description="Sanitized task text")
    start_time: datetime = Field(default_factory=datetime.now)
    status: AgentStatus = Field(default=AgentStatus.RUNNING)
    completion_time: Optional[datetime] = None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the worker started (or until it finished)."""
        end = self.completion_time or now or datetime.now()
        return max(0.0, (end - self.start_time).total_seconds())


class SwarmSession(BaseModel):
    """The session document stored at .swarm/session.json."""
    session_id: str
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    task_description: Optional[str] = None
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    agents: list[AgentRecord] = Field(default_factory=list)

    def find_agent(self, pid: int) -> Optional[AgentRecord]:
        """Find the most recent record for a pid."""
        for agent in reversed(self.agents):
            if agent.pid == pid:
                return agent
        return None

    def running_agents(self) -> list[AgentRecord]:
        return [a for a in self.agents if a.status == AgentStatus.RUNNING]


class SessionSummary(BaseModel):
    """Aggregate view of the session for status displays."""
    exists: bool = False
    session_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    task_description: Optional[str] = None
    status: Optional[SessionStatus] = None
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    stopped: int = 0
    agents: list[AgentRecord] = Field(default_factory=list)


# =============================================================================
# Resources and spawning
# =============================================================================


class ResourceSnapshot(BaseModel):
    """Point-in-time resource sample. Never persisted."""
    active_agents: int = 0
    max_agents: int = 0
    memory_usage_mb: float = 0.0
    disk_usage_mb: float = 0.0
    system_load: float = 0.0
    cpu_count: int = 1


class SpawnCheck(BaseModel):
    """Result of an admission check."""
    allowed: bool = True
    reasons: list[str] = Field(default_factory=list)


class SpawnResult(BaseModel):
    """A successfully launched worker."""
    pid: int
    role: AgentRole
    worktree_path: Optional[str] = None


class SpawnRequest(BaseModel):
    """One entry for a batch spawn."""
    role: AgentRole = AgentRole.GENERAL
    task: str
    use_worktree: bool = True


# =============================================================================
# Message bus
# =============================================================================


class AgentMessage(BaseModel):
    """A message posted by a worker to .swarm/communication/."""
    id: str
    agent_id: str
    role: str = "general"
    type: MessageType
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    priority: MessagePriority = Field(default=MessagePriority.MEDIUM)
    requires_response: bool = False
    timeout: int = Field(default=120, description="Seconds the sender is willing to wait")
    quick_actions: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    """Answer to a message, stored as response_<message_id>.json."""
    message_id: str
    response: str
    timestamp: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Coordination
# =============================================================================


class Subtask(BaseModel):
    """A role-tagged slice of a coordination task."""
    id: str
    role: AgentRole
    description: str
    depends_on: list[str] = Field(default_factory=list)


class CoordinationStatus(BaseModel):
    """Status document at .swarm/coordination/status.json."""
    status: CoordinationState = CoordinationState.INITIALIZING
    phase: CoordinationPhase = CoordinationPhase.ANALYSIS
    active_agents: list[int] = Field(default_factory=list)
    completed_agents: list[int] = Field(default_factory=list)
    failed_agents: list[int] = Field(default_factory=list)
    progress_percentage: int = 0
    message: str = "Coordination not started"
    estimated_completion: Optional[datetime] = None
    control_pid: Optional[int] = None
    updated_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Error recovery
# =============================================================================


class ErrorInfo(BaseModel):
    """An error reduced to what the recovery rules look at."""
    type: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class ErrorSignature(BaseModel):
    """Normalized identity of an error used for pattern matching."""
    error_type: str
    message_pattern: str
    context_patterns: list[str] = Field(default_factory=list)


class LearnedRecovery(BaseModel):
    """Steps that resolved an error in the past."""
    steps: list[str]
    outcome: str = "success"
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class ErrorPattern(BaseModel):
    """A stored error pattern keyed by its signature hash."""
    error_signatures: list[ErrorSignature] = Field(default_factory=list)
    successful_recoveries: list[LearnedRecovery] = Field(default_factory=list)
    last_seen: Optional[datetime] = None
    explanation: Optional[str] = None
    likely_cause: Optional[str] = None
    prevention_tips: list[str] = Field(default_factory=list)


class PatternMatch(BaseModel):
    """A stored pattern that matched an error above the threshold."""
    pattern_key: str
    confidence: float
    explanation: str = "Similar error pattern detected"
    likely_cause: str = "Unknown cause"
    prevention_tips: list[str] = Field(default_factory=list)
    successful_recoveries: list[LearnedRecovery] = Field(default_factory=list)


class RecoverySuggestion(BaseModel):
    """A ranked remedy for an error."""
    description: str
    action: str
    auto_executable: bool = False
    confidence: float = 0.0
    source: str = Field(default="generic", description="generic or learned_pattern")
    steps: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)


class ErrorAnalysis(BaseModel):
    """Output of ErrorRecovery.analyze."""
    error: ErrorInfo
    patterns: list[PatternMatch] = Field(default_factory=list)
    suggestions: list[RecoverySuggestion] = Field(default_factory=list)
    auto_recoverable: bool = False


class ErrorExplanation(BaseModel):
    """Human-readable explanation of an error."""
    explanation: str
    likely_cause: str
    prevention_tips: list[str] = Field(default_factory=list)


class RecoveryAttempt(BaseModel):
    """One executed recovery action."""
    action: str
    description: str
    success: bool
    detail: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class RecoveryResult(BaseModel):
    """Outcome of ErrorRecovery.attempt_recovery."""
    success: bool
    action: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    attempts: list[RecoveryAttempt] = Field(default_factory=list)


class RecoveryHistoryEntry(BaseModel):
    """One processed error in .swarm/state/recovery_history.json."""
    error: ErrorInfo
    timestamp: datetime = Field(default_factory=datetime.now)
    recovery_attempted: bool = False
    recovery_successful: bool = False
    recovery_action: Optional[str] = None
    attempts: list[RecoveryAttempt] = Field(default_factory=list)


class RecoveryHistory(BaseModel):
    """Persisted recovery history."""
    entries: list[RecoveryHistoryEntry] = Field(default_factory=list)


class RecoveryStatistics(BaseModel):
    """Summary of how recovery has performed."""
    total_errors_processed: int = 0
    successful_automatic_recoveries: int = 0
    recovery_success_rate: float = 0.0
    most_common_errors: dict[str, int] = Field(default_factory=dict)
    recovery_patterns_learned: int = 0


# =============================================================================
# Configuration
# =============================================================================


class ResourceLimits(BaseModel):
    """Ceilings checked before every spawn."""
    max_memory_mb: int = Field(
        default=2048,
        description="Combined RSS of tracked workers, in MB"
    )
    max_disk_mb: int = Field(
        default=1024,
        description="Size of the .swarm/ directory, in MB"
    )
    load_factor: float = Field(
        default=1.5,
        description="Admission fails when 1-minute load exceeds cpu_count * load_factor"
    )


class MonitorConfig(BaseModel):
    """Liveness polling settings."""
    interval_seconds: float = Field(default=5.0, description="Seconds between polls")
    stuck_threshold_seconds: int = Field(
        default=600,
        description="Running time without bus progress before a worker is reported stuck"
    )
    timeout_seconds: int = Field(default=120, description="Default watch timeout")


class RetryConfig(BaseModel):
    """Backoff settings for spawn retries during coordination.

    Delay for attempt n (0-indexed) is base_delay * exponential_base ** n,
    capped at max_delay and jittered by +/- jitter_factor.
    """
    max_retries: int = Field(default=3, description="Attempts after the first try")
    base_delay_seconds: float = Field(default=1.0)
    max_delay_seconds: float = Field(default=30.0)
    exponential_base: float = Field(default=2.0)
    jitter_factor: float = Field(default=0.1)


class SwarmConfig(BaseModel):
    """Resolved configuration for a project.

    Loaded from .swarm/config.json. Missing keys fall back to these defaults.
    """
    project_name: str = Field(default="project")
    technology_stack: list[str] = Field(default_factory=list)
    test_command: str = Field(default="pytest")
    code_standards: list[str] = Field(
        default_factory=lambda: [
            "Follow existing code conventions",
            "Write tests for new functionality",
            "Keep functions small and focused",
        ]
    )

    agent_command: str = Field(
        default="claude",
        description="Coding-agent binary invoked by worker scripts"
    )
    agent_args: list[str] = Field(
        default_factory=lambda: ["--print", "--dangerously-skip-permissions"],
        description="Arguments that make the agent binary run non-interactively"
    )

    max_concurrent_agents: int = Field(default=4, ge=1)
    worktree_enabled: bool = Field(default=True)
    spawn_jitter_seconds: float = Field(
        default=2.0,
        description="Upper bound of the random pause between batch spawns"
    )
    message_timeout_seconds: int = Field(default=120)

    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
