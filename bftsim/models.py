from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any, Callable
import random
import time

#  Enums for State Management

class NodeRole(Enum):
    HONEST = "honest"
    BYZANTINE = "byzantine"
    LEADER = "leader"

class Mode(Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"

class Variant(Enum):
    PBFT = "pbft" # pre-prepare / prepare / commit
    AGREEMENT = "agreement" # proposal / voting / decision

class Phase(Enum):
    IDLE = "idle"

    # PBFT-style variant
    PRE_PREPARE = "pre-prepare"
    PREPARE = "prepare"
    COMMIT = "commit"

    # Byzantine agreement variant
    PROPOSAL = "proposal"
    VOTING = "voting"
    DECISION = "decision"

class MsgType(Enum):
    PRE_PREPARE = "pre-prepare"
    PREPARE = "prepare"
    COMMIT = "commit"

    PROPOSAL = "proposal"
    RESPONSE = "response"
    DECISION = "decision"

class ByzantinePolicy(Enum):
    FLIP = "flip" # always send 1 - v
    PROBABILISTIC = "probabilistic" # flip / random / silent by probability bucket
    RANDOM = "random"
    SILENT = "silent"

class Severity(Enum):
    MESSAGE = "message"
    CONSENSUS = "consensus"
    FAILURE = "failure"

# Phase names and message kinds per variant, in transition order
VARIANT_PHASES = {
    Variant.PBFT: (Phase.PRE_PREPARE, Phase.PREPARE, Phase.COMMIT),
    Variant.AGREEMENT: (Phase.PROPOSAL, Phase.VOTING, Phase.DECISION),
}

VARIANT_MESSAGES = {
    Variant.PBFT: (MsgType.PRE_PREPARE, MsgType.PREPARE, MsgType.COMMIT),
    Variant.AGREEMENT: (MsgType.PROPOSAL, MsgType.RESPONSE, MsgType.DECISION),
}

VARIANT_POLICY = {
    Variant.PBFT: ByzantinePolicy.FLIP,
    Variant.AGREEMENT: ByzantinePolicy.PROBABILISTIC,
}

PHASE_LABELS = {
    Phase.IDLE: "Idle",
    Phase.PRE_PREPARE: "Pre-Prepare",
    Phase.PREPARE: "Prepare",
    Phase.COMMIT: "Commit",
    Phase.PROPOSAL: "Proposal",
    Phase.VOTING: "Voting",
    Phase.DECISION: "Decision",
}

#  Core Data Models

@dataclass(frozen=True)
class InboxEntry:
    sender_id: int
    value: int

@dataclass
class Node:
    """
    A single participant in the network.
    Role and initial value belong to the network; everything else is
    round-scoped and cleared by reset_round().
    """
    node_id: int
    role: NodeRole = NodeRole.HONEST
    initial_value: int = 0
    byzantine_strategy: Optional[ByzantinePolicy] = None

    # Round-scoped state
    received_value: Optional[int] = None
    sent_value: Optional[int] = None
    proposed_value: Optional[int] = None
    prepared_value: Optional[int] = None
    committed_value: Optional[int] = None
    sent_commit_value: Optional[int] = None
    prepare_inbox: List[InboxEntry] = field(default_factory=list)
    commit_inbox: List[InboxEntry] = field(default_factory=list)
    phase: Phase = Phase.IDLE

    def __hash__(self):
        return self.node_id

    @property
    def is_byzantine(self) -> bool:
        return self.role == NodeRole.BYZANTINE

    @property
    def is_leader(self) -> bool:
        return self.role == NodeRole.LEADER

    @property
    def is_honest(self) -> bool:
        """Honest replicas and the leader."""
        return self.role != NodeRole.BYZANTINE

    def reset_round(self):
        self.received_value = None
        self.sent_value = None
        self.proposed_value = None
        self.prepared_value = None
        self.committed_value = None
        self.sent_commit_value = None
        self.prepare_inbox = []
        self.commit_inbox = []
        self.phase = Phase.IDLE

@dataclass(frozen=True)
class Message:
    """
    A message in flight between two nodes.
    emitted_at and transit_duration only drive the presentation progress ratio.
    """
    sender_id: int
    receiver_id: int
    kind: MsgType
    value: int
    emitted_at: float
    transit_duration: float = 1.0

    def __post_init__(self):
        if self.sender_id == self.receiver_id:
            raise ValueError(f"Message sender and receiver must differ (node {self.sender_id})")

    def __repr__(self):
        return f"<Msg {self.kind.value} {self.sender_id}->{self.receiver_id} value={self.value}>"

    def progress(self, now: float) -> float:
        if self.transit_duration <= 0:
            return 1.0
        ratio = (now - self.emitted_at) / self.transit_duration
        return min(max(ratio, 0.0), 1.0)

@dataclass
class LogEvent:
    """
    One entry of the notification stream. text is plain; data carries the
    node ids and values the event refers to.
    """
    severity: Severity
    event: str
    text: str
    round_number: int
    phase: Phase
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

@dataclass
class PhaseDurations:
    """
    Automatic-mode offsets (seconds) from round start.
    """
    first: float = 0.0
    second: float = 2.0
    third: float = 4.5
    finalize: float = 6.0

    def as_tuple(self):
        return (self.first, self.second, self.third, self.finalize)

@dataclass
class ByzantineProbabilities:
    """
    Cumulative buckets: draw < flip -> flip, draw < flip + random -> random,
    otherwise silent.
    """
    flip: float = 0.4
    random: float = 0.3

    @property
    def silent(self) -> float:
        return max(0.0, 1.0 - self.flip - self.random)

@dataclass
class SimulationConfig:
    """
    Configuration for an engine instance.
    """
    node_count: int = 4
    fault_count: int = 1
    mode: Mode = Mode.MANUAL
    variant: Variant = Variant.PBFT
    byzantine_policy: Optional[ByzantinePolicy] = None # None -> variant default
    byzantine_probabilities: ByzantineProbabilities = field(default_factory=ByzantineProbabilities)
    phase_durations: PhaseDurations = field(default_factory=PhaseDurations)
    settle_delay: float = 2.0 # manual-mode wait after prepare and commit broadcasts
    transit_duration: float = 1.0
    animation_speed: float = 1.0
    count_own_vote: bool = True
    seed: Optional[int] = None
    rng: Optional[random.Random] = None
    clock: Callable[[], float] = time.time
    max_log_entries: int = 50 # formatted log lines kept, as the log panel
    max_events: int = 500

    @property
    def effective_policy(self) -> ByzantinePolicy:
        return self.byzantine_policy or VARIANT_POLICY[self.variant]

    def make_rng(self) -> random.Random:
        if self.rng is not None:
            return self.rng
        return random.Random(self.seed)

@dataclass
class RoundResult:
    """
    Results of one finalized round.
    """
    round_number: int
    variant: Variant
    success: bool
    proposed_value: Optional[int]
    leader_id: Optional[int]
    consensus_nodes: List[int]
    honest_count: int
    required_prepares: int
    required_commits: int
    committed_values: Dict[int, Optional[int]]
    total_messages: int
    messages_per_phase: Dict[str, int]
    byzantine_nodes: List[int] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
