from dataclasses import dataclass, field
from typing import List, Optional, Callable
import random

from .models import Node, NodeRole, ByzantinePolicy, Severity
from .errors import InvalidConfigurationError, SimulationError
from .quorum import Quorum

@dataclass
class NetworkState:
    nodes: List[Node]
    requested_faults: int
    fault_count: int
    warnings: List[SimulationError] = field(default_factory=list)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def max_faulty(self) -> int:
        return Quorum.max_faulty(len(self.nodes))

    @property
    def leader(self) -> Optional[Node]:
        return next((n for n in self.nodes if n.is_leader), None)

    @property
    def byzantine_ids(self) -> List[int]:
        return [n.node_id for n in self.nodes if n.is_byzantine]

    @property
    def honest_ids(self) -> List[int]:
        return [n.node_id for n in self.nodes if n.role == NodeRole.HONEST]

class NetworkModel:
    """
    Owns the node set and assigns honest / byzantine / leader roles.
    """

    def __init__(self, rng: random.Random, strategy: ByzantinePolicy = ByzantinePolicy.FLIP,
                 log: Optional[Callable] = None):
        self.rng = rng
        self.strategy = strategy
        self.log = log or (lambda *args, **kwargs: None)

    def random_distinct_indices(self, total: int, count: int) -> List[int]:
        """Uniform sample without replacement, ascending."""
        count = min(max(count, 0), total)
        return sorted(self.rng.sample(range(total), count))

    def initialize(self, node_count: int, requested_fault_count: int) -> NetworkState:
        if node_count < 1:
            raise InvalidConfigurationError(f"Node count must be >= 1 (got {node_count})")

        fault_count = Quorum.clamp_faulty(node_count, requested_fault_count)
        warnings = []
        if fault_count != requested_fault_count:
            warning = InvalidConfigurationError(
                f"Requested {requested_fault_count} Byzantine nodes, clamped to {fault_count} "
                f"(f <= floor(({node_count}-1)/3) = {Quorum.max_faulty(node_count)})"
            )
            warnings.append(warning)
            self.log(str(warning), event="fault_count_clamped", level=Severity.FAILURE,
                     requested=requested_fault_count, clamped=fault_count, node_count=node_count)

        nodes = [
            Node(node_id=i, initial_value=self.rng.randint(0, 1))
            for i in range(node_count)
        ]
        state = NetworkState(nodes=nodes, requested_faults=requested_fault_count,
                             fault_count=fault_count, warnings=warnings)
        self._assign_roles(state)

        self.log(f"Network initialized: {node_count} nodes total", event="network_initialized",
                 node_count=node_count, byzantine=state.byzantine_ids,
                 leader=state.leader.node_id if state.leader else None, honest=state.honest_ids)
        self.log(f"Byzantine fault tolerance: {Quorum.tolerance_summary(node_count, fault_count)}",
                 event="fault_tolerance", node_count=node_count, fault_count=fault_count,
                 max_faulty=state.max_faulty)
        return state

    def reassign_roles(self, state: NetworkState) -> NetworkState:
        for node in state.nodes:
            node.role = NodeRole.HONEST
            node.byzantine_strategy = None
            node.reset_round()

        self._assign_roles(state, reassigned=True)

        leader = state.leader
        self.log(f"Node roles reassigned: byzantine {state.byzantine_ids}, "
                 f"leader {leader.node_id if leader else None}, honest {state.honest_ids}",
                 event="roles_reassigned", byzantine=state.byzantine_ids,
                 leader=leader.node_id if leader else None, honest=state.honest_ids)
        return state

    def _assign_roles(self, state: NetworkState, reassigned: bool = False):
        prefix = "Reassigned" if reassigned else "Assigned"

        if state.fault_count > 0:
            byz_indices = self.random_distinct_indices(len(state.nodes), state.fault_count)
            for i in byz_indices:
                state.nodes[i].role = NodeRole.BYZANTINE
                state.nodes[i].byzantine_strategy = self.strategy
            self.log(f"{prefix} Byzantine nodes: {byz_indices}", event="byzantine_assigned",
                     level=Severity.FAILURE, byzantine=byz_indices)

        honest = [n for n in state.nodes if n.role == NodeRole.HONEST]
        if not honest:
            self.log("No honest nodes available for leader selection", event="no_leader",
                     level=Severity.FAILURE)
            return

        # Leader is drawn through the same sampler, from the honest positions
        pick = self.random_distinct_indices(len(honest), 1)[0]
        leader = honest[pick]
        leader.role = NodeRole.LEADER
        leader.initial_value = 0 # Leader always proposes 0
        self.log(f"{prefix} leader: node {leader.node_id} (will propose value 0)",
                 event="leader_assigned", level=Severity.CONSENSUS, leader=leader.node_id, value=0)
