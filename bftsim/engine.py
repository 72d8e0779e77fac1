import asyncio
import collections
import functools
from typing import Callable, Dict, List, Optional, Tuple

from .models import (
    Node, Message, InboxEntry, LogEvent, RoundResult, SimulationConfig,
    Mode, Variant, Phase, MsgType, Severity,
    VARIANT_PHASES, VARIANT_MESSAGES, VARIANT_POLICY, PHASE_LABELS,
)
from .errors import (
    Outcome, SimulationError, NoLeaderError, InvalidConfigurationError,
    ReentrantAdvanceError, RoleChangeDuringRoundError, RoundInProgressError,
)
from .byzantine import ByzantineBehavior, ByzantineDecision, Behavior
from .ledger import MessageLedger
from .network import NetworkModel, NetworkState
from .quorum import Quorum

class ConsensusEngine:
    """
    Runs one consensus round at a time over a simulated network.

    The round is a single state machine, parameterized by Variant:
      PBFT:      idle -> pre-prepare -> prepare -> commit -> idle
      AGREEMENT: idle -> proposal -> voting -> decision -> idle

    In manual mode the caller drives each transition with advance_manual_step().
    In automatic mode start_round() schedules the transitions as an asyncio task
    keyed by round id; resetting bumps the id so a stale task never touches the
    new network.

    Commands never raise SimulationError: failures come back as an Outcome and
    a failure event.
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig()
        self.clock = self.config.clock
        self.rng = self.config.make_rng()

        # Notification surface
        self.events: List[LogEvent] = []
        self.logs: List[str] = []
        self._listeners: List[Callable[[LogEvent], None]] = []

        # Round state
        self.mode = self.config.mode
        self.variant = self.config.variant
        self.animation_speed = self.config.animation_speed
        self.phase = Phase.IDLE
        self.round_number = 0
        self.running = False
        self.busy = False
        self.last_result: Optional[RoundResult] = None
        self._finalized = False
        self._round_id = 0
        self._tasks: Dict[int, asyncio.Task] = {}
        self._round_counts = collections.defaultdict(int)

        self.ledger = MessageLedger()
        self.byzantine = ByzantineBehavior(self.rng, self.config.byzantine_probabilities)
        self.network = NetworkModel(self.rng, self.config.effective_policy,
                                    log=functools.partial(self.log, source="network"))
        self.state: Optional[NetworkState] = None

        self.initialize_network(self.config.node_count, self.config.fault_count)

    #  Notification surface

    def log(self, msg: str, event: str = "message", level: Severity = Severity.MESSAGE,
            source: str = "engine", **data):
        entry = LogEvent(
            severity=level,
            event=event,
            text=msg,
            round_number=self.round_number,
            phase=self.phase,
            data=data,
            timestamp=self.clock(),
        )
        self._record(entry, source)

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                # Recorded only, listeners are not notified of their own failures
                self._record(LogEvent(
                    severity=Severity.FAILURE,
                    event="listener_error",
                    text=f"Listener {getattr(listener, '__name__', listener)!r} failed: {e}",
                    round_number=self.round_number,
                    phase=self.phase,
                    data={"error": type(e).__name__, "event": entry.event},
                    timestamp=self.clock(),
                ), source)

    def _record(self, entry: LogEvent, source: str):
        self.events.append(entry)
        del self.events[:-self.config.max_events]

        formatted_msg = f"{entry.severity.value.upper()} - {source} - {entry.text}"
        self.logs.append(formatted_msg)
        del self.logs[:-self.config.max_log_entries]

    def subscribe(self, listener: Callable[[LogEvent], None]):
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Callable[[LogEvent], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _report(self, error: SimulationError) -> Outcome:
        self.log(str(error), event="error", level=Severity.FAILURE, error=type(error).__name__)
        return Outcome.failure(error)

    #  Query surface

    @property
    def nodes(self) -> List[Node]:
        return self.state.nodes if self.state else []

    @property
    def leader(self) -> Optional[Node]:
        return self.state.leader if self.state else None

    @property
    def byzantine_count(self) -> int:
        return sum(1 for n in self.nodes if n.is_byzantine)

    @property
    def message_count(self) -> int:
        return self.ledger.message_count

    @property
    def phases(self) -> Tuple[Phase, Phase, Phase]:
        return VARIANT_PHASES[self.variant]

    @property
    def message_kinds(self) -> Tuple[MsgType, MsgType, MsgType]:
        return VARIANT_MESSAGES[self.variant]

    @property
    def transit_duration(self) -> float:
        return self.config.transit_duration / self.animation_speed

    def in_flight(self, now: Optional[float] = None) -> List[Tuple[Message, float]]:
        return self.ledger.in_flight(self.clock() if now is None else now)

    def expire_messages(self, now: Optional[float] = None) -> int:
        return self.ledger.expire(self.clock() if now is None else now)

    def phase_label(self) -> str:
        suffix = "Manual Mode" if self.mode == Mode.MANUAL else "Automatic Mode"
        return f"{PHASE_LABELS[self.phase]} ({suffix})"

    def status(self) -> Dict[str, object]:
        n = len(self.nodes)
        f = self.byzantine_count
        if self.running:
            network_status = "Running"
        elif self.last_result is not None:
            network_status = "Completed"
        else:
            network_status = "Ready"
        leader = self.leader
        return {
            "status": network_status,
            "round": self.round_number,
            "messages": self.message_count,
            "phase": PHASE_LABELS[self.phase],
            "mode": self.mode.value,
            "variant": self.variant.value,
            "nodes": n,
            "byzantine": f,
            "honest": n - f,
            "leader": leader.node_id if leader else None,
            "tolerance": Quorum.tolerance_summary(n, f),
            "consensus": self.last_result.success if self.last_result else None,
        }

    #  Command surface

    def initialize_network(self, node_count: int, fault_count: int) -> Outcome:
        try:
            state = self.network.initialize(node_count, fault_count)
        except SimulationError as e:
            return self._report(e)

        self._cancel_pending()
        self.state = state
        self.ledger.reset()
        self.round_number = 0
        self.phase = Phase.IDLE
        self.running = False
        self.busy = False
        self.last_result = None
        self._finalized = False
        return Outcome.success(state, warnings=state.warnings)

    def reassign_roles(self) -> Outcome:
        try:
            if self.running:
                raise RoleChangeDuringRoundError("Cannot reassign node roles during consensus")
            if self.state is None:
                raise InvalidConfigurationError("Network is not initialized")
        except SimulationError as e:
            return self._report(e)

        self._cancel_pending()
        self.ledger.clear()
        self.phase = Phase.IDLE
        self.last_result = None
        self.network.reassign_roles(self.state)
        return Outcome.success(self.state)

    def reset_network(self) -> Outcome:
        self._cancel_pending()
        self.running = False
        self.busy = False
        self.phase = Phase.IDLE
        self.ledger.clear()

        if self.state is not None:
            node_count, fault_count = self.state.node_count, self.state.fault_count
        else:
            node_count, fault_count = self.config.node_count, self.config.fault_count
        outcome = self.initialize_network(node_count, fault_count)
        self.log("Network reset", event="network_reset")
        return outcome

    def cancel_round(self) -> Outcome:
        was_running = self.running
        self._cancel_pending()
        self.running = False
        self.busy = False
        self.phase = Phase.IDLE
        self._reset_round_state()
        if was_running:
            self.log(f"Round {self.round_number} cancelled", event="round_cancelled", level=Severity.FAILURE)
        return Outcome.success()

    def set_mode(self, mode: Mode) -> Outcome:
        self.mode = mode
        self.log(f"Simulation mode changed to: {mode.value}", event="mode_changed", mode=mode.value)
        return self.reset_network()

    def set_variant(self, variant: Variant) -> Outcome:
        self.apply_variant(variant)
        return self.reset_network()

    def apply_variant(self, variant: Variant):
        """Switch variant without touching the network; callers rebuild or reset it."""
        if variant == self.variant:
            return
        self.variant = variant
        self.network.strategy = self.config.byzantine_policy or VARIANT_POLICY[variant]
        self.log(f"Consensus variant changed to: {variant.value}", event="variant_changed",
                 variant=variant.value)

    def set_animation_speed(self, speed: float) -> Outcome:
        if speed <= 0:
            return self._report(InvalidConfigurationError(f"Animation speed must be positive (got {speed})"))
        self.animation_speed = speed
        return Outcome.success(speed)

    def start_round(self, mode: Optional[Mode] = None) -> Outcome:
        mode = mode or self.mode
        try:
            if self.running:
                raise RoundInProgressError(f"Round {self.round_number} is still running")
            self._require_leader()
            if mode == Mode.AUTOMATIC:
                self._check_durations()
                loop = self._running_loop()
        except SimulationError as e:
            return self._report(e)

        self.mode = mode
        if mode == Mode.MANUAL:
            self.phase = Phase.IDLE
            self._reset_round_state()
            self.log("Manual mode: advance step by step through the consensus phases",
                     event="manual_armed")
            return Outcome.success()

        token = self._begin_round()
        offsets = self.config.phase_durations.as_tuple()
        steps = (self._first_phase, self._second_phase, self._third_phase, self._finalize)
        self._tasks[token] = loop.create_task(self._run_schedule(token, list(zip(offsets, steps))))
        return Outcome.success(token)

    async def advance_manual_step(self) -> Outcome:
        if self.busy:
            return self._report(ReentrantAdvanceError("Manual step already in progress"))
        if self.running and self.mode == Mode.AUTOMATIC:
            return self._report(RoundInProgressError("An automatic round is running"))

        first = self.phases[0]

        if not self.running:
            try:
                self._require_leader()
            except SimulationError as e:
                return self._report(e)
            self.mode = Mode.MANUAL
            self._begin_round()
            self._first_phase()
            return Outcome.success(self.phase)

        token = self._round_id
        self.busy = True
        try:
            if self.phase == first:
                self._second_phase()
                await self._settle()
                if token != self._round_id:
                    return self._abandoned()
                return Outcome.success(self.phase)

            self._third_phase()
            await self._settle()
            if token != self._round_id:
                return self._abandoned()
            result = self._finalize()
            # The next advance starts a fresh round
            self._finalized = False
            return Outcome.success(result)
        finally:
            if token == self._round_id:
                self.busy = False

    async def run_round(self) -> Outcome:
        """Drive one complete manual round and return its RoundResult."""
        if self.running:
            return self._report(RoundInProgressError(f"Round {self.round_number} is still running"))
        outcome = None
        for _ in range(3):
            outcome = await self.advance_manual_step()
            if not outcome.ok:
                return outcome
        return outcome

    async def wait_for_round(self):
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.wait(tasks)

    #  Round bookkeeping

    def _require_leader(self) -> Node:
        leader = self.leader
        if leader is None:
            raise NoLeaderError("No leader found, cannot start consensus")
        return leader

    def _check_durations(self):
        offsets = self.config.phase_durations.as_tuple()
        if any(o < 0 for o in offsets) or list(offsets) != sorted(offsets):
            raise InvalidConfigurationError(f"Phase offsets must be non-negative and non-decreasing: {offsets}")

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise InvalidConfigurationError("Automatic mode needs a running event loop")

    def _reset_round_state(self):
        for node in self.nodes:
            node.reset_round()
        self.ledger.clear()
        self._round_counts.clear()

    def _begin_round(self) -> int:
        self._round_id += 1
        self.round_number += 1
        self.running = True
        self._finalized = False
        self._reset_round_state()
        self.log(f"Starting {self.mode.value} {self.variant.value} consensus round {self.round_number}",
                 event="round_started", level=Severity.CONSENSUS,
                 mode=self.mode.value, variant=self.variant.value)
        return self._round_id

    def _cancel_pending(self):
        self._round_id += 1
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

    async def _run_schedule(self, token: int, schedule):
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            for offset, step in schedule:
                await asyncio.sleep(max(0.0, start + offset - loop.time()))
                if token != self._round_id:
                    return
                step()
        finally:
            self._tasks.pop(token, None)

    async def _settle(self):
        await asyncio.sleep(max(0.0, self.config.settle_delay))

    def _abandoned(self) -> Outcome:
        return self._report(SimulationError("Round was reset before the step completed"))

    #  Messaging

    def _send(self, sender: Node, receiver: Node, kind: MsgType, value: int, inbox: Optional[str] = None):
        message = Message(
            sender_id=sender.node_id,
            receiver_id=receiver.node_id,
            kind=kind,
            value=value,
            emitted_at=self.clock(),
            transit_duration=self.transit_duration,
        )
        self.ledger.record(message)
        self._round_counts[kind.value] += 1

        if inbox == "prepare":
            receiver.prepare_inbox.append(InboxEntry(sender.node_id, value))
        elif inbox == "commit":
            receiver.commit_inbox.append(InboxEntry(sender.node_id, value))

    def _broadcast(self, sender: Node, kind: MsgType, value: int, inbox: Optional[str] = None):
        for receiver in self.nodes:
            if receiver.node_id != sender.node_id:
                self._send(sender, receiver, kind, value, inbox)

    def _log_byzantine(self, node: Node, decision: ByzantineDecision, kind: MsgType):
        if decision.behavior == Behavior.FLIP:
            text = f"Byzantine node {node.node_id} sends conflicting {kind.value}: {decision.value}"
        elif decision.behavior == Behavior.RANDOM:
            text = f"Byzantine node {node.node_id} sends random {kind.value}: {decision.value}"
        else:
            text = f"Byzantine node {node.node_id} stays silent in {kind.value}"
        self.log(text, event="byzantine_decision", level=Severity.FAILURE, node=node.node_id,
                 behavior=decision.behavior.value, value=decision.value, kind=kind.value,
                 received=node.received_value)

    #  Phase transitions

    def _first_phase(self):
        """idle -> pre-prepare / proposal"""
        phase = self.phases[0]
        kind = self.message_kinds[0]
        self.phase = phase

        leader = self.leader
        leader.proposed_value = leader.initial_value
        leader.phase = phase
        value = leader.proposed_value
        self.log(f"Phase 1 ({PHASE_LABELS[phase]}): leader {leader.node_id} proposes value {value}",
                 event="phase_transition", level=Severity.CONSENSUS,
                 phase=phase.value, leader=leader.node_id, value=value)

        for replica in self.nodes:
            if replica.node_id == leader.node_id:
                continue
            replica.proposed_value = value
            replica.received_value = value
            replica.phase = phase
            self._send(leader, replica, kind, value)

    def _second_phase(self):
        """pre-prepare -> prepare / proposal -> voting"""
        phase = self.phases[1]
        kind = self.message_kinds[1]
        self.phase = phase

        leader = self.leader
        proposed = leader.proposed_value
        self.log(f"Phase 2 ({PHASE_LABELS[phase]}): replicas broadcasting {kind.value} messages",
                 event="phase_transition", level=Severity.CONSENSUS,
                 phase=phase.value, leader=leader.node_id, value=proposed)

        for sender in self.nodes:
            if sender.node_id == leader.node_id:
                continue
            sender.phase = phase

            if sender.is_byzantine:
                decision = self.byzantine.decide(sender, proposed)
                self._log_byzantine(sender, decision, kind)
                if decision.silent:
                    continue
                value = decision.value
            else:
                value = sender.received_value
                self.log(f"Honest node {sender.node_id} sends {kind.value}: {value}",
                         event="vote_sent", level=Severity.CONSENSUS,
                         node=sender.node_id, value=value, kind=kind.value)

            sender.sent_value = value
            self._broadcast(sender, kind, value, inbox="prepare")

    def _third_phase(self):
        """prepare -> commit / voting -> decision"""
        phase = self.phases[2]
        kind = self.message_kinds[2]
        self.phase = phase

        leader = self.leader
        proposed = leader.proposed_value
        n = len(self.nodes)
        f = self.byzantine_count
        required = Quorum.required_prepares(n, f)
        self.log(f"Phase 3 ({PHASE_LABELS[phase]}): processing {self.message_kinds[1].value} "
                 f"messages (need {required})",
                 event="phase_transition", level=Severity.CONSENSUS,
                 phase=phase.value, leader=leader.node_id, value=proposed, required=required)

        for node in self.nodes:
            if node.node_id == leader.node_id:
                continue
            node.phase = phase

            tally = Quorum.prepare_tally(node, proposed, self.config.count_own_vote)
            if tally < required:
                self.log(f"Node {node.node_id} received only {tally} {self.message_kinds[1].value} "
                         f"messages (need {required}), cannot proceed to {kind.value}",
                         event="quorum_missed", node=node.node_id, tally=tally, required=required)
                continue

            node.prepared_value = proposed
            if node.is_byzantine:
                decision = self.byzantine.decide(node, proposed)
                self._log_byzantine(node, decision, kind)
                if decision.silent:
                    continue
                value = decision.value
            else:
                value = proposed
                self.log(f"Honest node {node.node_id} received {tally} {self.message_kinds[1].value} "
                         f"messages, entering {kind.value} phase",
                         event="quorum_met", level=Severity.CONSENSUS,
                         node=node.node_id, tally=tally, required=required, value=value)

            node.sent_commit_value = value
            self._broadcast(node, kind, value, inbox="commit")

        # Leader commits unconditionally
        leader.phase = phase
        leader.prepared_value = proposed
        leader.sent_commit_value = proposed
        self.log(f"Leader {leader.node_id} enters {kind.value} phase for value {proposed}",
                 event="quorum_met", level=Severity.CONSENSUS,
                 node=leader.node_id, value=proposed)
        self._broadcast(leader, kind, proposed, inbox="commit")

    def _finalize(self) -> Optional[RoundResult]:
        """commit -> idle / decision -> idle"""
        if self._finalized:
            self.log(f"Round {self.round_number} already finalized", event="finalize_skipped")
            return self.last_result
        self._finalized = True

        leader = self.leader
        proposed = leader.proposed_value
        n = len(self.nodes)
        f = self.byzantine_count
        required_prepares = Quorum.required_prepares(n, f)
        required = Quorum.required_commits(n, f)
        self.log("Finalizing consensus...", event="finalizing", level=Severity.CONSENSUS, required=required)

        consensus_nodes = []
        for node in self.nodes:
            if not node.is_honest:
                continue
            tally = Quorum.commit_tally(node, proposed, self.config.count_own_vote)
            if tally >= required:
                node.committed_value = proposed
                consensus_nodes.append(node.node_id)
                self.log(f"Node {node.node_id} commits value {proposed} ({tally} commits received)",
                         event="node_committed", level=Severity.CONSENSUS,
                         node=node.node_id, value=proposed, tally=tally)
            else:
                self.log(f"Node {node.node_id} cannot commit (only {tally} commits, need {required})",
                         event="node_uncommitted", node=node.node_id, tally=tally, required=required)

        honest_count = sum(1 for node in self.nodes if node.is_honest)
        success = Quorum.consensus_reached(consensus_nodes, honest_count)
        if success:
            self.log(f"Consensus REACHED: all {honest_count} honest nodes agreed on value {proposed}",
                     event="consensus_reached", level=Severity.CONSENSUS,
                     nodes=consensus_nodes, value=proposed, required=required)
        else:
            self.log(f"Consensus FAILED: only {len(consensus_nodes)}/{honest_count} honest nodes "
                     f"could commit (need {required} commits)",
                     event="consensus_failed", level=Severity.FAILURE,
                     nodes=consensus_nodes, value=proposed, required=required)
        self.log(f"Network: {n} total nodes ({honest_count} honest, {f} Byzantine)",
                 event="network_summary", nodes=n, honest=honest_count, byzantine=f)

        result = RoundResult(
            round_number=self.round_number,
            variant=self.variant,
            success=success,
            proposed_value=proposed,
            leader_id=leader.node_id,
            consensus_nodes=consensus_nodes,
            honest_count=honest_count,
            required_prepares=required_prepares,
            required_commits=required,
            committed_values={node.node_id: node.committed_value for node in self.nodes},
            total_messages=sum(self._round_counts.values()),
            messages_per_phase=dict(self._round_counts),
            byzantine_nodes=[node.node_id for node in self.nodes if node.is_byzantine],
            logs=list(self.logs),
        )
        self.last_result = result
        self.phase = Phase.IDLE
        self.running = False
        return result
