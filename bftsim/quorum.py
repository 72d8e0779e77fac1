import math
from typing import Iterable, Sequence

from .models import Node, InboxEntry

class Quorum:
    """
    Threshold arithmetic for the consensus round.
    Everything here is a pure function of node/fault counts or of a node's
    inbox, so it can be checked without running the engine.
    """

    @staticmethod
    def max_faulty(n: int) -> int:
        """
        Byzantine fault bound.
        Formula: f <= floor((n-1)/3)
        """
        if n < 1: return 0
        return math.floor((n - 1) / 3)

    @staticmethod
    def clamp_faulty(n: int, requested: int) -> int:
        return min(max(requested, 0), Quorum.max_faulty(n))

    @staticmethod
    def required_prepares(n: int, f: int) -> int:
        """
        Matching prepares a replica needs before it commits.
        Formula: floor((n+f)/2) + 1
        """
        return math.floor((n + f) / 2) + 1

    @staticmethod
    def required_commits(n: int, f: int) -> int:
        """
        Matching commits an honest node needs before it decides.
        Formula: floor((n+f)/2) + 1
        """
        return math.floor((n + f) / 2) + 1

    @staticmethod
    def count_matching(entries: Iterable[InboxEntry], value: int) -> int:
        return sum(1 for entry in entries if entry.value == value)

    @staticmethod
    def prepare_tally(node: Node, proposed_value: int, count_own_vote: bool = True) -> int:
        """
        Matching prepares in the node's inbox plus the leader's implicit prepare
        (the leader never sends one) and, optionally, the node's own prepare.
        """
        total = Quorum.count_matching(node.prepare_inbox, proposed_value) + 1
        if count_own_vote and node.sent_value == proposed_value:
            total += 1
        return total

    @staticmethod
    def commit_tally(node: Node, proposed_value: int, count_own_vote: bool = True) -> int:
        total = Quorum.count_matching(node.commit_inbox, proposed_value)
        if not node.is_leader:
            total += 1
        if count_own_vote and node.sent_commit_value == proposed_value:
            total += 1
        return total

    @staticmethod
    def consensus_reached(consensus_nodes: Sequence[int], honest_count: int) -> bool:
        """
        Every non-Byzantine node must have committed; a partial commit is a failure.
        """
        return len(consensus_nodes) > 0 and len(consensus_nodes) == honest_count

    @staticmethod
    def tolerance_summary(n: int, f: int) -> str:
        bound = Quorum.max_faulty(n)
        status = "Safe" if f <= bound else "Unsafe"
        return f"f={f} <= floor(({n}-1)/3) = {bound} ({status})"

    @staticmethod
    def expected_messages(n: int) -> int:
        """
        Messages of a fully honest PBFT round.
        1. Pre-prepare: leader -> replicas (n-1)
        2. Prepare: every replica -> every other node ((n-1) * (n-1))
        3. Commit: every node -> every other node (n * (n-1))
        """
        if n < 2: return 0
        return (n - 1) + (n - 1) * (n - 1) + n * (n - 1)
