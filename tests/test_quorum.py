import unittest
from bftsim.models import Node, NodeRole, InboxEntry
from bftsim.quorum import Quorum

class TestQuorum(unittest.TestCase):

    def test_fault_bound(self):
        """Verify f <= floor((n-1)/3) for small networks."""
        print("\n Testing Byzantine Fault Bound ")
        expected = {1: 0, 2: 0, 3: 0, 4: 1, 6: 1, 7: 2, 10: 3, 13: 4}
        for n, f in expected.items():
            print(f"n={n} -> max f={Quorum.max_faulty(n)}")
            self.assertEqual(Quorum.max_faulty(n), f)

    def test_clamp_never_exceeds_bound(self):
        print("\n Testing Fault Count Clamping ")
        for n in range(1, 60):
            for requested in (-3, 0, 1, n // 3, n, 100):
                clamped = Quorum.clamp_faulty(n, requested)
                self.assertLessEqual(clamped, (n - 1) // 3)
                self.assertGreaterEqual(clamped, 0)
        self.assertEqual(Quorum.clamp_faulty(4, 2), 1)
        self.assertEqual(Quorum.clamp_faulty(10, 2), 2)

    def test_thresholds(self):
        """Verify floor((n+f)/2)+1 for prepares and commits."""
        print("\n Testing Quorum Thresholds ")
        # n=4, f=1 -> floor(5/2)+1 = 3
        self.assertEqual(Quorum.required_prepares(4, 1), 3)
        self.assertEqual(Quorum.required_commits(4, 1), 3)
        # n=7, f=2 -> floor(9/2)+1 = 5
        self.assertEqual(Quorum.required_prepares(7, 2), 5)
        # n=10, f=3 -> floor(13/2)+1 = 7
        self.assertEqual(Quorum.required_commits(10, 3), 7)
        self.assertEqual(Quorum.required_prepares(1, 0), 1)

    def test_prepare_tally_counts_leader_and_own_vote(self):
        print("\n Testing Prepare Tally ")
        node = Node(node_id=1)
        node.sent_value = 0
        node.prepare_inbox = [InboxEntry(2, 0), InboxEntry(3, 0), InboxEntry(4, 1)]

        # 2 matching + leader + own prepare
        self.assertEqual(Quorum.prepare_tally(node, 0), 4)
        self.assertEqual(Quorum.prepare_tally(node, 0, count_own_vote=False), 3)

        # A node that sent the other value gets no credit for it
        node.sent_value = 1
        self.assertEqual(Quorum.prepare_tally(node, 0), 3)

    def test_commit_tally_leader_has_no_implicit_credit(self):
        print("\n Testing Commit Tally ")
        leader = Node(node_id=0, role=NodeRole.LEADER)
        leader.sent_commit_value = 0
        leader.commit_inbox = [InboxEntry(1, 0), InboxEntry(2, 0), InboxEntry(3, 1)]
        self.assertEqual(Quorum.commit_tally(leader, 0), 3)
        self.assertEqual(Quorum.commit_tally(leader, 0, count_own_vote=False), 2)

        replica = Node(node_id=1)
        replica.commit_inbox = [InboxEntry(0, 0), InboxEntry(2, 0)]
        # Did not send a commit itself
        self.assertEqual(Quorum.commit_tally(replica, 0), 3)

    def test_consensus_requires_every_honest_node(self):
        print("\n Testing Consensus Verdict ")
        self.assertTrue(Quorum.consensus_reached([0, 1, 2], 3))
        self.assertFalse(Quorum.consensus_reached([0, 2], 3))
        self.assertFalse(Quorum.consensus_reached([], 0))

    def test_tolerance_summary(self):
        self.assertEqual(Quorum.tolerance_summary(4, 1), "f=1 <= floor((4-1)/3) = 1 (Safe)")
        self.assertTrue(Quorum.tolerance_summary(4, 2).endswith("(Unsafe)"))

    def test_expected_messages(self):
        # 3 pre-prepares + 9 prepares + 12 commits
        self.assertEqual(Quorum.expected_messages(4), 24)
        self.assertEqual(Quorum.expected_messages(1), 0)

if __name__ == "__main__":
    unittest.main()
