import random
import unittest
from bftsim.models import Node, NodeRole, Message, MsgType, ByzantinePolicy, ByzantineProbabilities
from bftsim.byzantine import ByzantineBehavior, Behavior
from bftsim.ledger import MessageLedger

class ScriptedRandom:
    """Returns queued draws so probability buckets can be hit exactly."""
    def __init__(self, draws, bit=1):
        self.draws = list(draws)
        self.bit = bit

    def random(self):
        return self.draws.pop(0)

    def randint(self, a, b):
        return self.bit

class TestNodeCommunication(unittest.TestCase):
    def setUp(self):
        self.node_honest = Node(node_id=0, role=NodeRole.HONEST)
        self.node_flip = Node(node_id=1, role=NodeRole.BYZANTINE, byzantine_strategy=ByzantinePolicy.FLIP)
        self.node_silent = Node(node_id=2, role=NodeRole.BYZANTINE, byzantine_strategy=ByzantinePolicy.SILENT)
        self.node_random = Node(node_id=3, role=NodeRole.BYZANTINE, byzantine_strategy=ByzantinePolicy.RANDOM)
        self.node_prob = Node(node_id=4, role=NodeRole.BYZANTINE, byzantine_strategy=ByzantinePolicy.PROBABILISTIC)
        self.behavior = ByzantineBehavior(random.Random(3))

    def test_honest_value_untouched(self):
        """An honest sender always transmits the reference value."""
        print("\n Testing Honest Node Behavior ")
        decision = self.behavior.decide(self.node_honest, 0)
        self.assertEqual(decision.behavior, Behavior.HONEST)
        self.assertEqual(decision.value, 0)

    def test_byzantine_flip(self):
        print("\n Testing Byzantine Flip ")
        self.assertEqual(self.behavior.decide(self.node_flip, 0).value, 1)
        self.assertEqual(self.behavior.decide(self.node_flip, 1).value, 0)

    def test_byzantine_silent_failure(self):
        """A silent byzantine node sends nothing."""
        print("\n Testing Byzantine Silent Failure ")
        decision = self.behavior.decide(self.node_silent, 0)
        print(f"Result: {'Message Dropped' if decision.silent else 'Message Sent'}")
        self.assertTrue(decision.silent)
        self.assertIsNone(decision.value)

    def test_byzantine_random(self):
        for _ in range(20):
            decision = self.behavior.decide(self.node_random, 0)
            self.assertEqual(decision.behavior, Behavior.RANDOM)
            self.assertIn(decision.value, (0, 1))

    def test_probability_buckets(self):
        """Draws fall into flip / random / silent by cumulative boundary."""
        print("\n Testing Probabilistic Byzantine Buckets ")
        behavior = ByzantineBehavior(ScriptedRandom([0.1, 0.4, 0.69, 0.71, 0.99]))
        outcomes = [behavior.decide(self.node_prob, 0).behavior for _ in range(5)]
        print(f"Outcomes: {[o.value for o in outcomes]}")
        self.assertEqual(outcomes, [Behavior.FLIP, Behavior.RANDOM, Behavior.RANDOM,
                                    Behavior.SILENT, Behavior.SILENT])

    def test_custom_probabilities(self):
        behavior = ByzantineBehavior(ScriptedRandom([0.5, 0.95]),
                                     ByzantineProbabilities(flip=0.9, random=0.0))
        self.assertEqual(behavior.decide(self.node_prob, 1).value, 0)
        self.assertTrue(behavior.decide(self.node_prob, 1).silent)

    def test_each_phase_redraws(self):
        """Nothing is cached between calls: the same node can change behavior."""
        behavior = ByzantineBehavior(ScriptedRandom([0.9, 0.1]))
        first = behavior.decide(self.node_prob, 0)
        second = behavior.decide(self.node_prob, 0)
        self.assertTrue(first.silent)
        self.assertEqual(second.behavior, Behavior.FLIP)

    def test_policy_override(self):
        decision = self.behavior.decide(self.node_flip, 0, policy=ByzantinePolicy.SILENT)
        self.assertTrue(decision.silent)

    def test_message_rejects_self_send(self):
        with self.assertRaises(ValueError):
            Message(sender_id=1, receiver_id=1, kind=MsgType.PREPARE, value=0, emitted_at=0.0)

    def test_message_progress(self):
        print("\n Testing Message Progress ")
        msg = Message(0, 1, MsgType.COMMIT, 0, emitted_at=10.0, transit_duration=2.0)
        self.assertEqual(msg.progress(9.0), 0.0)
        self.assertEqual(msg.progress(11.0), 0.5)
        self.assertEqual(msg.progress(15.0), 1.0)

    def test_ledger_expiry(self):
        """Expired messages leave the ledger, the sent counter stays."""
        print("\n Testing Message Ledger Expiry ")
        ledger = MessageLedger()
        ledger.record(Message(0, 1, MsgType.PRE_PREPARE, 0, emitted_at=0.0, transit_duration=1.0))
        ledger.record(Message(0, 2, MsgType.PRE_PREPARE, 0, emitted_at=0.5, transit_duration=1.0))
        ledger.record(Message(1, 2, MsgType.PREPARE, 0, emitted_at=0.5, transit_duration=1.0))

        progress = [round(p, 2) for _, p in ledger.in_flight(0.75)]
        self.assertEqual(progress, [0.75, 0.25, 0.25])

        removed = ledger.expire(1.0)
        self.assertEqual(removed, 1)
        self.assertEqual(len(ledger), 2)
        self.assertEqual(ledger.message_count, 3)
        self.assertEqual(dict(ledger.phase_counts), {"pre-prepare": 2, "prepare": 1})

        ledger.reset()
        self.assertEqual(len(ledger), 0)
        self.assertEqual(ledger.message_count, 0)

if __name__ == "__main__":
    unittest.main()
