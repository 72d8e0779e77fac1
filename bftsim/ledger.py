import collections
from typing import List, Tuple

from .models import Message

class MessageLedger:
    """
    Append log of messages in flight.
    Only used for animation timing and message statistics; quorum decisions
    read node inboxes, never this ledger.
    """

    def __init__(self):
        self.messages: List[Message] = []
        self.message_count = 0
        self.phase_counts = collections.defaultdict(int)

    def record(self, message: Message):
        self.messages.append(message)
        self.message_count += 1
        self.phase_counts[message.kind.value] += 1

    def expire(self, now: float) -> int:
        """Drop every message that has arrived. Returns how many were removed."""
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.progress(now) < 1]
        return before - len(self.messages)

    def in_flight(self, now: float) -> List[Tuple[Message, float]]:
        return [(m, m.progress(now)) for m in self.messages]

    def clear(self):
        self.messages = []

    def reset(self):
        self.clear()
        self.message_count = 0
        self.phase_counts = collections.defaultdict(int)

    def __len__(self):
        return len(self.messages)
