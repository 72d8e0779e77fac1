import dataclasses
import pandas as pd
from typing import List, Optional
from bftsim.models import SimulationConfig, Variant, RoundResult
from bftsim.engine import ConsensusEngine
from bftsim.quorum import Quorum

class ExperimentRunner:
    """
    Experiment Runner
    Runs batches of complete rounds to compare the two variants
    """

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed

    async def run_single(self, config: SimulationConfig) -> Optional[RoundResult]:
        # Batch runs never need the manual settling delay
        config = dataclasses.replace(config, settle_delay=0.0)
        engine = ConsensusEngine(config)
        outcome = await engine.run_round()
        return outcome.value if outcome.ok else None

    async def run_batch_byzantine_sweep(self, n: int, max_f: int, trials: int = 5,
                                        variants: Optional[List[Variant]] = None):
        """
        Sweeps byzantine count from 0 to max_f (clamped to the fault bound)
        Reproduces Success Rate vs Byzantine Nodes plots
        """
        results = []
        variants = variants or [Variant.PBFT, Variant.AGREEMENT]
        max_f = Quorum.clamp_faulty(n, max_f)

        for variant in variants:
            for f_count in range(max_f + 1):
                success_count = 0
                completed = 0
                avg_msgs = 0

                for trial in range(trials):
                    config = SimulationConfig(
                        node_count=n,
                        fault_count=f_count,
                        variant=variant,
                        seed=None if self.seed is None else self.seed + trial,
                    )
                    res = await self.run_single(config)
                    if res is None:
                        continue
                    completed += 1
                    if res.success: success_count += 1
                    avg_msgs += res.total_messages

                # Rates are over completed rounds only
                success_rate = (success_count / completed) * 100 if completed else 0.0
                avg_msgs = avg_msgs / completed if completed else 0.0

                results.append({
                    "Variant": variant.value,
                    "ByzantineNodes": f_count,
                    "SuccessRate": success_rate,
                    "AvgMessages": avg_msgs
                })

        return pd.DataFrame(results, columns=["Variant", "ByzantineNodes", "SuccessRate", "AvgMessages"])

    async def run_complexity_analysis(self, n_range: List[int], variant: Variant = Variant.PBFT):
        """
        Compares measured message counts of fault-free rounds with the closed form
        """
        results = []
        for n in n_range:
            config = SimulationConfig(node_count=n, fault_count=0, variant=variant, seed=self.seed)
            res = await self.run_single(config)
            results.append({
                "Variant": variant.value,
                "N": n,
                "Messages": res.total_messages if res else 0,
                "Expected": Quorum.expected_messages(n)
            })
        return pd.DataFrame(results)
