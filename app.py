import gradio as gr
import numpy as np
from matplotlib.figure import Figure
from matplotlib.lines import Line2D
from bftsim.models import SimulationConfig, Mode, Variant, NodeRole
from bftsim.engine import ConsensusEngine
from experiments.runner import ExperimentRunner

# Setup
engine = ConsensusEngine(SimulationConfig(node_count=7, fault_count=2))
runner = ExperimentRunner()

ROLE_COLORS = {
    NodeRole.HONEST: "tab:green",
    NodeRole.BYZANTINE: "tab:red",
    NodeRole.LEADER: "tab:blue",
}

MSG_COLORS = {
    "pre-prepare": "blue",
    "prepare": "green",
    "commit": "brown",
    "proposal": "blue",
    "response": "orange",
    "decision": "purple",
}

def node_positions(n):
    """Nodes on a circle, starting from the top."""
    angles = np.arange(n) * 2 * np.pi / max(n, 1) - np.pi / 2
    return np.cos(angles), np.sin(angles)

def plot_network(eng: ConsensusEngine):
    """
    Draws nodes by role and every in-flight message at its current progress.
    """
    nodes = eng.nodes
    # Not registered with pyplot
    fig = Figure(figsize=(7, 7))
    ax = fig.subplots()
    if not nodes:
        ax.set_axis_off()
        return fig

    xs, ys = node_positions(len(nodes))

    for msg, progress in eng.in_flight():
        x = xs[msg.sender_id] + (xs[msg.receiver_id] - xs[msg.sender_id]) * progress
        y = ys[msg.sender_id] + (ys[msg.receiver_id] - ys[msg.sender_id]) * progress
        ax.plot(x, y, "o", color=MSG_COLORS.get(msg.kind.value, "gray"), markersize=6, alpha=0.7)
        ax.text(x, y, str(msg.value), fontsize=6, ha="center", va="center", color="white")

    for node in nodes:
        x, y = xs[node.node_id], ys[node.node_id]
        ax.scatter([x], [y], s=900, color=ROLE_COLORS[node.role], edgecolors="black", zorder=3)
        label = str(node.node_id)
        if node.committed_value is not None:
            label += f"\n={node.committed_value}"
        ax.text(x, y, label, fontsize=9, ha="center", va="center", color="white", zorder=4)

    legend_elements = [Line2D([0], [0], marker="o", color="w", markerfacecolor=c, markersize=10, label=r.value)
                       for r, c in ROLE_COLORS.items()]
    ax.legend(handles=legend_elements, loc="upper right", fontsize="small")
    ax.set_title(eng.phase_label())
    ax.set_xlim(-1.3, 1.3)
    ax.set_ylim(-1.3, 1.3)
    ax.set_aspect("equal")
    ax.set_axis_off()
    return fig

def render(outcome=None):
    status = engine.status()
    output_text = "\n".join(f"{k}: {v}" for k, v in status.items())
    if outcome is not None and not outcome.ok and outcome.error is not None:
        output_text += f"\n\nERROR: {outcome.error}"
    if engine.last_result is not None:
        result = engine.last_result
        output_text += f"\n\nLast round {result.round_number}: success={result.success}"
        output_text += f"\nCommitted: {result.committed_values}"
        output_text += f"\nPhases: {result.messages_per_phase}"
    return output_text, "\n".join(engine.logs), plot_network(engine)

def initialize(n, f, mode, variant):
    engine.apply_variant(Variant(variant))
    engine.mode = Mode(mode)
    return render(engine.initialize_network(int(n), int(f)))

def reassign():
    return render(engine.reassign_roles())

def reset():
    return render(engine.reset_network())

async def start(mode):
    return render(engine.start_round(Mode(mode)))

async def next_step():
    return render(await engine.advance_manual_step())

def refresh():
    engine.expire_messages()
    return render()

def plot_sweep(df, column, ylabel, title, marker):
    """One line per variant of a sweep column against the Byzantine count."""
    fig = Figure()
    ax = fig.subplots()
    for variant, subset in df.groupby("Variant"):
        ax.plot(subset["ByzantineNodes"], subset[column], label=variant, marker=marker)
    ax.set_xlabel("Number of Byzantine Nodes")
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.legend()
    ax.grid(True)
    return fig

async def run_batch_experiment(n, max_f, trials):
    df = await runner.run_batch_byzantine_sweep(int(n), int(max_f), int(trials))

    fig1 = plot_sweep(df, "SuccessRate", "Success Rate (%)", f"Fault Tolerance Comparison (n={int(n)})", "o")
    fig2 = plot_sweep(df, "AvgMessages", "Avg Total Messages", "Communication Overhead", "x")
    return fig1, fig2, df

# UI Definition

with gr.Blocks(title="Byzantine Consensus Simulator") as demo:
    gr.Markdown(
        """
        # Byzantine Consensus Simulator
        *   **PBFT**: the leader pre-prepares a value, replicas exchange prepare messages, then commit messages. A node needs floor((n+f)/2)+1 matching messages to move on.
        *   **Agreement**: the same three steps named proposal, voting and decision, with Byzantine nodes flipping, randomizing or withholding their votes.
        *   Consensus is reached only if every honest node commits the leader's value.
        """
    )

    with gr.Tabs():
        # TAB 1: Step-by-step round
        with gr.TabItem("Simulation"):
            with gr.Row():
                with gr.Column(scale=1):
                    n_input = gr.Slider(1, 16, value=7, step=1, label="Total Nodes (n)")
                    f_input = gr.Slider(0, 5, value=2, step=1, label="Byzantine Nodes (f)")
                    mode_input = gr.Radio([m.value for m in Mode], label="Mode", value=Mode.MANUAL.value)
                    variant_input = gr.Radio([v.value for v in Variant], label="Variant", value=Variant.PBFT.value)
                    btn_init = gr.Button("Initialize Network")
                    btn_reassign = gr.Button("Reassign Roles")
                    btn_start = gr.Button("Start Consensus", variant="primary")
                    btn_step = gr.Button("Next Step")
                    btn_refresh = gr.Button("Refresh")
                    btn_reset = gr.Button("Reset Network")

                with gr.Column(scale=1):
                    status_output = gr.Textbox(label="Status", lines=12)
                    log_output = gr.Textbox(label="Logs", lines=16)

            with gr.Row():
                net_output = gr.Plot(label="Network")

            outputs = [status_output, log_output, net_output]
            btn_init.click(initialize, [n_input, f_input, mode_input, variant_input], outputs)
            btn_reassign.click(reassign, None, outputs)
            btn_start.click(start, [mode_input], outputs)
            btn_step.click(next_step, None, outputs)
            btn_refresh.click(refresh, None, outputs)
            btn_reset.click(reset, None, outputs)

        # TAB 2: Batch Experiments
        with gr.TabItem("Batch Experiments"):
            gr.Markdown("Compare PBFT and agreement variants under growing Byzantine counts.")
            with gr.Row():
                batch_n = gr.Number(label="Fixed N", value=10)
                batch_max_f = gr.Number(label="Sweep Byzantine up to", value=3)
                batch_trials = gr.Number(label="Trials per point", value=10)
                btn_batch = gr.Button("Run Batch Experiment")

            with gr.Row():
                plot_success = gr.Plot(label="Success Rate")
                plot_msgs = gr.Plot(label="Message Complexity")

            data_table = gr.Dataframe(label="Experiment Data")

            btn_batch.click(run_batch_experiment,
                           [batch_n, batch_max_f, batch_trials],
                           [plot_success, plot_msgs, data_table])

if __name__ == "__main__":
    demo.launch()
