"""
Visualization tools for MPOPF results
"""
import matplotlib.pyplot as plt
import networkx as nx
import numpy as np

from .core.optimize import get_results


def _finish(fig, save_path, label):
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"{label} saved to {save_path}")
    else:
        plt.show()
    return fig


def plot_convergence(iterations, ax=None):
    """Plot objective and primal infeasibility per solver iteration"""
    if ax is None:
        _, ax = plt.subplots(figsize=(8, 5))

    if not iterations:
        ax.text(0.5, 0.5, 'No iteration log available', ha='center', va='center',
                transform=ax.transAxes)
        ax.set_axis_off()
        return ax

    its = [it['iteration'] for it in iterations]
    ax.plot(its, [it['objective'] for it in iterations], color='tab:blue', marker='o',
            markersize=3, label='Objective')
    ax.set_xlabel('Iteration', fontsize=12)
    ax.set_ylabel('Objective', fontsize=12, color='tab:blue')

    ax2 = ax.twinx()
    ax2.semilogy(its, [max(it['inf_pr'], 1e-16) for it in iterations], color='tab:red',
                 linestyle='--', label='Primal infeasibility')
    ax2.set_ylabel('Primal infeasibility', fontsize=12, color='tab:red')
    ax.set_title('Solver Convergence', fontsize=14)
    return ax


def plot_dispatch(results, ax=None):
    """Plot stacked generator dispatch per period"""
    if ax is None:
        _, ax = plt.subplots(figsize=(10, 6))

    generation = results['generation']
    periods = sorted({t for _, t in generation})
    gens = sorted({g for g, _ in generation})

    bottom = np.zeros(len(periods))
    colors = plt.cm.tab20(np.linspace(0, 1, max(len(gens), 1)))
    for color, g in zip(colors, gens):
        output = np.array([max(generation[(g, t)], 0.0) for t in periods])
        if not output.any():
            continue
        ax.bar(periods, output, bottom=bottom, color=color, label=f'Gen {g}')
        bottom += output

    ax.plot(periods, [results['total_load'][t] for t in periods], color='black',
            linestyle='--', marker='o', label='Load')
    ax.set_xlabel('Period', fontsize=12)
    ax.set_ylabel('Power (MW)', fontsize=12)
    ax.set_title('Generation Dispatch by Period', fontsize=14)
    ax.set_xticks(periods)
    ax.legend(fontsize=8, loc='upper left', bbox_to_anchor=(1.0, 1.0))
    return ax


def plot_optimization(mp, iterations, save_path=None):
    """Plot solver convergence next to the resulting dispatch"""
    fig, (ax_conv, ax_disp) = plt.subplots(1, 2, figsize=(16, 6))
    plot_convergence(iterations, ax=ax_conv)

    results = get_results(mp)
    if results is not None:
        plot_dispatch(results, ax=ax_disp)
    else:
        ax_disp.text(0.5, 0.5, 'No solution available', ha='center', va='center',
                     transform=ax_disp.transAxes)
        ax_disp.set_axis_off()

    fig.suptitle(mp.model.name, fontsize=14)
    fig.tight_layout()
    return _finish(fig, save_path, 'Optimization plot')


def plot_network(mp, results=None, period=1, save_path=None):
    """Plot the power network, branches coloured by utilization in one period"""
    ref = mp.ref

    G = nx.Graph()
    G.add_nodes_from(ref.bus_ids)

    edge_colors = []
    edge_widths = []
    for l, br in sorted(ref.branch.items()):
        G.add_edge(br['f_bus'], br['t_bus'])

        utilization = 0.0
        rating = br['rate_a'] * ref.base_mva
        if results and 'flows' in results and rating > 0:
            utilization = abs(results['flows'].get((l, period), 0.0)) / rating

        if utilization > 0.9:
            edge_colors.append('red')
            edge_widths.append(3.0)
        elif utilization > 0.7:
            edge_colors.append('orange')
            edge_widths.append(2.0)
        else:
            edge_colors.append('gray')
            edge_widths.append(1.0)

    pos = nx.spring_layout(G, seed=42)
    gen_buses = {g['gen_bus'] for g in ref.gen.values()}
    node_colors = ['lightgreen' if i in gen_buses else 'lightblue' for i in G.nodes]

    fig, ax = plt.subplots(figsize=(12, 9))
    edges = [(br['f_bus'], br['t_bus']) for _, br in sorted(ref.branch.items())]
    nx.draw_networkx_nodes(G, pos, node_size=200, node_color=node_colors, alpha=0.8, ax=ax)
    nx.draw_networkx_edges(G, pos, edgelist=edges, edge_color=edge_colors, width=edge_widths,
                           alpha=0.6, ax=ax)
    nx.draw_networkx_labels(G, pos, {i: str(i) for i in G.nodes}, font_size=8, ax=ax)

    ax.set_title(f'Network (period {period})\nRed: >90% utilized, Orange: >70% utilized', fontsize=14)
    ax.axis('off')
    fig.tight_layout()
    return _finish(fig, save_path, 'Network plot')
