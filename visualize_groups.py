#!/usr/bin/env python3
"""Draw the resource/territory membership graph coloured by territory group."""
from __future__ import annotations

import argparse
import json
import statistics
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
import networkx as nx

import territory_groups as grouping
from apply_groups import load_groups
from membership_source import CsvMembershipSource

LAYOUT_CHOICES = ("spring", "group", "bipartite")
LABEL_CHOICES = ("full", "short", "none")
UNGROUPED = "#bdbdbd"
RESOURCE_COLOR = "#f0f0f0"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Visualize territory groups")
    ap.add_argument("--memberships", default="memberships.csv", type=Path)
    ap.add_argument("--groups", default="territory_groups.json", type=Path,
                    help="Grouping written by territory_groups.py")
    ap.add_argument("--start", required=True, help="Horizon start used for the grouping")
    ap.add_argument("--end", required=True, help="Horizon end used for the grouping")
    ap.add_argument("--territory", action="append", dest="territories",
                    help="Territory filter used for the grouping (repeatable)")
    ap.add_argument("--config", type=Path, help="JSON CONFIG overrides used for the grouping")
    ap.add_argument("--out-dir", default=Path("group_graphs"), type=Path,
                    help="Directory for generated graph files")
    ap.add_argument("--out-prefix", default="territory_groups", type=str,
                    help="Base filename prefix for images (suffixes are added per layout)")
    ap.add_argument(
        "--layouts",
        nargs="+",
        default=list(LAYOUT_CHOICES),
        choices=LAYOUT_CHOICES,
        help="One or more layout names to render",
    )
    ap.add_argument("--dpi", type=int, default=200, help="Output DPI")
    ap.add_argument(
        "--label-mode",
        choices=LABEL_CHOICES,
        default="short",
        help="Territory labels: id and name, id only, or none",
    )
    ap.add_argument("--skip-analysis", action="store_true", help="Skip the group size histogram")
    return ap.parse_args(argv)


def build_graph(index: grouping.MembershipIndex, groups: grouping.Groups) -> nx.Graph:
    owner = {t: key for key, members in groups.items() for t in members}
    graph = nx.Graph()
    for t in index.territories():
        graph.add_node(
            f"T:{t}",
            kind="territory",
            ident=t,
            label=f"{t}\n{index.name_of(t)}",
            group=owner.get(t),
        )
    for r, ts in index.resource_to_territories.items():
        graph.add_node(f"R:{r}", kind="resource", ident=r, label=r, group=None)
        for t in ts:
            graph.add_edge(f"R:{r}", f"T:{t}")
    if not graph.nodes:
        raise RuntimeError("No memberships to visualize")
    return graph


def territory_nodes(graph: nx.Graph) -> List[str]:
    return [n for n in graph.nodes if graph.nodes[n]["kind"] == "territory"]


def _layout_spring(graph: nx.Graph) -> Dict[str, Tuple[float, float]]:
    if len(graph.nodes) == 1:
        return {next(iter(graph.nodes)): (0.0, 0.0)}
    return nx.spring_layout(graph, seed=42)


def _layout_groups(graph: nx.Graph) -> Dict[str, Tuple[float, float]]:
    """One column per group; resources sit beside the territories they serve."""
    positions: Dict[str, Tuple[float, float]] = {}
    columns: Dict[object, List[str]] = {}
    for node in territory_nodes(graph):
        columns.setdefault(graph.nodes[node]["group"], []).append(node)
    spacing = 4.0
    ordered = sorted(columns.items(), key=lambda kv: (kv[0] is None, kv[0] if kv[0] is not None else 0))
    for col_idx, (_, nodes) in enumerate(ordered):
        for row_idx, node in enumerate(nodes):
            positions[node] = (col_idx * spacing, -row_idx * 2.0)
    for node in graph.nodes:
        if node in positions:
            continue
        anchors = [positions[n] for n in graph.neighbors(node) if n in positions]
        if anchors:
            x = sum(p[0] for p in anchors) / len(anchors) + 1.2
            y = sum(p[1] for p in anchors) / len(anchors) - 0.6
            positions[node] = (x, y)
        else:
            positions[node] = (-spacing, 0.0)
    return positions


def _layout_bipartite(graph: nx.Graph) -> Dict[str, Tuple[float, float]]:
    return nx.bipartite_layout(graph, territory_nodes(graph))


LAYOUT_FNS = {
    "spring": _layout_spring,
    "group": _layout_groups,
    "bipartite": _layout_bipartite,
}


def group_palette(graph: nx.Graph) -> Dict[int, str]:
    keys = sorted({graph.nodes[n]["group"] for n in territory_nodes(graph)} - {None})
    cmap = plt.get_cmap("tab20", max(3, len(keys)))
    return {key: matplotlib.colors.rgb2hex(cmap(idx % cmap.N)) for idx, key in enumerate(keys)}


def _format_labels(graph: nx.Graph, mode: str) -> Dict[str, str]:
    if mode == "none":
        return {}
    labels: Dict[str, str] = {}
    for node in graph.nodes:
        text = graph.nodes[node]["label"]
        if mode == "short":
            text = text.split("\n", 1)[0]
        labels[node] = text
    return labels


def draw_graph_variants(
    graph: nx.Graph,
    out_dir: Path,
    out_prefix: str,
    *,
    layouts: List[str],
    dpi: int,
    label_mode: str,
) -> List[Path]:
    palette = group_palette(graph)
    generated: List[Path] = []
    out_dir.mkdir(parents=True, exist_ok=True)
    prefix = Path(out_prefix).stem or "territory_groups"
    for layout in layouts:
        out_path = out_dir / f"{prefix}_{layout}.png"
        positions = LAYOUT_FNS[layout](graph)
        _render_graph(graph, positions, out_path, palette, dpi=dpi, layout_name=layout, label_mode=label_mode)
        generated.append(out_path)
    return generated


def _render_graph(
    graph: nx.Graph,
    positions: Dict[str, Tuple[float, float]],
    out_path: Path,
    palette: Dict[int, str],
    *,
    dpi: int,
    layout_name: str,
    label_mode: str,
) -> None:
    fig, ax = plt.subplots(figsize=(13, 9))
    territories = territory_nodes(graph)
    territory_set = set(territories)
    resources = [n for n in graph.nodes if n not in territory_set]
    nx.draw_networkx_nodes(
        graph,
        positions,
        nodelist=territories,
        node_color=[palette.get(graph.nodes[n]["group"], UNGROUPED) for n in territories],
        node_size=900,
        node_shape="s",
        alpha=0.92,
        ax=ax,
        linewidths=1.2,
        edgecolors="#2f2f2f",
    )
    if resources:
        nx.draw_networkx_nodes(
            graph,
            positions,
            nodelist=resources,
            node_color=RESOURCE_COLOR,
            node_size=350,
            ax=ax,
            linewidths=0.8,
            edgecolors="#555555",
        )
    labels = _format_labels(graph, label_mode)
    if labels:
        nx.draw_networkx_labels(graph, positions, labels=labels, font_size=7, ax=ax)
    if graph.edges:
        nx.draw_networkx_edges(graph, positions, width=1.0, alpha=0.45, ax=ax, edge_color="#555555")

    handles = [
        Line2D([0], [0], marker="s", linestyle="", markerfacecolor=color, markeredgecolor="#2f2f2f", label=f"Group {key}")
        for key, color in palette.items()
    ]
    if handles:
        ax.legend(handles=handles, loc="upper right", fontsize=8, title="Territory group")
    ax.set_title(f"Territory groups ({layout_name} layout)")
    ax.set_axis_off()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)


def plot_group_sizes(groups: grouping.Groups, out_path: Path, *, dpi: int, max_group_size: Optional[int] = None) -> bool:
    sizes = [len(members) for members in groups.values()]
    if not sizes:
        return False
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.hist(sizes, bins=range(1, max(sizes) + 2), color="#6baed6", edgecolor="#1f1f1f", alpha=0.85)
    ax.set_xlabel("Territories per group")
    ax.set_ylabel("Group count")
    ax.set_title("Group size distribution")
    ax.axvline(statistics.median(sizes), color="#cb181d", linestyle="--", linewidth=1, label="median")
    if max_group_size is not None:
        ax.axvline(max_group_size, color="#31a354", linestyle="-", linewidth=1, label="ceiling")
    ax.legend(loc="upper right", fontsize=8)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return True


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    overrides = json.loads(args.config.read_text(encoding="utf-8")) if args.config else None
    cfg = grouping.build_config(overrides)
    source = CsvMembershipSource(args.memberships, territory_types=cfg["TERRITORY_TYPES"])
    facts = source.fetch_memberships(args.start, args.end, args.territories)
    index = grouping.build_index(facts)
    groups = load_groups(args.groups)
    graph = build_graph(index, groups)
    for path in draw_graph_variants(graph, args.out_dir, args.out_prefix, layouts=args.layouts,
                                    dpi=args.dpi, label_mode=args.label_mode):
        print(f"Wrote graph to {path}")
    if not args.skip_analysis:
        hist_path = args.out_dir / f"{Path(args.out_prefix).stem or 'territory_groups'}_sizes.png"
        if plot_group_sizes(groups, hist_path, dpi=args.dpi, max_group_size=cfg["MAX_GROUP_SIZE"]):
            print(f"Wrote analysis chart to {hist_path}")


if __name__ == "__main__":
    main()
