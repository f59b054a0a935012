# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Visualization of the clique tree for debugging incremental updates.

Two steps, as for factor-graph plots:

1. **Exporting tree data**
   `export_bayes_tree_for_vis()` turns a `BayesTree` into `VisClique` and
   `VisLink` lists. Each clique gets a label ``"frontals | separator"``
   (variable keys when an `Ordering` is given, indices otherwise) and a 2D
   position from a layered layout: depth on the y axis, leaves spread
   evenly on the x axis, parents centered above their children.

2. **Rendering**
   `plot_bayes_tree()` draws the forest with Matplotlib. Cliques rebuilt by
   the most recent update (pass their handles as ``highlight``) are drawn in
   a different color, which makes the affected region of an update visible
   at a glance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import matplotlib.pyplot as plt

from isam_jit.core.ordering import Ordering

from .bayes_tree import BayesTree


@dataclass
class VisClique:
    """Lightweight clique representation for visualization."""
    handle: int
    label: str
    position: Tuple[float, float]
    depth: int


@dataclass
class VisLink:
    parent: int
    child: int


def _names(indices: Iterable[int], ordering: Optional[Ordering]) -> str:
    if ordering is None:
        return ",".join(str(j) for j in indices)
    return ",".join(str(ordering.key(j)) for j in indices)


def export_bayes_tree_for_vis(
    tree: BayesTree,
    ordering: Optional[Ordering] = None,
) -> Tuple[List[VisClique], List[VisLink]]:
    """
    Lay out every clique of ``tree``.

    :param tree: The clique tree to visualize.
    :param ordering: Optional ordering used to print variable keys.
    :return: (cliques, links) in pre-order.
    """
    x_of: Dict[int, float] = {}
    depth_of: Dict[int, int] = {}
    next_leaf = [0.0]

    def place(h: int, depth: int) -> float:
        depth_of[h] = depth
        children = tree[h].children
        if not children:
            x_of[h] = next_leaf[0]
            next_leaf[0] += 1.0
        else:
            xs = [place(c, depth + 1) for c in children]
            x_of[h] = 0.5 * (min(xs) + max(xs))
        return x_of[h]

    for root in tree.roots:
        place(root, 0)
        next_leaf[0] += 0.5  # gap between trees of a forest

    cliques: List[VisClique] = []
    links: List[VisLink] = []
    for h in tree:
        clique = tree[h]
        label = _names(clique.frontals, ordering)
        if clique.separator:
            label += " | " + _names(clique.separator, ordering)
        cliques.append(VisClique(handle=h, label=label, position=(x_of[h], -float(depth_of[h])), depth=depth_of[h]))
        for c in clique.children:
            links.append(VisLink(parent=h, child=c))
    return cliques, links


def plot_bayes_tree(
    tree: BayesTree,
    ordering: Optional[Ordering] = None,
    highlight: Iterable[int] = (),
    show: bool = True,
):
    """
    Draw the clique tree as a layered diagram.

    :param tree: The clique tree to visualize.
    :param ordering: Optional ordering used to print variable keys.
    :param highlight: Clique handles to draw in the highlight color.
    :param show: Call ``plt.show()`` after drawing.
    :return: The Matplotlib figure.
    """
    cliques, links = export_bayes_tree_for_vis(tree, ordering)
    highlight = set(highlight)
    pos = {c.handle: c.position for c in cliques}

    fig, ax = plt.subplots()
    for link in links:
        (xa, ya), (xb, yb) = pos[link.parent], pos[link.child]
        ax.plot([xa, xb], [ya, yb], color="gray", linewidth=0.8, alpha=0.6)

    for c in cliques:
        color = "C3" if c.handle in highlight else "C0"
        ax.scatter(c.position[0], c.position[1], s=40, c=color, zorder=3)
        ax.text(c.position[0], c.position[1] + 0.12, c.label, fontsize=7, ha="center")

    ax.set_title(f"Clique tree ({len(cliques)} cliques, {len(tree.roots)} roots)")
    ax.set_xticks([])
    ax.set_ylabel("depth")
    if cliques:
        max_depth = max(c.depth for c in cliques)
        ax.set_ylim(-max_depth - 0.5, 0.5)

    fig.tight_layout()
    if show:
        plt.show()
    return fig
