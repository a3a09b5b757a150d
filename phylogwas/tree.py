"""Phylogeny parsing and node/edge indexing.

Nodes are numbered the way downstream association tests consume them: tips
``0..n_tips-1`` in Newick order, then the root (``n_tips``) and the remaining
internal nodes in preorder. Edges are stored as parallel ``edge_parent`` /
``edge_child`` arrays in cladewise order, so reversing the edge list is a valid
postorder traversal.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from .errors import InvalidTreeError, preview


@dataclass(frozen=True)
class PhyloTree:
    tip_labels: List[str]
    node_labels: List[str]
    edge_parent: np.ndarray
    edge_child: np.ndarray
    edge_length: np.ndarray
    children_by_node: List[List[int]]
    parent_by_node: List[Optional[int]]

    @property
    def n_tips(self) -> int:
        return len(self.tip_labels)

    @property
    def n_nodes(self) -> int:
        return len(self.node_labels)

    @property
    def n_total(self) -> int:
        return self.n_tips + self.n_nodes

    @property
    def n_edges(self) -> int:
        return int(self.edge_parent.shape[0])

    @property
    def root(self) -> int:
        return self.n_tips

    def is_tip(self, node_id: int) -> bool:
        return node_id < self.n_tips

    def label(self, node_id: int) -> str:
        if node_id < self.n_tips:
            return self.tip_labels[node_id]
        return self.node_labels[node_id - self.n_tips]

    def postorder_edges(self) -> range:
        """Edge indices ordered so every child edge precedes its parent edge."""
        return range(self.n_edges - 1, -1, -1)


@dataclass
class _Node:
    label: str
    length: float
    children: List[int]


class _NewickParser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.i = 0
        self.n = len(text)
        self.nodes: List[_Node] = []

    def parse(self) -> Tuple[int, List[_Node]]:
        root = self._parse_subtree()
        self._skip_ws()
        if self.i < self.n and self.text[self.i] == ";":
            self.i += 1
        self._skip_ws()
        if self.i != self.n:
            raise InvalidTreeError(f"Unexpected trailing text in Newick at pos {self.i}")
        return root, self.nodes

    def _peek(self) -> str:
        if self.i >= self.n:
            return ""
        return self.text[self.i]

    def _consume(self, ch: str) -> None:
        if self._peek() != ch:
            raise InvalidTreeError(f"Expected '{ch}' at pos {self.i}, found '{self._peek()}'")
        self.i += 1

    def _skip_ws(self) -> None:
        while self.i < self.n and self.text[self.i].isspace():
            self.i += 1

    def _parse_label(self) -> str:
        self._skip_ws()
        if self._peek() in {"'", '"'}:
            quote = self._peek()
            self.i += 1
            start = self.i
            while self.i < self.n and self.text[self.i] != quote:
                self.i += 1
            label = self.text[start:self.i]
            self._consume(quote)
            return label
        start = self.i
        while self.i < self.n and self.text[self.i] not in ",():;":
            self.i += 1
        return self.text[start:self.i].strip()

    def _parse_length(self) -> float:
        self._skip_ws()
        if self._peek() != ":":
            return float("nan")
        self.i += 1
        self._skip_ws()
        start = self.i
        while self.i < self.n and self.text[self.i] not in ",();":
            self.i += 1
        raw = self.text[start:self.i].strip()
        if not raw:
            return float("nan")
        try:
            return float(raw)
        except ValueError as exc:
            raise InvalidTreeError(f"Invalid branch length '{raw}' at pos {start}") from exc

    def _parse_subtree(self) -> int:
        self._skip_ws()
        if self._peek() == "(":
            self._consume("(")
            children: List[int] = []
            while True:
                children.append(self._parse_subtree())
                self._skip_ws()
                if self._peek() == ",":
                    self.i += 1
                    continue
                break
            self._skip_ws()
            self._consume(")")
            label = self._parse_label()
            length = self._parse_length()
            node_id = len(self.nodes)
            self.nodes.append(_Node(label=label, length=length, children=children))
            return node_id

        label = self._parse_label()
        if not label:
            raise InvalidTreeError(f"Empty tip label at pos {self.i}")
        length = self._parse_length()
        node_id = len(self.nodes)
        self.nodes.append(_Node(label=label, length=length, children=[]))
        return node_id


def parse_newick(text: str) -> PhyloTree:
    """Parse a Newick string into the tips-first node layout (no validation)."""
    root, nodes = _NewickParser(text.strip()).parse()

    n_tips = sum(1 for node in nodes if not node.children)
    new_id = [-1] * len(nodes)
    next_tip = 0
    next_internal = n_tips

    # Iterative preorder keeps deep caterpillar trees off the recursion limit.
    stack = [root]
    order: List[int] = []
    while stack:
        old = stack.pop()
        order.append(old)
        if nodes[old].children:
            new_id[old] = next_internal
            next_internal += 1
        else:
            new_id[old] = next_tip
            next_tip += 1
        stack.extend(reversed(nodes[old].children))

    n_total = len(nodes)
    tip_labels = [""] * n_tips
    node_labels = [""] * (n_total - n_tips)
    children_by_node: List[List[int]] = [[] for _ in range(n_total)]
    parent_by_node: List[Optional[int]] = [None] * n_total
    edge_parent: List[int] = []
    edge_child: List[int] = []
    edge_length: List[float] = []

    for old in order:
        node = nodes[old]
        nid = new_id[old]
        if node.children:
            node_labels[nid - n_tips] = node.label
        else:
            tip_labels[nid] = node.label
        for child_old in node.children:
            children_by_node[nid].append(new_id[child_old])
            parent_by_node[new_id[child_old]] = nid

    # Preorder visit order gives the cladewise edge list.
    for old in order:
        nid = new_id[old]
        parent = parent_by_node[nid]
        if parent is None:
            continue
        edge_parent.append(parent)
        edge_child.append(nid)
        edge_length.append(nodes[old].length)

    return PhyloTree(
        tip_labels=tip_labels,
        node_labels=node_labels,
        edge_parent=np.asarray(edge_parent, dtype=np.int64),
        edge_child=np.asarray(edge_child, dtype=np.int64),
        edge_length=np.asarray(edge_length, dtype=float),
        children_by_node=children_by_node,
        parent_by_node=parent_by_node,
    )


def read_first_tree_newick(path: str | Path) -> str:
    """Return the Newick text of a tree file.

    NEXUS files yield their first TREE entry; anything else is read as plain
    Newick up to the first ';'.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tree file not found: {path}")

    text = path.read_text(encoding="utf-8")
    if not text.lstrip().lower().startswith("#nexus"):
        semi = text.find(";")
        if semi == -1:
            raise InvalidTreeError(f"Malformed Newick (missing ';') in: {path}")
        return text[: semi + 1].strip()

    started = False
    chunks: List[str] = []
    for line in text.splitlines():
        if not started:
            if "TREE" in line.upper() and "=" in line:
                started = True
                after = line.split("=", 1)[1].strip()
                chunks.append(after)
                if ";" in after:
                    break
        else:
            part = line.strip()
            chunks.append(part)
            if ";" in part:
                break

    if not chunks:
        raise InvalidTreeError(f"No TREE entry found in: {path}")

    joined = " ".join(chunks)
    semi = joined.find(";")
    if semi == -1:
        raise InvalidTreeError(f"Malformed TREE entry (missing ';') in: {path}")
    # Drop a leading rooting comment such as [&R].
    joined = joined[: semi + 1]
    if joined.startswith("["):
        joined = joined[joined.find("]") + 1 :].strip()
    return joined


def load_tree(path: str | Path, validate: bool = True) -> PhyloTree:
    tree = parse_newick(read_first_tree_newick(path))
    if validate:
        validate_tree(tree)
    return tree


def validate_tree(tree: PhyloTree) -> None:
    """Require a rooted, fully bifurcating tree with finite non-negative branch lengths."""
    if tree.n_tips < 2:
        raise InvalidTreeError(f"Tree must have at least 2 tips; found {tree.n_tips}")

    root_children = tree.children_by_node[tree.root]
    if len(root_children) != 2:
        raise InvalidTreeError(
            f"Tree must be rooted: root has {len(root_children)} children (expected 2)"
        )

    unresolved = [
        node_id
        for node_id in range(tree.n_tips, tree.n_total)
        if len(tree.children_by_node[node_id]) != 2
    ]
    if unresolved:
        raise InvalidTreeError(
            "Tree must be fully bifurcating; internal nodes without exactly two children: "
            f"{preview(unresolved)}"
        )

    bad: List[str] = []
    for idx, length in enumerate(tree.edge_length):
        if not math.isfinite(length) or length < 0.0:
            bad.append(f"{tree.label(int(tree.edge_child[idx])) or idx}={length}")
    if bad:
        raise InvalidTreeError(
            "Invalid branch lengths in tree; require finite and >= 0: " f"{preview(bad)}"
        )

    empty = [i for i, label in enumerate(tree.tip_labels) if not label]
    if empty:
        raise InvalidTreeError(f"Empty tip labels at tip indices: {preview(empty)}")

    seen = set()
    dupes: List[str] = []
    for label in tree.tip_labels:
        if label in seen:
            dupes.append(label)
        seen.add(label)
    if dupes:
        raise InvalidTreeError(f"Duplicate tip labels in tree: {preview(sorted(set(dupes)))}")


def tips_below(tree: PhyloTree) -> List[List[int]]:
    """Tip ids under each node, in tip order."""
    below: List[List[int]] = [[] for _ in range(tree.n_total)]
    for tip in range(tree.n_tips):
        below[tip] = [tip]
    for e in tree.postorder_edges():
        parent = int(tree.edge_parent[e])
        below[parent].extend(below[int(tree.edge_child[e])])
    for node_id in range(tree.n_tips, tree.n_total):
        below[node_id].sort()
    return below


def shared_path_covariance(tree: PhyloTree, edge_length: np.ndarray | None = None) -> np.ndarray:
    """Root-to-MRCA path lengths for every tip pair (Brownian-motion covariance)."""
    lengths = tree.edge_length if edge_length is None else edge_length
    below = tips_below(tree)
    cov = np.zeros((tree.n_tips, tree.n_tips), dtype=float)
    for e in range(tree.n_edges):
        tips = below[int(tree.edge_child[e])]
        cov[np.ix_(tips, tips)] += lengths[e]
    return cov
