from typing import Optional, Sequence

from graphviz import Digraph

from .params import Tree


def visualize_tree(tree: Tree, filename: Optional[str] = None, format: str = "png",
                   feature_names: Optional[Sequence[str]] = None) -> Digraph:
    """
    Visualize a tree using Graphviz.

    Parameters:
    - tree: Tree
        The tree to visualize.
    - filename: str, optional
        Output file name (without extension). Nothing is rendered when omitted.
    - format: str
        The format of the output file (e.g., "png", "pdf").
    - feature_names: sequence of str, optional
        Names used in place of X_j in split labels.

    Returns:
    - graphviz.Digraph
        The Graphviz object representing the tree.
    """
    dot = Digraph(comment="Tree Visualization", format=format)

    def label(var):
        return feature_names[var] if feature_names is not None else f"X_{var}"

    stack = [tree.root]
    while stack:
        node = stack.pop()
        if node.is_leaf:
            dot.node(str(node.id), f"Leaf\nValue: {node.mean:.4g}", shape="box")
            continue
        dot.node(str(node.id), f"{label(node.variable_index)} <= {node.cutpoint:.4g}")
        left, right = node.left_child, node.right_child
        dot.edge(str(node.id), str(left.id), label="Left")
        dot.edge(str(node.id), str(right.id), label="Right")
        stack.extend([right, left])

    if filename is not None:
        dot.render(filename, cleanup=True)
    return dot
