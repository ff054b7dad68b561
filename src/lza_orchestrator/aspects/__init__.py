"""Partition-aware mutations applied to synthesized resource graphs.

Typical use::

    tree = ConstructTree.from_template("Accel-SecurityStack", template)
    apply_aspects(tree, settings)
    template = tree.to_template()
"""

from .graph import ConstructNode, ConstructTree, Resource
from .visitor import apply_aspects

__all__ = ["ConstructNode", "ConstructTree", "Resource", "apply_aspects"]
