"""Generic post-order walk applying partition and global rules."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.config import AcceleratorSettings
from .graph import ConstructTree
from .rules import rules_for


@dataclass
class AspectReport:
    modified: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)


def apply_aspects(tree: ConstructTree, settings: AcceleratorSettings,
                  logger: Optional[logging.Logger] = None) -> AspectReport:
    """Apply every matching rule to every resource in the tree.

    Rules only look at the node they are given, so a single pass reaches
    the fixed point. Pruned resources are removed afterwards together
    with the ``DependsOn`` edges that referenced them.

    Args:
        tree: Construct tree to mutate
        settings: Settings carrying the partition and global policy
        logger: Execution-scoped logger

    Returns:
        AspectReport listing modified and pruned logical ids
    """
    logger = logger or logging.getLogger(__name__)
    report = AspectReport()

    for node in tree.root.walk():
        if node.resource is None:
            continue
        original = node.resource
        current = original
        for rule in rules_for(current.type, settings):
            current = rule(current, settings)
            if current is None:
                break
        if current is None:
            report.pruned.append(original.logical_id)
        elif current != original:
            node.resource = current
            report.modified.append(original.logical_id)

    if report.pruned:
        tree.remove(report.pruned)
    logger.debug(
        "Aspects on %s: %d modified, %d pruned",
        tree.stack_name, len(report.modified), len(report.pruned)
    )
    return report
