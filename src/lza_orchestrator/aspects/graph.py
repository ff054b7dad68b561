"""Synthesized resource graph.

Stacks arrive as CloudFormation template dictionaries. Resources are
arranged into a construct tree using their ``aws:cdk:path`` metadata
(falling back to a flat tree), mutated in place by the aspect visitor and
rendered back to a template.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


CDK_PATH_KEY = "aws:cdk:path"


@dataclass
class Resource:
    """A single CloudFormation resource."""

    logical_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    deletion_policy: Optional[str] = None
    update_replace_policy: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None

    @classmethod
    def from_template(cls, logical_id: str, body: Dict[str, Any]) -> "Resource":
        depends_on = body.get("DependsOn", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            logical_id=logical_id,
            type=body["Type"],
            properties=copy.deepcopy(body.get("Properties", {})),
            depends_on=list(depends_on),
            deletion_policy=body.get("DeletionPolicy"),
            update_replace_policy=body.get("UpdateReplacePolicy"),
            metadata=copy.deepcopy(body.get("Metadata", {})),
            condition=body.get("Condition"),
        )

    def to_template(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"Type": self.type}
        if self.properties:
            body["Properties"] = self.properties
        if self.depends_on:
            body["DependsOn"] = self.depends_on
        if self.deletion_policy:
            body["DeletionPolicy"] = self.deletion_policy
        if self.update_replace_policy:
            body["UpdateReplacePolicy"] = self.update_replace_policy
        if self.metadata:
            body["Metadata"] = self.metadata
        if self.condition:
            body["Condition"] = self.condition
        return body


@dataclass
class ConstructNode:
    """A node of the construct tree; leaves usually carry a resource."""

    id: str
    children: List["ConstructNode"] = field(default_factory=list)
    resource: Optional[Resource] = None

    def child(self, node_id: str) -> "ConstructNode":
        """Get or create a direct child by id."""
        for node in self.children:
            if node.id == node_id and node.resource is None:
                return node
        node = ConstructNode(node_id)
        self.children.append(node)
        return node

    def walk(self) -> Iterator["ConstructNode"]:
        """Yield nodes in post-order (children before their parent)."""
        for node in list(self.children):
            yield from node.walk()
        yield self


class ConstructTree:
    """A stack's construct tree plus the template sections around it."""

    def __init__(self, stack_name: str, root: ConstructNode,
                 template: Optional[Dict[str, Any]] = None) -> None:
        self.stack_name = stack_name
        self.root = root
        self._template = template or {}

    @classmethod
    def from_template(cls, stack_name: str, template: Dict[str, Any]) -> "ConstructTree":
        """Build a tree from a CloudFormation template dictionary.

        Args:
            stack_name: Name of the stack the template belongs to
            template: Template with a ``Resources`` section

        Returns:
            ConstructTree owning deep copies of the resources
        """
        root = ConstructNode(stack_name)
        for logical_id, body in template.get("Resources", {}).items():
            resource = Resource.from_template(logical_id, body)
            path = resource.metadata.get(CDK_PATH_KEY, "")
            segments = [s for s in path.split("/") if s][1:-1] if path else []
            parent = root
            for segment in segments:
                parent = parent.child(segment)
            parent.children.append(ConstructNode(logical_id, resource=resource))
        rest = {k: copy.deepcopy(v) for k, v in template.items() if k != "Resources"}
        return cls(stack_name, root, rest)

    def resources(self) -> List[Resource]:
        return [node.resource for node in self.root.walk() if node.resource is not None]

    def find(self, logical_id: str) -> Optional[Resource]:
        for resource in self.resources():
            if resource.logical_id == logical_id:
                return resource
        return None

    def remove(self, logical_ids: List[str]) -> None:
        """Drop resources and every ``DependsOn`` edge pointing at them."""
        removed = set(logical_ids)

        def prune(node: ConstructNode) -> None:
            node.children = [
                c for c in node.children
                if not (c.resource is not None and c.resource.logical_id in removed)
            ]
            for c in node.children:
                prune(c)

        prune(self.root)
        for resource in self.resources():
            resource.depends_on = [d for d in resource.depends_on if d not in removed]

    def to_template(self) -> Dict[str, Any]:
        template = copy.deepcopy(self._template)
        template["Resources"] = {r.logical_id: r.to_template() for r in self.resources()}
        return template
