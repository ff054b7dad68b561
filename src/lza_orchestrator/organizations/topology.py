"""AWS Organizations topology loading and organizational unit creation.

This module walks the organization from its root down to the nesting
limit, flattening organizational units into nodes named by their
slash-joined path (``Workloads/Prod``), and creates configured units
that do not exist yet.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings
from ..core.partition import EnvironmentPartition, get_global_region
from ..core.throttle import throttling_backoff
from .models import OrganizationalUnitNode


MAX_OU_DEPTH = 5
ROOT_NAME = "Root"


class TopologyError(Exception):
    """Raised when the organization tree cannot be read or extended."""
    pass


class OrganizationTopology:
    """Reads and extends the AWS Organizations unit hierarchy.

    Nodes are rebuilt from the live API on every call. A unit created a
    moment ago may not be visible yet; callers that create units keep
    their own record of the ids they were given.
    """

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 logger: Optional[logging.Logger] = None) -> None:
        """Initialize topology loader.

        Args:
            aws_client: Configured AWS client manager
            settings: Accelerator runtime settings
            logger: Execution-scoped logger
        """
        self.aws_client = aws_client
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self._org_client = None
        self._root_id: Optional[str] = None

    def _get_client(self):
        """Get Organizations client in the partition's global region."""
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations', get_global_region(self.settings.partition)
            )
        return self._org_client

    def _call(self, operation: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        return throttling_backoff(operation, self.settings.retry)

    def _paginate(self, method: str, result_key: str, **kwargs: Any) -> List[Dict[str, Any]]:
        """Call a list operation until no continuation token remains."""
        client = self._get_client()
        items: List[Dict[str, Any]] = []
        next_token = None
        while True:
            params = dict(kwargs)
            if next_token:
                params['NextToken'] = next_token
            response = self._call(lambda: getattr(client, method)(**params))
            items.extend(response.get(result_key, []))
            next_token = response.get('NextToken')
            if not next_token:
                return items

    def get_root_id(self) -> str:
        """Get the organization root id.

        Raises:
            TopologyError: When the organization has no root
        """
        if self._root_id is None:
            try:
                roots = self._paginate('list_roots', 'Roots')
            except ClientError as e:
                raise TopologyError(f"Failed to list organization roots: {e}")
            if not roots:
                raise TopologyError("Organization root not found")
            self._root_id = roots[0]['Id']
        return self._root_id

    def load_all(self) -> List[OrganizationalUnitNode]:
        """Walk the tree breadth-first and flatten every unit.

        Returns:
            Nodes ordered by level, parents before children

        Raises:
            TopologyError: When listing fails
        """
        root_id = self.get_root_id()
        nodes: List[OrganizationalUnitNode] = []
        frontier = [(root_id, "")]

        for level in range(1, MAX_OU_DEPTH + 1):
            next_frontier = []
            for parent_id, parent_path in frontier:
                try:
                    children = self._paginate(
                        'list_organizational_units_for_parent',
                        'OrganizationalUnits',
                        ParentId=parent_id,
                    )
                except ClientError as e:
                    raise TopologyError(
                        f"Failed to list organizational units under {parent_id}: {e}"
                    )
                for child in children:
                    path = f"{parent_path}/{child['Name']}" if parent_path else child['Name']
                    nodes.append(OrganizationalUnitNode(
                        name=path,
                        id=child['Id'],
                        arn=child['Arn'],
                        parent_id=parent_id,
                        level=level,
                    ))
                    next_frontier.append((child['Id'], path))
            if not next_frontier:
                break
            frontier = next_frontier

        return nodes

    def load_organizational_units(
        self,
        desired_names: Iterable[str],
        partition: Optional[EnvironmentPartition] = None,
    ) -> List[OrganizationalUnitNode]:
        """Load units whose qualified path is in the desired set.

        Matching is exact and case-sensitive. Units that exist in AWS but
        are not configured are dropped.

        Args:
            desired_names: Configured unit paths
            partition: Partition to read from; defaults to the settings'

        Returns:
            Matching nodes in traversal order
        """
        if partition is not None and partition != self.settings.partition:
            self._org_client = self.aws_client.get_client(
                'organizations', get_global_region(partition)
            )
        wanted = set(desired_names)
        nodes = [node for node in self.load_all() if node.name in wanted]
        self.logger.info("Loaded %d of %d configured organizational units", len(nodes), len(wanted))
        return nodes

    def ou_id_map(self, nodes: Iterable[OrganizationalUnitNode]) -> Dict[str, str]:
        """Map unit paths (and ``Root``) to their ids."""
        mapping = {ROOT_NAME: self.get_root_id()}
        mapping.update({node.name: node.id for node in nodes})
        return mapping

    def create_missing(self, paths: Iterable[str], table=None) -> Dict[str, str]:
        """Create configured units that do not exist, parents first.

        Args:
            paths: Configured unit paths
            table: Optional provisioning table receiving the id of every
                configured unit

        Returns:
            Mapping of every configured path (and ``Root``) to its id; units
            that exist but are not configured are left out

        Raises:
            TopologyError: When a parent unit is missing or creation fails
        """
        known = self.ou_id_map(self.load_all())
        ordered = sorted(set(paths), key=lambda p: (p.count('/'), p))

        for path in ordered:
            if path not in known:
                parent_path, _, name = path.rpartition('/')
                parent_id = known.get(parent_path or ROOT_NAME)
                if parent_id is None:
                    raise TopologyError(
                        f"Parent organizational unit '{parent_path}' not found for '{path}'"
                    )
                known[path] = self._create_organizational_unit(parent_id, name)
                self.logger.info("Created organizational unit %s (%s)", path, known[path])
                print(f"✓ Created organizational unit: {path}")
            if table is not None:
                table.put_organizational_unit(path, known[path])

        configured = self.ou_id_map(self.load_organizational_units(ordered))
        # Units created above may not be listed yet
        configured.update({path: known[path] for path in ordered if path not in configured})
        return configured

    def _create_organizational_unit(self, parent_id: str, name: str) -> str:
        client = self._get_client()
        try:
            response = self._call(lambda: client.create_organizational_unit(
                ParentId=parent_id,
                Name=name,
                Tags=[{'Key': 'Accelerator', 'Value': self.settings.prefix}],
            ))
            return response['OrganizationalUnit']['Id']
        except ClientError as e:
            if e.response['Error']['Code'] != 'DuplicateOrganizationalUnitException':
                raise TopologyError(f"Failed to create organizational unit '{name}': {e}")
        # Created concurrently or not yet listed on the previous walk
        for child in self._paginate(
            'list_organizational_units_for_parent', 'OrganizationalUnits', ParentId=parent_id
        ):
            if child['Name'] == name:
                return child['Id']
        raise TopologyError(f"Organizational unit '{name}' reported as duplicate but not found")

    def list_accounts(self) -> List[Dict[str, Any]]:
        """List every account in the organization.

        Raises:
            TopologyError: When listing fails
        """
        try:
            return self._paginate('list_accounts', 'Accounts')
        except ClientError as e:
            raise TopologyError(f"Failed to list accounts: {e}")

    def list_account_parents(self, nodes: Iterable[OrganizationalUnitNode]) -> Dict[str, str]:
        """Map account ids to their current parent id.

        Args:
            nodes: Units to inspect in addition to the root

        Returns:
            Account id to parent (root or unit) id
        """
        parents: Dict[str, str] = {}
        for parent_id in [self.get_root_id()] + [node.id for node in nodes]:
            try:
                accounts = self._paginate('list_accounts_for_parent', 'Accounts', ParentId=parent_id)
            except ClientError as e:
                raise TopologyError(f"Failed to list accounts under {parent_id}: {e}")
            for account in accounts:
                parents[account['Id']] = parent_id
        return parents
