"""Placeholder substitution for policy document templates.

Two token families are resolved:

* fixed tokens (``${ACCELERATOR_PREFIX}``, ``${PARTITION}``,
  ``${MANAGEMENT_ACCOUNT_ACCESS_ROLE}``, ``${ACCELERATOR_NAME}``);
* lookups of the form ``${ACCEL_LOOKUP::<TYPE>:<SCOPE>[:<NAME>]}`` where
  TYPE is one of VPC_ID, VPCE_ID, ACCOUNT_ID or CUSTOM and SCOPE is one
  of ACCOUNT, OU or ORG.

Lookups resolve to a comma-joined list of quoted values. The output is a
pure function of the template, the settings and the account topology.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..core.config import AccountConfig, VpcConfig


LOOKUP_PATTERN = re.compile(r"\$\{ACCEL_LOOKUP::([a-zA-Z0-9-:_]*)\}")

SCOPE_ACCOUNT = "ACCOUNT"
SCOPE_OU = "OU"
SCOPE_ORG = "ORG"


class PolicyValidationError(Exception):
    """Raised when a policy cannot be deployed as configured."""
    pass


class PolicyLookupError(PolicyValidationError):
    """Raised when a lookup token is malformed or cannot be resolved."""
    pass


class AccountDirectory:
    """Account names, ids and units known to the current run.

    Args:
        accounts: Configured accounts, mandatory accounts first
        account_ids: Account name to AWS id for accounts that exist
    """

    def __init__(self, accounts: Iterable[AccountConfig], account_ids: Mapping[str, str]) -> None:
        self.accounts = list(accounts)
        self.account_ids = dict(account_ids)

    def get_account_id(self, name: str) -> str:
        try:
            return self.account_ids[name]
        except KeyError:
            raise PolicyLookupError(f"Account '{name}' has no known account id")

    def get_account_ids(self) -> List[str]:
        """All known ids in configuration order."""
        return [self.account_ids[a.name] for a in self.accounts if a.name in self.account_ids]

    def get_accounts_for_ou(self, organizational_unit: str) -> List[AccountConfig]:
        return [a for a in self.accounts if a.organizational_unit == organizational_unit]


class NetworkDirectory:
    """VPC and VPC endpoint ids keyed by the owning account id."""

    def __init__(self, vpcs: Iterable[VpcConfig], accounts: AccountDirectory) -> None:
        self.vpc_ids: Dict[str, List[str]] = {}
        self.vpc_endpoint_ids: Dict[str, List[str]] = {}
        for vpc in vpcs:
            account_id = accounts.get_account_id(vpc.account)
            self.vpc_ids.setdefault(account_id, []).append(vpc.vpc_id)
            self.vpc_endpoint_ids.setdefault(account_id, []).extend(vpc.endpoint_ids)


def normalize(value: Union[str, List[str]]) -> str:
    """Render an additional replacement value.

    Single-item lists become a quoted string because AWS collapses
    one-element arrays in stored policies.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, list) and len(value) == 1:
        return f'"{value[0]}"'
    return json.dumps(value)


def _validate_lookup(lookup_type: str, scope: str, parts: List[str]) -> None:
    if lookup_type not in ("VPC_ID", "VPCE_ID", "ACCOUNT_ID"):
        return
    if (
        (scope in (SCOPE_ACCOUNT, SCOPE_OU) and len(parts) != 3)
        or (scope == SCOPE_ORG and len(parts) != 2)
    ):
        raise PolicyLookupError(f"Invalid replacement options {','.join(parts)}")


def _scoped_ids(id_map: Dict[str, List[str]], accounts: AccountDirectory,
                scope: str, parts: List[str]) -> List[str]:
    if scope == SCOPE_ORG:
        return [value for values in id_map.values() for value in values]
    if scope == SCOPE_ACCOUNT:
        return list(id_map.get(accounts.get_account_id(parts[2]), []))
    if scope == SCOPE_OU:
        result: List[str] = []
        for account in accounts.get_accounts_for_ou(parts[2]):
            account_id = accounts.account_ids.get(account.name)
            result.extend(id_map.get(account_id, []))
        return result
    return []


def resolve_lookup(token: str, accounts: Optional[AccountDirectory] = None,
                   network: Optional[NetworkDirectory] = None) -> Union[str, List[str]]:
    """Resolve one ``${ACCEL_LOOKUP::...}`` token.

    Args:
        token: Full token text including ``${...}``
        accounts: Account directory, required for account and VPC lookups
        network: Network directory, required for VPC lookups

    Returns:
        A list of values, or the token itself for CUSTOM lookups

    Raises:
        PolicyLookupError: When the token is malformed or its data is missing
    """
    match = LOOKUP_PATTERN.fullmatch(token)
    if not match:
        return token

    parts = match.group(1).split(':')
    if len(parts) < 2:
        raise PolicyLookupError(f"Invalid POLICY_LOOKUP_VALUE: {match.group(1)}")
    lookup_type, scope = parts[0], parts[1]
    _validate_lookup(lookup_type, scope, parts)

    if lookup_type in ("VPC_ID", "VPCE_ID"):
        if network is None or accounts is None:
            raise PolicyLookupError(
                f"Missing network and accounts configuration for {lookup_type} lookup {token}"
            )
        id_map = network.vpc_ids if lookup_type == "VPC_ID" else network.vpc_endpoint_ids
        return _scoped_ids(id_map, accounts, scope, parts)

    if lookup_type == "ACCOUNT_ID":
        if accounts is None:
            raise PolicyLookupError(f"Missing accounts configuration for lookup {token}")
        if scope == SCOPE_ORG:
            return accounts.get_account_ids()
        if scope == SCOPE_ACCOUNT:
            return [accounts.get_account_id(parts[2])]
        if scope == SCOPE_OU:
            return [
                accounts.account_ids[a.name]
                for a in accounts.get_accounts_for_ou(parts[2])
                if a.name in accounts.account_ids
            ]
        return []

    if lookup_type == "CUSTOM":
        # Filled from additional replacements, or at runtime by the consumer
        return token

    raise PolicyLookupError(f"Invalid POLICY_LOOKUP type: {lookup_type}")


def policy_replacements(
    content: str,
    accelerator_prefix: str,
    management_account_access_role: str,
    partition: str,
    accelerator_name: str,
    additional_replacements: Optional[Dict[str, Any]] = None,
    accounts: Optional[AccountDirectory] = None,
    network: Optional[NetworkDirectory] = None,
) -> str:
    """Materialize a policy document template.

    Additional replacements are applied first, then fixed tokens, then
    lookups. A lookup that resolves to nothing is removed together with
    any comma and whitespace in front of it so the JSON stays valid.

    Args:
        content: Template text
        accelerator_prefix: Value for ``${ACCELERATOR_PREFIX}``
        management_account_access_role: Value for
            ``${MANAGEMENT_ACCOUNT_ACCESS_ROLE}``
        partition: Value for ``${PARTITION}``
        accelerator_name: Value for ``${ACCELERATOR_NAME}``
        additional_replacements: Literal token to value (string or list)
        accounts: Account directory for account lookups
        network: Network directory for VPC lookups

    Returns:
        Materialized document text

    Raises:
        PolicyLookupError: When a lookup cannot be resolved
    """
    for key, value in (additional_replacements or {}).items():
        rendered = normalize(value)
        content = content.replace(key, rendered)

    fixed = {
        "${MANAGEMENT_ACCOUNT_ACCESS_ROLE}": management_account_access_role,
        "${ACCELERATOR_NAME}": accelerator_name,
        "${ACCELERATOR_PREFIX}": accelerator_prefix,
        "${PARTITION}": partition,
    }
    for token, value in fixed.items():
        content = content.replace(token, value)

    seen = []
    for match in LOOKUP_PATTERN.finditer(content):
        if match.group(0) not in seen:
            seen.append(match.group(0))

    for token in seen:
        value = resolve_lookup(token, accounts, network)
        rendered = value if isinstance(value, str) else ",".join(f'"{v}"' for v in value)
        if not rendered:
            content = re.sub(r",?\s*" + re.escape(token), "", content)
        else:
            content = content.replace(token, rendered)

    return content
