"""Unit tests for policy template replacements."""

import json
import pytest

from lza_orchestrator.core.config import AccountConfig, VpcConfig
from lza_orchestrator.policies.replacements import (
    AccountDirectory,
    NetworkDirectory,
    PolicyLookupError,
    normalize,
    policy_replacements,
    resolve_lookup,
)


ACCOUNTS = [
    AccountConfig(name='Management', email='management@example.com', organizational_unit='Root'),
    AccountConfig(name='Audit', email='audit@example.com', organizational_unit='Security'),
    AccountConfig(name='Prod1', email='prod1@example.com', organizational_unit='Workloads'),
    AccountConfig(name='Prod2', email='prod2@example.com', organizational_unit='Workloads'),
]
ACCOUNT_IDS = {
    'Management': '111111111111',
    'Audit': '333333333333',
    'Prod1': '444444444444',
    'Prod2': '555555555555',
}


def render(content, **kwargs):
    return policy_replacements(
        content,
        accelerator_prefix='AWSAccelerator',
        management_account_access_role='AWSControlTowerExecution',
        partition='aws',
        accelerator_name='Accelerator',
        **kwargs,
    )


@pytest.fixture
def accounts():
    return AccountDirectory(ACCOUNTS, ACCOUNT_IDS)


@pytest.fixture
def network(accounts):
    return NetworkDirectory([
        VpcConfig(name='Shared', account='Prod1', vpc_id='vpc-1', endpoint_ids=('vpce-1', 'vpce-2')),
        VpcConfig(name='Edge', account='Audit', vpc_id='vpc-2'),
    ], accounts)


class TestPolicyReplacements:
    """Test cases for policy_replacements."""

    def test_fixed_tokens(self):
        content = '"arn:${PARTITION}:iam::*:role/${ACCELERATOR_PREFIX}-${MANAGEMENT_ACCOUNT_ACCESS_ROLE}"'

        result = render(content)

        assert result == '"arn:aws:iam::*:role/AWSAccelerator-AWSControlTowerExecution"'

    def test_account_id_org_scope(self, accounts):
        result = render('[${ACCEL_LOOKUP::ACCOUNT_ID:ORG}]', accounts=accounts)

        assert json.loads(result) == ['111111111111', '333333333333', '444444444444', '555555555555']

    def test_account_id_account_scope(self, accounts):
        result = render('${ACCEL_LOOKUP::ACCOUNT_ID:ACCOUNT:Audit}', accounts=accounts)

        assert result == '"333333333333"'

    def test_account_id_ou_scope(self, accounts):
        result = render('${ACCEL_LOOKUP::ACCOUNT_ID:OU:Workloads}', accounts=accounts)

        assert result == '"444444444444","555555555555"'

    def test_vpc_lookups(self, accounts, network):
        result = render(
            '{"vpc": [${ACCEL_LOOKUP::VPC_ID:ORG}], "vpce": [${ACCEL_LOOKUP::VPCE_ID:ACCOUNT:Prod1}]}',
            accounts=accounts, network=network,
        )

        assert json.loads(result) == {'vpc': ['vpc-1', 'vpc-2'], 'vpce': ['vpce-1', 'vpce-2']}

    def test_empty_lookup_removes_leading_comma(self, accounts, network):
        content = '["vpce-static", ${ACCEL_LOOKUP::VPCE_ID:OU:Security}]'

        result = render(content, accounts=accounts, network=network)

        assert json.loads(result) == ['vpce-static']

    def test_repeated_token_resolved_everywhere(self, accounts):
        content = '${ACCEL_LOOKUP::ACCOUNT_ID:ACCOUNT:Audit}|${ACCEL_LOOKUP::ACCOUNT_ID:ACCOUNT:Audit}'

        assert render(content, accounts=accounts) == '"333333333333"|"333333333333"'

    def test_additional_replacements_applied_first(self):
        content = '{"region": "${ALLOWED}", "list": ${REGIONS}, "one": ${SINGLE}}'

        result = render(content, additional_replacements={
            '${ALLOWED}': 'us-east-1',
            '${REGIONS}': ['us-east-1', 'us-west-2'],
            '${SINGLE}': ['eu-west-1'],
        })

        assert json.loads(result) == {
            'region': 'us-east-1', 'list': ['us-east-1', 'us-west-2'], 'one': 'eu-west-1'
        }

    def test_custom_lookup_left_in_place(self):
        content = '${ACCEL_LOOKUP::CUSTOM:ORG:thing}'

        assert render(content) == content

    def test_vpc_lookup_without_network_fails(self, accounts):
        with pytest.raises(PolicyLookupError, match="Missing network and accounts configuration"):
            render('${ACCEL_LOOKUP::VPC_ID:ORG}', accounts=accounts)

    def test_account_lookup_without_accounts_fails(self):
        with pytest.raises(PolicyLookupError, match="Missing accounts configuration"):
            render('${ACCEL_LOOKUP::ACCOUNT_ID:ORG}')

    def test_unknown_account_fails(self, accounts):
        with pytest.raises(PolicyLookupError, match="'Nobody' has no known account id"):
            render('${ACCEL_LOOKUP::ACCOUNT_ID:ACCOUNT:Nobody}', accounts=accounts)


class TestResolveLookup:
    """Test cases for resolve_lookup."""

    def test_too_few_parts(self, accounts):
        with pytest.raises(PolicyLookupError, match="Invalid POLICY_LOOKUP_VALUE"):
            resolve_lookup('${ACCEL_LOOKUP::ACCOUNT_ID}', accounts)

    def test_account_scope_requires_name(self, accounts):
        with pytest.raises(PolicyLookupError, match="Invalid replacement options"):
            resolve_lookup('${ACCEL_LOOKUP::ACCOUNT_ID:ACCOUNT}', accounts)

    def test_org_scope_rejects_name(self, accounts):
        with pytest.raises(PolicyLookupError, match="Invalid replacement options"):
            resolve_lookup('${ACCEL_LOOKUP::ACCOUNT_ID:ORG:Audit}', accounts)

    def test_unknown_type(self, accounts):
        with pytest.raises(PolicyLookupError, match="Invalid POLICY_LOOKUP type"):
            resolve_lookup('${ACCEL_LOOKUP::SUBNET_ID:ORG}', accounts)

    def test_non_lookup_returned_unchanged(self):
        assert resolve_lookup('${PARTITION}') == '${PARTITION}'


class TestNormalize:
    """Test cases for normalize."""

    def test_values(self):
        assert normalize('plain') == 'plain'
        assert normalize(['only']) == '"only"'
        assert normalize(['a', 'b']) == '["a", "b"]'
