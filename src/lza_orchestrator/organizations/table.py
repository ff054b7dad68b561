"""DynamoDB persistence for account provisioning state.

Table key schema: ``dataType`` (partition key, e.g. ``mandatoryAccount``)
and ``acceleratorKey`` (sort key, the lower-cased account email or the OU
path). The ``awsKey`` attribute holds the AWS-assigned id. Record details
live in a JSON ``dataBag``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.throttle import RetrySettings, throttling_backoff
from .models import AccountRecord, ProvisioningState


ORGANIZATION_DATA_TYPE = "organization"


class ProvisioningTableError(Exception):
    """Raised when the provisioning table cannot be read or written."""
    pass


class _DynamoTable:
    """Shared client handling for the accelerator tables."""

    def __init__(self, aws_client: AWSClientManager, table_name: str, region: str,
                 retry: Optional[RetrySettings] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.table_name = table_name
        self.region = region
        self.retry = retry or RetrySettings()
        self.logger = logger or logging.getLogger(__name__)
        self._dynamodb_client = None
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @property
    def dynamodb_client(self):
        """Get DynamoDB client with lazy initialization."""
        if self._dynamodb_client is None:
            self._dynamodb_client = self.aws_client.get_client('dynamodb', self.region)
        return self._dynamodb_client

    def _serialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._serializer.serialize(v) for k, v in item.items() if v is not None}

    def _deserialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._deserializer.deserialize(v) for k, v in item.items()}


class ProvisioningTable(_DynamoTable):
    """Reads and writes :class:`AccountRecord` items by account email."""

    def get_record(self, data_type: str, email: str) -> Optional[AccountRecord]:
        """Load the persisted record for an account.

        Args:
            data_type: Account data type (partition key)
            email: Account email (sort key)

        Returns:
            The stored record, or None when the account was never seen

        Raises:
            ProvisioningTableError: When the read fails
        """
        try:
            response = throttling_backoff(
                lambda: self.dynamodb_client.get_item(
                    TableName=self.table_name,
                    Key=self._serialize({'dataType': data_type, 'acceleratorKey': email.lower()}),
                    ConsistentRead=True,
                ),
                self.retry,
            )
        except ClientError as e:
            raise ProvisioningTableError(f"Failed to read record for {email}: {e}")

        item = response.get('Item')
        if not item:
            return None
        return self._to_record(self._deserialize(item))

    def put_record(self, record: AccountRecord) -> None:
        """Persist a record, overwriting any previous version.

        Raises:
            ProvisioningTableError: When the write fails
        """
        data_bag = {
            'name': record.name,
            'organizationalUnit': record.organizational_unit,
            'status': record.state.value,
            'createRequestId': record.create_request_id,
            'failureReason': record.failure_reason,
            'govCloudAccountId': record.govcloud_account_id,
            'preExisting': record.pre_existing,
        }
        data_bag.update(record.extra)
        item = {
            'dataType': record.data_type,
            'acceleratorKey': record.email.lower(),
            'awsKey': record.account_id,
            'dataBag': json.dumps(data_bag, sort_keys=True),
        }
        try:
            throttling_backoff(
                lambda: self.dynamodb_client.put_item(
                    TableName=self.table_name, Item=self._serialize(item)
                ),
                self.retry,
            )
        except ClientError as e:
            raise ProvisioningTableError(f"Failed to write record for {record.email}: {e}")
        self.logger.debug("Persisted %s as %s", record.email, record.state.value)

    def list_records(self, data_type: str) -> List[AccountRecord]:
        """List every record of a data type, following pagination."""
        records = []
        kwargs = {
            'TableName': self.table_name,
            'KeyConditionExpression': 'dataType = :dataType',
            'ExpressionAttributeValues': self._serialize({':dataType': data_type}),
        }
        while True:
            try:
                response = throttling_backoff(lambda: self.dynamodb_client.query(**kwargs), self.retry)
            except ClientError as e:
                raise ProvisioningTableError(f"Failed to query {data_type} records: {e}")
            records.extend(self._to_record(self._deserialize(i)) for i in response.get('Items', []))
            if 'LastEvaluatedKey' not in response:
                return records
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def put_organizational_unit(self, path: str, ou_id: str) -> None:
        """Record the AWS id of an organizational unit by its path."""
        item = {
            'dataType': ORGANIZATION_DATA_TYPE,
            'acceleratorKey': path,
            'awsKey': ou_id,
            'dataBag': json.dumps({'name': path}),
        }
        try:
            throttling_backoff(
                lambda: self.dynamodb_client.put_item(
                    TableName=self.table_name, Item=self._serialize(item)
                ),
                self.retry,
            )
        except ClientError as e:
            raise ProvisioningTableError(f"Failed to write organizational unit {path}: {e}")

    def _to_record(self, item: Dict[str, Any]) -> AccountRecord:
        data_bag = json.loads(item.get('dataBag') or '{}')
        known = {
            'name', 'organizationalUnit', 'status', 'createRequestId',
            'failureReason', 'govCloudAccountId', 'preExisting',
        }
        return AccountRecord(
            name=data_bag.get('name', ''),
            email=item['acceleratorKey'],
            organizational_unit=data_bag.get('organizationalUnit', 'Root'),
            data_type=item['dataType'],
            state=ProvisioningState(data_bag.get('status', ProvisioningState.NOT_REQUESTED.value)),
            account_id=item.get('awsKey'),
            govcloud_account_id=data_bag.get('govCloudAccountId'),
            create_request_id=data_bag.get('createRequestId'),
            failure_reason=data_bag.get('failureReason'),
            pre_existing=bool(data_bag.get('preExisting', False)),
            extra={k: v for k, v in data_bag.items() if k not in known},
        )


class GovCloudMappingTable(_DynamoTable):
    """Immutable commercial-to-GovCloud account id links.

    AWS creates GovCloud accounts as a pair with a commercial account.
    The link is written once when creation succeeds; a second write for
    the same commercial account is rejected by a condition expression.
    """

    def put_mapping(self, commercial_account_id: str, govcloud_account_id: str,
                    account_name: str) -> bool:
        """Write a mapping unless one already exists.

        Returns:
            True when written, False when a mapping was already present

        Raises:
            ProvisioningTableError: When the write fails for another reason
        """
        item = {
            'commercialAccountId': commercial_account_id,
            'govCloudAccountId': govcloud_account_id,
            'accountName': account_name,
        }
        try:
            throttling_backoff(
                lambda: self.dynamodb_client.put_item(
                    TableName=self.table_name,
                    Item=self._serialize(item),
                    ConditionExpression='attribute_not_exists(commercialAccountId)',
                ),
                self.retry,
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                self.logger.info(
                    "GovCloud mapping for %s already recorded", commercial_account_id
                )
                return False
            raise ProvisioningTableError(
                f"Failed to write GovCloud mapping for {commercial_account_id}: {e}"
            )
        return True
