"""DynamoDB utilities and the DynamoDB-backed state store."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from glucose_sync.utils.config import get_settings

logger = logging.getLogger(__name__)


class DynamoDBClient:
    """DynamoDB client wrapper with table utilities."""

    def __init__(self, region_name: Optional[str] = None, endpoint_url: Optional[str] = None):
        """Initialize the DynamoDB client."""
        settings = get_settings()
        region_name = region_name or settings.aws_region
        endpoint_url = endpoint_url or settings.dynamodb_endpoint
        self.client = boto3.client("dynamodb", region_name=region_name, endpoint_url=endpoint_url)
        self.resource = boto3.resource("dynamodb", region_name=region_name, endpoint_url=endpoint_url)

    def create_state_table(self, table_name: str, wait: bool = True) -> Dict[str, Any]:
        """
        Create the state table if it doesn't exist.

        Args:
            table_name: Name of the table
            wait: Wait for the table to be created if True

        Returns:
            Dict: Table description
        """
        try:
            table = self.client.create_table(
                TableName=table_name,
                KeySchema=[
                    {"AttributeName": "state_key", "KeyType": "HASH"}  # Partition key
                ],
                AttributeDefinitions=[
                    {"AttributeName": "state_key", "AttributeType": "S"}
                ],
                BillingMode="PAY_PER_REQUEST",
            )

            if wait:
                waiter = self.client.get_waiter("table_exists")
                waiter.wait(TableName=table_name)

            return table

        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceInUseException":
                logger.info(f"Table {table_name} already exists.")
                return self.client.describe_table(TableName=table_name)
            else:
                logger.error(f"Error creating table {table_name}: {e}")
                raise

    def get_table(self, table_name: str):
        """
        Get a DynamoDB table resource.

        Args:
            table_name: Name of the table

        Returns:
            Table: DynamoDB table resource
        """
        return self.resource.Table(table_name)

    def put_item(self, table_name: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace an item in a DynamoDB table."""
        return self.get_table(table_name).put_item(Item=item)

    def get_item(self, table_name: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Get an item from a DynamoDB table.

        Args:
            table_name: Name of the table
            key: Key to get

        Returns:
            Dict: Item from DynamoDB or None if not found
        """
        response = self.get_table(table_name).get_item(Key=key, ConsistentRead=True)
        return response.get("Item")


# Singleton instance for reuse
_dynamodb_client: Optional[DynamoDBClient] = None


def get_dynamodb_client() -> DynamoDBClient:
    """
    Get a singleton instance of the DynamoDB client.

    Returns:
        DynamoDBClient: DynamoDB client
    """
    global _dynamodb_client
    if _dynamodb_client is None:
        _dynamodb_client = DynamoDBClient()
    return _dynamodb_client


class DynamoDBStateStore:
    """
    State store keeping each document as one item of a key/value table.

    Items are ``{state_key, data, updated_at}`` where ``data`` is the JSON
    text of the document, so floats never have to become Decimals.
    """

    def __init__(self, table_name: str, client: Optional[DynamoDBClient] = None):
        self.table_name = table_name
        self._client = client

    @property
    def dynamodb(self) -> DynamoDBClient:
        if self._client is None:
            self._client = get_dynamodb_client()
        return self._client

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            item = self.dynamodb.get_item(self.table_name, {"state_key": key})
        except ClientError as e:
            logger.error(f"Error reading state '{key}': {e}", extra={"log_type": "state_read_error"})
            raise
        if not item:
            return None
        try:
            data = json.loads(item["data"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(
                f"Stored state '{key}' is not valid JSON: {e}",
                extra={"log_type": "state_read_error", "state_key": key},
            )
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, data: Dict[str, Any]) -> None:
        item = {
            "state_key": key,
            "data": json.dumps(data, default=str),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.dynamodb.put_item(self.table_name, item)
        except ClientError as e:
            logger.error(f"Error saving state '{key}': {e}", extra={"log_type": "state_write_error"})
            raise
