#!/usr/bin/env python
"""Script to create the DynamoDB state table for STATE_BACKEND=dynamodb."""

import logging
import sys

from glucose_sync.data.dynamodb import get_dynamodb_client
from glucose_sync.utils.config import get_settings
from glucose_sync.utils.logging_utils import setup_json_logging

logger = logging.getLogger(__name__)


def main():
    """Create the state table."""
    settings = get_settings()
    setup_json_logging(settings.log_level)
    try:
        client = get_dynamodb_client()
        logger.info(f"Creating DynamoDB table {settings.dynamodb_state_table}...")

        response = client.create_state_table(settings.dynamodb_state_table)

        status = response.get("TableDescription", response.get("Table", {})).get("TableStatus", "UNKNOWN")
        logger.info(f"Table '{settings.dynamodb_state_table}' status: {status}")
    except Exception as e:
        logger.error(f"Error creating table: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
