"""Shared fixtures for the test suite."""
import os
from datetime import datetime, timezone
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from processor.models import Event
from storage.dynamodb_manager import DynamoDBManager

TABLE_NAME = 'test-calendar-events'
REGION = 'us-east-1'


class FakeClock:
    """Monotonic clock whose sleep advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def aws_credentials():
    """Fake credentials so boto3 never reaches a real account."""
    env_vars = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SECURITY_TOKEN': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': REGION,
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name=REGION)

        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'external_id', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'external_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield table


@pytest.fixture
def dynamodb_manager(dynamodb_table):
    """Create DynamoDBManager instance with mock table."""
    return DynamoDBManager(TABLE_NAME, region_name=REGION)


def make_event(external_id: str = 'evt-1', **overrides) -> Event:
    """Build an Event with sensible defaults for tests."""
    values = {
        'external_id': external_id,
        'title': f'Event {external_id}',
        'start_time': datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc),
        'end_time': datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        'location': 'Town Square',
        'url': f'https://lu.ma/{external_id}',
        'slug': external_id,
    }
    values.update(overrides)
    return Event(**values)


def feed_record(external_id: str, start: str = '2024-06-01T10:00:00Z', **overrides) -> dict:
    """Build a Luma-style feed entry."""
    event = {
        'api_id': external_id,
        'name': f'Event {external_id}',
        'start_at': start,
        'end_at': None,
        'url': f'https://lu.ma/{external_id}',
    }
    event.update(overrides)
    return {'api_id': f'entry-{external_id}', 'event': event}
