"""Shared test fixtures."""

import boto3
import pytest
from moto import mock_aws

from driftplan.loader import load_text
from driftplan.providers.memory import InMemoryProvider
from driftplan.state.store import MemoryStateStore

CLUSTER_CONFIG = """
variables:
  region: us-east-1
  pool_count:
    type: number
    default: 2
  machine_types:
    type: list
    default: "small, large"

schemas:
  cluster:
    attributes:
      name: {type: string, immutable: true}
      region: {type: string}
      version: {type: string, default: "1.29"}
  node_pool:
    attributes:
      cluster_id: {type: string, immutable: true}
      machine_type: {type: string, immutable: true}
      size: {type: number, default: 1}

resources:
  cluster:
    main:
      attributes:
        name: prod
        region: ${var.region}
  node_pool:
    workers:
      count: ${var.pool_count}
      attributes:
        cluster_id: ${cluster.main.id}
        machine_type: ${var.machine_types[count.index]}
        size: 3
"""


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3_bucket(aws_credentials):
    """Create a moto-mocked S3 bucket and return its name."""
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="driftplan-state")
        yield "driftplan-state"


@pytest.fixture
def cluster_text():
    return CLUSTER_CONFIG


@pytest.fixture
def cluster_config():
    return load_text(CLUSTER_CONFIG)


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def store():
    return MemoryStateStore()
