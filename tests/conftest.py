"""Shared test fixtures for all test modules."""

import logging

import pytest
from prometheus_client import CollectorRegistry

from script_exporter import (
    InternalMetrics,
    MetricDeclaration,
    MetricDispatcher,
    MetricKind,
    MetricRegistry,
    ProgramLogger,
    Script,
    ScriptExecutor,
)


@pytest.fixture
def logger() -> logging.Logger:
    """Verbose-capable logger that is not attached to the logging manager."""
    test_logger = ProgramLogger.VerboseLogger("script_exporter_test")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def collector_registry() -> CollectorRegistry:
    """Fresh exposition registry so tests never collide on metric names."""
    return CollectorRegistry()


@pytest.fixture
def internal_metrics(collector_registry: CollectorRegistry) -> InternalMetrics:
    return InternalMetrics(collector_registry)


@pytest.fixture
def declarations() -> list:
    return [
        MetricDeclaration(
            name="MYMETRIC",
            kind=MetricKind.COUNTER,
            help="Probe results",
            label_names=("id",),
            namespace="test",
            metric_name="my_metric",
        ),
        MetricDeclaration(
            name="temperature",
            kind=MetricKind.GAUGE,
            help="Current temperature",
            label_names=("sensor",),
            namespace="test",
        ),
        MetricDeclaration(
            name="up",
            kind=MetricKind.GAUGE,
            help="Unlabeled gauge",
            namespace="test",
        ),
    ]


@pytest.fixture
def metric_registry(declarations, logger, collector_registry) -> MetricRegistry:
    registry = MetricRegistry(declarations, logger, collector_registry)
    registry.setup()
    return registry


@pytest.fixture
def dispatcher(metric_registry, logger, internal_metrics) -> MetricDispatcher:
    return MetricDispatcher(metric_registry, logger, internal_metrics)


@pytest.fixture
def executor(logger, internal_metrics) -> ScriptExecutor:
    return ScriptExecutor("/bin/sh", logger, metrics=internal_metrics, mirror_output=False)


@pytest.fixture
def scripts() -> list:
    return [
        Script("success", "exit 0", timeout=1),
        Script("failure", "exit 1", timeout=1),
        Script("failure_two", "exit 2", timeout=1),
        Script("timeout", "sleep 5", timeout=2),
        Script("labels", "echo NAME:MYMETRIC:LABEL_VALUES:398493840:RESULT:1\n", timeout=1),
    ]
