#!/usr/bin/env python3

"""
Script Exporter

Description:
---------------------

Runs user supplied shell scripts and republishes the measurements they print
as Prometheus metrics. Supports:
- On-demand execution through the /probe endpoint (name or regex selection)
- Continuous background execution at a per-script interval
- Hard per-script timeouts with process group termination
- Counter (accumulating) and gauge (replacing) metrics with labels
- Prometheus metrics exposition and a JSON health endpoint
- Systemd integration

Usage:
---------------------
1. Create a YAML configuration file (default: script-exporter.yml)
2. Run `script-exporter --config.file script-exporter.yml`
3. Probe scripts at http://localhost:9172/probe?name=<script>
   or http://localhost:9172/probe?pattern=<regex>
4. Scrape metrics at http://localhost:9172/metrics

Configuration:
---------------------

exporter:
    listen_address: ":9172"    # host:port to bind (empty host = all interfaces)
    metrics_path: /metrics     # Path under which to expose metrics
    shell: /bin/sh             # Interpreter fed with every script body
    mirror_output: true        # Copy script output to the exporter's stdout
    logging:
        level: "INFO"
        console_level: "INFO"
        journal_level: "WARNING"
        file: null             # Optional rotating log file path
        max_bytes: 10485760
        backup_count: 3

scripts:
    - name: cert_valid
      script: |
        echo "NAME:cert_checks:LABEL_VALUES:example.com:RESULT:1"
      timeout: 15              # Seconds, defaults to 15
      interval: 60             # Optional, run in the background every 60s

metrics:
    cert_checks:               # Key used by scripts in NAME:<key>
        name: cert_checks      # Optional exposed name, defaults to the key
        type: counter          # counter (adds) or gauge (sets)
        help: "Certificate checks"
        labels: [domain]
        namespace: script

Output Protocol:
---------------------
Each line of a script's combined stdout/stderr may contain

    NAME:<metric>:LABEL_VALUES:<v1,v2,...>:RESULT:<number>

Any other line is ignored.

Dependencies:
---------------------
- Python 3.9+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- Scripts are not sandboxed, they run with the exporter's privileges
- A background script is never run twice concurrently; overlapping ticks
  are skipped and counted in script_exporter_skipped_ticks_total
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import argparse
import asyncio
import codecs
import json
import logging
import math
import os
import re
import signal
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import (
    Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
)
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

# Third party imports
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge,
    generate_latest, make_wsgi_app
)
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

__version__ = "0.1.0"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptExporterError(Exception):
    """Base class for script exporter errors."""
    pass

class ConfigurationError(ScriptExporterError):
    """Malformed or invalid configuration. Fatal at startup."""
    pass

class ScriptSelectionError(ScriptExporterError):
    """No selector supplied or the selection pattern is invalid."""
    pass

class ScriptExecutionError(ScriptExporterError):
    """Script could not be started or fed its content."""
    pass

class MetricDispatchError(ScriptExporterError):
    """A measurement record could not be applied to its metric."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

DEFAULT_SCRIPT_TIMEOUT = 15

@dataclass(frozen=True)
class Script:
    """A configured shell script."""
    name: str
    content: str
    timeout: float = DEFAULT_SCRIPT_TIMEOUT
    interval: Optional[float] = None

    def __post_init__(self):
        if self.timeout is None or self.timeout <= 0:
            raise ConfigurationError(
                f"Script {self.name} must have a positive timeout, got {self.timeout}"
            )
        if self.interval is not None and self.interval <= 0:
            raise ConfigurationError(
                f"Script {self.name} must have a positive interval, got {self.interval}"
            )

    @property
    def scheduled(self) -> bool:
        """Whether the script runs in the background."""
        return self.interval is not None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Older configurations declare accumulating metrics as GaugeVec
METRIC_KIND_ALIASES = {
    'accumulator': 'counter',
    'gaugevec': 'counter',
}

class MetricKind(Enum):
    """Types of metrics a script may feed."""
    COUNTER = "counter"  # Each measurement is added to the current value
    GAUGE = "gauge"      # Each measurement replaces the current value

    @classmethod
    def from_config(cls, value: Optional[str]) -> 'MetricKind':
        """Get metric kind from config."""
        if not isinstance(value, str):
            raise ConfigurationError(
                f"Metric type must be a string, got {value!r}"
            )
        normalized = METRIC_KIND_ALIASES.get(value.lower(), value.lower())
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(
                f"Invalid metric type: {value}. "
                f"Must be one of: {[k.value for k in cls]}"
            )

    def create_handle(
        self,
        declaration: 'MetricDeclaration',
        registry: CollectorRegistry
    ) -> Union[Counter, Gauge]:
        """Create and register the prometheus_client object for a declaration."""
        metric_class = Counter if self == MetricKind.COUNTER else Gauge
        return metric_class(
            declaration.exposed_name,
            declaration.help or declaration.exposed_name,
            labelnames=declaration.label_names,
            namespace=declaration.namespace,
            registry=registry
        )

    def apply(
        self,
        handle: Union[Counter, Gauge],
        label_values: Sequence[str],
        value: float
    ) -> None:
        """Apply a measured value to the handle's time series."""
        target = handle.labels(*label_values) if label_values else handle
        if self == MetricKind.COUNTER:
            target.inc(value)
        else:
            target.set(value)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MetricDeclaration:
    """Metric declared in the configuration."""
    name: str
    kind: MetricKind
    help: str = ""
    label_names: Tuple[str, ...] = field(default_factory=tuple)
    namespace: str = ""
    metric_name: Optional[str] = None

    @property
    def exposed_name(self) -> str:
        """Name used for exposition, without namespace."""
        return self.metric_name or self.name

@dataclass(frozen=True)
class MeasurementRecord:
    """One measurement parsed from a line of script output."""
    metric_name: str
    label_values: Tuple[str, ...]
    result_value: str

@dataclass
class ExecutionResult:
    """Result of one script invocation."""
    script: Script
    succeeded: bool
    duration_seconds: float = 0.0
    records: List[MeasurementRecord] = field(default_factory=list)
    output: str = ""
    error_message: Optional[str] = None
    timed_out: bool = False

    @property
    def outcome(self) -> str:
        if self.succeeded:
            return "success"
        return "timeout" if self.timed_out else "failure"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults and validation."""

    DEFAULT_CONFIG_FILE = 'script-exporter.yml'
    DEFAULT_LISTEN_ADDRESS = ':9172'
    DEFAULT_METRICS_PATH = '/metrics'
    DEFAULT_SHELL = '/bin/sh'
    DEFAULT_MIRROR_OUTPUT = True
    DEFAULT_SCRIPT_TIMEOUT = DEFAULT_SCRIPT_TIMEOUT

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    # Classic Prometheus naming rules
    METRIC_NAME_PATTERN = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
    LABEL_NAME_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager."""
        self.config_path = Path(config_path or self.DEFAULT_CONFIG_FILE)
        self._exporter = self._get_exporter_defaults()
        self._scripts: List[Script] = []
        self._metrics: List[MetricDeclaration] = []
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'listen_address': self.DEFAULT_LISTEN_ADDRESS,
            'metrics_path': self.DEFAULT_METRICS_PATH,
            'shell': self.DEFAULT_SHELL,
            'mirror_output': self.DEFAULT_MIRROR_OUTPUT,
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load and validate the configuration file."""
        try:
            with open(self.config_path) as f:
                file_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {self.config_path}: {e}")

        self.load_data(file_config)

    def load_data(self, file_config: Any) -> None:
        """Validate an already parsed configuration document."""
        if file_config is None:
            file_config = {}
        if not isinstance(file_config, dict):
            raise ConfigurationError("Configuration document must be a mapping")

        exporter = self._get_exporter_defaults()
        if file_config.get('exporter'):
            if not isinstance(file_config['exporter'], dict):
                raise ConfigurationError("Exporter section must be a mapping")
            exporter = self._merge_with_defaults(exporter, file_config['exporter'])
        self._validate_exporter_section(exporter)

        scripts = self._parse_scripts(file_config.get('scripts') or [])
        metrics = self._parse_metrics(file_config.get('metrics') or {})

        self._exporter = exporter
        self._scripts = scripts
        self._metrics = metrics
        self._log_message(
            'info',
            f"Loaded {len(scripts)} script configurations and {len(metrics)} metric declarations"
        )

    def apply_overrides(
        self,
        listen_address: Optional[str] = None,
        metrics_path: Optional[str] = None,
        shell: Optional[str] = None
    ) -> None:
        """Apply command line values over the file configuration."""
        overrides = {
            'listen_address': listen_address,
            'metrics_path': metrics_path,
            'shell': shell
        }
        exporter = deepcopy(self._exporter)
        exporter.update({k: v for k, v in overrides.items() if v is not None})
        self._validate_exporter_section(exporter)
        self._exporter = exporter

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of exporter configuration."""
        self.parse_listen_address(config['listen_address'])

        metrics_path = config['metrics_path']
        if not isinstance(metrics_path, str) or not metrics_path.startswith('/'):
            raise ConfigurationError(f"Invalid metrics_path {metrics_path!r}")
        if metrics_path.rstrip('/') in ('', '/probe', '/health'):
            raise ConfigurationError(f"metrics_path {metrics_path} collides with a reserved path")

        if not isinstance(config['shell'], str) or not config['shell']:
            raise ConfigurationError(f"Invalid shell {config['shell']!r}")

        if not isinstance(config.get('logging'), dict):
            raise ConfigurationError("Logging section must be a mapping")

    @staticmethod
    def parse_listen_address(address: Any) -> Tuple[str, int]:
        """Split a `host:port` listen address."""
        if not isinstance(address, str) or ':' not in address:
            raise ConfigurationError(f"Invalid listen address {address!r}, expected host:port")
        host, _, port = address.rpartition(':')
        try:
            port_number = int(port)
        except ValueError:
            raise ConfigurationError(f"Invalid port in listen address {address!r}")
        if port_number < 0 or port_number > 65535:
            raise ConfigurationError(f"Invalid port {port_number}")
        return host.strip('[]'), port_number

    def _parse_scripts(self, scripts_config: Any) -> List[Script]:
        """Validate the scripts section."""
        if not isinstance(scripts_config, list):
            raise ConfigurationError("Scripts section must be a list")

        scripts = []
        seen = set()
        for index, entry in enumerate(scripts_config):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Script entry {index} must be a mapping")

            name = entry.get('name')
            if not isinstance(name, str) or not name:
                raise ConfigurationError(f"Script entry {index} is missing a name")
            if name in seen:
                raise ConfigurationError(f"Duplicate script name: {name}")
            seen.add(name)

            content = entry.get('script')
            if not isinstance(content, str):
                raise ConfigurationError(f"Script {name} must define a script body")

            timeout = self._parse_seconds(name, 'timeout', entry.get('timeout'))
            interval = self._parse_seconds(name, 'interval', entry.get('interval'))

            scripts.append(Script(
                name=name,
                content=content,
                timeout=timeout or self.DEFAULT_SCRIPT_TIMEOUT,
                interval=interval or None
            ))
        return scripts

    @staticmethod
    def _parse_seconds(script_name: str, key: str, value: Any) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Script {script_name}: {key} must be a number of seconds")
        if value < 0 or math.isnan(value) or math.isinf(value):
            raise ConfigurationError(f"Script {script_name}: invalid {key} {value}")
        return value

    def _parse_metrics(self, metrics_config: Any) -> List[MetricDeclaration]:
        """Validate the metrics section."""
        if not isinstance(metrics_config, dict):
            raise ConfigurationError("Metrics section must be a mapping of metric key to settings")

        declarations = []
        for key, entry in metrics_config.items():
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Metric {key} must be a mapping")

            labels = entry.get('labels') or []
            if not isinstance(labels, list) or not all(isinstance(l, str) for l in labels):
                raise ConfigurationError(f"Metric {key}: labels must be a list of strings")
            for label in labels:
                if not self.LABEL_NAME_PATTERN.match(label):
                    raise ConfigurationError(f"Metric {key}: invalid label name {label!r}")

            declaration = MetricDeclaration(
                name=str(key),
                kind=MetricKind.from_config(entry.get('type')),
                help=str(entry.get('help') or ''),
                label_names=tuple(labels),
                namespace=str(entry.get('namespace') or ''),
                metric_name=entry.get('name')
            )
            for part in (declaration.namespace, declaration.exposed_name):
                if part and not self.METRIC_NAME_PATTERN.match(part):
                    raise ConfigurationError(f"Metric {key}: invalid metric name {part!r}")
            declarations.append(declaration)
        return declarations

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def running_under_systemd(self) -> bool:
        return self._running_under_systemd

    @property
    def scripts(self) -> List[Script]:
        return list(self._scripts)

    @property
    def metrics(self) -> List[MetricDeclaration]:
        return list(self._metrics)

    @property
    def logging(self) -> Dict[str, Any]:
        return deepcopy(self._exporter['logging'])

    @property
    def listen_address(self) -> Tuple[str, int]:
        return self.parse_listen_address(self._exporter['listen_address'])

    @property
    def metrics_path(self) -> str:
        return self._exporter['metrics_path']

    @property
    def shell(self) -> str:
        return self._exporter['shell']

    @property
    def mirror_output(self) -> bool:
        return bool(self._exporter['mirror_output'])

    def get_script(self, name: str) -> Optional[Script]:
        """Get a script by name."""
        for script in self._scripts:
            if script.name == name:
                return script
        return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    LOGGER_NAME = 'script_exporter'

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg(*args, **kwargs))
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    def __init__(self, config: ProgramConfig):
        """Initialize logging configuration.

        Args:
            config: Program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance
        """
        logger = logging.getLogger(self.LOGGER_NAME)
        logger.handlers.clear()
        logger.propagate = False

        log_settings = self.config.logging
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_settings['console_level'])
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        self._handlers['console'] = console_handler

        if log_settings.get('file'):
            try:
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler
            except OSError as e:
                logger.error(f"Failed to open log file {log_settings['file']}: {e}")

        # Journal handler for systemd
        if self.config.running_under_systemd:
            journal_handler = journal.JournaldLogHandler()
            journal_handler.setLevel(log_settings['journal_level'])
            journal_handler.setFormatter(formatter)
            logger.addHandler(journal_handler)
            self._handlers['journal'] = journal_handler

        return logger

    def close(self) -> None:
        """Close all handlers."""
        for name, handler in list(self._handlers.items()):
            try:
                handler.close()
            except Exception as e:
                print(f"Error closing log handler {name}: {e}", file=sys.stderr)
            self._logger.removeHandler(handler)
        self._handlers.clear()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Output Protocol
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

RECORD_PATTERN = re.compile(
    r'NAME:(?P<name>\w+):LABEL_VALUES:(?P<labels>.*):RESULT:(?P<result>.+)'
)

def parse_output(output: Optional[str]) -> List[MeasurementRecord]:
    """Extract measurement records from script output, in line order.

    Lines that do not carry a record are ignored. Label values are split on
    commas without trimming, so an empty label field yields a single empty
    string.
    """
    records = []
    if not output:
        return records

    for line in output.split('\n'):
        match = RECORD_PATTERN.search(line)
        if not match:
            continue
        records.append(MeasurementRecord(
            metric_name=match.group('name'),
            label_values=tuple(match.group('labels').split(',')),
            result_value=match.group('result')
        ))
    return records

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Script Selection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def filter_scripts(
    scripts: Iterable[Script],
    name: Optional[str] = None,
    pattern: Optional[str] = None
) -> List[Script]:
    """Select scripts whose name equals `name` or matches `pattern`."""
    if not name and not pattern:
        raise ScriptSelectionError("`name` or `pattern` required")

    pattern_regex = None
    if pattern:
        try:
            pattern_regex = re.compile(pattern)
        except re.error as e:
            raise ScriptSelectionError(f"Invalid pattern {pattern!r}: {e}")

    return [
        script for script in scripts
        if (name and script.name == name)
        or (pattern_regex is not None and pattern_regex.search(script.name))
    ]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Internal Metrics
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class InternalMetrics:
    """Exporter self-monitoring metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.executions = Counter(
            'script_exporter_executions',
            'Total number of script executions by outcome',
            labelnames=['script', 'outcome'],
            registry=registry
        )
        self.last_duration = Gauge(
            'script_exporter_last_duration_seconds',
            'Duration of the last execution of each script in seconds',
            labelnames=['script'],
            registry=registry
        )
        self.dispatch_errors = Counter(
            'script_exporter_dispatch_errors',
            'Total number of measurement records discarded by reason',
            labelnames=['reason'],
            registry=registry
        )
        self.skipped_ticks = Counter(
            'script_exporter_skipped_ticks',
            'Background ticks skipped because the previous run was still in flight',
            labelnames=['script'],
            registry=registry
        )
        self.build_info = Gauge(
            'script_exporter_build_info',
            'Script exporter build information',
            labelnames=['version'],
            registry=registry
        )
        self.build_info.labels(__version__).set(1)

    def observe_execution(self, result: ExecutionResult) -> None:
        self.executions.labels(result.script.name, result.outcome).inc()
        self.last_duration.labels(result.script.name).set(result.duration_seconds)

    def count_dispatch_error(self, reason: str) -> None:
        self.dispatch_errors.labels(reason).inc()

    def count_skipped_tick(self, script_name: str) -> None:
        self.skipped_ticks.labels(script_name).inc()

    def execution_totals(self) -> Dict[str, int]:
        """Total executions per outcome across all scripts."""
        totals = {'success': 0, 'failure': 0, 'timeout': 0}
        for metric in self.executions.collect():
            for sample in metric.samples:
                if sample.name.endswith('_total'):
                    outcome = sample.labels['outcome']
                    totals[outcome] = totals.get(outcome, 0) + int(sample.value)
        return totals

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Registry and Dispatch
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricRegistry:
    """Owns the live prometheus_client handle of every declared metric.

    Handles are created once by `setup()` and kept for the process lifetime.
    Calling `setup()` again is a no-op, so a declaration is never registered
    twice with the underlying CollectorRegistry.
    """

    def __init__(
        self,
        declarations: Iterable[MetricDeclaration],
        logger: logging.Logger,
        registry: CollectorRegistry = REGISTRY
    ):
        self.logger = logger
        self.registry = registry
        self._declarations: Dict[str, MetricDeclaration] = {}
        self._handles: Dict[str, Union[Counter, Gauge]] = {}
        self._lock = threading.Lock()
        self._initialized = False

        for declaration in declarations:
            if declaration.name in self._declarations:
                raise ConfigurationError(f"Duplicate metric declaration: {declaration.name}")
            self._declarations[declaration.name] = declaration

    @property
    def initialized(self) -> bool:
        return self._initialized

    def setup(self) -> int:
        """Create and register one handle per declaration.

        Returns:
            Number of handles created by this call
        """
        with self._lock:
            if self._initialized:
                self.logger.warning("Metric registry already set up, ignoring repeated setup")
                return 0

            for name, declaration in self._declarations.items():
                try:
                    handle = declaration.kind.create_handle(declaration, self.registry)
                except ValueError as e:
                    raise ConfigurationError(f"Failed to register metric {name}: {e}")
                self._handles[name] = handle
                self.logger.verbose(
                    f"Registered {declaration.kind.value} {name} "
                    f"with labels {list(declaration.label_names)}"
                )

            self._initialized = True
            self.logger.info(f"Registered {len(self._handles)} metrics")
            return len(self._handles)

    def lookup(self, name: str) -> Optional[Union[Counter, Gauge]]:
        """Get the handle for a declared metric name."""
        return self._handles.get(name)

    def declaration(self, name: str) -> Optional[MetricDeclaration]:
        return self._declarations.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricDispatcher:
    """Applies measurement records to registered metric handles."""

    def __init__(
        self,
        registry: MetricRegistry,
        logger: logging.Logger,
        metrics: Optional[InternalMetrics] = None
    ):
        self.registry = registry
        self.logger = logger
        self.metrics = metrics

    def dispatch(self, record: MeasurementRecord) -> bool:
        """Apply one record. Returns False if the record was discarded."""
        try:
            self._apply(record)
            return True
        except MetricDispatchError as e:
            self.logger.info(f"Discarding record {record}: {e}")
            if self.metrics:
                self.metrics.count_dispatch_error(e.reason)
            return False

    def dispatch_all(self, records: Iterable[MeasurementRecord]) -> int:
        """Apply records in order. Returns the number applied."""
        return sum(1 for record in records if self.dispatch(record))

    def _apply(self, record: MeasurementRecord) -> None:
        handle = self.registry.lookup(record.metric_name)
        declaration = self.registry.declaration(record.metric_name)
        if handle is None or declaration is None:
            raise MetricDispatchError(
                'unknown_metric',
                f"invalid metric name: {record.metric_name}"
            )

        label_values = record.label_values
        if not declaration.label_names and label_values == ('',):
            label_values = ()

        if len(label_values) != len(declaration.label_names):
            raise MetricDispatchError(
                'label_mismatch',
                f"expected {len(declaration.label_names)} label values "
                f"for {record.metric_name}, got {len(label_values)}"
            )

        try:
            value = float(record.result_value)
        except ValueError:
            raise MetricDispatchError(
                'invalid_value',
                f"result {record.result_value!r} is not a number"
            )

        # nan or inf would stick in an accumulator forever
        if declaration.kind == MetricKind.COUNTER and not math.isfinite(value):
            raise MetricDispatchError(
                'rejected_value',
                f"counter {record.metric_name} cannot be incremented by {value}"
            )

        try:
            declaration.kind.apply(handle, label_values, value)
        except ValueError as e:
            raise MetricDispatchError('rejected_value', str(e))

        self.logger.verbose(
            f"Applied {value} to {record.metric_name}{list(label_values)} "
            f"({declaration.kind.value})"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Script Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptExecutor:
    """Executes one script under its timeout."""

    READ_CHUNK_SIZE = 4096

    def __init__(
        self,
        shell: str,
        logger: logging.Logger,
        metrics: Optional[InternalMetrics] = None,
        mirror_output: bool = True
    ):
        self.shell = shell
        self.logger = logger
        self.metrics = metrics
        self.mirror_output = mirror_output

    async def execute(self, script: Script) -> ExecutionResult:
        """Run the script and parse its output.

        Never raises for script failures: start errors, write errors, nonzero
        exit status and timeouts are all reported in the result, which always
        carries whatever output was captured.
        """
        self.logger.verbose(f"Executing script {script.name} with {self.shell}")
        start_time = time.monotonic()
        buffer = bytearray()
        process = None
        succeeded = False
        timed_out = False
        error_message = None

        try:
            process = await self._start(script)
            returncode = await asyncio.wait_for(
                self._communicate(process, script, buffer),
                timeout=script.timeout
            )
            if returncode == 0:
                succeeded = True
            else:
                error_message = f"exit status {returncode}"

        except asyncio.TimeoutError:
            timed_out = True
            error_message = f"timed out after {script.timeout}s"
            await self._terminate(process)

        except ScriptExecutionError as e:
            error_message = str(e)
            await self._terminate(process)

        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        except Exception as e:
            self.logger.error(f"Unexpected error executing {script.name}: {e}", exc_info=True)
            error_message = str(e) or type(e).__name__
            await self._terminate(process)

        duration = time.monotonic() - start_time
        output = buffer.decode(errors='replace')
        result = ExecutionResult(
            script=script,
            succeeded=succeeded,
            duration_seconds=duration,
            records=parse_output(output),
            output=output,
            error_message=error_message,
            timed_out=timed_out
        )

        if succeeded:
            self.logger.debug(f"OK: {script.name} (after {duration:.3f}s)")
        else:
            self.logger.info(f"ERROR: {script.name}: {error_message} (failed after {duration:.3f}s)")

        if self.metrics:
            self.metrics.observe_execution(result)
        return result

    async def _start(self, script: Script) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.shell,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True
            )
        except (OSError, ValueError) as e:
            raise ScriptExecutionError(f"failed to start {self.shell}: {e}")

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        script: Script,
        buffer: bytearray
    ) -> int:
        """Feed the script to the shell and collect output until exit."""
        reader = asyncio.ensure_future(self._read_output(process.stdout, buffer))
        try:
            try:
                process.stdin.write(script.content.encode())
                await process.stdin.drain()
            except (OSError, RuntimeError) as e:
                raise ScriptExecutionError(f"failed to write script to {self.shell}: {e}")
            finally:
                process.stdin.close()

            await reader
            return await process.wait()
        finally:
            if not reader.done():
                reader.cancel()

    async def _read_output(self, stream: asyncio.StreamReader, buffer: bytearray) -> None:
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        while True:
            chunk = await stream.read(self.READ_CHUNK_SIZE)
            final = not chunk
            buffer.extend(chunk)
            if self.mirror_output:
                sys.stdout.write(decoder.decode(chunk, final=final))
                sys.stdout.flush()
            if final:
                break

    async def _terminate(self, process: Optional[asyncio.subprocess.Process]) -> None:
        """Kill the shell and everything it started.

        The group is signalled even when the shell itself already exited,
        since its children may still hold the output pipe open.
        """
        if process is None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.kill()
        await process.wait()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptRunner:
    """Runs a set of scripts in parallel (on-demand mode)."""

    def __init__(
        self,
        executor: ScriptExecutor,
        dispatcher: MetricDispatcher,
        logger: logging.Logger
    ):
        self.executor = executor
        self.dispatcher = dispatcher
        self.logger = logger

    async def run_scripts(self, scripts: Sequence[Script]) -> List[ExecutionResult]:
        """Execute all scripts concurrently, one result per script."""
        scripts = list(scripts)
        self.logger.verbose(f"Running {len(scripts)} scripts: {[s.name for s in scripts]}")

        outcomes = await asyncio.gather(
            *(self.executor.execute(script) for script in scripts),
            return_exceptions=True
        )

        results = []
        for script, outcome in zip(scripts, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(f"Execution of {script.name} raised: {outcome!r}")
                outcome = ExecutionResult(
                    script=script,
                    succeeded=False,
                    error_message=str(outcome) or type(outcome).__name__
                )
            results.append(outcome)
        return results

    async def probe(self, scripts: Sequence[Script]) -> List[ExecutionResult]:
        """Run scripts and dispatch all of their records."""
        start_time = time.monotonic()
        results = await self.run_scripts(scripts)

        applied = 0
        for result in results:
            applied += self.dispatcher.dispatch_all(result.records)

        succeeded = sum(1 for r in results if r.succeeded)
        self.logger.info(
            f"Probe completed in {time.monotonic() - start_time:.2f}s: "
            f"{succeeded}/{len(results)} scripts succeeded, {applied} measurements applied"
        )
        return results

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptScheduler:
    """Runs interval-bearing scripts in the background forever.

    Each script gets its own timer task ticking at a fixed rate. A tick
    starts an execution unless the previous execution of the same script
    is still running, in which case the tick is skipped.
    """

    def __init__(
        self,
        scripts: Iterable[Script],
        executor: ScriptExecutor,
        dispatcher: MetricDispatcher,
        logger: logging.Logger,
        metrics: Optional[InternalMetrics] = None
    ):
        self.scripts = [script for script in scripts if script.scheduled]
        self.executor = executor
        self.dispatcher = dispatcher
        self.logger = logger
        self.metrics = metrics
        self.skipped_ticks: Dict[str, int] = {script.name: 0 for script in self.scripts}
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._timers)

    def start(self) -> None:
        """Start one timer per scheduled script. Requires a running event loop."""
        if self.running:
            self.logger.warning("Scheduler already running")
            return
        for script in self.scripts:
            self._timers[script.name] = asyncio.ensure_future(self._run_timer(script))
            self.logger.info(f"Scheduled {script.name} every {script.interval}s")

    async def stop(self) -> None:
        """Cancel all timers and in-flight executions."""
        tasks = list(self._timers.values()) + list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._in_flight.clear()
        if tasks:
            self.logger.info("Scheduler stopped")

    async def _run_timer(self, script: Script) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            try:
                self._tick(script)
            except Exception as e:
                self.logger.error(f"Tick for {script.name} failed: {e}", exc_info=True)

            next_tick += script.interval
            delay = next_tick - loop.time()
            if delay < 0:
                # Event loop fell behind, drop the missed ticks
                missed = math.ceil(-delay / script.interval)
                next_tick += missed * script.interval
                delay = next_tick - loop.time()
            await asyncio.sleep(max(0, delay))

    def _tick(self, script: Script) -> None:
        in_flight = self._in_flight.get(script.name)
        if in_flight is not None and not in_flight.done():
            self.skipped_ticks[script.name] += 1
            self.logger.warning(
                f"Skipping tick for {script.name}: previous execution still running"
            )
            if self.metrics:
                self.metrics.count_skipped_tick(script.name)
            return
        self._in_flight[script.name] = asyncio.ensure_future(self._execute(script))

    async def _execute(self, script: Script) -> None:
        try:
            result = await self.executor.execute(script)
            self.dispatcher.dispatch_all(result.records)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Background execution of {script.name} failed: {e}", exc_info=True)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGI server handling each request in its own thread."""
    daemon_threads = True

class LoggingRequestHandler(WSGIRequestHandler):
    """Route wsgiref access logs to the exporter logger."""

    def log_message(self, format, *args):
        logger = getattr(self.server, 'logger', None)
        if logger:
            logger.verbose(f"{self.address_string()} {format % args}")

def render_probe_results(results: Iterable[ExecutionResult]) -> bytes:
    """Render per-script success and duration in Prometheus text format."""
    registry = CollectorRegistry()
    success = Gauge(
        'script_success',
        'Script exit status (0 = error, 1 = success).',
        labelnames=['script'],
        registry=registry
    )
    duration = Gauge(
        'script_duration_seconds',
        'Script execution time, in seconds.',
        labelnames=['script'],
        registry=registry
    )
    for result in results:
        success.labels(result.script.name).set(1 if result.succeeded else 0)
        duration.labels(result.script.name).set(result.duration_seconds)
    return generate_latest(registry)

class ExporterServer:
    """HTTP endpoint implementation.

    Endpoints:
        GET /: Landing page
        GET <metrics_path>: Prometheus exposition
        GET /probe?name=<script>&pattern=<regex>: Run scripts on demand
        GET /health: Service health status
    """

    def __init__(
        self,
        config: ProgramConfig,
        runner: ScriptRunner,
        registry: CollectorRegistry,
        internal_metrics: InternalMetrics,
        logger: logging.Logger,
        loop: Optional[asyncio.AbstractEventLoop] = None
    ):
        self.config = config
        self.runner = runner
        self.registry = registry
        self.internal_metrics = internal_metrics
        self.logger = logger
        self.loop = loop
        self._metrics_app = make_wsgi_app(registry)
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start HTTP server in a separate thread."""
        host, port = self.config.listen_address
        try:
            self._server = make_server(
                host, port, self.create_wsgi_app(),
                server_class=ThreadingWSGIServer,
                handler_class=LoggingRequestHandler
            )
            self._server.logger = self.logger
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="HTTPServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Listening on {host or '0.0.0.0'}:{self._server.server_port}")
            return True
        except OSError as e:
            self.logger.error(f"Error starting HTTP server: {e}")
            return False

    def stop(self) -> None:
        """Stop HTTP server."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping HTTP server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("HTTP server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

    def create_wsgi_app(self):
        """Create WSGI application routing all endpoints."""
        metrics_path = self.config.metrics_path.rstrip('/')

        def app(environ, start_response):
            path = environ.get('PATH_INFO', '').rstrip('/')
            try:
                if path == metrics_path:
                    return self._metrics_app(environ, start_response)
                if path == '/probe':
                    return self._handle_probe(environ, start_response)
                if path == '/health':
                    return self._handle_health(start_response)
                if path == '':
                    return self._handle_index(start_response)

                start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
                return [b"Not Found\n"]

            except Exception as e:
                self.logger.error(f"Request to {path} failed: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'text/plain; charset=utf-8')])
                return [f"{e}\n".encode()]

        return app

    def _handle_probe(self, environ, start_response):
        params = parse_qs(environ.get('QUERY_STRING', ''))
        name = params.get('name', [''])[0]
        pattern = params.get('pattern', [''])[0]

        try:
            scripts = filter_scripts(self.config.scripts, name, pattern)
        except ScriptSelectionError as e:
            start_response('500 Internal Server Error', [('Content-Type', 'text/plain; charset=utf-8')])
            return [f"{e}\n".encode()]

        self.logger.verbose(f"Probe selected {[s.name for s in scripts]} (name={name!r}, pattern={pattern!r})")
        results = self._run_probe(scripts)

        start_response('200 OK', [('Content-Type', CONTENT_TYPE_LATEST)])
        return [render_probe_results(results)]

    def _run_probe(self, scripts: List[Script]) -> List[ExecutionResult]:
        """Run the probe on the service event loop, blocking this thread."""
        if self.loop is not None and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self.runner.probe(scripts), self.loop)
            return future.result()
        return asyncio.run(self.runner.probe(scripts))

    def _handle_health(self, start_response):
        scripts = self.config.scripts
        response = {
            "status": "healthy",
            "version": __version__,
            "current_datetime_utc": self.config.now_utc().isoformat(),
            "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
            "process_id": os.getpid(),
            "systemd_managed": self.config.running_under_systemd,
            "configuration": {
                "path": str(self.config.config_path),
                "shell": self.config.shell,
                "scripts": len(scripts),
                "scheduled_scripts": sum(1 for s in scripts if s.scheduled),
                "metrics": len(self.config.metrics)
            },
            "executions": self.internal_metrics.execution_totals()
        }
        start_response('200 OK', [
            ('Content-Type', 'application/json'),
            ('Cache-Control', 'no-cache, no-store, must-revalidate')
        ])
        return [json.dumps(response, indent=2).encode()]

    def _handle_index(self, start_response):
        metrics_path = self.config.metrics_path
        body = (
            "<html>\n"
            "<head><title>Script Exporter</title></head>\n"
            "<body>\n"
            "<h1>Script Exporter</h1>\n"
            f'<p><a href="{metrics_path}">Metrics</a></p>\n'
            '<p><a href="/health">Health</a></p>\n'
            "</body>\n"
            "</html>\n"
        )
        start_response('200 OK', [('Content-Type', 'text/html; charset=utf-8')])
        return [body.encode()]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptExporter:
    """Main service class for the script exporter.

    Wires the metric registry, dispatcher, executor, on-demand runner,
    background scheduler and HTTP endpoint together and manages their
    lifecycle.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        registry (CollectorRegistry): Exposition registry
        metric_registry (MetricRegistry): Declared metric handles
        dispatcher (MetricDispatcher): Applies parsed measurements
        runner (ScriptRunner): On-demand parallel runner
        scheduler (ScriptScheduler): Background per-script timers
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        registry: CollectorRegistry = REGISTRY
    ):
        self.config = config
        self.logger = logger
        self.registry = registry
        self.shutdown_event: Optional[asyncio.Event] = None
        self.server: Optional[ExporterServer] = None

        self.internal_metrics = InternalMetrics(registry)
        self.metric_registry = MetricRegistry(config.metrics, logger, registry)
        self.dispatcher = MetricDispatcher(self.metric_registry, logger, self.internal_metrics)
        self.executor = ScriptExecutor(
            config.shell,
            logger,
            metrics=self.internal_metrics,
            mirror_output=config.mirror_output
        )
        self.runner = ScriptRunner(self.executor, self.dispatcher, logger)
        self.scheduler = ScriptScheduler(
            config.scripts,
            self.executor,
            self.dispatcher,
            logger,
            metrics=self.internal_metrics
        )

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        if self.shutdown_event:
            self.shutdown_event.set()

    def _notify(self, notification: Notification) -> None:
        if self.config.running_under_systemd:
            notify(notification)

    async def run(self) -> int:
        """Main service loop."""
        loop = asyncio.get_running_loop()
        self.shutdown_event = asyncio.Event()

        self.metric_registry.setup()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._handle_signal, signum)

        self.server = ExporterServer(
            self.config,
            self.runner,
            self.registry,
            self.internal_metrics,
            self.logger,
            loop=loop
        )
        if not self.server.start():
            self._notify(Notification.STOPPING)
            return 1

        try:
            self.scheduler.start()
            self._notify(Notification.READY)
            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0
        finally:
            await self.scheduler.stop()
            await loop.run_in_executor(None, self.server.stop)
            self._notify(Notification.STOPPING)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line flags."""
    parser = argparse.ArgumentParser(
        prog='script-exporter',
        description='Run shell scripts and export their measurements as Prometheus metrics.'
    )
    parser.add_argument('--version', action='store_true', help='Print version information.')
    parser.add_argument(
        '--config.file', dest='config_file', default=ProgramConfig.DEFAULT_CONFIG_FILE,
        help='Script exporter configuration file.'
    )
    parser.add_argument(
        '--web.listen-address', dest='listen_address', default=None,
        help=f'The address to listen on for HTTP requests (default {ProgramConfig.DEFAULT_LISTEN_ADDRESS}).'
    )
    parser.add_argument(
        '--web.telemetry-path', dest='metrics_path', default=None,
        help=f'Path under which to expose metrics (default {ProgramConfig.DEFAULT_METRICS_PATH}).'
    )
    parser.add_argument(
        '--config.shell', dest='shell', default=None,
        help=f'Shell to execute scripts (default {ProgramConfig.DEFAULT_SHELL}).'
    )
    return parser.parse_args(argv)

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the script exporter service."""
    args = parse_args(argv)
    if args.version:
        print(f"script_exporter {__version__}")
        return 0

    try:
        config = ProgramConfig(Path(args.config_file))
        config.load()
        config.apply_overrides(
            listen_address=args.listen_address,
            metrics_path=args.metrics_path,
            shell=args.shell
        )
    except ConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    program_logger = ProgramLogger(config)
    logger = program_logger.logger
    logger.info(f"Starting script_exporter {__version__}")

    try:
        exporter = ScriptExporter(config, logger)
        return asyncio.run(exporter.run())
    except ConfigurationError as e:
        logger.error(f"Fatal error during startup: {e}")
        return 1
    finally:
        program_logger.close()

def cli() -> None:
    sys.exit(main())

if __name__ == '__main__':
    cli()
