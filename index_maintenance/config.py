"""
Index Maintenance Configuration
Loads the YAML configuration, merges it over defaults and validates it.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError
from .models import DatabaseScope, Policy

logger = logging.getLogger('index_maintenance.config')

SUPPORTED_BACKENDS = ('sqlite', 'sqlserver')


def get_default_config() -> Dict[str, Any]:
    """Return the default index maintenance configuration."""
    return {
        'policy': {
            'reorganize_threshold': 10.0,
            'rebuild_threshold': 30.0,
            'min_size_units': 1000,
            'execute_actions': True,
            'include_secondary_objects': True
        },
        'scope': {
            'mode': 'CURRENT',
            'database': ''
        },
        'backend': {
            'type': 'sqlite',
            'sqlite': {
                'database_path': './data/app.db',
                'database_dir': './data'
            }
        },
        'execution': {
            'collection_concurrency': 1,
            'metrics_timeout_seconds': 300,
            'mutation_timeout_seconds': 3600,
            'stats_timeout_seconds': 600
        },
        'report': {
            'enabled': True,
            'subject_prefix': '[SQL Server]',
            'email': {
                'recipients': [],
                'sender': 'index-maintenance@localhost',
                'smtp': {
                    'host': 'localhost',
                    'port': 587,
                    'username': None,
                    'password': None
                }
            },
            'webhook_url': None
        },
        'logging': {
            'level': 'INFO',
            'file': None
        }
    }


@dataclass(frozen=True)
class ExecutionSettings:
    collection_concurrency: int = 1
    metrics_timeout_seconds: float = 300
    mutation_timeout_seconds: float = 3600
    stats_timeout_seconds: float = 600


@dataclass(frozen=True)
class SmtpSettings:
    host: str = 'localhost'
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class ReportSettings:
    enabled: bool = True
    subject_prefix: str = '[SQL Server]'
    recipients: List[str] = field(default_factory=list)
    sender: str = 'index-maintenance@localhost'
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    webhook_url: Optional[str] = None


@dataclass(frozen=True)
class MaintenanceConfig:
    """Validated, immutable run configuration."""
    policy: Policy
    scope: DatabaseScope
    specific_database: str
    backend: str
    backend_options: Dict[str, Any]
    execution: ExecutionSettings
    report: ReportSettings
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def with_overrides(self, *, execute_actions: Optional[bool] = None,
                       scope: Optional[DatabaseScope] = None,
                       specific_database: Optional[str] = None,
                       send_report: Optional[bool] = None) -> 'MaintenanceConfig':
        """Return a copy with command line overrides applied and validated."""
        raw = self.to_raw()
        if execute_actions is not None:
            raw['policy']['execute_actions'] = execute_actions
        if scope is not None:
            raw['scope']['mode'] = scope.value
        if specific_database is not None:
            raw['scope']['database'] = specific_database
        if send_report is not None:
            raw['report']['enabled'] = send_report
        return parse_config(raw)

    def to_raw(self) -> Dict[str, Any]:
        return {
            'policy': {
                'reorganize_threshold': self.policy.reorganize_threshold,
                'rebuild_threshold': self.policy.rebuild_threshold,
                'min_size_units': self.policy.min_size_units,
                'execute_actions': self.policy.execute_actions,
                'include_secondary_objects': self.policy.include_secondary_objects
            },
            'scope': {'mode': self.scope.value, 'database': self.specific_database},
            'backend': {'type': self.backend, self.backend: copy.deepcopy(self.backend_options)},
            'execution': {
                'collection_concurrency': self.execution.collection_concurrency,
                'metrics_timeout_seconds': self.execution.metrics_timeout_seconds,
                'mutation_timeout_seconds': self.execution.mutation_timeout_seconds,
                'stats_timeout_seconds': self.execution.stats_timeout_seconds
            },
            'report': {
                'enabled': self.report.enabled,
                'subject_prefix': self.report.subject_prefix,
                'email': {
                    'recipients': list(self.report.recipients),
                    'sender': self.report.sender,
                    'smtp': {
                        'host': self.report.smtp.host,
                        'port': self.report.smtp.port,
                        'username': self.report.smtp.username,
                        'password': self.report.smtp.password
                    }
                },
                'webhook_url': self.report.webhook_url
            },
            'logging': {'level': self.log_level, 'file': self.log_file}
        }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str]) -> MaintenanceConfig:
    """Load configuration from a YAML file, falling back to defaults when absent."""
    raw: Dict[str, Any] = {}
    if config_path:
        try:
            with open(config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
                logger.info(f"Configuration loaded from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Config file {config_path} not found, using defaults")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration root must be a mapping, got {type(raw).__name__}")

    return parse_config(_deep_merge(get_default_config(), raw))


def _split_recipients(value: Any) -> List[str]:
    # Accepts the semicolon separated form used by Database Mail
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(';') if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


def _number(section: Dict[str, Any], key: str, kind=float):
    try:
        return kind(section[key])
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for '{key}': {section.get(key)!r}") from e


_TRUE_WORDS = ('true', 'yes', 'on', '1')
_FALSE_WORDS = ('false', 'no', 'off', '0')


def _flag(section: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ConfigurationError(f"Invalid value for '{key}': {value!r} (expected true or false)")


def parse_config(raw: Dict[str, Any]) -> MaintenanceConfig:
    """Build a MaintenanceConfig from a fully merged mapping. Raises ConfigurationError."""
    raw = _deep_merge(get_default_config(), raw)

    policy_raw = raw['policy']
    policy = Policy(
        reorganize_threshold=_number(policy_raw, 'reorganize_threshold'),
        rebuild_threshold=_number(policy_raw, 'rebuild_threshold'),
        min_size_units=_number(policy_raw, 'min_size_units', int),
        execute_actions=_flag(policy_raw, 'execute_actions', True),
        include_secondary_objects=_flag(policy_raw, 'include_secondary_objects', True)
    )

    for name in ('reorganize_threshold', 'rebuild_threshold'):
        value = getattr(policy, name)
        if not 0.0 <= value <= 100.0:
            raise ConfigurationError(f"{name} must be between 0 and 100, got {value}")
    if policy.rebuild_threshold < policy.reorganize_threshold:
        raise ConfigurationError(
            f"rebuild_threshold ({policy.rebuild_threshold}) must be >= "
            f"reorganize_threshold ({policy.reorganize_threshold})"
        )
    if policy.min_size_units < 0:
        raise ConfigurationError(f"min_size_units must be >= 0, got {policy.min_size_units}")

    scope_raw = raw['scope']
    mode = str(scope_raw.get('mode') or '').upper()
    try:
        scope = DatabaseScope(mode)
    except ValueError:
        valid = ', '.join(s.value for s in DatabaseScope)
        raise ConfigurationError(f"Unknown database scope '{scope_raw.get('mode')}' (expected one of {valid})")
    specific_database = str(scope_raw.get('database') or '').strip()
    if scope is DatabaseScope.SPECIFIC and not specific_database:
        raise ConfigurationError("scope.database is required when scope.mode is SPECIFIC")

    backend_raw = raw['backend']
    backend = str(backend_raw.get('type') or '').lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigurationError(f"Unsupported backend '{backend_raw.get('type')}'")

    exec_raw = raw['execution']
    execution = ExecutionSettings(
        collection_concurrency=_number(exec_raw, 'collection_concurrency', int),
        metrics_timeout_seconds=_number(exec_raw, 'metrics_timeout_seconds'),
        mutation_timeout_seconds=_number(exec_raw, 'mutation_timeout_seconds'),
        stats_timeout_seconds=_number(exec_raw, 'stats_timeout_seconds')
    )
    if execution.collection_concurrency < 1:
        raise ConfigurationError("collection_concurrency must be at least 1")
    for name in ('metrics_timeout_seconds', 'mutation_timeout_seconds', 'stats_timeout_seconds'):
        if getattr(execution, name) <= 0:
            raise ConfigurationError(f"{name} must be positive")

    report_raw = raw['report']
    email_raw = report_raw.get('email') or {}
    smtp_raw = email_raw.get('smtp') or {}
    report = ReportSettings(
        enabled=_flag(report_raw, 'enabled', True),
        subject_prefix=str(report_raw.get('subject_prefix') or ''),
        recipients=_split_recipients(email_raw.get('recipients')),
        sender=str(email_raw.get('sender') or 'index-maintenance@localhost'),
        smtp=SmtpSettings(
            host=str(smtp_raw.get('host') or 'localhost'),
            port=int(smtp_raw.get('port') or 587),
            username=smtp_raw.get('username'),
            password=smtp_raw.get('password')
        ),
        webhook_url=report_raw.get('webhook_url')
    )

    log_raw = raw.get('logging') or {}
    log_level = str(log_raw.get('level') or 'INFO').upper()
    if log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ConfigurationError(f"Unknown log level '{log_raw.get('level')}'")

    return MaintenanceConfig(
        policy=policy,
        scope=scope,
        specific_database=specific_database,
        backend=backend,
        backend_options=dict(backend_raw.get(backend) or {}),
        execution=execution,
        report=report,
        log_level=log_level,
        log_file=log_raw.get('file')
    )
