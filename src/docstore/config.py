"""Storage configuration management."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging
import os

from dotenv import load_dotenv

from .errors import ConfigurationError
from .resilience.backoff import RetryPolicy
from .resilience.circuit_breaker import CircuitBreakerPolicy

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Emulator defaults (LocalStack and Azurite)
LOCALSTACK_ENDPOINT = 'http://127.0.0.1:4566'
LOCALSTACK_CREDENTIALS = ('test', 'test')
AZURITE_ACCOUNT = 'devstoreaccount1'
AZURITE_KEY = ('Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/'
               'K1SZFPTOtr/KBHBeksoGMGw==')
AZURITE_ENDPOINT = f'http://127.0.0.1:10000/{AZURITE_ACCOUNT}'

LOCAL_PRIORITY = 100
S3_PRIORITY = 10
AZURE_PRIORITY = 20
PRIMARY_PRIORITY = 1


class BackendKind(Enum):
    S3 = "s3"
    AZURE = "azure"
    LOCAL = "local"


VALID_PRIMARIES = ('auto',) + tuple(kind.value for kind in BackendKind)


@dataclass(frozen=True)
class HealthCheckPolicy:
    enabled: bool = True
    interval: float = 30.0  # seconds
    timeout: float = 10.0   # seconds
    failure_threshold: int = 3


@dataclass(frozen=True)
class BackendConfig:
    id: str
    name: str
    kind: BackendKind
    enabled: bool
    priority: int
    allow_fallback: bool
    params: Dict[str, Any] = field(default_factory=dict)
    health_check: HealthCheckPolicy = field(default_factory=HealthCheckPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)


@dataclass(frozen=True)
class S3Settings:
    bucket: str
    region: str
    access_key_id: Optional[str]
    secret_access_key: Optional[str]
    endpoint: Optional[str] = None
    force_path_style: bool = False


@dataclass(frozen=True)
class AzureSettings:
    container: str
    account_name: Optional[str] = None
    account_key: Optional[str] = None
    connection_string: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class LocalSettings:
    root_path: str = './uploads'
    max_capacity: int = 1024 * MB


@dataclass(frozen=True)
class StorageSettings:
    """Everything the storage layer reads from the environment.

    Durations are kept in seconds; the environment gives them in
    milliseconds.
    """
    backend: str = 'auto'
    emulator: bool = False
    fallback_enabled: bool = True
    timeout: float = 30.0
    total_timeout: float = 120.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_jitter_factor: float = 0.1
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 30.0
    circuit_breaker_success_threshold: int = 1
    circuit_breaker_half_open_max_calls: int = 1
    health_check_interval: float = 30.0
    health_check_timeout: float = 10.0
    health_check_failure_threshold: int = 3
    max_file_size: int = 100 * MB
    allowed_mime_types: Tuple[str, ...] = ('*/*',)
    metrics_buffer_size: int = 1000
    s3: Optional[S3Settings] = None
    azure: Optional[AzureSettings] = None
    local: LocalSettings = field(default_factory=LocalSettings)
    log_level: str = 'INFO'

    def validate(self):
        """Fail fast when the selected primary backend cannot be used."""
        if self.backend not in VALID_PRIMARIES:
            raise ConfigurationError(
                f"Invalid STORAGE_BACKEND '{self.backend}', expected one of {', '.join(VALID_PRIMARIES)}"
            )
        if self.backend == BackendKind.S3.value and self.s3 is None:
            raise ConfigurationError(
                "STORAGE_BACKEND is 's3' but S3 is not configured "
                "(set S3_BUCKET_NAME, S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY)"
            )
        if self.backend == BackendKind.AZURE.value and self.azure is None:
            raise ConfigurationError(
                "STORAGE_BACKEND is 'azure' but Azure Blob storage is not configured "
                "(set AZURE_STORAGE_ACCOUNT and AZURE_STORAGE_KEY, or AZURE_STORAGE_CONNECTION_STRING)"
            )
        if not self.backend_configs():
            raise ConfigurationError("No storage backend is configured")
        if self.total_timeout < self.timeout:
            raise ConfigurationError("STORAGE_TOTAL_TIMEOUT_MS must not be lower than STORAGE_TIMEOUT_MS")

    def _health_check(self) -> HealthCheckPolicy:
        return HealthCheckPolicy(
            interval=self.health_check_interval,
            timeout=self.health_check_timeout,
            failure_threshold=self.health_check_failure_threshold
        )

    def _circuit_breaker(self) -> CircuitBreakerPolicy:
        return CircuitBreakerPolicy(
            failure_threshold=self.circuit_breaker_threshold,
            recovery_timeout=self.circuit_breaker_timeout,
            half_open_max_calls=self.circuit_breaker_half_open_max_calls,
            success_threshold=self.circuit_breaker_success_threshold
        )

    def _cloud_retry(self) -> RetryPolicy:
        return RetryPolicy(
            enabled=True,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            backoff_multiplier=2.0,
            max_backoff=self.timeout,
            jitter_factor=self.retry_jitter_factor,
            attempt_timeout=self.timeout,
            total_timeout=self.total_timeout
        )

    def _validation_params(self) -> Dict[str, Any]:
        return {
            'max_file_size': self.max_file_size,
            'allowed_mime_types': list(self.allowed_mime_types),
        }

    def backend_configs(self) -> List[BackendConfig]:
        """Backend configurations in the order they should be tried."""
        configs = []

        if self.s3 is not None:
            configs.append(BackendConfig(
                id='s3',
                name='Amazon S3',
                kind=BackendKind.S3,
                enabled=True,
                priority=PRIMARY_PRIORITY if self.backend == 's3' else S3_PRIORITY,
                allow_fallback=self.fallback_enabled,
                params=dict(
                    bucket=self.s3.bucket,
                    region=self.s3.region,
                    access_key_id=self.s3.access_key_id,
                    secret_access_key=self.s3.secret_access_key,
                    endpoint=self.s3.endpoint,
                    force_path_style=self.s3.force_path_style,
                    timeout=self.timeout,
                    **self._validation_params()
                ),
                health_check=self._health_check(),
                retry=self._cloud_retry(),
                circuit_breaker=self._circuit_breaker()
            ))

        if self.azure is not None:
            configs.append(BackendConfig(
                id='azure',
                name='Azure Blob Storage',
                kind=BackendKind.AZURE,
                enabled=True,
                priority=PRIMARY_PRIORITY if self.backend == 'azure' else AZURE_PRIORITY,
                allow_fallback=self.fallback_enabled,
                params=dict(
                    container=self.azure.container,
                    account_name=self.azure.account_name,
                    account_key=self.azure.account_key,
                    connection_string=self.azure.connection_string,
                    endpoint=self.azure.endpoint,
                    timeout=self.timeout,
                    **self._validation_params()
                ),
                health_check=self._health_check(),
                retry=self._cloud_retry(),
                circuit_breaker=self._circuit_breaker()
            ))

        # Local is the last resort and is never retried
        configs.append(BackendConfig(
            id='local',
            name='Local Storage',
            kind=BackendKind.LOCAL,
            enabled=True,
            priority=PRIMARY_PRIORITY if self.backend == 'local' else LOCAL_PRIORITY,
            allow_fallback=True,
            params=dict(
                root_path=self.local.root_path,
                max_capacity=self.local.max_capacity,
                **self._validation_params()
            ),
            health_check=self._health_check(),
            retry=RetryPolicy(
                enabled=False,
                max_attempts=1,
                attempt_timeout=self.timeout,
                total_timeout=self.total_timeout
            ),
            circuit_breaker=self._circuit_breaker()
        ))

        return sorted(
            (config for config in configs if config.enabled),
            key=lambda config: (config.priority, config.id)
        )


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() == 'true'


def _get_int(env: Mapping[str, str], name: str, default: int,
             minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{name} must be at most {maximum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float,
               minimum: float = 0.0, maximum: float = 1.0) -> float:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")
    if not minimum <= value <= maximum:
        raise ConfigurationError(f"{name} must be between {minimum} and {maximum}, got {value}")
    return value


def _get_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _load_s3(env: Mapping[str, str], emulator: bool) -> Optional[S3Settings]:
    bucket = _get_str(env, 'S3_BUCKET_NAME')
    access_key_id = _get_str(env, 'S3_ACCESS_KEY_ID')
    secret_access_key = _get_str(env, 'S3_SECRET_ACCESS_KEY')
    region = _get_str(env, 'S3_REGION', 'us-east-1')
    endpoint = _get_str(env, 'S3_ENDPOINT')

    if emulator:
        default_key, default_secret = LOCALSTACK_CREDENTIALS
        return S3Settings(
            bucket=bucket or 'dms-bucket',
            region=region,
            access_key_id=access_key_id or default_key,
            secret_access_key=secret_access_key or default_secret,
            endpoint=endpoint or LOCALSTACK_ENDPOINT,
            force_path_style=True
        )

    if not all([bucket, access_key_id, secret_access_key]):
        return None
    return S3Settings(
        bucket=bucket,
        region=region,
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        endpoint=endpoint,
        force_path_style=endpoint is not None
    )


def _load_azure(env: Mapping[str, str], emulator: bool) -> Optional[AzureSettings]:
    container = _get_str(env, 'AZURE_STORAGE_CONTAINER', 'dms-container')
    account_name = _get_str(env, 'AZURE_STORAGE_ACCOUNT')
    account_key = _get_str(env, 'AZURE_STORAGE_KEY')
    connection_string = _get_str(env, 'AZURE_STORAGE_CONNECTION_STRING')
    endpoint = _get_str(env, 'AZURE_STORAGE_ENDPOINT')

    if emulator and not connection_string:
        return AzureSettings(
            container=container,
            account_name=account_name or AZURITE_ACCOUNT,
            account_key=account_key or AZURITE_KEY,
            endpoint=endpoint or AZURITE_ENDPOINT
        )

    if connection_string or all([account_name, account_key]):
        return AzureSettings(
            container=container,
            account_name=account_name,
            account_key=account_key,
            connection_string=connection_string,
            endpoint=endpoint
        )
    return None


def load_storage_settings(env: Optional[Mapping[str, str]] = None) -> StorageSettings:
    """Load storage settings from environment variables.

    With no explicit mapping, a ``.env`` file is loaded first and the process
    environment is used.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    emulator = _get_bool(env, 'STORAGE_EMULATOR', False)
    timeout_ms = _get_int(env, 'STORAGE_TIMEOUT_MS', 30000, 1000, 300000)
    total_timeout_ms = _get_int(env, 'STORAGE_TOTAL_TIMEOUT_MS', max(120000, timeout_ms), 1000, 3600000)
    mime_types = _get_str(env, 'STORAGE_ALLOWED_MIME_TYPES', '*/*')

    settings = StorageSettings(
        backend=(_get_str(env, 'STORAGE_BACKEND', 'auto')).lower(),
        emulator=emulator,
        fallback_enabled=_get_bool(env, 'STORAGE_FALLBACK_ENABLED', True),
        timeout=timeout_ms / 1000,
        total_timeout=total_timeout_ms / 1000,
        retry_attempts=_get_int(env, 'STORAGE_RETRY_ATTEMPTS', 3, 1, 10),
        retry_base_delay=_get_int(env, 'STORAGE_RETRY_BASE_DELAY_MS', 1000, 0, 60000) / 1000,
        retry_jitter_factor=_get_float(env, 'STORAGE_RETRY_JITTER_FACTOR', 0.1),
        circuit_breaker_threshold=_get_int(env, 'STORAGE_CIRCUIT_BREAKER_THRESHOLD', 5, 1, 20),
        circuit_breaker_timeout=_get_int(env, 'STORAGE_CIRCUIT_BREAKER_TIMEOUT_MS', 30000, 1000, 600000) / 1000,
        circuit_breaker_success_threshold=_get_int(env, 'STORAGE_CIRCUIT_BREAKER_SUCCESS_THRESHOLD', 1, 1, 20),
        circuit_breaker_half_open_max_calls=_get_int(env, 'STORAGE_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS', 1, 1, 20),
        health_check_interval=_get_int(env, 'STORAGE_HEALTH_CHECK_INTERVAL', 30000, 5000, 300000) / 1000,
        health_check_timeout=_get_int(env, 'STORAGE_HEALTH_CHECK_TIMEOUT', 10000, 1000, 60000) / 1000,
        health_check_failure_threshold=_get_int(env, 'STORAGE_HEALTH_CHECK_FAILURE_THRESHOLD', 3, 1, 20),
        max_file_size=_get_int(env, 'STORAGE_MAX_FILE_SIZE', 100 * MB, 1),
        allowed_mime_types=tuple(m.strip() for m in mime_types.split(',') if m.strip()),
        metrics_buffer_size=_get_int(env, 'STORAGE_METRICS_BUFFER_SIZE', 1000, 1),
        s3=_load_s3(env, emulator),
        azure=_load_azure(env, emulator),
        local=LocalSettings(
            root_path=_get_str(env, 'LOCAL_STORAGE_PATH', './uploads'),
            max_capacity=_get_int(env, 'LOCAL_STORAGE_MAX_SIZE', 1024 * MB, MB)
        ),
        log_level=_get_str(env, 'LOG_LEVEL', 'INFO').upper()
    )
    logger.info(
        f"Storage settings loaded: primary={settings.backend}, "
        f"backends={[config.id for config in settings.backend_configs()]}"
    )
    return settings


def configure_logging(level: Optional[str] = None):
    """Configure root logging from LOG_LEVEL or the given level name."""
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
