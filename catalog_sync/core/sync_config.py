from typing import Dict, Any, List, Optional, Tuple

from pydantic_settings import BaseSettings


class SyncConfig(BaseSettings):
    """
    Конфигурация движка пакетной синхронизации каталога.

    Настройки можно переопределить через переменные окружения с префиксом CATALOG_SYNC_
    """
    supported_entities: List[str] = ["products", "customers", "orders"]

    # Размер пакета
    default_batch_size: int = 50
    min_batch_size: int = 10
    max_batch_size: int = 200

    # Внешняя обертка повторов вокруг загрузки страницы
    outer_retry_attempts: int = 3
    recovery_retry_attempts: int = 5
    outer_retry_base_delay: float = 1.0
    outer_retry_max_delay: float = 30.0

    # Блокировка и heartbeat
    lock_timeout_seconds: int = 3600
    lock_retry_delay_seconds: float = 5.0
    lock_max_retries: int = 3
    heartbeat_enabled: bool = True
    heartbeat_interval_seconds: float = 60.0
    heartbeat_timeout_seconds: int = 300
    lock_check_process_liveness: bool = True

    # Контроль памяти
    memory_limit_mb: Optional[int] = 512
    memory_buffer_fraction: float = 0.8
    memory_pressure_fraction: float = 0.7
    cleanup_item_interval: int = 100
    cleanup_time_interval_seconds: int = 300
    memory_pause_seconds: float = 30.0
    memory_pause_retries: int = 3

    # Восстановление делением диапазона
    recovery_max_depth: int = 5
    recovery_thresholds: List[int] = [15, 10, 5]
    recovery_problematic_size: int = 30
    recovery_direct_attempts: int = 3
    known_problematic_ranges: List[Tuple[int, int]] = []

    # Возобновление, история, хранение ошибок
    resume_staleness_hours: int = 24
    history_limit: int = 100
    error_retention_days: int = 30

    # HTTP клиент ERP
    default_retry_policy: str = "standard"
    method_timeouts: Dict[str, float] = {"GET": 45, "POST": 60, "PUT": 60, "DELETE": 30}
    default_timeout_seconds: float = 30.0
    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout_seconds: float = 300.0
    circuit_half_open_max_calls: int = 3
    transient_error_codes: List[str] = []

    model_config = {
        "env_prefix": "CATALOG_SYNC_",
        "env_file": ".env",
        "extra": "ignore"  # Игнорировать дополнительные поля из .env
    }

    def safe_range_threshold(self, depth: int) -> int:
        """Порог безопасного размера диапазона для заданной глубины деления."""
        if depth < len(self.recovery_thresholds):
            return self.recovery_thresholds[depth]
        return self.recovery_thresholds[-1]


# Глобальный экземпляр конфигурации
sync_config = SyncConfig()


# Настройки для различных сред выполнения
ENVIRONMENT_CONFIGS = {
    "development": {
        "default_batch_size": 20,
        "outer_retry_attempts": 2,
        "lock_retry_delay_seconds": 1.0,
        "memory_limit_mb": 256,
        "default_retry_policy": "realtime",
    },
    "staging": {
        "default_batch_size": 40,
        "outer_retry_attempts": 3,
        "memory_limit_mb": 384,
        "default_retry_policy": "standard",
    },
    "production": {
        "default_batch_size": 50,
        "outer_retry_attempts": 3,
        "memory_limit_mb": 512,
        "default_retry_policy": "standard",
    }
}


def get_environment_config(env: str = "production") -> Dict[str, Any]:
    """
    Получает конфигурацию для указанной среды выполнения.

    Args:
        env: Имя среды (development, staging, production)

    Returns:
        Dict с настройками для указанной среды
    """
    return ENVIRONMENT_CONFIGS.get(env, ENVIRONMENT_CONFIGS["production"])


def update_config_for_environment(env: str = "production", config: Optional[SyncConfig] = None) -> SyncConfig:
    """
    Обновляет конфигурацию для указанной среды выполнения.

    Args:
        env: Имя среды выполнения
        config: Экземпляр для обновления (по умолчанию глобальный)
    """
    target = config or sync_config
    env_config = get_environment_config(env)

    for key, value in env_config.items():
        if hasattr(target, key):
            setattr(target, key, value)
    return target
